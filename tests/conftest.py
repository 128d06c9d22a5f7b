"""
Shared fixtures for the bulk export tests.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from bulkexport.jobs.artifacts import ArtifactArbiter
from bulkexport.jobs.errors import RetrievalFailure
from bulkexport.jobs.job_manager import JobManager
from bulkexport.jobs.job_store import MemoryJobStore
from bulkexport.jobs.job_types import ResourceType
from bulkexport.jobs.queue import MemoryWorkQueue
from bulkexport.jobs.resolver import BeneficiaryResolver
from bulkexport.jobs.runner import WorkUnitRunner
from bulkexport.jobs.splitter import JobSplitter
from bulkexport.models import ImportStatus, PopulationSnapshot
from bulkexport.repository import MemoryPopulationRepository
from bulkexport.service import ExportService
from bulkexport.settings import ExportSettings

ORG_ID = "A0001"

NOW = datetime.now(timezone.utc)


def make_snapshot(
    snapshot_id: int,
    days_ago: float,
    organization_id: str = ORG_ID,
    import_status: ImportStatus = ImportStatus.COMPLETED,
) -> PopulationSnapshot:
    return PopulationSnapshot(
        id=snapshot_id,
        organization_id=organization_id,
        name=f"snapshot-{snapshot_id}",
        timestamp=NOW - timedelta(days=days_ago),
        import_status=import_status,
    )


def member_ids(prefix: str, count: int) -> List[str]:
    return [f"{prefix}{i:05d}" for i in range(count)]


def bundle(*resources: Dict) -> str:
    return json.dumps({
        "resourceType": "Bundle",
        "entry": [{"resource": r} for r in resources],
    })


class FakeResourceClient:
    """Returns canned bundles; member IDs listed in failures raise RetrievalFailure."""

    def __init__(self, failures: Optional[List[str]] = None, payloads: Optional[Dict[str, str]] = None):
        self.failures = set(failures or [])
        self.payloads = payloads or {}
        self.calls = []

    async def fetch_resource(self, resource_type: ResourceType, member_id: str, since: str = "") -> str:
        self.calls.append((resource_type, member_id, since))
        if member_id in self.failures:
            raise RetrievalFailure(f"Error retrieving {resource_type.value} for {member_id}")
        if member_id in self.payloads:
            return self.payloads[member_id]
        return bundle({"resourceType": resource_type.value, "id": f"{resource_type.value}-{member_id}"})


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings(tmp_path) -> ExportSettings:
    return ExportSettings(queue_backend="memory", payload_dir=str(tmp_path / "payloads"))


@pytest.fixture
def repository() -> MemoryPopulationRepository:
    """Repository with one completed snapshot of 50 members."""
    repo = MemoryPopulationRepository()
    repo.add_snapshot(make_snapshot(1, days_ago=1), member_ids("M", 50))
    return repo


@pytest.fixture
def resolver(repository) -> BeneficiaryResolver:
    return BeneficiaryResolver(repository)


@pytest.fixture
def store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
def manager(store) -> JobManager:
    return JobManager(store)


@pytest.fixture
def queue() -> MemoryWorkQueue:
    return MemoryWorkQueue(max_attempts=3, lease_seconds=60)


@pytest.fixture
def service(manager, resolver, queue, settings) -> ExportService:
    return ExportService(
        manager=manager,
        splitter=JobSplitter(resolver, settings),
        queue=queue,
        settings=settings,
    )


@pytest.fixture
def client() -> FakeResourceClient:
    return FakeResourceClient()


@pytest.fixture
def runner(manager, client, settings) -> WorkUnitRunner:
    return WorkUnitRunner(manager, ArtifactArbiter(), client, settings.payload_dir)
