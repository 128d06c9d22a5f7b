"""
Work Unit Runner

Executes one leased work unit:
- Validates the unit before any member is processed (unit-level failures)
- Moves the parent job to In Progress
- Fetches each member in order and appends results to the job's artifacts
- Records the completion marker and runs the completion check

While a unit runs, a heartbeat task renews its queue lease so the unit is
not handed to another worker.

Per-member problems never raise. A failed retrieval or an unparseable bundle
becomes an OperationOutcome line in the error artifact and the unit carries on.
"""

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional, Tuple

from bulkexport.jobs.artifacts import ArtifactArbiter, artifact_name
from bulkexport.jobs.client import MEMBER_SEARCH_PARAM, ResourceClient
from bulkexport.jobs.errors import JobNotFoundError, RetrievalFailure, UnitFailure
from bulkexport.jobs.job_manager import JobManager
from bulkexport.jobs.job_types import (
    ACTIVE_STATUSES, ExportJob, OperationOutcome, OutcomeDetail, ResourceType, WorkUnit
)
from bulkexport.jobs.queue import LeasedWorkUnit, WorkQueue
from bulkexport.jobs.utils import format_duration
from bulkexport.models import is_supported_organization

logger = logging.getLogger(__name__)


@dataclass
class UnitResult:
    """Summary of one executed work unit."""
    unit_id: str
    job_id: str
    resource_type: ResourceType
    members: int = 0
    resources_written: int = 0
    member_errors: int = 0
    file_name: Optional[str] = None
    job_completed: bool = False
    skipped: bool = False


class WorkUnitRunner:
    """
    Runs work units against the retrieval client and artifact arbiter.
    """

    def __init__(
        self,
        manager: JobManager,
        arbiter: ArtifactArbiter,
        client: Optional[ResourceClient],
        payload_dir: str,
        queue: Optional[WorkQueue] = None,
        heartbeat_interval: float = 30.0,
    ):
        self.manager = manager
        self.arbiter = arbiter
        self.client = client
        self.payload_dir = payload_dir
        self.queue = queue
        self.heartbeat_interval = heartbeat_interval

    def artifact_paths(self, unit: WorkUnit) -> Tuple[str, str]:
        """Paths of the data and error artifacts for a unit."""
        job_dir = os.path.join(self.payload_dir, unit.job_id)
        resource = unit.resource_type.value
        return (
            os.path.join(job_dir, artifact_name(unit.organization_id, resource)),
            os.path.join(job_dir, artifact_name(unit.organization_id, resource, error=True)),
        )

    async def run(self, leased: LeasedWorkUnit) -> UnitResult:
        """
        Execute a leased unit.

        Raises:
            UnitFailure: The unit cannot be processed at all
        """
        unit = leased.unit
        result = UnitResult(unit_id=leased.unit_id, job_id=unit.job_id, resource_type=unit.resource_type)

        job = self.validate(unit)
        if job.status not in ACTIVE_STATUSES:
            logger.warning(
                f"Skipping unit {leased.unit_id}: job {job.id} is already {job.status.value}"
            )
            result.skipped = True
            return result

        self.manager.start_job(job.id)

        data_path, error_path = self.artifact_paths(unit)
        started = time.monotonic()

        async with self._heartbeat_loop(leased):
            # The data artifact exists even when no member yields a resource
            await self.arbiter.ensure(data_path)

            for member_id in unit.member_ids:
                lines, outcome = await self._fetch_member(unit, member_id)
                result.members += 1

                if lines:
                    try:
                        await self.arbiter.append(data_path, lines)
                        result.resources_written += len(lines)
                    except OSError as e:
                        logger.error(f"Error writing {unit.resource_type.value} for {member_id}: {e}")
                        outcome = self._outcome(
                            OutcomeDetail.INTERNAL_ERROR,
                            f"Error writing {unit.resource_type.value} to file for member {member_id} "
                            f"in organization {unit.organization_id}",
                        )

                if outcome is not None:
                    result.member_errors += 1
                    await self.arbiter.append(error_path, [outcome.to_line()])

            result.file_name = os.path.basename(data_path)
            self.manager.record_completion(job.id, leased.unit_id, result.file_name)

        result.job_completed = self.manager.check_completed_and_cleanup(self.manager.get_job(job.id))

        logger.info(
            f"Unit {leased.unit_id} of job {job.id} finished in "
            f"{format_duration(time.monotonic() - started)}: {result.members} members, "
            f"{result.resources_written} resources, {result.member_errors} errors"
        )
        return result

    def validate(self, unit: WorkUnit) -> ExportJob:
        """
        Check everything a unit needs before touching any member.

        Raises:
            UnitFailure: Describing the first problem found
        """
        if not is_supported_organization(unit.organization_id):
            raise UnitFailure(f"Unsupported organization identifier {unit.organization_id!r}")

        if self.client is None:
            raise UnitFailure("Resource retrieval client is required", stage="dependency")

        if unit.resource_type not in MEMBER_SEARCH_PARAM:
            raise UnitFailure(f"Unsupported resource type {unit.resource_type}")

        try:
            job = self.manager.get_job(unit.job_id)
        except JobNotFoundError as e:
            raise UnitFailure(str(e), stage="load_job") from e

        if job.organization_id != unit.organization_id:
            raise UnitFailure(
                f"Unit organization {unit.organization_id} does not match job {job.id} "
                f"organization {job.organization_id}"
            )
        return job

    @asynccontextmanager
    async def _heartbeat_loop(self, leased: LeasedWorkUnit):
        """Context manager that renews the unit's lease in the background."""
        if self.queue is None:
            yield
            return

        stop_event = asyncio.Event()

        async def heartbeat_task():
            while not stop_event.is_set():
                try:
                    await asyncio.sleep(self.heartbeat_interval)
                    if not stop_event.is_set() and not self.queue.extend_lease(leased):
                        logger.warning(
                            f"Lease on unit {leased.unit_id} was lost; it may be redelivered"
                        )
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.warning(f"Heartbeat error for unit {leased.unit_id}: {e}")

        task = asyncio.create_task(heartbeat_task())
        try:
            yield
        finally:
            stop_event.set()
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _fetch_member(
        self,
        unit: WorkUnit,
        member_id: str,
    ) -> Tuple[List[str], Optional[OperationOutcome]]:
        resource = unit.resource_type.value
        try:
            payload = await self.client.fetch_resource(unit.resource_type, member_id, unit.since)
        except RetrievalFailure as e:
            logger.error(f"Job {unit.job_id}: {e}")
            return [], self._outcome(
                OutcomeDetail.RETRIEVAL_ERROR,
                f"Error retrieving {resource} for member {member_id} in organization {unit.organization_id}",
            )

        try:
            return bundle_to_lines(payload), None
        except ValueError as e:
            logger.error(f"Job {unit.job_id}: could not parse {resource} bundle for {member_id}: {e}")
            return [], self._outcome(
                OutcomeDetail.INTERNAL_ERROR,
                f"Error parsing {resource} for member {member_id} in organization {unit.organization_id}",
            )

    @staticmethod
    def _outcome(detail: OutcomeDetail, message: str) -> OperationOutcome:
        return OperationOutcome(detail_code=detail, detail_message=message)


def bundle_to_lines(payload: str) -> List[str]:
    """
    Convert a JSON bundle into one compact JSON line per entry resource.
    A bundle without entries yields no lines.

    Raises:
        ValueError: Payload is not a JSON object or its entries are malformed
    """
    bundle = json.loads(payload)
    if not isinstance(bundle, dict):
        raise ValueError("bundle is not a JSON object")

    entries = bundle.get("entry") or []
    if not isinstance(entries, list):
        raise ValueError("bundle entry is not a list")

    lines = []
    for entry in entries:
        resource = entry.get("resource", entry) if isinstance(entry, dict) else entry
        lines.append(json.dumps(resource, separators=(",", ":")))
    return lines
