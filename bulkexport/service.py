"""
Export Service

Entry points for accepting, scheduling and polling export jobs. The service is
constructed with its collaborators and handed to the HTTP app and the worker;
build_service() wires the configured backends.
"""

import logging
from typing import List, Optional, Sequence

from bulkexport.jobs.errors import ExportError, JobAlreadyScheduledError
from bulkexport.jobs.job_manager import JobManager
from bulkexport.jobs.job_store import MemoryJobStore, SupabaseJobStore
from bulkexport.jobs.job_types import ExportJob, JobKey, JobStatusResponse
from bulkexport.jobs.queue import MemoryWorkQueue, SupabaseWorkQueue, WorkQueue
from bulkexport.jobs.resolver import BeneficiaryResolver
from bulkexport.jobs.splitter import JobSplitter
from bulkexport.repository import MemoryPopulationRepository, PopulationRepository, SupabasePopulationRepository
from bulkexport.settings import ExportSettings
from bulkexport.supabase_client import get_supabase

logger = logging.getLogger(__name__)


class ExportService:
    """
    Accepts export requests and turns them into queued work units.
    """

    def __init__(
        self,
        manager: JobManager,
        splitter: JobSplitter,
        queue: WorkQueue,
        settings: ExportSettings,
    ):
        self.manager = manager
        self.splitter = splitter
        self.queue = queue
        self.settings = settings

    def create_job(self, organization_id: str, request_url: str) -> str:
        """Record a new Pending job and return its ID."""
        return self.manager.create_job(organization_id, request_url).id

    def schedule(
        self,
        job_id: str,
        resource_types: Optional[Sequence[str]] = None,
        since: str = "",
        diff_new_vs_existing: bool = False,
    ) -> int:
        """
        Split a job into work units and enqueue them.

        Resolution and validation errors propagate before anything is
        enqueued, leaving the job untouched.

        Returns:
            Number of enqueued work units

        Raises:
            JobNotFoundError, JobAlreadyScheduledError, ResolutionError,
            UnsupportedResourceTypeError, InvalidSinceError
        """
        job = self.manager.get_job(job_id)
        if job.job_count > 0:
            raise JobAlreadyScheduledError(job_id)

        units = self.splitter.split(job, resource_types, since, diff_new_vs_existing)

        if not self.manager.set_job_count(job_id, len(units)):
            raise JobAlreadyScheduledError(job_id)

        for unit in units:
            self.queue.enqueue(unit)

        logger.info(f"Enqueued {len(units)} work units for job {job_id}")
        return len(units)

    def reject_job(self, job_id: str, error: ExportError) -> bool:
        """Fail a job whose export request could not be scheduled."""
        return self.manager.mark_failed(
            job_id,
            error_type="schedule_rejected",
            message=str(error),
            hint="Correct the export request and submit it again.",
            failing_stage=error.operation,
        )

    def get_job(self, job_id: str) -> ExportJob:
        return self.manager.get_job(job_id)

    def poll_status(self, job_id: str) -> JobStatusResponse:
        """Current status, percent complete and message for a job."""
        return self.manager.poll_status(job_id)

    def list_artifacts(self, job_id: str) -> List[JobKey]:
        """Completion markers (one per finished unit) for a job."""
        return self.manager.list_artifacts(job_id)


def build_service(
    settings: ExportSettings,
    repository: Optional[PopulationRepository] = None,
) -> ExportService:
    """
    Wire an ExportService for the configured queue backend.

    The memory backend keeps jobs, queue and population in process, which
    only works when the API and the workers share one process.
    """
    if settings.queue_backend == "memory":
        store = MemoryJobStore()
        queue = MemoryWorkQueue(
            max_attempts=settings.queue_max_attempts,
            lease_seconds=settings.queue_lease_seconds,
        )
        repository = repository or MemoryPopulationRepository()
    else:
        supabase = get_supabase()
        if supabase is None:
            raise RuntimeError("Supabase is not configured; set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        store = SupabaseJobStore(supabase)
        queue = SupabaseWorkQueue(
            supabase,
            max_attempts=settings.queue_max_attempts,
            lease_seconds=settings.queue_lease_seconds,
        )
        repository = repository or SupabasePopulationRepository(supabase)

    resolver = BeneficiaryResolver(
        repository,
        cutoff=settings.snapshot_cutoff,
        lookback_days=settings.suppression_lookback_days,
    )
    return ExportService(
        manager=JobManager(store),
        splitter=JobSplitter(resolver, settings),
        queue=queue,
        settings=settings,
    )
