"""
Job Manager

Handles export job creation, status transitions, completion tracking and
status reporting. This is the primary interface for reading and mutating
export jobs.

State machine: Pending -> In Progress -> {Completed, Failed}. The completion
check may move a Pending job straight to Completed. Every transition is a
compare-and-set against the job store, so no transition ever moves backward.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from bulkexport.jobs.errors import JobNotFoundError
from bulkexport.jobs.job_store import JobStore
from bulkexport.jobs.job_types import (
    ACTIVE_STATUSES, ExportJob, JobError, JobKey, JobStatus, JobStatusResponse
)

logger = logging.getLogger(__name__)


class JobManager:
    """
    Manages export job lifecycle including creation, status updates,
    completion markers and progress reporting.
    """

    def __init__(self, store: JobStore):
        self.store = store

    def create_job(self, organization_id: str, request_url: str) -> ExportJob:
        """Create a new Pending job."""
        job = ExportJob(
            id=str(uuid4()),
            organization_id=organization_id,
            request_url=request_url,
        )
        created = self.store.insert_job(job)
        logger.info(f"Created export job {created.id} for {organization_id}")
        return created

    def get_job(self, job_id: str) -> ExportJob:
        """
        Get a job by ID.

        Raises:
            JobNotFoundError: No job with this ID
        """
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def set_job_count(self, job_id: str, job_count: int) -> bool:
        """Record the number of work units. Only applies once per job."""
        updated = self.store.set_job_count(job_id, job_count)
        if updated:
            logger.info(f"Job {job_id} split into {job_count} work units")
        return updated

    def start_job(self, job_id: str) -> bool:
        """
        Move a job from Pending to In Progress.
        Returns True when the job is (now or already) In Progress.
        """
        if self.store.compare_and_set_status(job_id, [JobStatus.PENDING], JobStatus.IN_PROGRESS):
            logger.info(f"Job {job_id} is now In Progress")
            return True

        job = self.store.get_job(job_id)
        return job is not None and job.status == JobStatus.IN_PROGRESS

    def mark_failed(
        self,
        job_id: str,
        error_type: str,
        message: str,
        hint: Optional[str] = None,
        failing_stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Mark an active job as failed with error details."""
        error = JobError(
            error_type=error_type,
            message=message,
            hint=hint,
            failing_stage=failing_stage,
            details=details,
        )

        success = self.store.compare_and_set_status(
            job_id, ACTIVE_STATUSES, JobStatus.FAILED, error=error
        )
        if success:
            logger.error(f"Job {job_id} failed ({error_type}): {message}")
        else:
            logger.warning(f"Job {job_id} was not active; failure '{error_type}' not recorded")
        return success

    def record_completion(self, job_id: str, unit_id: str, file_name: str) -> bool:
        """
        Write the completion marker for a work unit and refresh the job's
        completed counter. Returns False when the unit was already recorded.
        """
        added = self.store.add_job_key(JobKey(job_id=job_id, unit_id=unit_id, file_name=file_name))
        if not added:
            logger.info(f"Unit {unit_id} of job {job_id} already recorded")
            return False

        self.store.set_completed_count(job_id, self.store.count_job_keys(job_id))
        return True

    def check_completed_and_cleanup(self, job: ExportJob) -> bool:
        """
        Determine whether a job is complete, completing it when every
        work unit has a marker.

        Returns:
            True if the job is Completed (already, or as a result of this call)
        """
        if job.status == JobStatus.COMPLETED:
            return True

        if job.job_count <= 0:
            return False

        completed = self.store.count_job_keys(job.id)
        if completed < job.job_count:
            return False

        if self.store.compare_and_set_status(job.id, ACTIVE_STATUSES, JobStatus.COMPLETED):
            logger.info(f"Job {job.id} completed ({completed}/{job.job_count} units)")
            return True

        # Another caller got there first, or the job is no longer active
        current = self.store.get_job(job.id)
        return current is not None and current.status == JobStatus.COMPLETED

    def list_artifacts(self, job_id: str) -> List[JobKey]:
        """Completion markers for a job, one per finished work unit."""
        return self.store.list_job_keys(job_id)

    def poll_status(self, job_id: str) -> JobStatusResponse:
        """
        Get job status in response format.

        Raises:
            JobNotFoundError: No job with this ID
        """
        job = self.get_job(job_id)
        percent = percent_complete(job)

        return JobStatusResponse(
            job_id=job.id,
            status=job.status,
            percent_complete=percent,
            message=status_message(job.status, job.job_count, percent),
            job_count=job.job_count,
            completed_job_count=job.completed_job_count,
            error=job.error,
        )


def percent_complete(job: ExportJob) -> int:
    """Floor of completed/total as a percentage, clamped to 0..100."""
    if job.status == JobStatus.COMPLETED:
        return 100
    if job.job_count <= 0:
        return 0
    percent = (job.completed_job_count * 100) // job.job_count
    return min(100, max(0, percent))


def status_message(status: JobStatus, job_count: int, percent: int) -> str:
    """Human-readable status, e.g. "In Progress (24%)"."""
    if status == JobStatus.IN_PROGRESS and job_count > 0:
        return f"{status.value} ({percent}%)"
    return status.value
