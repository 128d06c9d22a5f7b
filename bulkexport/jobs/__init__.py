"""
Bulk Export Jobs

This package turns export requests into queued work units and executes them.

Key components:
- job_types: Job, work unit and artifact schemas
- resolver: Which members an export covers
- splitter: Batching and queue priorities
- job_store / job_manager: Job persistence, status transitions, completion tracking
- queue: Leased, priority-ordered work queue
- runner / artifacts / client: Executing a unit and writing its output
- utils: Shared helpers
"""

from bulkexport.jobs.errors import (
    ExportError,
    ResolutionError,
    NoSnapshotError,
    EmptyResultError,
    UnsupportedResourceTypeError,
    InvalidSinceError,
    JobNotFoundError,
    JobAlreadyScheduledError,
    UnitFailure,
    RetrievalFailure,
)

from bulkexport.jobs.job_types import (
    ResourceType,
    JobStatus,
    JobError,
    JobKey,
    ExportJob,
    WorkUnit,
    OperationOutcome,
    JobStatusResponse,
)

from bulkexport.jobs.job_manager import JobManager
from bulkexport.jobs.queue import LeasedWorkUnit, MemoryWorkQueue, SupabaseWorkQueue
from bulkexport.jobs.resolver import BeneficiaryResolver
from bulkexport.jobs.runner import WorkUnitRunner
from bulkexport.jobs.splitter import JobSplitter

__all__ = [
    # Errors
    "ExportError",
    "ResolutionError",
    "NoSnapshotError",
    "EmptyResultError",
    "UnsupportedResourceTypeError",
    "InvalidSinceError",
    "JobNotFoundError",
    "JobAlreadyScheduledError",
    "UnitFailure",
    "RetrievalFailure",
    # Types
    "ResourceType",
    "JobStatus",
    "JobError",
    "JobKey",
    "ExportJob",
    "WorkUnit",
    "OperationOutcome",
    "JobStatusResponse",
    # Pipeline
    "BeneficiaryResolver",
    "JobSplitter",
    "JobManager",
    "LeasedWorkUnit",
    "MemoryWorkQueue",
    "SupabaseWorkQueue",
    "WorkUnitRunner",
]
