"""
Export Errors

Exception hierarchy for the export pipeline. Resolution and validation errors
are raised synchronously to the scheduling caller; UnitFailure is raised inside
a worker and routed through the queue retry policy.
"""

from typing import Optional


class ExportError(Exception):
    """Base exception for export pipeline operations."""

    def __init__(self, message: str, operation: Optional[str] = None, recoverable: bool = False):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class ResolutionError(ExportError):
    """Beneficiary population could not be resolved."""


class NoSnapshotError(ResolutionError):
    """No eligible completed snapshot exists for the organization."""

    def __init__(self, message: str):
        super().__init__(message, operation="resolve")


class EmptyResultError(ResolutionError):
    """Resolution produced zero members after suppression filtering."""

    def __init__(self, message: str):
        super().__init__(message, operation="resolve")


class UnsupportedResourceTypeError(ExportError):
    """Requested resource type has no batch quota."""

    def __init__(self, resource_type: str):
        super().__init__("invalid request type", operation="split")
        self.resource_type = resource_type


class InvalidSinceError(ExportError):
    """The since parameter is not a valid timestamp."""

    def __init__(self, since: str):
        super().__init__(f"Invalid since timestamp: {since!r}", operation="split")
        self.since = since


class JobNotFoundError(ExportError):
    """Export job does not exist."""

    def __init__(self, job_id: str):
        super().__init__(f"Export job {job_id} not found", operation="load_job")
        self.job_id = job_id


class JobAlreadyScheduledError(ExportError):
    """The job already has its sub-unit count and must not be enqueued again."""

    def __init__(self, job_id: str):
        super().__init__(f"Export job {job_id} has already been scheduled", operation="schedule")
        self.job_id = job_id


class UnitFailure(ExportError):
    """A work unit could not proceed at all. Retried by the queue."""

    def __init__(self, message: str, stage: str = "validation"):
        super().__init__(message, operation=stage, recoverable=True)
        self.stage = stage


class RetrievalFailure(ExportError):
    """The resource server did not return a usable response for one member."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, operation="fetch", recoverable=True)
        self.status_code = status_code
