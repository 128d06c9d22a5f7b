"""
Job Types and Schemas

Defines enums, type hints, and Pydantic models for the export job system.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class ResourceType(str, Enum):
    """Clinical resource types that can be exported."""
    PATIENT = "Patient"
    COVERAGE = "Coverage"
    EXPLANATION_OF_BENEFIT = "ExplanationOfBenefit"


# Order used when a request does not name resource types
DEFAULT_RESOURCE_TYPES = [
    ResourceType.PATIENT,
    ResourceType.EXPLANATION_OF_BENEFIT,
    ResourceType.COVERAGE,
]


class JobStatus(str, Enum):
    """Status of an export job."""
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    ARCHIVED = "Archived"


# Statuses a job may still move out of
ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.IN_PROGRESS)


class JobError(BaseModel):
    """Structured error information for failed jobs."""
    error_type: str  # e.g., "unit_failure", "worker_exception"
    message: str
    hint: Optional[str] = None  # User-friendly suggestion
    failing_stage: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class ExportJob(BaseModel):
    """One client-initiated export request."""
    id: str
    organization_id: str
    request_url: str
    status: JobStatus = JobStatus.PENDING
    job_count: int = 0
    completed_job_count: int = 0
    error: Optional[JobError] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class JobKey(BaseModel):
    """Completion marker written when a work unit finishes."""
    job_id: str
    unit_id: str
    file_name: str


class WorkUnit(BaseModel):
    """Serialized description of one batch of members for one resource type."""
    job_id: str
    organization_id: str
    resource_type: ResourceType
    since: str = ""  # "" or "gt<timestamp>"
    member_ids: List[str] = Field(default_factory=list)
    priority: int

    def to_payload(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_payload(cls, payload: str) -> "WorkUnit":
        return cls.model_validate_json(payload)


# ============================================================================
# Output artifacts
# ============================================================================

class OutcomeSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class OutcomeCode(str, Enum):
    EXCEPTION = "exception"


class OutcomeDetail(str, Enum):
    RETRIEVAL_ERROR = "RetrievalError"
    INTERNAL_ERROR = "InternalError"


class OperationOutcome(BaseModel):
    """One isolated per-member failure, written as a line of the error artifact."""
    model_config = ConfigDict(populate_by_name=True)

    severity: OutcomeSeverity = OutcomeSeverity.ERROR
    code: OutcomeCode = OutcomeCode.EXCEPTION
    detail_code: OutcomeDetail = Field(alias="detailCode")
    detail_message: str = Field(alias="detailMessage")

    def to_line(self) -> str:
        return self.model_dump_json(by_alias=True)


# ============================================================================
# API Response Schemas
# ============================================================================

class JobStatusResponse(BaseModel):
    """Response for job status query."""
    job_id: str
    status: JobStatus
    percent_complete: int = Field(default=0, ge=0, le=100)
    message: str
    job_count: int = 0
    completed_job_count: int = 0
    error: Optional[JobError] = None


class ExportStartResponse(BaseModel):
    """Response when an export request is accepted."""
    job_id: str
    status: JobStatus
    enqueued_units: int
