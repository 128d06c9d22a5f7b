"""
Job Store

Persistence for export jobs and their completion markers (job keys).

All status writes are conditional (compare-and-set): an update only applies
when the current status is one of the expected values, so concurrent workers
never move a job backward. Markers are unique per (job_id, unit_id), so a
redelivered unit never inflates the completion count.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Sequence

from bulkexport.jobs.job_types import ExportJob, JobError, JobKey, JobStatus

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobStore(Protocol):
    """Storage operations the job manager relies on."""

    def insert_job(self, job: ExportJob) -> ExportJob:
        ...

    def get_job(self, job_id: str) -> Optional[ExportJob]:
        ...

    def compare_and_set_status(
        self,
        job_id: str,
        expected: Sequence[JobStatus],
        new_status: JobStatus,
        error: Optional[JobError] = None,
    ) -> bool:
        ...

    def set_job_count(self, job_id: str, job_count: int) -> bool:
        ...

    def add_job_key(self, key: JobKey) -> bool:
        ...

    def count_job_keys(self, job_id: str) -> int:
        ...

    def list_job_keys(self, job_id: str) -> List[JobKey]:
        ...

    def set_completed_count(self, job_id: str, completed: int) -> None:
        ...


class SupabaseJobStore:
    """Job store backed by the export_jobs and job_keys tables."""

    JOBS_TABLE = "export_jobs"
    KEYS_TABLE = "job_keys"

    def __init__(self, supabase):
        self.supabase = supabase

    def insert_job(self, job: ExportJob) -> ExportJob:
        record = job.model_dump(mode="json", exclude_none=True)
        result = self.supabase.table(self.JOBS_TABLE)\
            .insert(record)\
            .execute()
        if result.data:
            return ExportJob(**result.data[0])
        return job

    def get_job(self, job_id: str) -> Optional[ExportJob]:
        result = self.supabase.table(self.JOBS_TABLE)\
            .select("*")\
            .eq("id", job_id)\
            .limit(1)\
            .execute()
        if not result.data:
            return None
        return ExportJob(**result.data[0])

    def compare_and_set_status(
        self,
        job_id: str,
        expected: Sequence[JobStatus],
        new_status: JobStatus,
        error: Optional[JobError] = None,
    ) -> bool:
        update_data = {
            "status": new_status.value,
            "updated_at": _now().isoformat(),
        }
        if error:
            update_data["error"] = error.model_dump()

        result = self.supabase.table(self.JOBS_TABLE)\
            .update(update_data)\
            .eq("id", job_id)\
            .in_("status", [s.value for s in expected])\
            .execute()
        return bool(result.data)

    def set_job_count(self, job_id: str, job_count: int) -> bool:
        result = self.supabase.table(self.JOBS_TABLE)\
            .update({"job_count": job_count, "updated_at": _now().isoformat()})\
            .eq("id", job_id)\
            .eq("job_count", 0)\
            .execute()
        return bool(result.data)

    def add_job_key(self, key: JobKey) -> bool:
        result = self.supabase.table(self.KEYS_TABLE)\
            .upsert(
                key.model_dump(),
                on_conflict="job_id,unit_id",
                ignore_duplicates=True
            )\
            .execute()
        return bool(result.data)

    def count_job_keys(self, job_id: str) -> int:
        result = self.supabase.table(self.KEYS_TABLE)\
            .select("unit_id", count="exact")\
            .eq("job_id", job_id)\
            .execute()
        if result.count is not None:
            return result.count
        return len(result.data or [])

    def list_job_keys(self, job_id: str) -> List[JobKey]:
        result = self.supabase.table(self.KEYS_TABLE)\
            .select("*")\
            .eq("job_id", job_id)\
            .execute()
        return [JobKey(**row) for row in result.data or []]

    def set_completed_count(self, job_id: str, completed: int) -> None:
        # Only ever raise the counter
        self.supabase.table(self.JOBS_TABLE)\
            .update({"completed_job_count": completed, "updated_at": _now().isoformat()})\
            .eq("id", job_id)\
            .lt("completed_job_count", completed)\
            .execute()


class MemoryJobStore:
    """In-process job store for tests and single-process runs."""

    def __init__(self):
        self._jobs: Dict[str, ExportJob] = {}
        self._keys: Dict[str, Dict[str, JobKey]] = {}
        self._lock = threading.Lock()

    def insert_job(self, job: ExportJob) -> ExportJob:
        with self._lock:
            now = _now()
            stored = job.model_copy(update={
                "created_at": job.created_at or now,
                "updated_at": now,
            })
            self._jobs[job.id] = stored
            return stored.model_copy()

    def get_job(self, job_id: str) -> Optional[ExportJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy() if job else None

    def compare_and_set_status(
        self,
        job_id: str,
        expected: Sequence[JobStatus],
        new_status: JobStatus,
        error: Optional[JobError] = None,
    ) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in expected:
                return False
            update = {"status": new_status, "updated_at": _now()}
            if error:
                update["error"] = error
            self._jobs[job_id] = job.model_copy(update=update)
            return True

    def set_job_count(self, job_id: str, job_count: int) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.job_count != 0:
                return False
            self._jobs[job_id] = job.model_copy(update={"job_count": job_count, "updated_at": _now()})
            return True

    def add_job_key(self, key: JobKey) -> bool:
        with self._lock:
            keys = self._keys.setdefault(key.job_id, {})
            if key.unit_id in keys:
                return False
            keys[key.unit_id] = key
            return True

    def count_job_keys(self, job_id: str) -> int:
        with self._lock:
            return len(self._keys.get(job_id, {}))

    def list_job_keys(self, job_id: str) -> List[JobKey]:
        with self._lock:
            return list(self._keys.get(job_id, {}).values())

    def set_completed_count(self, job_id: str, completed: int) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None and job.completed_job_count < completed:
                self._jobs[job_id] = job.model_copy(update={
                    "completed_job_count": completed,
                    "updated_at": _now(),
                })
