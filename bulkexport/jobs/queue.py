"""
Work Queue

Durable, priority-ordered queue of work units with at-least-once delivery.

- Lower priority values are leased first; FIFO within a priority
- A lease gives one worker exclusive use of an item until it expires
- fail() re-queues the item until max_attempts is reached, then the item is dead
- extend_lease() renews a lease the caller still holds (worker heartbeat)
- release_expired() returns abandoned leases to the queue

SupabaseWorkQueue claims rows through the claim_next_work_unit database
function (row lock with SKIP LOCKED). MemoryWorkQueue implements the same
semantics in process.
"""

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

from bulkexport.jobs.job_types import WorkUnit

logger = logging.getLogger(__name__)


@dataclass
class LeasedWorkUnit:
    """A work unit handed to one worker for the duration of a lease."""
    unit_id: str
    unit: WorkUnit
    attempts: int
    worker_id: str
    lease_expires_at: Optional[datetime] = None  # set by the database backend only


class WorkQueue(Protocol):
    """Operations the scheduler and workers use."""

    def enqueue(self, unit: WorkUnit) -> str:
        ...

    def lease(self, worker_id: str) -> Optional[LeasedWorkUnit]:
        ...

    def ack(self, leased: LeasedWorkUnit) -> bool:
        ...

    def fail(self, leased: LeasedWorkUnit, error: str) -> bool:
        ...

    def extend_lease(self, leased: LeasedWorkUnit) -> bool:
        ...

    def release_expired(self) -> List[LeasedWorkUnit]:
        ...


# ============================================================================
# Supabase / Postgres queue
# ============================================================================

class SupabaseWorkQueue:
    """Queue backed by the work_units table."""

    TABLE = "work_units"

    def __init__(self, supabase, max_attempts: int = 3, lease_seconds: int = 900):
        self.supabase = supabase
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds

    def enqueue(self, unit: WorkUnit) -> str:
        unit_id = str(uuid4())
        self.supabase.table(self.TABLE)\
            .insert({
                "id": unit_id,
                "job_id": unit.job_id,
                "priority": unit.priority,
                "payload": unit.to_payload(),
                "status": "queued",
                "attempts": 0,
            })\
            .execute()
        return unit_id

    def lease(self, worker_id: str) -> Optional[LeasedWorkUnit]:
        result = self.supabase.rpc(
            "claim_next_work_unit",
            {
                "p_worker_id": worker_id,
                "p_lease_seconds": self.lease_seconds
            }
        ).execute()

        rows = result.data
        if not rows:
            return None
        row = rows[0] if isinstance(rows, list) else rows
        return self._to_leased(row)

    def ack(self, leased: LeasedWorkUnit) -> bool:
        result = self.supabase.table(self.TABLE)\
            .update({
                "status": "done",
                "lease_expires_at": None,
                "updated_at": datetime.now(timezone.utc).isoformat()
            })\
            .eq("id", leased.unit_id)\
            .eq("status", "leased")\
            .eq("worker_id", leased.worker_id)\
            .eq("attempts", leased.attempts)\
            .execute()
        return bool(result.data)

    def fail(self, leased: LeasedWorkUnit, error: str) -> bool:
        will_retry = leased.attempts < self.max_attempts
        update_data = {
            "status": "queued" if will_retry else "dead",
            "worker_id": None,
            "lease_expires_at": None,
            "last_error": error[:1000],
            "updated_at": datetime.now(timezone.utc).isoformat()
        }

        result = self.supabase.table(self.TABLE)\
            .update(update_data)\
            .eq("id", leased.unit_id)\
            .eq("status", "leased")\
            .eq("worker_id", leased.worker_id)\
            .eq("attempts", leased.attempts)\
            .execute()

        if not result.data:
            # Lease already expired and the unit was reclaimed elsewhere
            logger.warning(f"Stale lease for unit {leased.unit_id}; failure not recorded")
            return True
        return will_retry

    def extend_lease(self, leased: LeasedWorkUnit) -> bool:
        """Push the lease deadline out by lease_seconds. False if the lease was lost."""
        expires = datetime.now(timezone.utc) + timedelta(seconds=self.lease_seconds)
        result = self.supabase.table(self.TABLE)\
            .update({
                "lease_expires_at": expires.isoformat(),
                "updated_at": datetime.now(timezone.utc).isoformat()
            })\
            .eq("id", leased.unit_id)\
            .eq("status", "leased")\
            .eq("worker_id", leased.worker_id)\
            .eq("attempts", leased.attempts)\
            .execute()

        if not result.data:
            return False
        leased.lease_expires_at = expires
        return True

    def release_expired(self) -> List[LeasedWorkUnit]:
        """Re-queue expired leases. Returns units that ran out of attempts."""
        result = self.supabase.rpc(
            "release_expired_work_units",
            {"p_max_attempts": self.max_attempts}
        ).execute()
        return [self._to_leased(row) for row in result.data or []]

    @staticmethod
    def _to_leased(row: Dict) -> LeasedWorkUnit:
        expires = row.get("lease_expires_at")
        return LeasedWorkUnit(
            unit_id=row["id"],
            unit=WorkUnit.from_payload(row["payload"]),
            attempts=row.get("attempts", 0),
            worker_id=row.get("worker_id") or "",
            lease_expires_at=datetime.fromisoformat(expires) if isinstance(expires, str) else expires,
        )


# ============================================================================
# In-process queue
# ============================================================================

@dataclass
class _QueueItem:
    unit: WorkUnit
    attempts: int = 0
    state: str = "queued"  # queued | leased | done | dead
    worker_id: Optional[str] = None
    lease_deadline: Optional[float] = None
    last_error: Optional[str] = None


class MemoryWorkQueue:
    """In-process queue with lease and retry semantics."""

    def __init__(
        self,
        max_attempts: int = 3,
        lease_seconds: float = 900,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds
        self._clock = clock
        self._heap: List[Tuple[int, int, str]] = []
        self._seq = itertools.count()
        self._items: Dict[str, _QueueItem] = {}
        self._lock = threading.Lock()

    def enqueue(self, unit: WorkUnit) -> str:
        unit_id = str(uuid4())
        with self._lock:
            self._items[unit_id] = _QueueItem(unit=unit)
            heapq.heappush(self._heap, (unit.priority, next(self._seq), unit_id))
        return unit_id

    def lease(self, worker_id: str) -> Optional[LeasedWorkUnit]:
        with self._lock:
            while self._heap:
                _, _, unit_id = heapq.heappop(self._heap)
                item = self._items[unit_id]
                if item.state != "queued":
                    continue

                item.state = "leased"
                item.attempts += 1
                item.worker_id = worker_id
                item.lease_deadline = self._clock() + self.lease_seconds
                return LeasedWorkUnit(
                    unit_id=unit_id,
                    unit=item.unit,
                    attempts=item.attempts,
                    worker_id=worker_id,
                )
            return None

    def ack(self, leased: LeasedWorkUnit) -> bool:
        with self._lock:
            item = self._owned(leased)
            if item is None:
                return False
            item.state = "done"
            item.lease_deadline = None
            return True

    def fail(self, leased: LeasedWorkUnit, error: str) -> bool:
        with self._lock:
            item = self._owned(leased)
            if item is None:
                logger.warning(f"Stale lease for unit {leased.unit_id}; failure not recorded")
                return True

            item.last_error = error
            item.worker_id = None
            item.lease_deadline = None
            if item.attempts >= self.max_attempts:
                item.state = "dead"
                return False

            item.state = "queued"
            heapq.heappush(self._heap, (item.unit.priority, next(self._seq), leased.unit_id))
            return True

    def extend_lease(self, leased: LeasedWorkUnit) -> bool:
        with self._lock:
            item = self._owned(leased)
            if item is None:
                return False
            item.lease_deadline = self._clock() + self.lease_seconds
            return True

    def release_expired(self) -> List[LeasedWorkUnit]:
        """Re-queue expired leases. Returns units that ran out of attempts."""
        exhausted = []
        with self._lock:
            now = self._clock()
            for unit_id, item in self._items.items():
                if item.state != "leased" or item.lease_deadline is None or item.lease_deadline > now:
                    continue

                expired = LeasedWorkUnit(
                    unit_id=unit_id,
                    unit=item.unit,
                    attempts=item.attempts,
                    worker_id=item.worker_id or "",
                )
                item.worker_id = None
                item.lease_deadline = None
                if item.attempts >= self.max_attempts:
                    item.state = "dead"
                    item.last_error = "lease expired"
                    exhausted.append(expired)
                else:
                    item.state = "queued"
                    heapq.heappush(self._heap, (item.unit.priority, next(self._seq), unit_id))
                    logger.info(f"Released expired lease on unit {unit_id}")
        return exhausted

    def pending_count(self) -> int:
        """Number of units waiting to be leased."""
        with self._lock:
            return sum(1 for item in self._items.values() if item.state == "queued")

    def state_of(self, unit_id: str) -> Optional[str]:
        with self._lock:
            item = self._items.get(unit_id)
            return item.state if item else None

    def _owned(self, leased: LeasedWorkUnit) -> Optional[_QueueItem]:
        item = self._items.get(leased.unit_id)
        if item is None or item.state != "leased":
            return None
        if item.worker_id != leased.worker_id or item.attempts != leased.attempts:
            return None
        return item
