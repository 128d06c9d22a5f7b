"""
Population Repository

Read contract over imported population snapshots and suppression entries.

SupabasePopulationRepository reads the tables written by the snapshot importer
and relies on two database functions for the set queries:
- get_snapshot_members: latest row per member for a snapshot, minus exclusions
- get_suppressed_member_ids: members whose latest preference in the window is opt-out

MemoryPopulationRepository implements the same rules in process.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Protocol

from bulkexport.models import (
    ImportStatus,
    MemberRecord,
    PopulationSnapshot,
    SuppressionEntry,
)

logger = logging.getLogger(__name__)


class PopulationRepository(Protocol):
    """Queries the resolver needs from the snapshot store."""

    def get_latest_snapshot(
        self,
        organization_id: str,
        category: str,
        import_status: ImportStatus,
        lower_bound: Optional[datetime] = None,
        upper_bound: Optional[datetime] = None,
    ) -> Optional[PopulationSnapshot]:
        ...

    def get_member_ids(self, snapshot_id: int) -> List[str]:
        ...

    def get_members(self, snapshot_id: int, exclude_ids: Optional[List[str]] = None) -> List[MemberRecord]:
        ...

    def get_suppressed_ids(self, lookback_days: int) -> List[str]:
        ...


class SupabasePopulationRepository:
    """Population repository backed by Supabase tables."""

    def __init__(self, supabase):
        self.supabase = supabase

    def get_latest_snapshot(
        self,
        organization_id: str,
        category: str,
        import_status: ImportStatus,
        lower_bound: Optional[datetime] = None,
        upper_bound: Optional[datetime] = None,
    ) -> Optional[PopulationSnapshot]:
        query = self.supabase.table("population_snapshots")\
            .select("*")\
            .eq("organization_id", organization_id)\
            .eq("category", category)\
            .eq("import_status", import_status.value)

        if lower_bound is not None:
            query = query.gte("timestamp", lower_bound.isoformat())
        if upper_bound is not None:
            query = query.lte("timestamp", upper_bound.isoformat())

        result = query\
            .order("timestamp", desc=True)\
            .limit(1)\
            .execute()

        if not result.data:
            return None
        return PopulationSnapshot(**result.data[0])

    def get_member_ids(self, snapshot_id: int) -> List[str]:
        result = self.supabase.table("snapshot_members")\
            .select("member_id")\
            .eq("snapshot_id", snapshot_id)\
            .execute()
        return [row["member_id"] for row in result.data or []]

    def get_members(self, snapshot_id: int, exclude_ids: Optional[List[str]] = None) -> List[MemberRecord]:
        result = self.supabase.rpc(
            "get_snapshot_members",
            {
                "p_snapshot_id": snapshot_id,
                "p_excluded_member_ids": list(exclude_ids or []),
            }
        ).execute()
        return [MemberRecord(**row) for row in result.data or []]

    def get_suppressed_ids(self, lookback_days: int) -> List[str]:
        result = self.supabase.rpc(
            "get_suppressed_member_ids",
            {"p_lookback_days": lookback_days}
        ).execute()
        return [row["member_id"] if isinstance(row, dict) else row for row in result.data or []]


class MemoryPopulationRepository:
    """In-process population repository for tests and local runs."""

    def __init__(
        self,
        snapshots: Optional[Iterable[PopulationSnapshot]] = None,
        members: Optional[Iterable[MemberRecord]] = None,
        suppressions: Optional[Iterable[SuppressionEntry]] = None,
    ):
        self.snapshots: List[PopulationSnapshot] = list(snapshots or [])
        self.members: List[MemberRecord] = list(members or [])
        self.suppressions: List[SuppressionEntry] = list(suppressions or [])

    def add_snapshot(self, snapshot: PopulationSnapshot, member_ids: Iterable[str]) -> None:
        """Register a snapshot and one member row per identifier."""
        self.snapshots.append(snapshot)
        next_id = max((m.id for m in self.members), default=0) + 1
        for offset, member_id in enumerate(member_ids):
            self.members.append(MemberRecord(
                id=next_id + offset,
                snapshot_id=snapshot.id,
                member_id=member_id,
            ))

    def get_latest_snapshot(
        self,
        organization_id: str,
        category: str,
        import_status: ImportStatus,
        lower_bound: Optional[datetime] = None,
        upper_bound: Optional[datetime] = None,
    ) -> Optional[PopulationSnapshot]:
        candidates = [
            s for s in self.snapshots
            if s.organization_id == organization_id
            and s.category == category
            and s.import_status == import_status
            and (lower_bound is None or s.timestamp >= lower_bound)
            and (upper_bound is None or s.timestamp <= upper_bound)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.timestamp)

    def get_member_ids(self, snapshot_id: int) -> List[str]:
        return [m.member_id for m in self.members if m.snapshot_id == snapshot_id]

    def get_members(self, snapshot_id: int, exclude_ids: Optional[List[str]] = None) -> List[MemberRecord]:
        excluded = set(exclude_ids or [])
        latest: Dict[str, MemberRecord] = {}
        for member in self.members:
            if member.snapshot_id != snapshot_id:
                continue
            current = latest.get(member.member_id)
            if current is None or member.id > current.id:
                latest[member.member_id] = member
        return sorted(
            (m for m in latest.values() if m.member_id not in excluded),
            key=lambda m: m.id,
        )

    def get_suppressed_ids(self, lookback_days: int) -> List[str]:
        now = datetime.now(timezone.utc)
        window_start = now - timedelta(days=lookback_days)

        latest: Dict[str, SuppressionEntry] = {}
        for entry in self.suppressions:
            if not entry.preference_indicator:
                continue
            if not (window_start < entry.effective_date <= now):
                continue
            current = latest.get(entry.member_id)
            if current is None or entry.effective_date > current.effective_date:
                latest[entry.member_id] = entry

        return sorted(
            member_id for member_id, entry in latest.items()
            if entry.preference_indicator == "N"
        )
