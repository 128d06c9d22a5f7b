"""
Beneficiary Resolver

Determines which members of an organization's population an export covers.

- resolve_all: every member of the current snapshot
- resolve: members split into NEW (absent from the latest snapshot at or before
  the since date) and EXISTING (present in it)

The current snapshot is the latest completed one imported at or before
now - cutoff, so a snapshot that may still be mid-import is never used.
Members with an active opt-out are removed from both results.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from bulkexport.jobs.errors import EmptyResultError, NoSnapshotError
from bulkexport.models import BENEFICIARY_CATEGORY, ImportStatus, MemberRecord, PopulationSnapshot
from bulkexport.repository import PopulationRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BeneficiaryResolver:
    """
    Resolves the member population for an export request.
    """

    def __init__(
        self,
        repository: PopulationRepository,
        cutoff: timedelta = timedelta(0),
        lookback_days: int = 60,
        include_suppressed: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self.cutoff = cutoff
        self.lookback_days = lookback_days
        self.include_suppressed = include_suppressed
        self._clock = clock

    def resolve(self, organization_id: str, since: datetime) -> Tuple[List[MemberRecord], List[MemberRecord]]:
        """
        Split the current population into new and existing members.

        Returns:
            Tuple of (new_members, existing_members)

        Raises:
            NoSnapshotError: No eligible current snapshot
            EmptyResultError: Nothing left to export after suppression
        """
        current = self._current_snapshot(organization_id)

        prior = self.repository.get_latest_snapshot(
            organization_id,
            BENEFICIARY_CATEGORY,
            ImportStatus.COMPLETED,
            upper_bound=since,
        )

        if prior is None:
            logger.info(
                f"No snapshot for {organization_id} prior to {since.isoformat()}; "
                f"all members will be considered NEW"
            )
            new_members = self._members(current)
            if not new_members:
                raise EmptyResultError(
                    f"Found 0 new members in snapshot {current.id} for {organization_id}"
                )
            return new_members, []

        prior_ids = set(self.repository.get_member_ids(prior.id))
        members = self._members(current)
        if not members:
            raise EmptyResultError(
                f"Found 0 new or existing members in snapshot {current.id} for {organization_id}"
            )

        new_members: List[MemberRecord] = []
        existing_members: List[MemberRecord] = []
        for member in members:
            if member.member_id in prior_ids:
                existing_members.append(member)
            else:
                new_members.append(member)

        logger.info(
            f"Resolved {organization_id}: {len(new_members)} new, "
            f"{len(existing_members)} existing (snapshot {current.id} vs {prior.id})"
        )
        return new_members, existing_members

    def resolve_all(self, organization_id: str) -> List[MemberRecord]:
        """
        Return every exportable member of the current snapshot.

        Raises:
            NoSnapshotError: No eligible current snapshot
            EmptyResultError: Nothing left to export after suppression
        """
        current = self._current_snapshot(organization_id)
        members = self._members(current)
        if not members:
            raise EmptyResultError(
                f"Found 0 members in snapshot {current.id} for {organization_id}"
            )
        return members

    def _current_snapshot(self, organization_id: str) -> PopulationSnapshot:
        cutoff_time: Optional[datetime] = None
        if self.cutoff > timedelta(0):
            cutoff_time = self._clock() - self.cutoff

        snapshot = self.repository.get_latest_snapshot(
            organization_id,
            BENEFICIARY_CATEGORY,
            ImportStatus.COMPLETED,
            upper_bound=cutoff_time,
        )
        if snapshot is None:
            cutoff_text = cutoff_time.isoformat() if cutoff_time else "none"
            raise NoSnapshotError(
                f"No beneficiary snapshot found for {organization_id} (cutoff {cutoff_text})"
            )
        return snapshot

    def _members(self, snapshot: PopulationSnapshot) -> List[MemberRecord]:
        excluded: List[str] = []
        if not self.include_suppressed:
            excluded = self.repository.get_suppressed_ids(self.lookback_days)
        return self.repository.get_members(snapshot.id, excluded)
