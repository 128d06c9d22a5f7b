"""
Tests for beneficiary resolution: diff of new vs existing members,
snapshot selection and suppression filtering.
"""

from datetime import timedelta

import pytest

from bulkexport.jobs.errors import EmptyResultError, NoSnapshotError
from bulkexport.jobs.resolver import BeneficiaryResolver
from bulkexport.models import ImportStatus, MemberRecord, SuppressionEntry
from bulkexport.repository import MemoryPopulationRepository

from conftest import NOW, ORG_ID, make_snapshot, member_ids


# =============================================================================
# FULL POPULATION
# =============================================================================

class TestResolveAll:
    """Resolving every member of the current snapshot."""

    def test_returns_members_of_latest_completed_snapshot(self):
        repo = MemoryPopulationRepository()
        repo.add_snapshot(make_snapshot(1, days_ago=30), ["old-1", "old-2"])
        repo.add_snapshot(make_snapshot(2, days_ago=2), ["new-1", "new-2", "new-3"])

        members = BeneficiaryResolver(repo).resolve_all(ORG_ID)

        assert [m.member_id for m in members] == ["new-1", "new-2", "new-3"]

    def test_ignores_incomplete_snapshots(self):
        repo = MemoryPopulationRepository()
        repo.add_snapshot(make_snapshot(1, days_ago=10), ["done"])
        repo.add_snapshot(make_snapshot(2, days_ago=1, import_status=ImportStatus.PENDING), ["in-flight"])

        members = BeneficiaryResolver(repo).resolve_all(ORG_ID)

        assert [m.member_id for m in members] == ["done"]

    def test_ignores_other_organizations(self):
        repo = MemoryPopulationRepository()
        repo.add_snapshot(make_snapshot(1, days_ago=1, organization_id="A9999"), ["theirs"])

        with pytest.raises(NoSnapshotError):
            BeneficiaryResolver(repo).resolve_all(ORG_ID)

    def test_cutoff_skips_snapshots_that_are_too_recent(self):
        repo = MemoryPopulationRepository()
        repo.add_snapshot(make_snapshot(1, days_ago=3), ["settled"])
        repo.add_snapshot(make_snapshot(2, days_ago=0.01), ["fresh"])

        resolver = BeneficiaryResolver(repo, cutoff=timedelta(hours=1), clock=lambda: NOW)
        members = resolver.resolve_all(ORG_ID)

        assert [m.member_id for m in members] == ["settled"]

    def test_cutoff_with_only_recent_snapshot_raises(self):
        repo = MemoryPopulationRepository()
        repo.add_snapshot(make_snapshot(1, days_ago=0.01), ["fresh"])

        resolver = BeneficiaryResolver(repo, cutoff=timedelta(hours=1), clock=lambda: NOW)
        with pytest.raises(NoSnapshotError):
            resolver.resolve_all(ORG_ID)

    def test_duplicate_member_rows_collapse_to_latest(self):
        repo = MemoryPopulationRepository(
            snapshots=[make_snapshot(1, days_ago=1)],
            members=[
                MemberRecord(id=1, snapshot_id=1, member_id="dup", legacy_id="first"),
                MemberRecord(id=2, snapshot_id=1, member_id="solo"),
                MemberRecord(id=3, snapshot_id=1, member_id="dup", legacy_id="second"),
            ],
        )

        members = BeneficiaryResolver(repo).resolve_all(ORG_ID)

        assert [m.member_id for m in members] == ["solo", "dup"]
        assert members[1].legacy_id == "second"

    def test_empty_snapshot_raises(self):
        repo = MemoryPopulationRepository()
        repo.add_snapshot(make_snapshot(1, days_ago=1), [])

        with pytest.raises(EmptyResultError):
            BeneficiaryResolver(repo).resolve_all(ORG_ID)


# =============================================================================
# NEW VS EXISTING
# =============================================================================

class TestResolveDiff:
    """Splitting the current population using a since date."""

    def test_splits_new_and_existing(self):
        repo = MemoryPopulationRepository()
        existing = member_ids("E", 40)
        new = member_ids("N", 10)
        repo.add_snapshot(make_snapshot(1, days_ago=20), existing)
        repo.add_snapshot(make_snapshot(2, days_ago=1), existing + new)

        new_members, existing_members = BeneficiaryResolver(repo).resolve(ORG_ID, NOW - timedelta(days=10))

        assert [m.member_id for m in new_members] == new
        assert [m.member_id for m in existing_members] == existing

    def test_no_prior_snapshot_means_everyone_is_new(self):
        repo = MemoryPopulationRepository()
        repo.add_snapshot(make_snapshot(1, days_ago=1), ["a", "b"])

        new_members, existing_members = BeneficiaryResolver(repo).resolve(ORG_ID, NOW - timedelta(days=10))

        assert [m.member_id for m in new_members] == ["a", "b"]
        assert existing_members == []

    def test_members_dropped_since_prior_snapshot_are_not_exported(self):
        repo = MemoryPopulationRepository()
        repo.add_snapshot(make_snapshot(1, days_ago=20), ["stay", "leave"])
        repo.add_snapshot(make_snapshot(2, days_ago=1), ["stay", "join"])

        new_members, existing_members = BeneficiaryResolver(repo).resolve(ORG_ID, NOW - timedelta(days=10))

        assert [m.member_id for m in new_members] == ["join"]
        assert [m.member_id for m in existing_members] == ["stay"]

    def test_since_before_any_snapshot_uses_no_prior(self):
        repo = MemoryPopulationRepository()
        repo.add_snapshot(make_snapshot(1, days_ago=20), ["a"])
        repo.add_snapshot(make_snapshot(2, days_ago=1), ["a", "b"])

        new_members, existing_members = BeneficiaryResolver(repo).resolve(ORG_ID, NOW - timedelta(days=100))

        assert [m.member_id for m in new_members] == ["a", "b"]
        assert existing_members == []

    def test_no_current_snapshot_raises(self):
        with pytest.raises(NoSnapshotError):
            BeneficiaryResolver(MemoryPopulationRepository()).resolve(ORG_ID, NOW)


# =============================================================================
# SUPPRESSION
# =============================================================================

class TestSuppression:
    """Members with an active opt-out are excluded."""

    def _repo(self, suppressions):
        repo = MemoryPopulationRepository(suppressions=suppressions)
        repo.add_snapshot(make_snapshot(1, days_ago=1), ["keep", "opted-out", "opted-back-in"])
        return repo

    def test_opt_out_in_window_is_excluded(self):
        repo = self._repo([
            SuppressionEntry(member_id="opted-out", effective_date=NOW - timedelta(days=5), preference_indicator="N"),
        ])

        members = BeneficiaryResolver(repo).resolve_all(ORG_ID)

        assert [m.member_id for m in members] == ["keep", "opted-back-in"]

    def test_latest_preference_wins(self):
        repo = self._repo([
            SuppressionEntry(member_id="opted-back-in", effective_date=NOW - timedelta(days=9), preference_indicator="N"),
            SuppressionEntry(member_id="opted-back-in", effective_date=NOW - timedelta(days=2), preference_indicator="Y"),
        ])

        members = BeneficiaryResolver(repo).resolve_all(ORG_ID)

        assert "opted-back-in" in [m.member_id for m in members]

    def test_blank_preference_does_not_override_opt_out(self):
        repo = self._repo([
            SuppressionEntry(member_id="opted-out", effective_date=NOW - timedelta(days=9), preference_indicator="N"),
            SuppressionEntry(member_id="opted-out", effective_date=NOW - timedelta(days=2), preference_indicator=""),
        ])

        members = BeneficiaryResolver(repo).resolve_all(ORG_ID)

        assert "opted-out" not in [m.member_id for m in members]

    def test_opt_out_outside_lookback_is_ignored(self):
        repo = self._repo([
            SuppressionEntry(member_id="opted-out", effective_date=NOW - timedelta(days=90), preference_indicator="N"),
        ])

        members = BeneficiaryResolver(repo, lookback_days=60).resolve_all(ORG_ID)

        assert "opted-out" in [m.member_id for m in members]

    def test_suppression_applies_to_diff_results(self):
        repo = MemoryPopulationRepository(suppressions=[
            SuppressionEntry(member_id="old-out", effective_date=NOW - timedelta(days=3), preference_indicator="N"),
            SuppressionEntry(member_id="new-out", effective_date=NOW - timedelta(days=3), preference_indicator="N"),
        ])
        repo.add_snapshot(make_snapshot(1, days_ago=20), ["old", "old-out"])
        repo.add_snapshot(make_snapshot(2, days_ago=1), ["old", "old-out", "new", "new-out"])

        new_members, existing_members = BeneficiaryResolver(repo).resolve(ORG_ID, NOW - timedelta(days=10))

        assert [m.member_id for m in new_members] == ["new"]
        assert [m.member_id for m in existing_members] == ["old"]

    def test_everyone_suppressed_raises(self):
        repo = MemoryPopulationRepository(suppressions=[
            SuppressionEntry(member_id="only", effective_date=NOW - timedelta(days=3), preference_indicator="N"),
        ])
        repo.add_snapshot(make_snapshot(1, days_ago=1), ["only"])

        with pytest.raises(EmptyResultError):
            BeneficiaryResolver(repo).resolve_all(ORG_ID)

    def test_include_suppressed_skips_filtering(self):
        repo = MemoryPopulationRepository(suppressions=[
            SuppressionEntry(member_id="only", effective_date=NOW - timedelta(days=3), preference_indicator="N"),
        ])
        repo.add_snapshot(make_snapshot(1, days_ago=1), ["only"])

        members = BeneficiaryResolver(repo, include_suppressed=True).resolve_all(ORG_ID)

        assert [m.member_id for m in members] == ["only"]
