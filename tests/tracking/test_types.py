"""Tests for entry records, statistics and cycle results."""
from datetime import datetime, timezone

import pytest

from coldarchive.tracking.types import (
    TRANSITIONS,
    ArchiveEntry,
    ArchiveStatus,
    BatchOutcome,
    CycleResult,
    LedgerStatistics,
    can_transition,
)

S = ArchiveStatus


class TestTransitionTable:
    """Test the status transition table."""

    def test_every_status_has_a_row(self):
        assert set(TRANSITIONS) == set(S)

    def test_allowed_moves(self):
        assert can_transition(S.STAGED, S.ARCHIVING)
        assert can_transition(S.ARCHIVING, S.ARCHIVED)
        assert can_transition(S.ARCHIVING, S.FAILED)
        assert can_transition(S.ARCHIVED, S.ARCHIVED_AND_DELETED)
        assert can_transition(S.FAILED, S.ARCHIVING)

    def test_archived_may_be_retained(self):
        assert can_transition(S.ARCHIVED, S.ARCHIVED)
        assert not can_transition(S.STAGED, S.STAGED)

    def test_no_way_back(self):
        assert not can_transition(S.ARCHIVED, S.STAGED)
        assert not can_transition(S.FAILED, S.ARCHIVED)
        assert TRANSITIONS[S.ARCHIVED_AND_DELETED] == frozenset()


class TestArchiveEntry:
    """Test validation of persisted entries."""

    def test_from_dict_rejects_missing_fields(self, make_entry):
        data = make_entry().to_dict()
        del data["staged_location"]
        with pytest.raises(ValueError, match="staged_location"):
            ArchiveEntry.from_dict(data)

    def test_from_dict_rejects_archived_without_snapshot(self, make_entry):
        data = make_entry(status=S.ARCHIVED).to_dict()
        data["snapshot_ref"] = None
        with pytest.raises(ValueError, match="snapshot_ref"):
            ArchiveEntry.from_dict(data)

    def test_from_dict_rejects_non_integer_size(self, make_entry):
        data = dict(make_entry().to_dict(), size_bytes="10")
        with pytest.raises(ValueError):
            ArchiveEntry.from_dict(data)

    def test_deleted_entry_round_trip(self, make_entry):
        entry = make_entry(status=S.ARCHIVED_AND_DELETED)
        again = ArchiveEntry.from_dict(entry.to_dict())
        assert again == entry
        assert again.deleted_at is not None and again.snapshot_ref is not None


class TestLedgerStatistics:
    """Test roll-ups."""

    def test_combine_sums_and_takes_latest_date(self):
        early = datetime(2025, 1, 1, tzinfo=timezone.utc)
        late = datetime(2025, 6, 1, tzinfo=timezone.utc)
        combined = LedgerStatistics.combine(
            [
                LedgerStatistics(100, 1, 3, early, 0.5),
                LedgerStatistics(50, 2, 2, late, 0.25),
                LedgerStatistics(),
            ]
        )
        assert combined.total_archived_bytes == 150
        assert combined.total_items == 3
        assert combined.total_files == 5
        assert combined.last_archive_date == late
        assert combined.estimated_monthly_cost == pytest.approx(0.75)

    def test_combine_nothing(self):
        assert LedgerStatistics.combine([]) == LedgerStatistics()

    def test_from_entries_ignores_unarchived(self, make_entry):
        stats = LedgerStatistics.from_entries(
            [make_entry(size_bytes=5), make_entry(status=S.ARCHIVED, size_bytes=7, item_count=2)]
        )
        assert (stats.total_archived_bytes, stats.total_items, stats.total_files) == (7, 1, 2)


class TestCycleResult:
    """Test the user-facing cycle summary."""

    def test_failed_batch_lists_entries_safe_to_retry(self):
        result = CycleResult(
            batches=[
                BatchOutcome("/vol/_ColdArchive", ["aaaaaaaa11", "bbbbbbbb22"], "failed",
                             error="[verification] check failed", error_kind="verification"),
            ]
        )
        text = str(result)
        assert not result.ok
        assert "[verification]" in text
        assert "Safe to re-stage / retry" in text
        assert "aaaaaaaa" in text

    def test_partial_deletion(self):
        result = CycleResult(
            batches=[
                BatchOutcome("/vol/_ColdArchive", ["a1", "b2"], "archived", snapshot_ref="abc123",
                             deleted=["a1"], deletion_failures={"b2": "in use"}),
            ]
        )
        assert result.ok
        assert result.partial_deletion_error().failures == {"b2": "in use"}
        assert "Archived but local copy kept" in str(result)
