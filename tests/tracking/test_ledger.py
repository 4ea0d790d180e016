"""Tests for the per-root tracking ledger."""
import json
from dataclasses import replace
from datetime import timedelta

import pytest

from coldarchive.errors import (
    InvalidTransitionError,
    LedgerError,
    LedgerFormatError,
    UnknownEntryError,
)
from coldarchive.tracking.cost import estimate_monthly_cost, make_cost_estimator
from coldarchive.tracking.ledger import LEDGER_VERSION, TrackingLedger, open_ledger
from coldarchive.tracking.paths import CanonicalPath
from coldarchive.tracking.types import ArchiveStatus

S = ArchiveStatus


@pytest.fixture
def ledger(tmp_path):
    return TrackingLedger(
        tmp_path / "tracking.json",
        staging_root="/vol/_ColdArchive",
        cost_fn=make_cost_estimator("deep_archive"),
    )


class TestPersistence:
    """Test load/save of a ledger shard."""

    def test_round_trip(self, ledger, make_entry):
        entry = ledger.append(make_entry(note="tax records"))
        loaded = TrackingLedger(ledger.path).load()
        assert loaded.get(entry.id) == entry
        assert loaded.staging_root == "/vol/_ColdArchive"

    def test_document_layout(self, ledger, make_entry):
        ledger.append(make_entry())
        data = json.loads(ledger.path.read_text(encoding="utf-8"))
        assert data["version"] == LEDGER_VERSION
        assert set(data) >= {"version", "created", "archives", "statistics"}
        assert data["archives"][0]["original_location"] == {"root": "/vol", "relative": "docs/report.pdf"}

    def test_save_leaves_no_temp_file(self, ledger, make_entry):
        ledger.append(make_entry())
        assert [p.name for p in ledger.path.parent.iterdir()] == ["tracking.json"]

    def test_missing_file(self, ledger):
        with pytest.raises(LedgerFormatError):
            ledger.load()

    def test_invalid_json(self, ledger):
        ledger.path.write_text("{not json", encoding="utf-8")
        with pytest.raises(LedgerFormatError):
            ledger.load()

    def test_unsupported_version(self, ledger):
        ledger.path.write_text(json.dumps({"version": "9.0", "archives": []}), encoding="utf-8")
        with pytest.raises(LedgerFormatError):
            ledger.load()

    def test_open_ledger_without_file_is_empty(self, tmp_path):
        ledger = open_ledger(tmp_path / "none.json")
        assert len(ledger) == 0
        assert not ledger.exists

    def test_malformed_records_are_quarantined(self, ledger, make_entry):
        good = make_entry().to_dict()
        bad_status = dict(make_entry().to_dict(), status="lost")
        bad_invariant = dict(make_entry().to_dict(), status="archived_and_deleted")
        ledger.path.write_text(
            json.dumps({"version": "2.0", "archives": [good, bad_status, bad_invariant]}),
            encoding="utf-8",
        )

        ledger.load()
        assert len(ledger) == 1
        assert len(ledger.quarantine) == 2
        assert "unknown status" in ledger.quarantine[0]["reason"]

        ledger.save()
        reloaded = TrackingLedger(ledger.path).load()
        assert len(reloaded.quarantine) == 2

    def test_duplicate_ids_are_quarantined(self, ledger, make_entry):
        record = make_entry().to_dict()
        ledger.path.write_text(json.dumps({"version": "2.0", "archives": [record, record]}), encoding="utf-8")
        ledger.load()
        assert len(ledger) == 1
        assert ledger.quarantine[0]["reason"] == "duplicate id"

    def test_legacy_string_locations(self, ledger):
        legacy = {
            "version": "1.0",
            "created": "2024-03-01T09:00:00+00:00",
            "archives": [
                {
                    "id": "legacy-1",
                    "original_location": "\\\\NAS\\Media\\old\\scan.tif",
                    "staged_location": "//nas/Media/_ColdArchive/old/scan.tif",
                    "staged_at": "2024-03-01T09:00:00",
                    "archived_at": "2024-03-02T09:00:00",
                    "deleted_at": "2024-03-02T09:05:00",
                    "snapshot_ref": "4f2a9c1e",
                    "size_bytes": 2048,
                    "item_count": 1,
                    "status": "archived_and_deleted",
                }
            ],
        }
        ledger.path.write_text(json.dumps(legacy), encoding="utf-8")
        entry = ledger.load().get("legacy-1")
        assert entry.original_location == CanonicalPath("//nas/Media", "old/scan.tif")
        assert entry.staged_at.tzinfo is not None


class TestTransitions:
    """Test the lifecycle state machine."""

    def test_full_lifecycle_survives_reload(self, ledger, make_entry):
        entry = ledger.append(make_entry())
        ledger.transition(entry.id, S.ARCHIVING)
        ledger.transition(entry.id, S.ARCHIVED, snapshot_ref="abc123")
        ledger.transition(entry.id, S.ARCHIVED_AND_DELETED)

        done = TrackingLedger(ledger.path).load().get(entry.id)
        assert done.status == S.ARCHIVED_AND_DELETED
        assert done.deleted_at is not None
        assert done.snapshot_ref == "abc123"
        assert done.archived_at <= done.deleted_at

    @pytest.mark.parametrize(
        "path",
        [
            [S.ARCHIVED],
            [S.ARCHIVED_AND_DELETED],
            [S.FAILED],
            [S.ARCHIVING, S.ARCHIVED_AND_DELETED],
            [S.ARCHIVING, S.STAGED],
        ],
    )
    def test_invalid_transitions(self, ledger, make_entry, path):
        entry = ledger.append(make_entry())
        for status in path[:-1]:
            ledger.transition(entry.id, status)
        with pytest.raises(InvalidTransitionError):
            ledger.transition(entry.id, path[-1], snapshot_ref="abc123")

    def test_archived_and_deleted_is_terminal(self, ledger, make_entry):
        entry = ledger.append(make_entry(status=S.ARCHIVED_AND_DELETED))
        for status in S:
            with pytest.raises(InvalidTransitionError):
                ledger.transition(entry.id, status, snapshot_ref="abc123")

    def test_archived_requires_snapshot_ref(self, ledger, make_entry):
        entry = ledger.append(make_entry())
        ledger.transition(entry.id, S.ARCHIVING)
        with pytest.raises(LedgerError):
            ledger.transition(entry.id, S.ARCHIVED)
        assert TrackingLedger(ledger.path).load().get(entry.id).status == S.ARCHIVING

    def test_retaining_archived_entry_is_a_no_op(self, ledger, make_entry):
        entry = ledger.append(make_entry(status=S.ARCHIVED, snapshot_ref="abc123"))
        kept = ledger.transition(entry.id, S.ARCHIVED)
        assert kept == entry
        assert ledger.transition(entry.id, S.ARCHIVED, snapshot_ref="abc123") == entry
        assert TrackingLedger(ledger.path).load().get(entry.id) == entry

    def test_retaining_with_other_snapshot_is_rejected(self, ledger, make_entry):
        entry = ledger.append(make_entry(status=S.ARCHIVED, snapshot_ref="abc123"))
        with pytest.raises(InvalidTransitionError):
            ledger.transition(entry.id, S.ARCHIVED, snapshot_ref="def456")
        assert ledger.get(entry.id).snapshot_ref == "abc123"

    def test_unknown_entry(self, ledger):
        with pytest.raises(UnknownEntryError):
            ledger.transition("nope", S.ARCHIVING)

    def test_failed_then_retry(self, ledger, make_entry):
        entry = ledger.append(make_entry())
        ledger.transition(entry.id, S.ARCHIVING)
        failed = ledger.transition(entry.id, S.FAILED, error="[engine] repository locked")
        assert failed.error == "[engine] repository locked"
        assert failed.snapshot_ref is None

        retried = ledger.transition(entry.id, S.ARCHIVING)
        assert retried.error is None

    def test_transition_many_is_all_or_nothing(self, ledger, make_entry):
        a = ledger.append(make_entry(name="a"))
        b = ledger.append(make_entry(name="b"))
        ledger.transition(b.id, S.ARCHIVING)

        with pytest.raises(InvalidTransitionError):
            ledger.transition_many([a.id, b.id], S.ARCHIVING)
        reloaded = TrackingLedger(ledger.path).load()
        assert reloaded.get(a.id).status == S.STAGED

    def test_transition_does_not_mutate_entries(self, ledger, make_entry):
        entry = ledger.append(make_entry())
        ledger.transition(entry.id, S.ARCHIVING)
        assert entry.status == S.STAGED

    def test_mutations_reread_the_shard(self, ledger, make_entry):
        first = ledger.append(make_entry(name="a"))
        other_handle = TrackingLedger(ledger.path).load()
        other_handle.append(make_entry(name="b"))

        ledger.transition(first.id, S.ARCHIVING)
        assert len(TrackingLedger(ledger.path).load()) == 2


class TestLedgerUpdates:
    """Test notes, deletion failures and statistics."""

    def test_duplicate_append(self, ledger, make_entry):
        entry = ledger.append(make_entry())
        with pytest.raises(LedgerError):
            ledger.append(entry)

    def test_append_rejects_broken_invariants(self, ledger, make_entry):
        entry = make_entry(status=S.ARCHIVED)
        with pytest.raises(LedgerError):
            ledger.append(replace(entry, snapshot_ref=None))

    def test_set_note(self, ledger, make_entry):
        entry = ledger.append(make_entry())
        ledger.set_note(entry.id, "keep until 2031")
        assert TrackingLedger(ledger.path).load().get(entry.id).note == "keep until 2031"

    def test_record_deletion_failure_needs_archived(self, ledger, make_entry):
        staged = ledger.append(make_entry(name="a"))
        archived = ledger.append(make_entry(name="b", status=S.ARCHIVED))

        with pytest.raises(InvalidTransitionError):
            ledger.record_deletion_failure(staged.id, "busy")
        updated = ledger.record_deletion_failure(archived.id, "file in use")
        assert updated.status == S.ARCHIVED
        assert updated.deletion_error == "file in use"

    def test_recompute_statistics(self, ledger, make_entry):
        older = make_entry(name="a", status=S.ARCHIVED, size_bytes=300, item_count=3)
        newer = make_entry(
            name="b",
            status=S.ARCHIVED_AND_DELETED,
            size_bytes=700,
            item_count=4,
            archived_at=older.archived_at + timedelta(days=1),
        )
        for entry in (older, newer, make_entry(name="c", size_bytes=5000)):
            ledger.append(entry)

        stats = ledger.recompute_statistics()
        assert stats.total_archived_bytes == 1000
        assert stats.total_items == 2
        assert stats.total_files == 7
        assert stats.last_archive_date == newer.archived_at
        assert stats.estimated_monthly_cost == pytest.approx(
            estimate_monthly_cost(1000, "deep_archive"), abs=1e-6
        )
        assert TrackingLedger(ledger.path).load().statistics == stats
