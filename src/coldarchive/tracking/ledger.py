"""Per-staging-root tracking ledger.

A ledger shard is a single JSON document holding every ArchiveEntry staged to
one staging root plus rolled-up statistics. Every mutation re-reads the shard,
applies the change and atomically rewrites the whole file, so the persisted
form stays human-readable and a crash never leaves a half-written shard.

Document layout::

    {
      "version": "2.0",
      "created": "2026-01-05T10:00:00+00:00",
      "staging_root": "//nas/Media/_ColdArchive",
      "archives": [ {ArchiveEntry}, ... ],
      "statistics": {LedgerStatistics},
      "quarantine": [ {"record": {...}, "reason": "..."} ]
    }
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

from coldarchive.errors import (
    InvalidPathError,
    InvalidTransitionError,
    LedgerError,
    LedgerFormatError,
    UnknownEntryError,
)
from coldarchive.tracking.types import (
    ArchiveEntry,
    ArchiveStatus,
    LedgerStatistics,
    can_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

LEDGER_VERSION = "2.0"
# Pre-sharding single-ledger installs
LEGACY_VERSIONS = {"1.0"}


class TrackingLedger:
    """Authoritative record of item lifecycle for one staging root.

    Args:
        path: Location of the shard file
        staging_root: Canonical staging root this shard belongs to
        cost_fn: Pure ``bytes -> cost`` function used by the statistics roll-up
        currency: Currency label stored alongside the cost estimate
    """

    def __init__(
        self,
        path: Path,
        staging_root: Optional[str] = None,
        cost_fn: Optional[Callable[[int], float]] = None,
        currency: str = "USD",
    ):
        self.path = Path(path)
        self.staging_root = staging_root
        self.cost_fn = cost_fn
        self.currency = currency
        self.version = LEDGER_VERSION
        self.created: Optional[datetime] = None
        self.statistics = LedgerStatistics(currency=currency)
        self.quarantine: list[dict] = []
        self._entries: dict[str, ArchiveEntry] = {}

    def __repr__(self) -> str:
        return f"TrackingLedger({str(self.path)!r}, entries={len(self._entries)})"

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ArchiveEntry]:
        return iter(list(self._entries.values()))

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    @property
    def exists(self) -> bool:
        return self.path.exists()

    @property
    def entries(self) -> list[ArchiveEntry]:
        return list(self._entries.values())

    def get(self, entry_id: str) -> ArchiveEntry:
        try:
            return self._entries[entry_id]
        except KeyError:
            raise UnknownEntryError(entry_id) from None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def load(self) -> TrackingLedger:
        """Read the shard from disk, replacing the in-memory state.

        Malformed records are moved to ``quarantine`` with a warning instead of
        being coerced.

        Raises:
            LedgerFormatError: If the file is missing, unreadable, or not a ledger
        """
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise LedgerFormatError(f"Ledger shard not found: {self.path}") from None
        except (OSError, UnicodeDecodeError) as e:
            raise LedgerFormatError(f"Cannot read ledger shard {self.path}: {e}") from e
        except json.JSONDecodeError as e:
            raise LedgerFormatError(f"Invalid JSON in ledger shard {self.path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("archives"), list):
            raise LedgerFormatError(f"Not a tracking ledger (no 'archives' list): {self.path}")

        version = str(data.get("version", "1.0"))
        if version != LEDGER_VERSION and version not in LEGACY_VERSIONS:
            raise LedgerFormatError(f"Unsupported ledger version {version} in {self.path}")

        entries: dict[str, ArchiveEntry] = {}
        quarantine = [q for q in data.get("quarantine", []) if isinstance(q, dict)]
        for idx, raw in enumerate(data["archives"]):
            try:
                entry = ArchiveEntry.from_dict(raw)
            except (ValueError, TypeError, InvalidPathError) as e:
                logger.warning(f"Quarantined malformed record {idx} in {self.path}: {e}")
                quarantine.append({"record": raw, "reason": str(e)})
                continue
            if entry.id in entries:
                logger.warning(f"Quarantined duplicate record {entry.id} in {self.path}")
                quarantine.append({"record": raw, "reason": "duplicate id"})
                continue
            entries[entry.id] = entry

        try:
            statistics = LedgerStatistics.from_dict(data.get("statistics"))
            created = data.get("created")
            self.created = datetime.fromisoformat(created) if created else None
        except (TypeError, ValueError) as e:
            raise LedgerFormatError(f"Invalid header fields in {self.path}: {e}") from e

        self._entries = entries
        self.statistics = statistics
        self.quarantine = quarantine
        self.version = version
        self.staging_root = data.get("staging_root") or self.staging_root
        return self

    def save(self) -> None:
        """Write the whole shard atomically (temp file, fsync, rename).

        Raises:
            LedgerError: If the shard cannot be written
        """
        if self.created is None:
            self.created = utcnow()
        payload = {
            "version": LEDGER_VERSION,
            "created": self.created.isoformat(),
            "staging_root": self.staging_root,
            "archives": [e.to_dict() for e in self._entries.values()],
            "statistics": self.statistics.to_dict(),
            "quarantine": self.quarantine,
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            temp_path.replace(self.path)
        except OSError as e:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    logger.debug(f"Could not remove temp file {temp_path}")
            raise LedgerError(f"Failed to save ledger shard {self.path}: {e}") from e
        self.version = LEDGER_VERSION
        logger.debug(f"Saved ledger shard {self.path} ({len(self._entries)} entries)")

    def _refresh(self) -> None:
        if self.path.exists():
            self.load()

    # ------------------------------------------------------------------
    # Mutations (each one is a full read-modify-write of the shard)
    # ------------------------------------------------------------------
    def append(self, entry: ArchiveEntry) -> ArchiveEntry:
        """Add a newly staged entry.

        Raises:
            LedgerError: If the id is already present or the entry is invalid
        """
        self._refresh()
        if entry.id in self._entries:
            raise LedgerError(f"Duplicate archive entry id: {entry.id}")
        issues = entry.invariant_violations()
        if issues:
            raise LedgerError(f"Refusing to append invalid entry {entry.id}: {'; '.join(issues)}")
        self._entries[entry.id] = entry
        self.save()
        logger.info(f"Appended {entry.short_id} ({entry.status.value}) to {self.path}")
        return entry

    def transition(
        self,
        entry_id: str,
        new_status: ArchiveStatus | str,
        *,
        snapshot_ref: Optional[str] = None,
        error: Optional[str] = None,
        when: Optional[datetime] = None,
    ) -> ArchiveEntry:
        """Move one entry to a new status.

        Raises:
            UnknownEntryError: If the id is not in this ledger
            InvalidTransitionError: If the change is not in the transition table
        """
        return self.transition_many(
            [entry_id], new_status, snapshot_ref=snapshot_ref, error=error, when=when
        )[0]

    def transition_many(
        self,
        entry_ids: Iterable[str],
        new_status: ArchiveStatus | str,
        *,
        snapshot_ref: Optional[str] = None,
        error: Optional[str] = None,
        when: Optional[datetime] = None,
    ) -> list[ArchiveEntry]:
        """Move several entries to the same status in a single write.

        All ids are checked before anything changes, so either every entry
        moves or none does.
        """
        self._refresh()
        target = ArchiveStatus(new_status)
        ids = list(entry_ids)
        when = when or utcnow()

        current = [self.get(i) for i in ids]
        for entry in current:
            if not can_transition(entry.status, target):
                raise InvalidTransitionError(entry.id, entry.status.value, target.value)

        updated = [self._apply(e, target, snapshot_ref, error, when) for e in current]
        for entry in updated:
            self._entries[entry.id] = entry
        self.save()
        logger.info(f"{len(updated)} entr{'y' if len(updated) == 1 else 'ies'} -> {target.value} in {self.path}")
        return updated

    @staticmethod
    def _apply(
        entry: ArchiveEntry,
        target: ArchiveStatus,
        snapshot_ref: Optional[str],
        error: Optional[str],
        when: datetime,
    ) -> ArchiveEntry:
        if target == ArchiveStatus.ARCHIVING:
            new = replace(entry, status=target, error=None)
        elif target == entry.status == ArchiveStatus.ARCHIVED:
            # Retained: the snapshot, if given, must be the one already recorded
            if snapshot_ref and snapshot_ref != entry.snapshot_ref:
                raise InvalidTransitionError(entry.id, entry.status.value, target.value)
            return entry
        elif target == ArchiveStatus.ARCHIVED:
            if not snapshot_ref:
                raise LedgerError(f"Archiving {entry.id} requires a snapshot reference")
            new = replace(entry, status=target, snapshot_ref=snapshot_ref, archived_at=when, error=None)
        elif target == ArchiveStatus.FAILED:
            new = replace(
                entry,
                status=target,
                snapshot_ref=None,
                archived_at=None,
                error=error or "archive attempt failed",
            )
        elif target == ArchiveStatus.ARCHIVED_AND_DELETED:
            new = replace(entry, status=target, deleted_at=when, deletion_error=None)
        else:
            raise InvalidTransitionError(entry.id, entry.status.value, target.value)

        issues = new.invariant_violations()
        if issues:
            raise LedgerError(f"Transition would break invariants of {entry.id}: {'; '.join(issues)}")
        return new

    def set_note(self, entry_id: str, note: str) -> ArchiveEntry:
        self._refresh()
        entry = replace(self.get(entry_id), note=note)
        self._entries[entry_id] = entry
        self.save()
        return entry

    def record_deletion_failure(self, entry_id: str, message: str) -> ArchiveEntry:
        """Note that an archived entry's local copy could not be removed."""
        self._refresh()
        entry = self.get(entry_id)
        if entry.status != ArchiveStatus.ARCHIVED:
            raise InvalidTransitionError(entry_id, entry.status.value, "deletion_failed")
        entry = replace(entry, deletion_error=message)
        self._entries[entry_id] = entry
        self.save()
        return entry

    def recompute_statistics(self) -> LedgerStatistics:
        """Rebuild statistics from all archived entries and persist them."""
        self._refresh()
        self.statistics = LedgerStatistics.from_entries(
            self._entries.values(), cost_fn=self.cost_fn, currency=self.currency
        )
        self.save()
        return self.statistics


def open_ledger(
    path: Path,
    staging_root: Optional[str] = None,
    cost_fn: Optional[Callable[[int], float]] = None,
    currency: str = "USD",
) -> TrackingLedger:
    """Return a ledger for ``path``, loaded if the shard already exists."""
    ledger = TrackingLedger(path, staging_root=staging_root, cost_fn=cost_fn, currency=currency)
    if ledger.exists:
        ledger.load()
    return ledger


__all__ = ["LEDGER_VERSION", "LEGACY_VERSIONS", "TrackingLedger", "open_ledger"]
