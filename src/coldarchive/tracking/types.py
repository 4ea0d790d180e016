"""Type definitions for the archive tracking ledger.

Provides the entry status enum with its transition table, the ArchiveEntry
record, rolled-up ledger statistics, and result types for archive cycles.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from coldarchive.errors import PartialDeletionError
from coldarchive.tracking.paths import CanonicalPath


class ArchiveStatus(str, Enum):
    """Lifecycle status of an archive entry."""

    STAGED = "staged"
    ARCHIVING = "archiving"
    ARCHIVED = "archived"
    ARCHIVED_AND_DELETED = "archived_and_deleted"
    FAILED = "failed"

    @property
    def is_archived(self) -> bool:
        return self in (ArchiveStatus.ARCHIVED, ArchiveStatus.ARCHIVED_AND_DELETED)


# Allowed status changes. archived -> archived is the operator keeping the
# local copy; the ledger treats it as a no-op.
TRANSITIONS: dict[ArchiveStatus, frozenset[ArchiveStatus]] = {
    ArchiveStatus.STAGED: frozenset({ArchiveStatus.ARCHIVING}),
    ArchiveStatus.ARCHIVING: frozenset({ArchiveStatus.ARCHIVED, ArchiveStatus.FAILED}),
    ArchiveStatus.ARCHIVED: frozenset({ArchiveStatus.ARCHIVED, ArchiveStatus.ARCHIVED_AND_DELETED}),
    ArchiveStatus.ARCHIVED_AND_DELETED: frozenset(),
    ArchiveStatus.FAILED: frozenset({ArchiveStatus.ARCHIVING}),
}

# Statuses a new archive cycle may pick up
SUBMITTABLE = frozenset({ArchiveStatus.STAGED, ArchiveStatus.FAILED})


def can_transition(current: ArchiveStatus, new: ArchiveStatus) -> bool:
    return new in TRANSITIONS[current]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_entry_id() -> str:
    """Opaque, globally unique entry id."""
    return uuid.uuid4().hex


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Any, name: str) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{name} must be an ISO 8601 string, got {type(value).__name__}")
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class ArchiveEntry:
    """One staged-or-archived unit: a file, or a folder moved as a unit.

    Entries are immutable; status changes go through TrackingLedger.transition(),
    which stores a modified copy.

    Attributes:
        id: Opaque unique id assigned at stage time
        original_location: Canonical path the item was staged from
        staged_location: Canonical path under the staging root
        staged_at: When the item was staged
        size_bytes: Total bytes at staging time
        item_count: Number of files at staging time
        status: Lifecycle status
        archived_at: When the snapshot was verified
        deleted_at: When the local copy was removed
        snapshot_ref: Backup engine snapshot id holding this entry
        note: Free-text operator note
        error: Diagnostic for the last failed archive attempt
        deletion_error: Why the local copy of an archived entry is still present
    """

    id: str
    original_location: CanonicalPath
    staged_location: CanonicalPath
    staged_at: datetime
    size_bytes: int
    item_count: int
    status: ArchiveStatus = ArchiveStatus.STAGED
    archived_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    snapshot_ref: Optional[str] = None
    note: str = ""
    error: Optional[str] = None
    deletion_error: Optional[str] = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def invariant_violations(self) -> list[str]:
        """Return descriptions of any broken record invariants (empty if valid)."""
        issues = []
        deleted = self.status == ArchiveStatus.ARCHIVED_AND_DELETED
        if deleted != (self.deleted_at is not None):
            issues.append("deleted_at must be set if and only if status is archived_and_deleted")
        if self.status.is_archived != (self.snapshot_ref is not None):
            issues.append("snapshot_ref must be set if and only if the entry is archived")
        if self.status.is_archived and self.archived_at is None:
            issues.append("archived entries need archived_at")
        if self.size_bytes < 0 or self.item_count < 0:
            issues.append("size_bytes and item_count must be non-negative")
        return issues

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "original_location": self.original_location.to_dict(),
            "staged_location": self.staged_location.to_dict(),
            "staged_at": _iso(self.staged_at),
            "archived_at": _iso(self.archived_at),
            "deleted_at": _iso(self.deleted_at),
            "snapshot_ref": self.snapshot_ref,
            "size_bytes": self.size_bytes,
            "item_count": self.item_count,
            "status": self.status.value,
            "note": self.note,
            "error": self.error,
            "deletion_error": self.deletion_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchiveEntry:
        """Build an entry from its persisted form.

        Legacy records that store locations as plain strings are accepted.

        Raises:
            ValueError: If a field is missing, mistyped, or an invariant is broken
        """
        if not isinstance(data, dict):
            raise ValueError("record is not an object")
        missing = [
            k
            for k in ("id", "original_location", "staged_location", "staged_at", "status")
            if data.get(k) in (None, "")
        ]
        if missing:
            raise ValueError(f"missing field(s): {', '.join(missing)}")

        try:
            status = ArchiveStatus(data["status"])
        except ValueError:
            raise ValueError(f"unknown status {data['status']!r}") from None

        size_bytes = data.get("size_bytes", 0)
        item_count = data.get("item_count", 0)
        if isinstance(size_bytes, bool) or not isinstance(size_bytes, int):
            raise ValueError("size_bytes must be an integer")
        if isinstance(item_count, bool) or not isinstance(item_count, int):
            raise ValueError("item_count must be an integer")

        entry = cls(
            id=str(data["id"]),
            original_location=_location(data["original_location"]),
            staged_location=_location(data["staged_location"]),
            staged_at=_parse_ts(data["staged_at"], "staged_at"),
            size_bytes=size_bytes,
            item_count=item_count,
            status=status,
            archived_at=_parse_ts(data.get("archived_at"), "archived_at"),
            deleted_at=_parse_ts(data.get("deleted_at"), "deleted_at"),
            snapshot_ref=data.get("snapshot_ref") or None,
            note=str(data.get("note") or ""),
            error=data.get("error"),
            deletion_error=data.get("deletion_error"),
        )
        issues = entry.invariant_violations()
        if issues:
            raise ValueError("; ".join(issues))
        return entry


def _location(value: Any) -> CanonicalPath:
    if isinstance(value, dict):
        if "root" not in value:
            raise ValueError("location is missing its root")
        return CanonicalPath.from_dict(value)
    if isinstance(value, str):
        return CanonicalPath.parse(value)
    raise ValueError(f"unsupported location value: {value!r}")


@dataclass
class LedgerStatistics:
    """Rolled-up figures over the archived entries of one or more ledgers."""

    total_archived_bytes: int = 0
    total_items: int = 0
    total_files: int = 0
    last_archive_date: Optional[datetime] = None
    estimated_monthly_cost: float = 0.0
    currency: str = "USD"

    @classmethod
    def from_entries(
        cls,
        entries: Iterable[ArchiveEntry],
        cost_fn: Optional[Callable[[int], float]] = None,
        currency: str = "USD",
    ) -> LedgerStatistics:
        """Recompute statistics from the full set of archived entries."""
        archived = [e for e in entries if e.status.is_archived]
        total_bytes = sum(e.size_bytes for e in archived)
        dates = [e.archived_at for e in archived if e.archived_at is not None]
        return cls(
            total_archived_bytes=total_bytes,
            total_items=len(archived),
            total_files=sum(e.item_count for e in archived),
            last_archive_date=max(dates) if dates else None,
            estimated_monthly_cost=round(cost_fn(total_bytes), 6) if cost_fn else 0.0,
            currency=currency,
        )

    @classmethod
    def combine(cls, stats: Iterable[LedgerStatistics]) -> LedgerStatistics:
        """Sum statistics across ledgers; last_archive_date is the maximum."""
        stats = list(stats)
        dates = [s.last_archive_date for s in stats if s.last_archive_date is not None]
        return cls(
            total_archived_bytes=sum(s.total_archived_bytes for s in stats),
            total_items=sum(s.total_items for s in stats),
            total_files=sum(s.total_files for s in stats),
            last_archive_date=max(dates) if dates else None,
            estimated_monthly_cost=round(sum(s.estimated_monthly_cost for s in stats), 6),
            currency=stats[0].currency if stats else "USD",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_archived_bytes": self.total_archived_bytes,
            "total_items": self.total_items,
            "total_files": self.total_files,
            "last_archive_date": _iso(self.last_archive_date),
            "estimated_monthly_cost": self.estimated_monthly_cost,
            "currency": self.currency,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> LedgerStatistics:
        data = data or {}
        return cls(
            total_archived_bytes=int(data.get("total_archived_bytes", 0)),
            total_items=int(data.get("total_items", 0)),
            total_files=int(data.get("total_files", 0)),
            last_archive_date=_parse_ts(data.get("last_archive_date"), "last_archive_date"),
            estimated_monthly_cost=float(data.get("estimated_monthly_cost", 0.0)),
            currency=str(data.get("currency", "USD")),
        )


@dataclass
class BatchOutcome:
    """Outcome of archiving the entries of one staging root together.

    Attributes:
        staging_root: Canonical staging root the batch belongs to
        entry_ids: Entries submitted to the backup engine
        status: ``archived`` or ``failed``
        snapshot_ref: Snapshot id when the batch was archived
        error: Diagnostic message when the batch failed
        error_kind: ``engine`` or ``verification`` when the batch failed
        deleted: Entries whose local copy was removed
        deletion_failures: Entry id -> error for local copies that remain
    """

    staging_root: str
    entry_ids: list[str]
    status: str
    snapshot_ref: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    deleted: list[str] = field(default_factory=list)
    deletion_failures: dict[str, str] = field(default_factory=dict)


@dataclass
class CycleResult:
    """Result of one archive cycle across all staging roots involved.

    Example:
        >>> result = CycleResult()
        >>> print(result)
        Archive Cycle:
          Archived: 0 (0 local copies removed)
          Failed: 0
          Skipped: 0
    """

    batches: list[BatchOutcome] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def archived(self) -> list[str]:
        return [i for b in self.batches if b.status == "archived" for i in b.entry_ids]

    @property
    def failed(self) -> list[str]:
        return [i for b in self.batches if b.status == "failed" for i in b.entry_ids]

    @property
    def deleted(self) -> list[str]:
        return [i for b in self.batches for i in b.deleted]

    @property
    def deletion_failures(self) -> dict[str, str]:
        out: dict[str, str] = {}
        for b in self.batches:
            out.update(b.deletion_failures)
        return out

    @property
    def ok(self) -> bool:
        return not self.cancelled and not self.failed

    def partial_deletion_error(self) -> Optional[PartialDeletionError]:
        failures = self.deletion_failures
        return PartialDeletionError(failures) if failures else None

    def __str__(self) -> str:
        """Human-readable summary."""
        if self.cancelled:
            return "Archive Cycle: cancelled, nothing was changed"
        lines = [
            "Archive Cycle:",
            f"  Archived: {len(self.archived)} ({len(self.deleted)} local copies removed)",
            f"  Failed: {len(self.failed)}",
            f"  Skipped: {len(self.skipped)}",
        ]
        for b in self.batches:
            if b.status == "failed":
                lines.append(f"  [{b.error_kind}] {b.staging_root}: {b.error}")
        if self.failed or self.skipped:
            lines.append("  Safe to re-stage / retry (nothing archived): "
                         + ", ".join(i[:8] for i in self.failed + list(self.skipped)))
        if self.deletion_failures:
            lines.append("  Archived but local copy kept: "
                         + ", ".join(i[:8] for i in self.deletion_failures))
        return "\n".join(lines)


@dataclass
class CleanupResult:
    """Result of removing local copies of already archived entries."""

    deleted: list[str] = field(default_factory=list)
    deletion_failures: dict[str, str] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.cancelled and not self.deletion_failures

    def __str__(self) -> str:
        if self.cancelled:
            return "Cleanup: cancelled, nothing was removed"
        lines = [
            "Cleanup:",
            f"  Local copies removed: {len(self.deleted)}",
            f"  Skipped: {len(self.skipped)}",
        ]
        for entry_id, reason in self.skipped.items():
            lines.append(f"  {entry_id[:8]}: {reason}")
        if self.deletion_failures:
            lines.append("  Archived but local copy kept: "
                         + ", ".join(i[:8] for i in self.deletion_failures))
        return "\n".join(lines)


__all__ = [
    "ArchiveStatus",
    "TRANSITIONS",
    "SUBMITTABLE",
    "can_transition",
    "utcnow",
    "new_entry_id",
    "ArchiveEntry",
    "LedgerStatistics",
    "BatchOutcome",
    "CycleResult",
    "CleanupResult",
]
