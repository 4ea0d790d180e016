"""Read-only merged view over every reachable ledger shard.

Each known staging root is loaded independently; a shard that is offline,
missing or unreadable is recorded as a LoadError and skipped, so one
disconnected drive never breaks a query. When no shard at all is reachable
and a pre-sharding single ledger exists, that file is read instead.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

import pandas as pd

from coldarchive.errors import ColdArchiveError, LedgerFormatError
from coldarchive.tracking.ledger import TrackingLedger
from coldarchive.tracking.types import ArchiveEntry, ArchiveStatus, LedgerStatistics

logger = logging.getLogger(__name__)

LEGACY_SOURCE = "legacy"

ShardLoader = Callable[[str], TrackingLedger]


@dataclass(frozen=True)
class SourcedEntry:
    """An entry plus the staging root whose shard it came from."""

    entry: ArchiveEntry
    source: str


@dataclass(frozen=True)
class QuarantinedRecord:
    """A raw shard record the ledger refused to load, with its staging root."""

    record: Any
    reason: str
    source: str

    @property
    def entry_id(self) -> Optional[str]:
        value = self.record.get("id") if isinstance(self.record, dict) else None
        return str(value) if value not in (None, "") else None


@dataclass(frozen=True)
class LoadError:
    """Why one shard was left out of the aggregated view."""

    source: str
    reason: str


@dataclass
class AggregatedView:
    """Ephemeral union of all reachable shards. Never persisted.

    Attributes:
        entries: Every entry with its provenance
        statistics: Sum of the shards' own statistics
        sources: Roots whose shards were loaded
        errors: Roots that were skipped, with the reason
        duplicate_ids: Ids that appear in more than one shard
        quarantined: Malformed records set aside by the shards' ledgers
    """

    entries: list[SourcedEntry] = field(default_factory=list)
    statistics: LedgerStatistics = field(default_factory=LedgerStatistics)
    sources: list[str] = field(default_factory=list)
    errors: list[LoadError] = field(default_factory=list)
    duplicate_ids: list[str] = field(default_factory=list)
    quarantined: list[QuarantinedRecord] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def used_legacy(self) -> bool:
        return self.sources == [LEGACY_SOURCE]

    def find(self, id_or_prefix: str) -> list[SourcedEntry]:
        """Entries whose id equals or starts with ``id_or_prefix``."""
        exact = [s for s in self.entries if s.entry.id == id_or_prefix]
        if exact:
            return exact
        return [s for s in self.entries if s.entry.id.startswith(id_or_prefix)]

    def by_status(self, *statuses: Union[ArchiveStatus, str]) -> list[SourcedEntry]:
        wanted = {ArchiveStatus(s) for s in statuses}
        return [s for s in self.entries if s.entry.status in wanted]

    def summary_by_status(self) -> dict[str, int]:
        counts = Counter(s.entry.status.value for s in self.entries)
        return {status.value: counts.get(status.value, 0) for status in ArchiveStatus}

    def to_frame(self) -> pd.DataFrame:
        """Tabular form of the view, one row per entry."""
        columns = [
            "id",
            "status",
            "original_location",
            "staged_location",
            "size_bytes",
            "item_count",
            "staged_at",
            "archived_at",
            "deleted_at",
            "snapshot_ref",
            "note",
            "source",
        ]
        rows = []
        for sourced in self.entries:
            e = sourced.entry
            rows.append(
                {
                    "id": e.id,
                    "status": e.status.value,
                    "original_location": str(e.original_location),
                    "staged_location": str(e.staged_location),
                    "size_bytes": e.size_bytes,
                    "item_count": e.item_count,
                    "staged_at": e.staged_at,
                    "archived_at": e.archived_at,
                    "deleted_at": e.deleted_at,
                    "snapshot_ref": e.snapshot_ref,
                    "note": e.note,
                    "source": sourced.source,
                }
            )
        return pd.DataFrame(rows, columns=columns)

    def as_dict(self) -> dict[str, Any]:
        """JSON-serializable form, with shard provenance under ``_sources``."""
        return {
            "archives": [dict(s.entry.to_dict(), _source=s.source) for s in self.entries],
            "statistics": self.statistics.to_dict(),
            "_sources": list(self.sources),
            "_errors": [{"source": e.source, "reason": e.reason} for e in self.errors],
            "_quarantined": [
                {"source": q.source, "reason": q.reason, "record": q.record} for q in self.quarantined
            ],
        }


def _try_load(source: str, loader: ShardLoader) -> Union[TrackingLedger, LoadError]:
    try:
        ledger = loader(source)
        if not ledger.exists:
            return LoadError(source, "ledger shard not found (root offline or never provisioned)")
        return ledger.load()
    except ColdArchiveError as e:
        return LoadError(source, str(e))
    except OSError as e:
        return LoadError(source, f"unreadable: {e}")


def aggregate(
    known_roots: Iterable[str],
    loader: ShardLoader,
    legacy_path: Optional[Path] = None,
) -> AggregatedView:
    """Merge every reachable shard into one view without touching the sources.

    Args:
        known_roots: Registered staging roots
        loader: Returns the (unloaded) ledger for a staging root
        legacy_path: Pre-sharding single ledger, read only if no shard loads
    """
    view = AggregatedView()
    shard_stats: list[LedgerStatistics] = []
    seen_ids: dict[str, str] = {}

    for root in known_roots:
        outcome = _try_load(root, loader)
        if isinstance(outcome, LoadError):
            logger.warning(f"Skipping staging root {root}: {outcome.reason}")
            view.errors.append(outcome)
            continue
        _merge(view, outcome, root, seen_ids)
        shard_stats.append(outcome.statistics)

    if not view.sources and legacy_path is not None and Path(legacy_path).exists():
        logger.info(f"No ledger shard reachable, reading legacy ledger {legacy_path}")
        try:
            legacy = TrackingLedger(Path(legacy_path)).load()
        except LedgerFormatError as e:
            logger.warning(f"Legacy ledger unreadable: {e}")
            view.errors.append(LoadError(LEGACY_SOURCE, str(e)))
        else:
            _merge(view, legacy, LEGACY_SOURCE, seen_ids)
            shard_stats.append(legacy.statistics)

    view.statistics = LedgerStatistics.combine(shard_stats)
    return view


def _merge(view: AggregatedView, ledger: TrackingLedger, source: str, seen_ids: dict[str, str]) -> None:
    for entry in ledger.entries:
        if entry.id in seen_ids:
            logger.warning(
                f"Entry id {entry.id} appears in both {seen_ids[entry.id]} and {source}"
            )
            view.duplicate_ids.append(entry.id)
        else:
            seen_ids[entry.id] = source
        view.entries.append(SourcedEntry(entry, source))
    for item in ledger.quarantine:
        view.quarantined.append(QuarantinedRecord(item.get("record"), str(item.get("reason", "")), source))
    view.sources.append(source)


__all__ = [
    "LEGACY_SOURCE",
    "SourcedEntry",
    "LoadError",
    "QuarantinedRecord",
    "AggregatedView",
    "aggregate",
]
