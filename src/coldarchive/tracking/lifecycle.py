"""Archive lifecycle controller: stage -> snapshot -> verify -> delete-or-retain.

Entries sharing a staging root are archived together in one snapshot. A
local copy is removed only after the engine's integrity check passes AND the
new snapshot id shows up in the repository listing. Any failure while
creating or verifying the snapshot moves the whole batch to ``failed`` and
leaves every local file in place.
"""
from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence

from coldarchive.errors import (
    ColdArchiveError,
    EngineInvocationError,
    InvalidPathError,
    PartialDeletionError,
    UnknownEntryError,
    VerificationFailedError,
)
from coldarchive.tracking.engine import BackupEngine, SnapshotRef
from coldarchive.tracking.ledger import TrackingLedger
from coldarchive.tracking.paths import CanonicalPath
from coldarchive.tracking.staging import StagingRootResolver
from coldarchive.tracking.types import (
    SUBMITTABLE,
    ArchiveEntry,
    ArchiveStatus,
    BatchOutcome,
    CleanupResult,
    CycleResult,
)

logger = logging.getLogger(__name__)

# (candidates, total_bytes) -> proceed?
ConfirmFn = Callable[[list[ArchiveEntry], int], bool]
NotifyFn = Callable[[CycleResult], Any]

DEFAULT_TAGS = ("coldarchive",)


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _prune_empty_parents(start: Path, stop: Path) -> None:
    """Remove now-empty directories from ``start`` up to (not including) ``stop``."""
    current = start
    while current != stop and stop in current.parents:
        try:
            current.rmdir()
        except OSError:
            break
        current = current.parent


class ArchiveLifecycleController:
    """Drives staged entries through the archive state machine.

    Args:
        resolver: Resolves staging roots and opens their ledger shards
        engine: Backup engine used for snapshots and verification
        delete_local: Remove local copies after a verified archive
        deep_check: Ask the engine for a full data read during verification
        tags: Tags attached to every snapshot
        confirm: Optional confirmation prompt; returning False cancels the cycle
        notify: Optional sink that receives the cycle result
    """

    def __init__(
        self,
        resolver: StagingRootResolver,
        engine: BackupEngine,
        *,
        delete_local: bool = True,
        deep_check: bool = False,
        tags: Sequence[str] = DEFAULT_TAGS,
        confirm: Optional[ConfirmFn] = None,
        notify: Optional[NotifyFn] = None,
    ):
        self.resolver = resolver
        self.engine = engine
        self.delete_local = delete_local
        self.deep_check = deep_check
        self.tags = tuple(tags)
        self.confirm = confirm
        self.notify = notify

    # ------------------------------------------------------------------
    # Archive cycle
    # ------------------------------------------------------------------
    def run_archive_cycle(
        self, entries: Iterable[ArchiveEntry], delete_local: Optional[bool] = None
    ) -> CycleResult:
        """Archive entries, one snapshot per staging root.

        Entries that are not ``staged``/``failed`` or whose staged copy has
        vanished are skipped (not failed). Statistics of every shard that
        archived something are recomputed from scratch.

        Args:
            entries: Entries to archive (``failed`` ones are retried)
            delete_local: Override the controller's delete_local setting

        Returns:
            CycleResult with per-batch outcomes and skipped entries
        """
        delete_local = self.delete_local if delete_local is None else delete_local
        result = CycleResult()
        groups: dict[str, tuple[CanonicalPath, list[tuple[ArchiveEntry, Path]]]] = {}

        for entry in entries:
            reason = None
            try:
                root = self.resolver.staging_root_of(entry)
                ledger = self.resolver.ledger_for(root)
                current = ledger.get(entry.id)
                staged_path = self.resolver.local_path(current.staged_location)
            except (InvalidPathError, UnknownEntryError) as e:
                reason = str(e)
            else:
                if current.status not in SUBMITTABLE:
                    reason = f"status is {current.status.value}"
                elif not (staged_path.exists() or staged_path.is_symlink()):
                    reason = f"staged copy missing: {staged_path}"

            if reason is not None:
                logger.warning(f"Skipping {entry.short_id}: {reason}")
                result.skipped[entry.id] = reason
                continue
            groups.setdefault(str(root), (root, []))[1].append((current, staged_path))

        candidates = [e for _, items in groups.values() for e, _ in items]
        if not candidates:
            logger.info("Nothing to archive")
            return result

        if self.confirm is not None:
            total = sum(e.size_bytes for e in candidates)
            if not self.confirm(candidates, total):
                logger.info("Archive cycle cancelled at confirmation")
                result.cancelled = True
                return result

        for root, items in groups.values():
            result.batches.append(self._archive_batch(root, items, delete_local))

        if self.notify is not None:
            self.notify(result)
        return result

    def retry_failed(
        self, entries: Iterable[ArchiveEntry], delete_local: Optional[bool] = None
    ) -> CycleResult:
        """Resubmit ``failed`` entries as if newly staged.

        Entries left in ``archiving`` by an interrupted process are recovered
        to ``failed`` first and retried with the rest.
        """
        entries = list(entries)
        recovered = set(self.recover_stale(e for e in entries if e.status == ArchiveStatus.ARCHIVING))
        failed = [e for e in entries if e.status == ArchiveStatus.FAILED or e.id in recovered]
        logger.info(f"Retrying {len(failed)} failed entr{'y' if len(failed) == 1 else 'ies'}")
        return self.run_archive_cycle(failed, delete_local=delete_local)

    def _archive_batch(
        self,
        root: CanonicalPath,
        items: list[tuple[ArchiveEntry, Path]],
        delete_local: bool,
    ) -> BatchOutcome:
        ledger = self.resolver.ledger_for(root)
        ids = [e.id for e, _ in items]
        logger.info(f"Archiving {len(ids)} entr{'y' if len(ids) == 1 else 'ies'} from {root}")
        ledger.transition_many(ids, ArchiveStatus.ARCHIVING)

        try:
            snapshot = self.engine.create_snapshot(
                [p for _, p in items], tags=self.tags + (f"root:{root}",)
            )
            self._verify(snapshot)
        except (EngineInvocationError, VerificationFailedError) as e:
            if isinstance(e, VerificationFailedError):
                kind, message = "verification", f"[verification] {e}"
            else:
                kind, message = "engine", f"[{e.kind}] {e}"
            logger.error(f"Archive batch for {root} failed, all local files kept: {message}")
            ledger.transition_many(ids, ArchiveStatus.FAILED, error=message)
            return BatchOutcome(str(root), ids, "failed", error=message, error_kind=kind)
        except BaseException as e:
            ledger.transition_many(ids, ArchiveStatus.FAILED, error=f"[interrupted] {e!r}")
            raise

        ledger.transition_many(ids, ArchiveStatus.ARCHIVED, snapshot_ref=snapshot.snapshot_id)
        outcome = BatchOutcome(str(root), ids, "archived", snapshot_ref=snapshot.snapshot_id)

        if delete_local:
            outcome.deleted, outcome.deletion_failures = self._delete_local(ledger, root, items)
        else:
            logger.info(f"Keeping local copies of {len(ids)} archived entries")

        ledger.recompute_statistics()
        return outcome

    def _verify(self, snapshot: SnapshotRef) -> None:
        """Engine integrity check plus independent presence in the listing."""
        short = snapshot.short_id or snapshot.snapshot_id[:8]
        check = self.engine.check_repository(deep=self.deep_check)
        if not check.ok:
            detail = check.details.strip().splitlines()[-1] if check.details.strip() else "no details"
            raise VerificationFailedError(
                f"Repository integrity check failed after snapshot {short}: {detail}",
                snapshot_id=snapshot.snapshot_id,
            )
        listed = self.engine.list_snapshots()
        if not any(s.matches(snapshot.snapshot_id) for s in listed):
            raise VerificationFailedError(
                f"Snapshot {short} is missing from the repository listing",
                snapshot_id=snapshot.snapshot_id,
            )
        logger.info(f"Snapshot {short} verified")

    def _delete_local(
        self,
        ledger: TrackingLedger,
        root: CanonicalPath,
        items: list[tuple[ArchiveEntry, Path]],
    ) -> tuple[list[str], dict[str, str]]:
        """Remove local copies of archived entries; returns (deleted, failures)."""
        staging_dir = self.resolver.local_path(root)
        deleted: list[str] = []
        failures: dict[str, str] = {}
        for entry, path in items:
            if not (path.exists() or path.is_symlink()):
                logger.info(f"Local copy of {entry.short_id} is already gone: {path}")
            else:
                try:
                    _remove(path)
                except OSError as e:
                    message = f"local copy kept: {e}"
                    logger.warning(f"Could not remove {path} for {entry.short_id}: {e}")
                    ledger.record_deletion_failure(entry.id, message)
                    failures[entry.id] = message
                    continue
            ledger.transition(entry.id, ArchiveStatus.ARCHIVED_AND_DELETED)
            deleted.append(entry.id)
            _prune_empty_parents(path.parent, staging_dir)

        if failures:
            logger.warning(str(PartialDeletionError(failures)))
        return deleted, failures

    # ------------------------------------------------------------------
    # Deferred cleanup and recovery
    # ------------------------------------------------------------------
    def delete_local_copies(self, entries: Iterable[ArchiveEntry]) -> CleanupResult:
        """Remove local copies of entries that were archived but retained.

        Covers entries archived with ``delete_local=False`` and entries whose
        earlier deletion failed. An entry qualifies only while it is
        ``archived`` and its snapshot is still in the repository listing.

        Raises:
            EngineInvocationError: If the snapshot listing cannot be read
        """
        result = CleanupResult()
        listed = self.engine.list_snapshots()
        groups: dict[str, tuple[CanonicalPath, list[tuple[ArchiveEntry, Path]]]] = {}

        for entry in entries:
            reason = None
            try:
                root = self.resolver.staging_root_of(entry)
                current = self.resolver.ledger_for(root).get(entry.id)
                staged_path = self.resolver.local_path(current.staged_location)
            except (InvalidPathError, UnknownEntryError) as e:
                reason = str(e)
            else:
                if current.status != ArchiveStatus.ARCHIVED:
                    reason = f"status is {current.status.value}"
                elif not any(s.matches(current.snapshot_ref) for s in listed):
                    reason = f"snapshot {current.snapshot_ref[:8]} is not in the repository listing"

            if reason is not None:
                logger.warning(f"Not removing local copy of {entry.short_id}: {reason}")
                result.skipped[entry.id] = reason
                continue
            groups.setdefault(str(root), (root, []))[1].append((current, staged_path))

        candidates = [e for _, items in groups.values() for e, _ in items]
        if not candidates:
            logger.info("No local copies to remove")
            return result

        if self.confirm is not None:
            total = sum(e.size_bytes for e in candidates)
            if not self.confirm(candidates, total):
                logger.info("Cleanup cancelled at confirmation")
                result.cancelled = True
                return result

        for root, items in groups.values():
            ledger = self.resolver.ledger_for(root)
            deleted, failures = self._delete_local(ledger, root, items)
            result.deleted.extend(deleted)
            result.deletion_failures.update(failures)
            ledger.recompute_statistics()
        return result

    def recover_stale(self, entries: Iterable[ArchiveEntry]) -> list[str]:
        """Mark entries stuck in ``archiving`` as ``failed``.

        An entry is only left in ``archiving`` when the process died mid-batch.
        Only one cycle runs per staging root at a time, so this must be called
        when no cycle is running. Returns the ids that were moved.
        """
        recovered: list[str] = []
        for entry in entries:
            try:
                root = self.resolver.staging_root_of(entry)
                ledger = self.resolver.ledger_for(root)
                current = ledger.get(entry.id)
            except (InvalidPathError, UnknownEntryError) as e:
                logger.warning(f"Cannot recover {entry.short_id}: {e}")
                continue
            if current.status != ArchiveStatus.ARCHIVING:
                continue
            ledger.transition(
                entry.id,
                ArchiveStatus.FAILED,
                error="[interrupted] archive cycle did not finish; no local file was removed",
            )
            logger.warning(f"Recovered {entry.short_id} from an interrupted archive cycle")
            recovered.append(entry.id)
        return recovered

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------
    def restore(self, entry: ArchiveEntry, target: Path) -> Path:
        """Restore an archived entry from its snapshot into ``target``.

        The engine recreates the staged path below ``target``.

        Raises:
            ColdArchiveError: If the entry has no snapshot
        """
        if not entry.status.is_archived or not entry.snapshot_ref:
            raise ColdArchiveError(
                f"Entry {entry.short_id} is {entry.status.value}; only archived entries can be restored"
            )
        staged_path = self.resolver.local_path(entry.staged_location)
        target = Path(target)
        target.mkdir(parents=True, exist_ok=True)
        self.engine.restore(entry.snapshot_ref, target, include=[str(staged_path)])
        logger.info(f"Restored {entry.short_id} from snapshot {entry.snapshot_ref[:8]} into {target}")
        return target


__all__ = [
    "ConfirmFn",
    "NotifyFn",
    "DEFAULT_TAGS",
    "ArchiveLifecycleController",
]
