# src/coldarchive/cli.py
"""coldarchive command-line interface.

Usage examples:
    coldarchive stage /mnt/nas/photos/2019 --note "raw scans"
    coldarchive archive --yes
    coldarchive cleanup --yes
    coldarchive list --status failed
    coldarchive verify --deep
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from coldarchive import __version__
from coldarchive.config import Settings, load_settings
from coldarchive.errors import ColdArchiveError, UnknownEntryError
from coldarchive.notifications import telegram
from coldarchive.tracking.aggregate import AggregatedView, SourcedEntry, aggregate
from coldarchive.tracking.audit import run_audit
from coldarchive.tracking.cost import human_bytes
from coldarchive.tracking.engine import BackupEngine, ResticEngine
from coldarchive.tracking.lifecycle import ArchiveLifecycleController
from coldarchive.tracking.paths import MountTable, PathCanonicalizer
from coldarchive.tracking.staging import Stager, StagingRegistry, StagingRootResolver
from coldarchive.tracking.types import ArchiveEntry, ArchiveStatus, CycleResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------
@dataclass
class Services:
    """Collaborators a command needs, built once per invocation."""

    settings: Settings
    resolver: StagingRootResolver
    engine: BackupEngine

    @property
    def registry(self) -> StagingRegistry:
        return self.resolver.registry

    def view(self) -> AggregatedView:
        return aggregate(
            self.registry.roots(),
            self.resolver.ledger_for,
            legacy_path=self.settings.legacy_ledger_path,
        )

    def controller(
        self, *, yes: bool = False, keep_local: bool = False, cleanup: bool = False
    ) -> ArchiveLifecycleController:
        notify = None
        if self.settings.notifications.enabled and telegram.is_configured():
            notify = telegram.notify_cycle
        return ArchiveLifecycleController(
            self.resolver,
            self.engine,
            delete_local=self.settings.archive.delete_after_archive and not keep_local,
            deep_check=self.settings.engine.deep_check,
            tags=self.settings.engine.tags,
            confirm=None if yes else (prompt_cleanup if cleanup else prompt_confirm),
            notify=notify,
        )


def build_services(
    settings: Settings,
    *,
    engine: Optional[BackupEngine] = None,
    mounts: Optional[MountTable] = None,
) -> Services:
    resolver = StagingRootResolver(
        PathCanonicalizer(mounts),
        StagingRegistry(settings.registry_path),
        staging_dir_name=settings.staging.dir_name,
        ledger_filename=settings.staging.ledger_filename,
        cost_fn=settings.cost_estimator(),
        currency=settings.cost.currency,
    )
    if engine is None:
        engine = ResticEngine(
            repository=settings.engine.repository,
            password_file=settings.engine.password_file,
            executable=settings.engine.executable,
            env=settings.engine.env,
        )
    return Services(settings=settings, resolver=resolver, engine=engine)


def _ask(action: str, candidates: list[ArchiveEntry], total_bytes: int) -> bool:
    print(f"About to {action} {len(candidates)} item(s), {human_bytes(total_bytes)}:")
    for entry in candidates:
        print(f"  {entry.short_id}  {human_bytes(entry.size_bytes):>10}  {entry.original_location}")
    try:
        answer = input("Proceed? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def prompt_confirm(candidates: list[ArchiveEntry], total_bytes: int) -> bool:
    """Interactive confirmation prompt for an archive cycle."""
    return _ask("archive", candidates, total_bytes)


def prompt_cleanup(candidates: list[ArchiveEntry], total_bytes: int) -> bool:
    """Interactive confirmation before removing local copies of archived items."""
    return _ask("remove the local copy of", candidates, total_bytes)


def _resolve_one(view: AggregatedView, id_or_prefix: str) -> SourcedEntry:
    matches = view.find(id_or_prefix)
    if not matches:
        raise UnknownEntryError(id_or_prefix)
    if len(matches) > 1:
        raise ColdArchiveError(
            f"Id prefix {id_or_prefix!r} is ambiguous: "
            + ", ".join(m.entry.short_id for m in matches)
        )
    return matches[0]


def _print_cycle(result: CycleResult, fmt: str) -> int:
    if fmt == "json":
        print(
            json.dumps(
                {
                    "cancelled": result.cancelled,
                    "archived": result.archived,
                    "deleted": result.deleted,
                    "failed": result.failed,
                    "skipped": result.skipped,
                    "deletion_failures": result.deletion_failures,
                    "batches": [
                        {
                            "staging_root": b.staging_root,
                            "status": b.status,
                            "snapshot_ref": b.snapshot_ref,
                            "error": b.error,
                            "error_kind": b.error_kind,
                            "entry_ids": b.entry_ids,
                        }
                        for b in result.batches
                    ],
                },
                indent=2,
            )
        )
    else:
        print(result)
        partial = result.partial_deletion_error()
        if partial is not None:
            print(f"\nWarning: {partial}")
    if result.failed or result.deletion_failures:
        return 1
    return 0


# ---------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------
def cmd_stage(args: argparse.Namespace, services: Services) -> int:
    """Move items into their staging roots."""
    stager = Stager(services.resolver)
    entries, skipped = stager.stage_many(args.paths, note=args.note or "")
    for entry in entries:
        print(
            f"Staged {entry.short_id}  {entry.original_location} "
            f"({human_bytes(entry.size_bytes)}, {entry.item_count} file(s))"
        )
    for path, reason in skipped.items():
        print(f"Skipped {path}: {reason}")
    return 0 if not skipped else 1


def cmd_archive(args: argparse.Namespace, services: Services) -> int:
    """Archive every staged entry (optionally under one staging root)."""
    view = services.view()
    candidates = [s for s in view.by_status(ArchiveStatus.STAGED)]
    if args.root:
        candidates = [s for s in candidates if s.source == args.root]
    if not candidates:
        print("Nothing staged.")
        return 0
    controller = services.controller(yes=args.yes, keep_local=args.keep_local)
    result = controller.run_archive_cycle([s.entry for s in candidates])
    return _print_cycle(result, args.format)


def cmd_retry(args: argparse.Namespace, services: Services) -> int:
    """Resubmit failed entries, plus any left in ``archiving`` by a crash."""
    view = services.view()
    failed = [s.entry for s in view.by_status(ArchiveStatus.FAILED, ArchiveStatus.ARCHIVING)]
    if not failed:
        print("No failed entries.")
        return 0
    controller = services.controller(yes=args.yes, keep_local=args.keep_local)
    result = controller.retry_failed(failed)
    return _print_cycle(result, args.format)


def cmd_cleanup(args: argparse.Namespace, services: Services) -> int:
    """Remove local copies of archived entries that were kept."""
    view = services.view()
    if args.ids:
        candidates = [_resolve_one(view, i).entry for i in args.ids]
    else:
        candidates = [s.entry for s in view.by_status(ArchiveStatus.ARCHIVED)]
    if not candidates:
        print("No archived entries with a local copy.")
        return 0
    result = services.controller(yes=args.yes, cleanup=True).delete_local_copies(candidates)
    if args.format == "json":
        print(
            json.dumps(
                {
                    "cancelled": result.cancelled,
                    "deleted": result.deleted,
                    "skipped": result.skipped,
                    "deletion_failures": result.deletion_failures,
                },
                indent=2,
            )
        )
    else:
        print(result)
    return 0 if not result.deletion_failures else 1


def cmd_list(args: argparse.Namespace, services: Services) -> int:
    """List entries across all reachable staging roots."""
    view = services.view()
    if args.status:
        view = AggregatedView(
            entries=view.by_status(*args.status),
            statistics=view.statistics,
            sources=view.sources,
            errors=view.errors,
        )

    if args.format == "json":
        print(json.dumps(view.as_dict(), indent=2))
        return 0

    if not view.entries:
        print("No entries.")
    else:
        df = view.to_frame()
        df["id"] = df["id"].str[:8]
        df["size"] = df["size_bytes"].map(human_bytes)
        cols = ["id", "status", "size", "item_count", "original_location", "snapshot_ref"]
        print(df[cols].to_string(index=False))
    for err in view.errors:
        print(f"(skipped {err.source}: {err.reason})")
    return 0


def cmd_stats(args: argparse.Namespace, services: Services) -> int:
    """Show rolled-up statistics."""
    view = services.view()
    stats = view.statistics
    if args.format == "json":
        print(
            json.dumps(
                {
                    "statistics": stats.to_dict(),
                    "by_status": view.summary_by_status(),
                    "_sources": view.sources,
                },
                indent=2,
            )
        )
        return 0

    print("=== Archive Statistics ===\n")
    print(f"Archived: {stats.total_items} item(s), {stats.total_files} file(s), "
          f"{human_bytes(stats.total_archived_bytes)}")
    last = stats.last_archive_date.isoformat() if stats.last_archive_date else "never"
    print(f"Last archive: {last}")
    print(f"Estimated cost: {stats.estimated_monthly_cost:.4f} {stats.currency}/month")
    print("\nBy status:")
    for status, count in view.summary_by_status().items():
        print(f"  {status}: {count}")
    print("\nSources:")
    for source in view.sources:
        print(f"  {source}")
    for err in view.errors:
        print(f"  [offline] {err.source}: {err.reason}")
    return 0


def cmd_verify(args: argparse.Namespace, services: Services) -> int:
    """Audit ledgers against the repository."""
    report = run_audit(services.view(), services.engine, deep=args.deep)
    if args.format == "json":
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(report)
    return 0 if report.passed else 1


def cmd_restore(args: argparse.Namespace, services: Services) -> int:
    """Restore an archived entry from its snapshot."""
    sourced = _resolve_one(services.view(), args.id)
    controller = services.controller(yes=True)
    target = controller.restore(sourced.entry, Path(args.target))
    print(f"Restored {sourced.entry.short_id} into {target}")
    return 0


def cmd_note(args: argparse.Namespace, services: Services) -> int:
    """Set the note of an entry."""
    sourced = _resolve_one(services.view(), args.id)
    root = services.resolver.staging_root_of(sourced.entry)
    services.resolver.ledger_for(root).set_note(sourced.entry.id, args.text)
    print(f"Updated note for {sourced.entry.short_id}")
    return 0


def cmd_roots(args: argparse.Namespace, services: Services) -> int:
    """List registered staging roots."""
    roots = services.registry.roots()
    if args.format == "json":
        print(json.dumps(roots, indent=2))
        return 0
    if not roots:
        print("No staging roots registered.")
    for root in roots:
        print(root)
    return 0


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="coldarchive",
        description="Stage files, archive them to a restic repository, and track them per volume.",
    )
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("--config", help="Path to config.yaml (default: <config dir>/config.yaml)")
    ap.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    def with_format(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
        p.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
        return p

    p_stage = sub.add_parser("stage", help="Move files or folders into staging")
    p_stage.add_argument("paths", nargs="+", help="Files or folders to stage")
    p_stage.add_argument("--note", help="Free-text note stored with each entry")
    p_stage.set_defaults(func=cmd_stage)

    p_archive = with_format(sub.add_parser("archive", help="Archive all staged entries"))
    p_archive.add_argument("--root", help="Only archive entries of this staging root")
    p_archive.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    p_archive.add_argument("--keep-local", action="store_true", help="Keep local copies after archiving")
    p_archive.set_defaults(func=cmd_archive)

    p_retry = with_format(sub.add_parser("retry", help="Resubmit failed entries"))
    p_retry.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    p_retry.add_argument("--keep-local", action="store_true", help="Keep local copies after archiving")
    p_retry.set_defaults(func=cmd_retry)

    p_cleanup = with_format(sub.add_parser("cleanup", help="Remove local copies of archived entries"))
    p_cleanup.add_argument("ids", nargs="*", help="Entry ids or unique prefixes (default: all archived)")
    p_cleanup.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    p_cleanup.set_defaults(func=cmd_cleanup)

    p_list = with_format(sub.add_parser("list", help="List tracked entries"))
    p_list.add_argument(
        "--status",
        action="append",
        choices=[s.value for s in ArchiveStatus],
        help="Filter by status (repeatable)",
    )
    p_list.set_defaults(func=cmd_list)

    p_stats = with_format(sub.add_parser("stats", help="Show archive statistics"))
    p_stats.set_defaults(func=cmd_stats)

    p_verify = with_format(sub.add_parser("verify", help="Audit ledgers against the repository"))
    p_verify.add_argument("--deep", action="store_true", help="Read all pack data during the check")
    p_verify.set_defaults(func=cmd_verify)

    p_restore = sub.add_parser("restore", help="Restore an archived entry")
    p_restore.add_argument("id", help="Entry id or unique prefix")
    p_restore.add_argument("--target", default="restored", help="Target directory (default: ./restored)")
    p_restore.set_defaults(func=cmd_restore)

    p_note = sub.add_parser("note", help="Set the note of an entry")
    p_note.add_argument("id", help="Entry id or unique prefix")
    p_note.add_argument("text", help="New note text")
    p_note.set_defaults(func=cmd_note)

    p_roots = with_format(sub.add_parser("roots", help="List registered staging roots"))
    p_roots.set_defaults(func=cmd_roots)

    return ap


def _configure_logging(verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = getattr(logging, os.getenv("COLDARCHIVE_LOG_LEVEL", "WARNING").upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def main(argv: Optional[list[str]] = None, services: Optional[Services] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        if services is None:
            services = build_services(load_settings(args.config))
        return int(args.func(args, services))
    except ColdArchiveError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
