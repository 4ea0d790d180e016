"""Cross-check the aggregated ledger against the remote snapshot list.

Checks:
    1. Every archived entry references a snapshot the repository still lists
       (DanglingReferenceError), and carries a reference at all
       (MissingReferenceWarning).
    2. Every remote snapshot is referenced by some entry (OrphanSnapshotInfo).
    3. The engine's own repository check passed (RepositoryCheckFailed).
    4. No shard holds records its ledger had to quarantine
       (QuarantinedRecordError, or MissingReferenceWarning for an archived
       record whose only defect is the missing snapshot reference).

The auditor reports; it never raises and never changes a ledger.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from coldarchive.errors import ColdArchiveError
from coldarchive.tracking.aggregate import AggregatedView, QuarantinedRecord
from coldarchive.tracking.engine import BackupEngine, CheckResult, SnapshotInfo
from coldarchive.tracking.types import ArchiveStatus

logger = logging.getLogger(__name__)

ERROR = "error"
WARNING = "warning"
INFO = "info"


@dataclass(frozen=True)
class AuditIssue:
    """Base for issues found by the auditor."""

    message: str
    entry_id: Optional[str] = None
    snapshot_ref: Optional[str] = None
    source: Optional[str] = None

    severity = INFO

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "severity": self.severity,
            "message": self.message,
            "entry_id": self.entry_id,
            "snapshot_ref": self.snapshot_ref,
            "source": self.source,
        }


@dataclass(frozen=True)
class DanglingReferenceError(AuditIssue):
    """Archived entry points at a snapshot the repository does not list."""

    severity = ERROR


@dataclass(frozen=True)
class MissingReferenceWarning(AuditIssue):
    """Archived entry has no snapshot reference at all."""

    severity = WARNING


@dataclass(frozen=True)
class QuarantinedRecordError(AuditIssue):
    """A shard record failed validation and is excluded from every query."""

    severity = ERROR


@dataclass(frozen=True)
class OrphanSnapshotInfo(AuditIssue):
    """Remote snapshot that no ledger entry references."""

    severity = INFO


@dataclass(frozen=True)
class RepositoryCheckFailed(AuditIssue):
    """The engine's integrity check failed or could not be run."""

    severity = ERROR


@dataclass
class AuditReport:
    """All issues plus the overall verdict."""

    issues: list[AuditIssue] = field(default_factory=list)
    repository_ok: bool = False

    @property
    def errors(self) -> list[AuditIssue]:
        return [i for i in self.issues if i.severity == ERROR]

    @property
    def warnings(self) -> list[AuditIssue]:
        return [i for i in self.issues if i.severity == WARNING]

    @property
    def infos(self) -> list[AuditIssue]:
        return [i for i in self.issues if i.severity == INFO]

    @property
    def passed(self) -> bool:
        return self.repository_ok and not self.errors

    def of_kind(self, kind: type) -> list[AuditIssue]:
        return [i for i in self.issues if isinstance(i, kind)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "repository_ok": self.repository_ok,
            "issues": [i.to_dict() for i in self.issues],
        }

    def __str__(self) -> str:
        lines = [
            f"Audit {'PASSED' if self.passed else 'FAILED'}: "
            f"{len(self.errors)} error(s), {len(self.warnings)} warning(s), {len(self.infos)} info",
        ]
        for issue in self.issues:
            lines.append(f"  [{issue.severity}] {issue.kind}: {issue.message}")
        return "\n".join(lines)


def audit(
    view: AggregatedView,
    remote_snapshots: Sequence[SnapshotInfo],
    repository_check: Optional[CheckResult] = None,
) -> AuditReport:
    """Compare ledger entries with the remote snapshot list.

    Args:
        view: Aggregated ledger view
        remote_snapshots: Snapshots the engine lists
        repository_check: Result of the engine's integrity check; None counts
            as not passed

    Returns:
        AuditReport; pass requires no error-severity issue and a passed check
    """
    report = AuditReport(repository_ok=bool(repository_check and repository_check.ok))
    referenced: set[str] = set()

    for sourced in view.entries:
        entry = sourced.entry
        if not entry.status.is_archived:
            continue
        if not entry.snapshot_ref:
            report.issues.append(
                MissingReferenceWarning(
                    f"Entry {entry.short_id} is {entry.status.value} but has no snapshot reference",
                    entry_id=entry.id,
                    source=sourced.source,
                )
            )
            continue
        matched = [s for s in remote_snapshots if s.matches(entry.snapshot_ref)]
        if not matched:
            report.issues.append(
                DanglingReferenceError(
                    f"Entry {entry.short_id} references snapshot {entry.snapshot_ref} "
                    f"which the repository does not list",
                    entry_id=entry.id,
                    snapshot_ref=entry.snapshot_ref,
                    source=sourced.source,
                )
            )
        referenced.update(s.id for s in matched)

    for quarantined in view.quarantined:
        issue, snapshot_ref = _quarantine_issue(quarantined)
        report.issues.append(issue)
        if snapshot_ref:
            referenced.update(s.id for s in remote_snapshots if s.matches(snapshot_ref))

    for snapshot in remote_snapshots:
        if snapshot.id not in referenced:
            report.issues.append(
                OrphanSnapshotInfo(
                    f"Snapshot {snapshot.short_id or snapshot.id[:8]} is not referenced by any ledger entry",
                    snapshot_ref=snapshot.id,
                )
            )

    if repository_check is not None and not repository_check.ok:
        report.issues.append(
            RepositoryCheckFailed(f"Repository integrity check failed: {repository_check.details.strip()}")
        )
    for load_error in view.errors:
        logger.warning(f"Audit excludes {load_error.source}: {load_error.reason}")

    logger.info(
        f"Audit: {len(report.errors)} error(s), {len(report.warnings)} warning(s), "
        f"{len(report.infos)} info"
    )
    return report


def _quarantine_issue(quarantined: QuarantinedRecord) -> tuple[AuditIssue, Optional[str]]:
    raw = quarantined.record if isinstance(quarantined.record, dict) else {}
    entry_id = quarantined.entry_id
    label = entry_id[:8] if entry_id else "without id"
    snapshot_ref = raw.get("snapshot_ref") if isinstance(raw.get("snapshot_ref"), str) else None
    archived = raw.get("status") in (ArchiveStatus.ARCHIVED.value, ArchiveStatus.ARCHIVED_AND_DELETED.value)

    if archived and not snapshot_ref:
        issue: AuditIssue = MissingReferenceWarning(
            f"Quarantined record {label} is {raw['status']} but has no snapshot reference "
            f"({quarantined.reason})",
            entry_id=entry_id,
            source=quarantined.source,
        )
    else:
        issue = QuarantinedRecordError(
            f"Record {label} could not be loaded and is excluded from the ledger: {quarantined.reason}",
            entry_id=entry_id,
            snapshot_ref=snapshot_ref,
            source=quarantined.source,
        )
    return issue, snapshot_ref


def run_audit(view: AggregatedView, engine: BackupEngine, deep: bool = False) -> AuditReport:
    """Query the engine and audit the view. Engine failures become issues."""
    try:
        check = engine.check_repository(deep=deep)
    except ColdArchiveError as e:
        check = CheckResult(ok=False, details=str(e))

    try:
        snapshots = engine.list_snapshots()
    except ColdArchiveError as e:
        report = AuditReport(repository_ok=False)
        report.issues.append(RepositoryCheckFailed(f"Cannot list snapshots: {e}"))
        if not check.ok:
            report.issues.append(
                RepositoryCheckFailed(f"Repository integrity check failed: {check.details.strip()}")
            )
        return report

    return audit(view, snapshots, check)


__all__ = [
    "ERROR",
    "WARNING",
    "INFO",
    "AuditIssue",
    "DanglingReferenceError",
    "MissingReferenceWarning",
    "QuarantinedRecordError",
    "OrphanSnapshotInfo",
    "RepositoryCheckFailed",
    "AuditReport",
    "audit",
    "run_audit",
]
