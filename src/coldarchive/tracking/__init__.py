"""Archive tracking: staging, per-root ledgers, lifecycle and audit.

Provides machine-independent path identities, per-volume staging roots with
their own ledger shards, the archive lifecycle state machine with
verify-before-delete, a merged read-only view over all shards, and a
consistency audit against the backup repository.

Example:
    >>> from coldarchive.tracking import PathCanonicalizer, StagingRegistry, StagingRootResolver, Stager
    >>> resolver = StagingRootResolver(PathCanonicalizer(), StagingRegistry(registry_path))
    >>> entry = Stager(resolver).stage("/mnt/nas/photos/2019")
"""
from coldarchive.tracking.paths import (
    NETWORK_FSTYPES,
    CanonicalPath,
    MountPoint,
    MountTable,
    PathCanonicalizer,
    canonicalize,
)
from coldarchive.tracking.types import (
    TRANSITIONS,
    SUBMITTABLE,
    ArchiveStatus,
    ArchiveEntry,
    LedgerStatistics,
    BatchOutcome,
    CycleResult,
    CleanupResult,
    can_transition,
)
from coldarchive.tracking.cost import (
    STORAGE_PRICING,
    DEFAULT_TIER,
    estimate_monthly_cost,
    make_cost_estimator,
    human_bytes,
)
from coldarchive.tracking.ledger import (
    LEDGER_VERSION,
    TrackingLedger,
    open_ledger,
)
from coldarchive.tracking.staging import (
    DEFAULT_STAGING_DIR,
    DEFAULT_LEDGER_FILENAME,
    StagingRegistry,
    StagingRootResolver,
    Stager,
    measure_item,
)
from coldarchive.tracking.engine import (
    SnapshotRef,
    CheckResult,
    SnapshotInfo,
    BackupEngine,
    ResticEngine,
)
from coldarchive.tracking.aggregate import (
    LEGACY_SOURCE,
    SourcedEntry,
    LoadError,
    QuarantinedRecord,
    AggregatedView,
    aggregate,
)
from coldarchive.tracking.lifecycle import ArchiveLifecycleController
from coldarchive.tracking.audit import (
    AuditIssue,
    DanglingReferenceError,
    MissingReferenceWarning,
    QuarantinedRecordError,
    OrphanSnapshotInfo,
    RepositoryCheckFailed,
    AuditReport,
    audit,
    run_audit,
)

__all__ = [
    # Paths
    "NETWORK_FSTYPES",
    "CanonicalPath",
    "MountPoint",
    "MountTable",
    "PathCanonicalizer",
    "canonicalize",
    # Types
    "TRANSITIONS",
    "SUBMITTABLE",
    "ArchiveStatus",
    "ArchiveEntry",
    "LedgerStatistics",
    "BatchOutcome",
    "CycleResult",
    "CleanupResult",
    "can_transition",
    # Cost
    "STORAGE_PRICING",
    "DEFAULT_TIER",
    "estimate_monthly_cost",
    "make_cost_estimator",
    "human_bytes",
    # Ledger
    "LEDGER_VERSION",
    "TrackingLedger",
    "open_ledger",
    # Staging
    "DEFAULT_STAGING_DIR",
    "DEFAULT_LEDGER_FILENAME",
    "StagingRegistry",
    "StagingRootResolver",
    "Stager",
    "measure_item",
    # Engine
    "SnapshotRef",
    "CheckResult",
    "SnapshotInfo",
    "BackupEngine",
    "ResticEngine",
    # Aggregation
    "LEGACY_SOURCE",
    "SourcedEntry",
    "LoadError",
    "QuarantinedRecord",
    "AggregatedView",
    "aggregate",
    # Lifecycle
    "ArchiveLifecycleController",
    # Audit
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
