# src/coldarchive/errors.py
from __future__ import annotations

from typing import Optional


class ColdArchiveError(Exception):
    """Base class for all coldarchive errors."""

    pass


class InvalidPathError(ColdArchiveError):
    """Raised when a source path does not exist or cannot be resolved to a root."""

    pass


class StagingConflictError(ColdArchiveError):
    """Raised when the staging destination for an item is already occupied."""

    pass


class RegistryError(ColdArchiveError):
    """Raised when the staging-root registry cannot be read or written."""

    pass


class LedgerError(ColdArchiveError):
    """Base class for tracking-ledger misuse and corruption."""

    pass


class UnknownEntryError(LedgerError):
    """Raised when an entry id is not present in the ledger."""

    def __init__(self, entry_id: str) -> None:
        super().__init__(f"Unknown archive entry: {entry_id}")
        self.entry_id = entry_id


class InvalidTransitionError(LedgerError):
    """Raised when a status change is not in the lifecycle transition table."""

    def __init__(self, entry_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Invalid transition for {entry_id}: {current} -> {requested}"
        )
        self.entry_id = entry_id
        self.current = current
        self.requested = requested


class LedgerFormatError(LedgerError):
    """Raised when a ledger shard cannot be read or parsed at all."""

    pass


class EngineInvocationError(ColdArchiveError):
    """Raised when the backup engine is unreachable or exits unsuccessfully.

    Attributes:
        kind: One of ``unreachable``, ``authentication``, ``failed``, ``malformed``
        returncode: Process exit code, if the process ran
        stderr: Captured standard error, if any
    """

    def __init__(
        self,
        message: str,
        kind: str = "failed",
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.returncode = returncode
        self.stderr = stderr


class VerificationFailedError(ColdArchiveError):
    """Raised when a snapshot was created but could not be verified."""

    def __init__(self, message: str, snapshot_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.snapshot_id = snapshot_id


class PartialDeletionError(ColdArchiveError):
    """Archive succeeded but removing some local copies failed.

    Attributes:
        failures: Mapping of entry id to the error message for that entry
    """

    def __init__(self, failures: dict[str, str]) -> None:
        super().__init__(
            f"Local cleanup failed for {len(failures)} archived item(s)"
        )
        self.failures = dict(failures)


__all__ = [
    "ColdArchiveError",
    "InvalidPathError",
    "StagingConflictError",
    "RegistryError",
    "LedgerError",
    "UnknownEntryError",
    "InvalidTransitionError",
    "LedgerFormatError",
    "EngineInvocationError",
    "VerificationFailedError",
    "PartialDeletionError",
]
