"""Backup engine interface and the restic command-line adapter.

The engine is an external collaborator: it creates content-addressed,
encrypted snapshots, checks repository integrity, lists snapshots and
restores them. This module only wraps those calls; a nonzero exit or
output that cannot be parsed is a hard failure of the calling step.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from coldarchive.errors import EngineInvocationError

logger = logging.getLogger(__name__)

# restic exit codes
RESTIC_EXIT_NO_REPOSITORY = 10
RESTIC_EXIT_WRONG_PASSWORD = 12

_AUTH_MARKERS = ("wrong password", "no key found", "access denied", "403 forbidden", "invalid credentials")
_UNREACHABLE_MARKERS = ("repository does not exist", "unable to open", "connection refused", "no such host")


@dataclass(frozen=True)
class SnapshotRef:
    """Identifier of a freshly created snapshot."""

    snapshot_id: str
    short_id: Optional[str] = None


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a repository integrity check."""

    ok: bool
    details: str = ""


@dataclass(frozen=True)
class SnapshotInfo:
    """One snapshot as listed by the engine."""

    id: str
    short_id: str = ""
    time: Optional[datetime] = None
    tags: tuple[str, ...] = field(default_factory=tuple)
    paths: tuple[str, ...] = field(default_factory=tuple)

    def matches(self, ref: Optional[str]) -> bool:
        """True if ``ref`` names this snapshot (short and long ids coexist)."""
        if not ref:
            return False
        return self.id.startswith(ref) or ref.startswith(self.id) or ref == self.short_id


class BackupEngine(ABC):
    """Interface the tracking subsystem needs from a backup tool."""

    @abstractmethod
    def create_snapshot(self, paths: Sequence[Path], tags: Sequence[str] = ()) -> SnapshotRef:
        """Back up ``paths`` as one snapshot and return its id."""

    @abstractmethod
    def check_repository(self, deep: bool = False) -> CheckResult:
        """Run the engine's own integrity check."""

    @abstractmethod
    def list_snapshots(self) -> list[SnapshotInfo]:
        """List every snapshot in the repository."""

    @abstractmethod
    def restore(
        self, snapshot_id: str, target: Path, include: Optional[Sequence[str]] = None
    ) -> None:
        """Restore a snapshot (optionally only ``include`` paths) into ``target``."""


def _parse_restic_time(value: Optional[str]) -> Optional[datetime]:
    """Parse restic's RFC 3339 timestamps, which carry nanoseconds."""
    if not value:
        return None
    text = value.strip().replace("Z", "+00:00")
    text = re.sub(r"(\.\d{6})\d+", r"\1", text)
    try:
        ts = datetime.fromisoformat(text)
    except ValueError:
        logger.warning(f"Unparseable snapshot time: {value!r}")
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class ResticEngine(BackupEngine):
    """Runs the ``restic`` executable with ``--json`` output.

    Args:
        repository: Repository location (``-r``); falls back to RESTIC_REPOSITORY
        password_file: Password file (``--password-file``); credentials are not
            provisioned here
        executable: restic binary name or path
        env: Extra environment variables for every invocation
    """

    def __init__(
        self,
        repository: Optional[str] = None,
        password_file: Optional[str] = None,
        executable: str = "restic",
        env: Optional[dict[str, str]] = None,
    ):
        self.repository = repository
        self.password_file = password_file
        self.executable = executable
        self.env = dict(env or {})

    def _base_cmd(self) -> list[str]:
        cmd = [self.executable]
        if self.repository:
            cmd += ["-r", self.repository]
        if self.password_file:
            cmd += ["--password-file", str(self.password_file)]
        return cmd

    def _run(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess:
        cmd = self._base_cmd() + args
        logger.debug(f"Running: {shlex.join(cmd)}")
        env = dict(os.environ)
        env.update(self.env)
        try:
            proc = subprocess.run(cmd, check=False, capture_output=True, text=True, env=env)
        except FileNotFoundError as e:
            raise EngineInvocationError(
                f"Backup engine not found: {self.executable}", kind="unreachable"
            ) from e
        except OSError as e:
            raise EngineInvocationError(
                f"Cannot start backup engine {self.executable}: {e}", kind="unreachable"
            ) from e

        if check and proc.returncode != 0:
            raise self._error(proc, args[0])
        return proc

    @staticmethod
    def _classify(returncode: int, stderr: str) -> str:
        low = stderr.lower()
        if returncode == RESTIC_EXIT_WRONG_PASSWORD or any(m in low for m in _AUTH_MARKERS):
            return "authentication"
        if returncode == RESTIC_EXIT_NO_REPOSITORY or any(m in low for m in _UNREACHABLE_MARKERS):
            return "unreachable"
        return "failed"

    def _error(self, proc: subprocess.CompletedProcess, action: str) -> EngineInvocationError:
        stderr = (proc.stderr or "").strip()
        kind = self._classify(proc.returncode, stderr)
        last_line = stderr.splitlines()[-1] if stderr else "no error output"
        return EngineInvocationError(
            f"restic {action} failed ({kind}, exit {proc.returncode}): {last_line}",
            kind=kind,
            returncode=proc.returncode,
            stderr=stderr,
        )

    def create_snapshot(self, paths: Sequence[Path], tags: Sequence[str] = ()) -> SnapshotRef:
        if not paths:
            raise ValueError("create_snapshot needs at least one path")
        args = ["backup", "--json"]
        for tag in tags:
            args += ["--tag", tag]
        args += [str(p) for p in paths]
        proc = self._run(args)

        summary = None
        for line in proc.stdout.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                continue
            if message.get("message_type") == "summary":
                summary = message

        snapshot_id = (summary or {}).get("snapshot_id")
        if not snapshot_id:
            raise EngineInvocationError(
                "restic backup finished without reporting a snapshot id",
                kind="malformed",
                returncode=proc.returncode,
                stderr=proc.stderr or "",
            )
        logger.info(f"Created snapshot {snapshot_id[:8]} covering {len(paths)} path(s)")
        return SnapshotRef(snapshot_id=snapshot_id, short_id=snapshot_id[:8])

    def check_repository(self, deep: bool = False) -> CheckResult:
        args = ["check"] + (["--read-data"] if deep else [])
        proc = self._run(args, check=False)
        output = "\n".join(s for s in (proc.stdout.strip(), (proc.stderr or "").strip()) if s)
        if proc.returncode == 0:
            return CheckResult(ok=True, details=output)

        kind = self._classify(proc.returncode, proc.stderr or "")
        if kind != "failed":
            raise self._error(proc, "check")
        logger.error(f"Repository check failed (exit {proc.returncode})")
        return CheckResult(ok=False, details=output)

    def list_snapshots(self) -> list[SnapshotInfo]:
        proc = self._run(["snapshots", "--json"])
        try:
            data = json.loads(proc.stdout or "null")
        except json.JSONDecodeError as e:
            raise EngineInvocationError(
                f"restic snapshots returned invalid JSON: {e}", kind="malformed"
            ) from e
        if data is None:
            return []
        if not isinstance(data, list):
            raise EngineInvocationError("restic snapshots did not return a list", kind="malformed")

        snapshots = []
        for item in data:
            if not isinstance(item, dict) or not item.get("id"):
                raise EngineInvocationError(f"Unexpected snapshot record: {item!r}", kind="malformed")
            snapshots.append(
                SnapshotInfo(
                    id=item["id"],
                    short_id=item.get("short_id") or item["id"][:8],
                    time=_parse_restic_time(item.get("time")),
                    tags=tuple(item.get("tags") or ()),
                    paths=tuple(item.get("paths") or ()),
                )
            )
        return snapshots

    def restore(
        self, snapshot_id: str, target: Path, include: Optional[Sequence[str]] = None
    ) -> None:
        args = ["restore", snapshot_id, "--target", str(target)]
        for pattern in include or ():
            args += ["--include", pattern]
        self._run(args)
        logger.info(f"Restored snapshot {snapshot_id[:8]} into {target}")


__all__ = [
    "SnapshotRef",
    "CheckResult",
    "SnapshotInfo",
    "BackupEngine",
    "ResticEngine",
]
