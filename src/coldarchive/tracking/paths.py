"""Canonical, machine-independent names for filesystem locations.

A location is named by the storage it lives on (a network share or a local
volume) plus a relative path inside that storage. Two machines that map the
same share to different drive letters or mount points therefore agree on the
identity of every file on it.

Example:
    >>> canon = PathCanonicalizer(MountTable([MountPoint("/mnt/nas", "//nas/Media", "cifs")]))
    >>> canon.canonicalize("/mnt/nas/photos/2019")
    CanonicalPath(root='//nas/Media', relative='photos/2019')
"""
from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Union

import psutil

from coldarchive.errors import InvalidPathError

logger = logging.getLogger(__name__)

# Filesystem types that are always backed by a remote server
NETWORK_FSTYPES = {
    "cifs",
    "smbfs",
    "smb3",
    "nfs",
    "nfs4",
    "afpfs",
    "fuse.sshfs",
    "webdav",
    "davfs",
}

_DRIVE_RE = re.compile(r"^([A-Za-z]):(?:/(.*))?$")
_HOST_EXPORT_RE = re.compile(r"^(?:[^@/\\]+@)?([^:/\\]+):(/.*)$")
_NET_USE_RE = re.compile(r"\b([A-Za-z]:)\s+(\\\\\S+)")

PathLike = Union[str, "os.PathLike[str]", "CanonicalPath"]


def _slashes(text: str) -> str:
    return text.replace("\\", "/")


def _norm(text: str, casefold: bool = False) -> str:
    """Normalize a mount point or path string for prefix comparison."""
    s = _slashes(text)
    if len(s) > 1:
        s = s.rstrip("/") or "/"
    m = _DRIVE_RE.match(s)
    if m and not m.group(2):
        s = f"{m.group(1).upper()}:"
    return s.lower() if casefold else s


def _is_under(path: str, prefix: str) -> bool:
    if prefix == "/":
        return path.startswith("/")
    return path == prefix or path.startswith(prefix + "/")


@dataclass(frozen=True)
class CanonicalPath:
    """A storage-identity-normalized location: ``root`` plus ``relative``.

    Attributes:
        root: ``//host/share`` for network storage, the mount point
            (``/``, ``/mnt/data``) or drive (``C:``) for a local volume
        relative: ``/``-separated path below ``root``; empty for the root itself
    """

    root: str
    relative: str = ""

    def __post_init__(self) -> None:
        parts = [p for p in _slashes(self.relative).split("/") if p and p != "."]
        object.__setattr__(self, "relative", "/".join(parts))

    def __str__(self) -> str:
        if not self.relative:
            return self.root
        if self.root.endswith("/"):
            return self.root + self.relative
        return f"{self.root}/{self.relative}"

    @property
    def is_network(self) -> bool:
        return self.root.startswith("//")

    @property
    def parts(self) -> list[str]:
        return self.relative.split("/") if self.relative else []

    @property
    def name(self) -> str:
        parts = self.parts
        return parts[-1] if parts else self.root

    def joinpath(self, *segments: str) -> CanonicalPath:
        tail = "/".join(_slashes(s).strip("/") for s in segments if s)
        if not self.relative:
            return CanonicalPath(self.root, tail)
        return CanonicalPath(self.root, f"{self.relative}/{tail}" if tail else self.relative)

    def is_relative_to(self, other: CanonicalPath) -> bool:
        if self.root != other.root:
            return False
        if not other.relative:
            return True
        return self.relative == other.relative or self.relative.startswith(other.relative + "/")

    def relative_to(self, other: CanonicalPath) -> str:
        if not self.is_relative_to(other):
            raise ValueError(f"{self} is not inside {other}")
        if not other.relative:
            return self.relative
        return self.relative[len(other.relative):].lstrip("/")

    def to_dict(self) -> dict[str, str]:
        return {"root": self.root, "relative": self.relative}

    @classmethod
    def from_dict(cls, data: dict) -> CanonicalPath:
        return cls(root=str(data["root"]), relative=str(data.get("relative", "")))

    @classmethod
    def parse(cls, text: str) -> CanonicalPath:
        """Parse the string form of a canonical path.

        Used for legacy ledgers that stored locations as plain strings. A
        POSIX path parses with ``/`` as its root because the volume boundary
        is not recorded in the string.

        Raises:
            InvalidPathError: If the text is not an absolute location
        """
        s = _slashes(text.strip())
        if s.startswith("//"):
            parts = [p for p in s[2:].split("/") if p]
            if len(parts) < 2:
                raise InvalidPathError(f"Network path needs host and share: {text!r}")
            return cls(f"//{parts[0].lower()}/{parts[1]}", "/".join(parts[2:]))
        m = _DRIVE_RE.match(s)
        if m:
            return cls(f"{m.group(1).upper()}:", m.group(2) or "")
        if s.startswith("/"):
            return cls("/", s[1:])
        raise InvalidPathError(f"Not an absolute location: {text!r}")


@dataclass(frozen=True)
class MountPoint:
    """One mounted volume or share as seen from this machine."""

    mount_point: str
    source: str = ""
    fstype: str = ""

    @property
    def is_network(self) -> bool:
        if self.fstype.lower() in NETWORK_FSTYPES:
            return True
        return _slashes(self.source).startswith("//") or bool(_HOST_EXPORT_RE.match(self.source))

    def network_location(self) -> Optional[str]:
        """Return ``//host/share[/sub...]`` for a network mount, else None."""
        if not self.is_network:
            return None
        src = _slashes(self.source)
        if src.startswith("//"):
            rest = src[2:]
        else:
            m = _HOST_EXPORT_RE.match(self.source)
            if not m:
                return None
            rest = m.group(1) + m.group(2)
        parts = [p for p in rest.split("/") if p]
        if len(parts) < 2:
            return None
        parts[0] = parts[0].lower()
        return "//" + "/".join(parts)


def _windows_mapped_drives() -> dict[str, str]:
    """Parse ``net use`` output into ``{"Z:": "\\\\server\\share"}``."""
    try:
        proc = subprocess.run(
            ["net", "use"], check=False, capture_output=True, text=True, timeout=30
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Could not list mapped network drives: {e}")
        return {}
    mapped: dict[str, str] = {}
    for line in proc.stdout.splitlines():
        m = _NET_USE_RE.search(line)
        if m:
            mapped[m.group(1).upper()] = m.group(2)
    return mapped


class MountTable:
    """Mounted volumes and shares, searched by longest mount-point prefix."""

    def __init__(self, mounts: Iterable[MountPoint], casefold: Optional[bool] = None):
        self.casefold = (os.name == "nt") if casefold is None else casefold
        self.mounts = sorted(
            mounts, key=lambda m: len(_norm(m.mount_point)), reverse=True
        )

    @classmethod
    def from_system(cls) -> MountTable:
        """Build the table for this machine via psutil (plus ``net use`` on Windows)."""
        mounts = [
            MountPoint(p.mountpoint, p.device, p.fstype)
            for p in psutil.disk_partitions(all=True)
        ]
        if os.name == "nt":
            mapped = _windows_mapped_drives()
            seen = set()
            rewritten = []
            for m in mounts:
                drive = _norm(m.mount_point)
                seen.add(drive)
                if drive in mapped:
                    m = MountPoint(m.mount_point, mapped[drive], m.fstype)
                rewritten.append(m)
            for drive, unc in mapped.items():
                if drive not in seen:
                    rewritten.append(MountPoint(drive + "\\", unc, "smb"))
            mounts = rewritten
        logger.debug(f"Discovered {len(mounts)} mount points")
        return cls(mounts)

    def find(self, path: str) -> Optional[MountPoint]:
        key = _norm(path, self.casefold)
        for m in self.mounts:
            if _is_under(key, _norm(m.mount_point, self.casefold)):
                return m
        return None

    def find_network(self, location: str) -> Optional[tuple[MountPoint, str]]:
        """Find the mount serving a ``//host/share/...`` location.

        Returns:
            ``(mount, remainder)`` where remainder is the path below the mount
        """
        best: Optional[tuple[MountPoint, str]] = None
        best_len = -1
        for m in self.mounts:
            loc = m.network_location()
            if loc is None or not _is_under(location, loc):
                continue
            if len(loc) > best_len:
                best = (m, location[len(loc):].lstrip("/"))
                best_len = len(loc)
        return best


class PathCanonicalizer:
    """Maps local, mapped-drive and network-share paths to a CanonicalPath.

    The mount table is looked up lazily from the system unless one is given.
    """

    def __init__(self, mounts: Optional[MountTable] = None):
        self._mounts = mounts

    @property
    def mounts(self) -> MountTable:
        if self._mounts is None:
            self._mounts = MountTable.from_system()
        return self._mounts

    def canonicalize(self, path: PathLike) -> CanonicalPath:
        """Return the canonical identity of an existing path.

        Accepts local paths, mapped-drive paths, UNC paths, canonical strings
        and CanonicalPath values; canonicalizing a canonical path returns it
        unchanged.

        Raises:
            InvalidPathError: If the path does not exist or has no resolvable root
        """
        if isinstance(path, CanonicalPath):
            local = self.localize(path)
            if not local.exists():
                raise InvalidPathError(f"Path does not exist: {path}")
            return self._from_resolved(local.resolve())

        text = os.fspath(path)
        if os.name != "nt" and _slashes(text).startswith("//"):
            return self.canonicalize(CanonicalPath.parse(text))

        try:
            resolved = Path(text).expanduser().resolve(strict=True)
        except (OSError, RuntimeError) as e:
            raise InvalidPathError(f"Path does not exist or cannot be resolved: {text}") from e
        return self._from_resolved(resolved)

    def localize(self, canonical: CanonicalPath) -> Path:
        """Return the local filesystem path for a canonical location.

        Raises:
            InvalidPathError: If the canonical root is not available on this machine
        """
        parts = canonical.parts
        if canonical.is_network:
            hit = self.mounts.find_network(str(canonical))
            if hit is not None:
                mount, remainder = hit
                base = Path(mount.mount_point)
                return base.joinpath(*remainder.split("/")) if remainder else base
            if os.name == "nt":
                base = Path("\\\\" + canonical.root[2:].replace("/", "\\") + "\\")
                return base.joinpath(*parts) if parts else base
            raise InvalidPathError(f"Network share {canonical.root} is not mounted on this machine")

        base = Path(canonical.root + "/") if _DRIVE_RE.match(canonical.root) else Path(canonical.root)
        return base.joinpath(*parts) if parts else base

    def _from_resolved(self, resolved: Path) -> CanonicalPath:
        s = _slashes(str(resolved))
        if s.startswith("//"):
            return CanonicalPath.parse(s)

        mount = self.mounts.find(s)
        if mount is None:
            m = _DRIVE_RE.match(s)
            if m:
                return CanonicalPath(f"{m.group(1).upper()}:", m.group(2) or "")
            raise InvalidPathError(f"Cannot determine the volume holding {resolved}")

        mount_key = _norm(mount.mount_point)
        if mount_key == "/":
            rel = s[1:]
        else:
            rel = s[len(mount_key):].lstrip("/")

        location = mount.network_location()
        if location is not None:
            return CanonicalPath.parse(f"{location}/{rel}" if rel else location)
        return CanonicalPath(mount_key, rel)


def canonicalize(path: PathLike, mounts: Optional[MountTable] = None) -> CanonicalPath:
    """Module-level convenience for ``PathCanonicalizer(mounts).canonicalize(path)``."""
    return PathCanonicalizer(mounts).canonicalize(path)


__all__ = [
    "NETWORK_FSTYPES",
    "CanonicalPath",
    "MountPoint",
    "MountTable",
    "PathCanonicalizer",
    "canonicalize",
]
