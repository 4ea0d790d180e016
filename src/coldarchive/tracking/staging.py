"""Staging roots: resolution, lazy provisioning, registry, and staging items.

Every volume or share gets exactly one staging root, a well-known directory
at the top of that same storage, so staging an item is a same-volume rename
that takes no time and no extra space. Each staging root owns one ledger
shard. Newly provisioned roots are recorded in the installation's registry
so the aggregator can find them later without scanning the filesystem.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

import yaml

from coldarchive.errors import (
    InvalidPathError,
    RegistryError,
    StagingConflictError,
)
from coldarchive.tracking.ledger import TrackingLedger, open_ledger
from coldarchive.tracking.paths import CanonicalPath, PathCanonicalizer, PathLike
from coldarchive.tracking.types import ArchiveEntry, new_entry_id, utcnow

logger = logging.getLogger(__name__)

DEFAULT_STAGING_DIR = "_ColdArchive"
DEFAULT_LEDGER_FILENAME = "tracking.json"


class StagingRegistry:
    """Ordered, append-only, deduplicated list of known staging roots.

    Stored as YAML in the installation's config directory. Nothing is cached
    between calls: every read goes to disk.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def roots(self) -> list[str]:
        """Return registered staging roots in registration order.

        Raises:
            RegistryError: If the registry file exists but cannot be parsed
        """
        if not self.path.exists():
            return []
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise RegistryError(f"Cannot read staging-root registry {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise RegistryError(f"Malformed staging-root registry: {self.path}")

        seen: list[str] = []
        for root in data.get("staging_roots") or []:
            root = str(root)
            if root not in seen:
                seen.append(root)
        return seen

    def register(self, root: Union[str, CanonicalPath]) -> bool:
        """Append a root if it is not registered yet.

        Returns:
            True if the root was added, False if it was already present
        """
        root = str(root)
        roots = self.roots()
        if root in roots:
            return False
        roots.append(root)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            temp_path.write_text(
                yaml.safe_dump({"staging_roots": roots}, default_flow_style=False, sort_keys=False),
                encoding="utf-8",
            )
            temp_path.replace(self.path)
        except OSError as e:
            raise RegistryError(f"Cannot write staging-root registry {self.path}: {e}") from e
        logger.info(f"Registered staging root {root}")
        return True


def measure_item(path: Path) -> tuple[int, int]:
    """Return ``(size_bytes, item_count)`` for a file or directory tree.

    Symlinks are counted as entries but not followed.
    """
    st = path.lstat()
    if not path.is_dir() or path.is_symlink():
        return st.st_size, 1

    total_size = 0
    count = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            try:
                total_size += os.lstat(os.path.join(dirpath, name)).st_size
                count += 1
            except OSError as e:
                logger.warning(f"Skipping {os.path.join(dirpath, name)} in size count: {e}")
    return total_size, count


class StagingRootResolver:
    """Maps source roots to staging roots and provisions them on demand.

    Args:
        canonicalizer: Path canonicalizer used to localize staging roots
        registry: Registry that learns about newly provisioned roots
        staging_dir_name: Directory name appended to every source root
        ledger_filename: Shard file name inside each staging root
        cost_fn: Cost function handed to every ledger shard
        currency: Currency label handed to every ledger shard
    """

    def __init__(
        self,
        canonicalizer: PathCanonicalizer,
        registry: StagingRegistry,
        staging_dir_name: str = DEFAULT_STAGING_DIR,
        ledger_filename: str = DEFAULT_LEDGER_FILENAME,
        cost_fn: Optional[Callable[[int], float]] = None,
        currency: str = "USD",
    ):
        self.canonicalizer = canonicalizer
        self.registry = registry
        self.staging_dir_name = staging_dir_name
        self.ledger_filename = ledger_filename
        self.cost_fn = cost_fn
        self.currency = currency

    def resolve_staging_root(self, canonical_root: Union[str, CanonicalPath]) -> CanonicalPath:
        """Deterministic staging root for a source root (or any path on it)."""
        root = canonical_root.root if isinstance(canonical_root, CanonicalPath) else str(canonical_root)
        return CanonicalPath(root, self.staging_dir_name)

    def staging_root_of(self, entry: ArchiveEntry) -> CanonicalPath:
        return self.resolve_staging_root(entry.staged_location)

    def is_staging_path(self, location: CanonicalPath) -> bool:
        return location.is_relative_to(self.resolve_staging_root(location))

    def local_path(self, location: CanonicalPath) -> Path:
        return self.canonicalizer.localize(location)

    def ledger_path(self, staging_root: CanonicalPath) -> Path:
        return self.local_path(staging_root) / self.ledger_filename

    def ledger_for(self, staging_root: Union[str, CanonicalPath]) -> TrackingLedger:
        """Open the ledger shard of a staging root (empty if not provisioned)."""
        if isinstance(staging_root, str):
            staging_root = CanonicalPath.parse(staging_root)
        return open_ledger(
            self.ledger_path(staging_root),
            staging_root=str(staging_root),
            cost_fn=self.cost_fn,
            currency=self.currency,
        )

    def provision(self, staging_root: CanonicalPath) -> bool:
        """Create the staging directory and an empty ledger shard if absent.

        Idempotent. The shard is written before the root is registered, so a
        crash in between leaves an unregistered but harmless shard.

        Returns:
            True if the shard was created by this call
        """
        local = self.local_path(staging_root)
        local.mkdir(parents=True, exist_ok=True)

        ledger_file = local / self.ledger_filename
        if ledger_file.exists():
            return False

        ledger = TrackingLedger(
            ledger_file,
            staging_root=str(staging_root),
            cost_fn=self.cost_fn,
            currency=self.currency,
        )
        ledger.save()
        logger.info(f"Provisioned staging root {staging_root} at {local}")

        self.registry.register(staging_root)
        return True


class Stager:
    """Moves items into their staging root and records them as ``staged``."""

    def __init__(self, resolver: StagingRootResolver):
        self.resolver = resolver

    @property
    def canonicalizer(self) -> PathCanonicalizer:
        return self.resolver.canonicalizer

    def stage(self, path: PathLike, note: str = "") -> ArchiveEntry:
        """Stage one file or folder.

        Raises:
            InvalidPathError: If the path is missing, a symlink, a volume root,
                already staged, or cannot be moved
            StagingConflictError: If the staging destination is occupied
        """
        # Resolving a link would stage its target and leave the link dangling
        if not isinstance(path, CanonicalPath) and Path(os.fspath(path)).expanduser().is_symlink():
            raise InvalidPathError(f"Refusing to stage symlink {path}; stage its target instead")
        canonical = self.canonicalizer.canonicalize(path)
        if not canonical.relative:
            raise InvalidPathError(f"Refusing to stage the whole of {canonical.root}")
        if self.resolver.is_staging_path(canonical):
            raise InvalidPathError(f"{canonical} is already inside a staging area")

        staging_root = self.resolver.resolve_staging_root(canonical)
        self.resolver.provision(staging_root)

        source = self.canonicalizer.localize(canonical)
        staged_location = staging_root.joinpath(canonical.relative)
        destination = self.canonicalizer.localize(staged_location)
        if destination.exists() or destination.is_symlink():
            raise StagingConflictError(f"Staging destination already exists: {destination}")

        size_bytes, item_count = measure_item(source)

        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.rename(source, destination)
        except OSError as e:
            raise InvalidPathError(f"Cannot move {source} into staging: {e}") from e

        entry = ArchiveEntry(
            id=new_entry_id(),
            original_location=canonical,
            staged_location=staged_location,
            staged_at=utcnow(),
            size_bytes=size_bytes,
            item_count=item_count,
            note=note,
        )
        try:
            self.resolver.ledger_for(staging_root).append(entry)
        except Exception:
            logger.error(f"Ledger append failed, moving {destination} back to {source}")
            os.rename(destination, source)
            raise

        logger.info(
            f"Staged {canonical} -> {staged_location} ({size_bytes} bytes, {item_count} items) as {entry.short_id}"
        )
        return entry

    def stage_many(
        self, paths: Iterable[PathLike], note: str = ""
    ) -> tuple[list[ArchiveEntry], dict[str, str]]:
        """Stage several items; unresolvable or conflicting ones are skipped.

        Returns:
            ``(entries, skipped)`` where skipped maps the input path to the reason
        """
        entries: list[ArchiveEntry] = []
        skipped: dict[str, str] = {}
        for path in paths:
            try:
                entries.append(self.stage(path, note=note))
            except (InvalidPathError, StagingConflictError) as e:
                logger.warning(f"Skipping {path}: {e}")
                skipped[str(path)] = str(e)
        return entries, skipped


__all__ = [
    "DEFAULT_STAGING_DIR",
    "DEFAULT_LEDGER_FILENAME",
    "StagingRegistry",
    "StagingRootResolver",
    "Stager",
    "measure_item",
]
