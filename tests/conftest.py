from pathlib import Path
from typing import Optional

import pytest

from coldarchive.tracking.cost import make_cost_estimator
from coldarchive.tracking.engine import BackupEngine, CheckResult, SnapshotInfo, SnapshotRef
from coldarchive.tracking.paths import CanonicalPath, MountPoint, MountTable, PathCanonicalizer
from coldarchive.tracking.staging import Stager, StagingRegistry, StagingRootResolver
from coldarchive.tracking.types import ArchiveEntry, ArchiveStatus, new_entry_id, utcnow


class FakeEngine(BackupEngine):
    """In-memory backup engine.

    Snapshot ids are taken from ``snapshot_ids`` in order; the last one is
    reused once the list runs out.
    """

    def __init__(self, snapshot_ids=("abc123",), check_ok: bool = True):
        self.snapshot_ids = list(snapshot_ids)
        self.check_ok = check_ok
        self.create_error: Optional[BaseException] = None
        self.list_error: Optional[BaseException] = None
        self.hide_new = False
        self.snapshots: list[SnapshotInfo] = []
        self.created: list[tuple[list[Path], tuple[str, ...]]] = []
        self.checks: list[bool] = []
        self.restored: list[tuple[str, Path, list[str]]] = []

    def create_snapshot(self, paths, tags=()):
        if self.create_error is not None:
            raise self.create_error
        snapshot_id = self.snapshot_ids.pop(0) if len(self.snapshot_ids) > 1 else self.snapshot_ids[0]
        self.created.append(([Path(p) for p in paths], tuple(tags)))
        if not self.hide_new:
            self.snapshots.append(
                SnapshotInfo(
                    id=snapshot_id,
                    short_id=snapshot_id[:8],
                    tags=tuple(tags),
                    paths=tuple(str(p) for p in paths),
                )
            )
        return SnapshotRef(snapshot_id, snapshot_id[:8])

    def check_repository(self, deep=False):
        self.checks.append(deep)
        if self.check_ok:
            return CheckResult(True, "no errors were found")
        return CheckResult(False, "error: pack 5f1e: ciphertext verification failed")

    def list_snapshots(self):
        if self.list_error is not None:
            raise self.list_error
        return list(self.snapshots)

    def restore(self, snapshot_id, target, include=None):
        self.restored.append((snapshot_id, Path(target), list(include or [])))


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def volume(tmp_path: Path) -> Path:
    """A directory that the mount table treats as its own local volume."""
    vol = tmp_path.resolve() / "vol"
    vol.mkdir()
    return vol


@pytest.fixture
def volume2(tmp_path: Path) -> Path:
    vol = tmp_path.resolve() / "vol2"
    vol.mkdir()
    return vol


@pytest.fixture
def mounts(volume: Path, volume2: Path) -> MountTable:
    return MountTable(
        [
            MountPoint("/", "/dev/root", "ext4"),
            MountPoint(str(volume), "/dev/sdb1", "ext4"),
            MountPoint(str(volume2), "/dev/sdc1", "ext4"),
        ],
        casefold=False,
    )


@pytest.fixture
def canonicalizer(mounts: MountTable) -> PathCanonicalizer:
    return PathCanonicalizer(mounts)


@pytest.fixture
def registry(tmp_path: Path) -> StagingRegistry:
    return StagingRegistry(tmp_path / "config" / "registry.yaml")


@pytest.fixture
def resolver(canonicalizer: PathCanonicalizer, registry: StagingRegistry) -> StagingRootResolver:
    return StagingRootResolver(
        canonicalizer,
        registry,
        cost_fn=make_cost_estimator("deep_archive"),
    )


@pytest.fixture
def stager(resolver: StagingRootResolver) -> Stager:
    return Stager(resolver)


@pytest.fixture
def sample_folder(volume: Path) -> Path:
    """A 2-file, 10-byte folder on the test volume."""
    folder = volume / "projects" / "old"
    folder.mkdir(parents=True)
    (folder / "a.txt").write_bytes(b"1234")
    (folder / "b.txt").write_bytes(b"567890")
    return folder


@pytest.fixture
def make_entry():
    """Factory for ledger entries that do not need files on disk."""

    def _make(
        root: str = "/vol",
        name: str = "docs/report.pdf",
        status: ArchiveStatus = ArchiveStatus.STAGED,
        size_bytes: int = 10,
        item_count: int = 1,
        snapshot_ref: Optional[str] = None,
        **kwargs,
    ) -> ArchiveEntry:
        now = utcnow()
        if status.is_archived:
            kwargs.setdefault("archived_at", now)
            snapshot_ref = snapshot_ref or "abc123"
        if status == ArchiveStatus.ARCHIVED_AND_DELETED:
            kwargs.setdefault("deleted_at", now)
        return ArchiveEntry(
            id=kwargs.pop("id", new_entry_id()),
            original_location=CanonicalPath(root, name),
            staged_location=CanonicalPath(root, f"_ColdArchive/{name}"),
            staged_at=kwargs.pop("staged_at", now),
            size_bytes=size_bytes,
            item_count=item_count,
            status=status,
            snapshot_ref=snapshot_ref,
            **kwargs,
        )

    return _make
