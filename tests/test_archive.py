"""Tests for the archive repository on a local filesystem."""

import asyncio
import json
import tempfile
from pathlib import Path
from unittest import mock

import pytest

from stowage.config import PackageConfig, RepositoryConfig
from stowage.errors import DiskSpaceError, IntegrityError
from stowage.lease import ScratchSession
from stowage.repositories import BackupContext, CopyContext, RestoreContext
from stowage.repositories.archive import (
    ArchivePackageConfig,
    ArchiveRepository,
    PackConfig,
    parse_snapshot_dir_name,
    plan_packs,
    snapshot_dir_name,
)
from stowage.repositories.fs import LocalFs
from stowage.snapshot import PreSnapshot, SnapshotFilter

DATE = "2024-05-01T12:00:00.000Z"


def archive_config(name: str, root: Path, **options) -> RepositoryConfig:
    return RepositoryConfig(name=name, type="archive", config={"backend": str(root), **options})


def make_source(root: Path) -> Path:
    source = root / "source"
    (source / "uploads" / "2024").mkdir(parents=True)
    (source / "empty").mkdir()
    (source / "index.html").write_text("<html></html>")
    (source / "uploads" / "2024" / "photo.jpg").write_bytes(b"\xff\xd8jpeg")
    return source


class ArchiveFixture:
    """Source tree, scratch session and two archive repositories."""

    def __init__(self, temp_dir: str) -> None:
        self.root = Path(temp_dir)
        self.source = make_source(self.root)
        self.session = ScratchSession(self.root / "scratch")
        self.config_a = archive_config("a", self.root / "repo-a", compress=True)
        self.config_b = archive_config("b", self.root / "repo-b")
        self.repo_a = ArchiveRepository(self.config_a, self.session)
        self.repo_b = ArchiveRepository(self.config_b, self.session)
        self.package = PackageConfig(name="web", path=str(self.source))
        self.snapshot = PreSnapshot.create(DATE)

    def backup(self, package_config=None):
        return asyncio.run(self.repo_a.backup(BackupContext(
            snapshot=self.snapshot,
            package=self.package,
            path=self.source,
            hostname="host",
            tags=["nightly"],
            package_config=package_config or {},
        )))

    def stored(self, repository):
        return asyncio.run(repository.fetch_snapshots(SnapshotFilter()))


class TestNaming:
    """Test snapshot directory names."""

    def test_round_trip(self):
        """Test names encode date, package and short id."""
        name = snapshot_dir_name(DATE, "my_pkg/x", "0123456789abcdef")
        assert ":" not in name
        parsed = parse_snapshot_dir_name(name)
        assert parsed["package"] == "my_pkg/x"
        assert parsed["short_id"] == "01234567"

    def test_foreign_names_ignored(self):
        """Test unrelated entries are not parsed as snapshots."""
        assert parse_snapshot_dir_name("README") is None


class TestPlanPacks:
    """Test assigning files to packs."""

    def test_configured_and_default_packs(self):
        """Test entries go to the first matching pack, the rest to the default."""
        entries = ["index.html", "uploads", "uploads/a.jpg", "uploads/b.jpg"]
        config = ArchivePackageConfig(packs=[PackConfig(name="uploads", include=["uploads/**"])])

        packs = plan_packs(entries, config)

        assert [(p.name, p.entries) for p in packs] == [
            (None, ["index.html", "uploads"]),
            ("uploads", ["uploads/a.jpg", "uploads/b.jpg"]),
        ]
        assert packs[1].file_name(1) == "pack-1-uploads.tar"

    def test_one_pack_by_result(self):
        """Test a split pack produces one child per first level entry."""
        entries = ["logs/app/1.log", "logs/app/2.log", "logs/db/1.log"]
        config = ArchivePackageConfig(
            compress=True,
            packs=[PackConfig(name="logs", include=["logs/*/*"], one_pack_by_result=True)],
        )

        packs = plan_packs(entries, config)

        assert [p.name for p in packs] == ["logs-app", "logs-db"]
        assert packs[0].file_name(0) == "pack-0-logs-app.tar.gz"


class TestArchiveRepository:
    """Test backup, listing, restore and copy."""

    def test_backup_and_fetch(self):
        """Test a backup is listed with its metadata."""
        with tempfile.TemporaryDirectory() as temp_dir:
            fx = ArchiveFixture(temp_dir)
            result = fx.backup()

            snapshots = fx.stored(fx.repo_a)

            assert len(snapshots) == 1
            snapshot = snapshots[0]
            assert snapshot.id == fx.snapshot.id
            assert snapshot.package_name == "web"
            assert snapshot.tags == ["nightly"]
            assert snapshot.hostname == "host"
            assert snapshot.size == result.bytes > 0
            meta = json.loads((fx.root / "repo-a" / snapshot.original_id / "meta.json").read_text())
            assert "tarStats" in meta
            assert not list((fx.root / "repo-a").glob("*_tmp"))

    def test_restore(self):
        """Test restoring reproduces files and empty directories."""
        with tempfile.TemporaryDirectory() as temp_dir:
            fx = ArchiveFixture(temp_dir)
            fx.backup({"packs": [{"name": "uploads", "include": ["uploads/**"]}]})
            snapshot = fx.stored(fx.repo_a)[0]
            target = fx.root / "restore"
            target.mkdir()

            asyncio.run(fx.repo_a.restore(RestoreContext(
                snapshot=snapshot, package=fx.package, snapshot_path=target,
            )))

            assert (target / "index.html").read_text() == "<html></html>"
            assert (target / "uploads" / "2024" / "photo.jpg").read_bytes() == b"\xff\xd8jpeg"
            assert (target / "empty").is_dir()

    def test_restore_detects_corruption(self):
        """Test a pack whose checksum changed fails the restore."""
        with tempfile.TemporaryDirectory() as temp_dir:
            fx = ArchiveFixture(temp_dir)
            fx.backup()
            snapshot = fx.stored(fx.repo_a)[0]
            pack = next((fx.root / "repo-a" / snapshot.original_id).glob("pack-*"))
            with open(pack, "ab") as f:
                f.write(b"garbage")
            target = fx.root / "restore"
            target.mkdir()

            with pytest.raises(IntegrityError):
                asyncio.run(fx.repo_a.restore(RestoreContext(
                    snapshot=snapshot, package=fx.package, snapshot_path=target,
                )))

    def test_copy(self):
        """Test a native copy makes the snapshot visible in the mirror."""
        with tempfile.TemporaryDirectory() as temp_dir:
            fx = ArchiveFixture(temp_dir)
            fx.backup()
            snapshot = fx.stored(fx.repo_a)[0]

            result = asyncio.run(fx.repo_a.copy(CopyContext(
                snapshot=snapshot, package=fx.package, mirror=fx.config_b,
            )))

            copied = fx.stored(fx.repo_b)
            assert [s.id for s in copied] == [snapshot.id]
            assert result.bytes > 0
            assert not (fx.root / "repo-b" / f"{snapshot.original_id}_tmp").exists()

    def test_failed_copy_leaves_nothing(self):
        """Test a copy failing mid-transfer leaves neither final nor staging entries."""
        with tempfile.TemporaryDirectory() as temp_dir:
            fx = ArchiveFixture(temp_dir)
            fx.backup()
            snapshot = fx.stored(fx.repo_a)[0]
            (fx.root / "repo-b").mkdir()

            with mock.patch.object(LocalFs, "download", side_effect=OSError("connection lost")):
                with pytest.raises(OSError):
                    asyncio.run(fx.repo_a.copy(CopyContext(
                        snapshot=snapshot, package=fx.package, mirror=fx.config_b,
                    )))

            assert list((fx.root / "repo-b").iterdir()) == []
            assert fx.stored(fx.repo_b) == []

    def test_copy_to_existing_snapshot_fails(self):
        """Test copying onto a non-empty snapshot directory is refused."""
        with tempfile.TemporaryDirectory() as temp_dir:
            fx = ArchiveFixture(temp_dir)
            fx.backup()
            snapshot = fx.stored(fx.repo_a)[0]
            existing = fx.root / "repo-b" / snapshot.original_id
            existing.mkdir(parents=True)
            (existing / "meta.json").write_text("{}")

            with pytest.raises(IntegrityError):
                asyncio.run(fx.repo_a.copy(CopyContext(
                    snapshot=snapshot, package=fx.package, mirror=fx.config_b,
                )))

    def test_prune(self):
        """Test pruning removes the snapshot directory."""
        with tempfile.TemporaryDirectory() as temp_dir:
            fx = ArchiveFixture(temp_dir)
            fx.backup()
            snapshot = fx.stored(fx.repo_a)[0]

            asyncio.run(fx.repo_a.prune(snapshot))

            assert fx.stored(fx.repo_a) == []

    def test_fetch_by_id_prefix(self):
        """Test listing filters by id prefix and package."""
        with tempfile.TemporaryDirectory() as temp_dir:
            fx = ArchiveFixture(temp_dir)
            fx.backup()

            by_id = asyncio.run(fx.repo_a.fetch_snapshots(SnapshotFilter(ids=[fx.snapshot.short_id])))
            other = asyncio.run(fx.repo_a.fetch_snapshots(SnapshotFilter(package_names=["db"])))

            assert len(by_id) == 1
            assert other == []


class TestDiskSpace:
    """Test free space checks against the local backend."""

    def test_enough_space(self):
        """Test a small requirement passes and disk stats are reported."""
        with tempfile.TemporaryDirectory() as temp_dir:
            fx = ArchiveFixture(temp_dir)

            stats = asyncio.run(fx.repo_a.fetch_disk_stats())
            asyncio.run(fx.repo_a.ensure_free_disk_space("1KB"))

            assert stats.total >= stats.free > 0

    def test_not_enough_space(self):
        """Test an impossible requirement raises DiskSpaceError."""
        with tempfile.TemporaryDirectory() as temp_dir:
            fx = ArchiveFixture(temp_dir)

            with pytest.raises(DiskSpaceError):
                asyncio.run(fx.repo_a.ensure_free_disk_space("1000000TB"))


class RemoteFs(LocalFs):
    """Local directory treated as remote storage, so transfers go through scratch files."""

    is_local = False


def remote_or_local(location, key_filename=None):
    path = Path(location)
    return RemoteFs(path) if path.name == "repo-b" else LocalFs(path)


class TestRemoteTransfers:
    """Test transfers staged through scratch space in a fresh session."""

    def test_copy_to_remote_mirror(self):
        """Test a native copy uploads every entry to a remote mirror."""
        with tempfile.TemporaryDirectory() as temp_dir:
            fx = ArchiveFixture(temp_dir)
            fx.backup()
            snapshot = fx.stored(fx.repo_a)[0]
            session = ScratchSession(fx.root / "fresh")
            source = ArchiveRepository(fx.config_a, session)

            with mock.patch("stowage.repositories.archive.create_fs", side_effect=remote_or_local):
                asyncio.run(source.copy(CopyContext(
                    snapshot=snapshot, package=fx.package, mirror=fx.config_b,
                )))

            assert [s.id for s in fx.stored(fx.repo_b)] == [snapshot.id]
            assert list(session.root.iterdir()) == []

    def test_restore_from_remote(self):
        """Test packs are downloaded to scratch space, verified and extracted."""
        with tempfile.TemporaryDirectory() as temp_dir:
            fx = ArchiveFixture(temp_dir)
            fx.backup()
            snapshot = fx.stored(fx.repo_a)[0]
            session = ScratchSession(fx.root / "fresh")
            repository = ArchiveRepository(fx.config_a, session)
            repository.fs = RemoteFs(fx.root / "repo-a")
            target = fx.root / "restore"
            target.mkdir()

            asyncio.run(repository.restore(RestoreContext(
                snapshot=snapshot, package=fx.package, snapshot_path=target,
            )))

            assert (target / "index.html").read_text() == "<html></html>"
            assert list(session.root.iterdir()) == []
