"""Tests for git command construction."""

import asyncio
import tempfile
from pathlib import Path
from unittest import mock

from stowage.config import PackageConfig, RepositoryConfig
from stowage.lease import ScratchSession
from stowage.repositories import BackupContext, CopyContext, RestoreContext
from stowage.repositories.git import GitRepository, branch_name, tag_name
from stowage.snapshot import PreSnapshot, Snapshot, SnapshotFilter
from stowage.util.process import CommandResult

DATE = "2024-05-01T12:00:00.000Z"


class FakeGit:
    """Records git invocations and answers them from a table."""

    def __init__(self, answers=None):
        self.calls = []
        self.answers = answers or {}

    async def __call__(self, command, cwd=None, env=None, token=None, check=True, stdin_data=None, **kwargs):
        args = list(command[1:])
        self.calls.append(args)
        if args[0] == "clone":
            (Path(cwd) / ".git").mkdir(parents=True, exist_ok=True)
        for prefix, (exit_code, stdout) in self.answers.items():
            if tuple(args[:len(prefix)]) == prefix:
                return CommandResult(list(command), exit_code, stdout, "")
        return CommandResult(list(command), 0, "", "")

    def commands(self):
        return [call[0] for call in self.calls]


def git_repository(temp_dir: str) -> GitRepository:
    config = RepositoryConfig(name="g", type="git", config={"repo": "ssh://git@example.com/backups.git"})
    return GitRepository(config, ScratchSession(Path(temp_dir)))


def stored(snapshot_id: str = "d" * 32) -> Snapshot:
    return Snapshot(
        id=snapshot_id,
        date=DATE,
        original_id=tag_name("web", snapshot_id),
        package_name="web",
    )


class TestRefNames:
    """Test ref naming."""

    def test_names(self):
        """Test branch and tag names are namespaced per package."""
        assert branch_name("web") == "st/web"
        assert tag_name("web", "abc") == "st/web/abc"


class TestGitRepository:
    """Test the commands sent to git."""

    def test_fetch_snapshots(self):
        """Test snapshots are read back from annotated tag messages."""
        snapshot = stored()
        listing = (
            f"{snapshot.original_id}\t{snapshot.model_dump_json()}\n"
            "st/web/legacy\tnot a snapshot\n"
        )
        fake = FakeGit({("tag", "-l"): (0, listing)})

        with tempfile.TemporaryDirectory() as temp_dir:
            repository = git_repository(temp_dir)
            with mock.patch("stowage.repositories.git.run_command", fake):
                snapshots = asyncio.run(repository.fetch_snapshots(SnapshotFilter(package_names=["web"])))

            assert [s.id for s in snapshots] == [snapshot.id]
            assert snapshots[0].original_id == "st/web/" + snapshot.id
            assert fake.calls[0][:2] == ["clone", "--quiet"]
            assert "--bare" in fake.calls[0]
            assert list(repository.session.root.iterdir()) == []

    def test_restore(self):
        """Test restore clones the tag and drops the git metadata."""
        snapshot = stored()
        fake = FakeGit()

        with tempfile.TemporaryDirectory() as temp_dir:
            repository = git_repository(temp_dir)
            target = Path(temp_dir) / "restore"
            target.mkdir()
            with mock.patch("stowage.repositories.git.run_command", fake):
                asyncio.run(repository.restore(RestoreContext(
                    snapshot=snapshot, package=PackageConfig(name="web"), snapshot_path=target,
                )))

            assert fake.calls[0][-4:] == ["--branch", snapshot.original_id, "ssh://git@example.com/backups.git", "."]
            assert not (target / ".git").exists()

    def test_prune_rewrites_branch(self):
        """Test pruning a non-root commit rebases it away and deletes the tag."""
        snapshot = stored()
        fake = FakeGit({
            ("rev-list", "-n", "1"): (0, "c0ffee\n"),
            ("rev-list", "--parents"): (0, "c0ffee beef\n"),
        })

        with tempfile.TemporaryDirectory() as temp_dir:
            repository = git_repository(temp_dir)
            with mock.patch("stowage.repositories.git.run_command", fake):
                asyncio.run(repository.prune(snapshot))

        assert fake.commands() == [
            "clone", "fetch", "rev-list", "merge-base", "rev-list", "rebase", "push", "push",
        ]
        rebase = fake.calls[5]
        assert rebase[-3:] == ["--onto", "c0ffee^", "c0ffee"]
        assert fake.calls[6] == ["push", "--quiet", "--force-with-lease", "origin", "st/web"]
        assert fake.calls[7] == ["push", "--quiet", "--delete", "origin", f"refs/tags/{snapshot.original_id}"]

    def test_prune_root_commit_deletes_tag_only(self):
        """Test a commit without parents is left in place."""
        snapshot = stored()
        fake = FakeGit({
            ("rev-list", "-n", "1"): (0, "c0ffee\n"),
            ("rev-list", "--parents"): (0, "c0ffee\n"),
        })

        with tempfile.TemporaryDirectory() as temp_dir:
            repository = git_repository(temp_dir)
            with mock.patch("stowage.repositories.git.run_command", fake):
                asyncio.run(repository.prune(snapshot))

        assert "rebase" not in fake.commands()
        assert fake.calls[-1][:3] == ["push", "--quiet", "--delete"]

    def test_backup_commits_and_tags(self):
        """Test backup commits the files, tags the snapshot and pushes both."""
        fake = FakeGit({("ls-remote",): (0, ""), ("status",): (0, " M index.html\n")})

        with tempfile.TemporaryDirectory() as temp_dir:
            source = Path(temp_dir) / "source"
            source.mkdir()
            (source / "index.html").write_text("<html></html>")
            repository = git_repository(temp_dir)
            snapshot = PreSnapshot.create(DATE)

            with mock.patch("stowage.repositories.git.run_command", fake):
                result = asyncio.run(repository.backup(BackupContext(
                    snapshot=snapshot,
                    package=PackageConfig(name="web", path=str(source)),
                    path=source,
                    hostname="host",
                )))

        tag = tag_name("web", snapshot.id)
        assert ["checkout", "--quiet", "st/web"] in fake.calls
        assert ["commit", "--quiet", "-m", f"{DATE} {snapshot.id}"] in fake.calls
        assert ["tag", "-a", tag, "-F", "-"] in fake.calls
        assert fake.calls[-2:] == [
            ["push", "--quiet", "origin", "st/web"],
            ["push", "--quiet", "origin", f"refs/tags/{tag}"],
        ]
        assert result.bytes == len("<html></html>")


MIRROR_URL = "ssh://git@mirror.example.com/backups.git"
BRANCH_REFSPEC = "refs/heads/st/web:refs/heads/st/web"


def copy_to_mirror(temp_dir: str, fake: FakeGit) -> None:
    mirror = RepositoryConfig(name="m", type="git", config={"repo": MIRROR_URL})
    repository = git_repository(temp_dir)
    with mock.patch("stowage.repositories.git.run_command", fake):
        asyncio.run(repository.copy(CopyContext(
            snapshot=stored(), package=PackageConfig(name="web"), mirror=mirror,
        )))


class TestGitCopy:
    """Test native copies between git repositories."""

    def test_fast_forward_push(self):
        """Test the branch is pushed without force when the mirror can fast-forward."""
        fake = FakeGit()

        with tempfile.TemporaryDirectory() as temp_dir:
            copy_to_mirror(temp_dir, fake)

        pushes = [call for call in fake.calls if call[0] == "push"]
        assert pushes == [
            ["push", "--quiet", MIRROR_URL, BRANCH_REFSPEC],
            ["push", "--quiet", MIRROR_URL, f"refs/tags/{stored().original_id}"],
        ]

    def test_diverged_branch_is_forced(self):
        """Test a rejected push after a history rewrite falls back to a forced push."""
        fake = FakeGit({("push", "--quiet", MIRROR_URL, BRANCH_REFSPEC): (1, "")})

        with tempfile.TemporaryDirectory() as temp_dir:
            copy_to_mirror(temp_dir, fake)

        pushes = [call for call in fake.calls if call[0] == "push"]
        assert pushes[1] == ["push", "--quiet", "--force", MIRROR_URL, BRANCH_REFSPEC]
        assert pushes[2] == ["push", "--quiet", MIRROR_URL, f"refs/tags/{stored().original_id}"]
