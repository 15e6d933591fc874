"""Version-control repository.

One snapshot is one commit on the package branch ``st/<package>`` plus an
annotated tag ``st/<package>/<id>`` whose message is the JSON snapshot.
Pruning rewrites the branch history to drop the snapshot's commit.
"""

import asyncio
import os
import shutil
import typing as t
from pathlib import Path

from ..config import GitRepositoryConfig, RepositoryConfig
from ..errors import IntegrityError, ProcessError
from ..lease import ScratchSession
from ..snapshot import Snapshot, SnapshotFilter
from ..util.cancel import CancelToken
from ..util.logging import get_logger
from ..util.paths import folder_size, is_empty_dir, is_local_path
from ..util.patterns import list_matched_paths
from ..util.process import CommandResult, run_command
from ..util.progress import ProgressCounter
from .base import BackupContext, CopyContext, DiskStats, Repository, RestoreContext, TransferResult

logger = get_logger(__name__)

REF_PREFIX = "st"
DEFAULT_BRANCH = "master"


def branch_name(package_name: str) -> str:
    return f"{REF_PREFIX}/{package_name}"


def tag_name(package_name: str, snapshot_id: str) -> str:
    return f"{REF_PREFIX}/{package_name}/{snapshot_id}"


class Git:
    """Runs git commands inside one working directory."""

    def __init__(self, cwd: Path, token: t.Optional[CancelToken] = None) -> None:
        self.cwd = cwd
        self.token = token
        self.env = {
            "GIT_AUTHOR_NAME": os.environ.get("GIT_AUTHOR_NAME", "stowage"),
            "GIT_AUTHOR_EMAIL": os.environ.get("GIT_AUTHOR_EMAIL", "stowage@localhost"),
            "GIT_COMMITTER_NAME": os.environ.get("GIT_COMMITTER_NAME", "stowage"),
            "GIT_COMMITTER_EMAIL": os.environ.get("GIT_COMMITTER_EMAIL", "stowage@localhost"),
            "GIT_TERMINAL_PROMPT": "0",
        }

    async def exec(self, *args: str, check: bool = True, stdin_data: t.Optional[str] = None) -> CommandResult:
        return await run_command(
            ["git", *args],
            cwd=self.cwd,
            env=self.env,
            token=self.token,
            check=check,
            stdin_data=stdin_data,
        )

    async def clone(self, repo: str, *args: str) -> None:
        await self.exec("clone", "--quiet", *args, repo, ".")

    async def remote_branch_exists(self, branch: str) -> bool:
        result = await self.exec("ls-remote", "--exit-code", "--heads", "origin", branch, check=False)
        return result.exit_code == 0

    async def has_changes(self) -> bool:
        result = await self.exec("status", "--porcelain")
        return bool(result.stdout.strip())

    async def rev_parse(self, ref: str) -> t.Optional[str]:
        result = await self.exec("rev-list", "-n", "1", ref, check=False)
        return result.stdout.strip() if result.exit_code == 0 else None

    async def parents(self, commit: str) -> t.List[str]:
        result = await self.exec("rev-list", "--parents", "-n", "1", commit)
        return result.stdout.split()[1:]


def _copy_entries(source: Path, target: Path, entries: t.Sequence[str]) -> None:
    for entry in entries:
        src = source / entry
        dst = target / entry
        if src.is_dir() and not src.is_symlink():
            dst.mkdir(parents=True, exist_ok=True)
        else:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst, follow_symlinks=False)


class GitRepository(Repository):
    """Stores snapshots as commits and annotated tags of a git repository."""

    def __init__(self, config: RepositoryConfig, session: ScratchSession) -> None:
        super().__init__(config, session)
        self.options: GitRepositoryConfig = config.config

    def get_source(self) -> str:
        return self.options.repo

    async def fetch_disk_stats(self) -> t.Optional[DiskStats]:
        if not is_local_path(self.options.repo):
            return None
        existing = Path(self.options.repo)
        while not existing.exists() and existing != existing.parent:
            existing = existing.parent
        usage = await asyncio.to_thread(shutil.disk_usage, existing)
        return DiskStats(total=usage.total, free=usage.free)

    async def _workdir(self, *keys: str) -> Path:
        return await asyncio.to_thread(self.session.mkdir, "git", *keys)

    async def _release(self, path: Path) -> None:
        await self.session.release([path])

    async def init(self, token: t.Optional[CancelToken] = None) -> None:
        repo = self.options.repo
        if not is_local_path(repo):
            logger.info(f"Skipping init of remote git repository {repo}")
            return
        path = Path(repo)
        if not is_empty_dir(path):
            logger.info(f"Git repository {self.name} already initialized")
            return

        path.mkdir(parents=True, exist_ok=True)
        await Git(path, token).exec("init", "--quiet", "--bare", f"--initial-branch={DEFAULT_BRANCH}")

        work = await self._workdir("init")
        try:
            git = Git(work, token)
            await git.clone(repo)
            await git.exec("checkout", "--quiet", "-B", DEFAULT_BRANCH)
            await git.exec("commit", "--quiet", "--allow-empty", "-m", "Initial commit")
            await git.exec("push", "--quiet", "origin", f"HEAD:refs/heads/{DEFAULT_BRANCH}")
        finally:
            await self._release(work)
        logger.info(f"Initialized git repository {self.name} at {repo}")

    async def fetch_snapshots(
        self,
        snapshot_filter: SnapshotFilter,
        token: t.Optional[CancelToken] = None,
    ) -> t.List[Snapshot]:
        work = await self._workdir("snapshots")
        try:
            git = Git(work, token)
            await git.clone(self.options.repo, "--bare")
            result = await git.exec(
                "tag", "-l", f"{REF_PREFIX}/*",
                "--format=%(refname:strip=2)%09%(contents:subject)",
            )
        finally:
            await self._release(work)

        snapshots = []
        for line in result.stdout.splitlines():
            name, _, message = line.partition("\t")
            if not message.startswith("{"):
                logger.debug(f"Ignoring tag without snapshot metadata: {name}")
                continue
            snapshot = Snapshot.model_validate_json(message)
            snapshots.append(snapshot.model_copy(update={"original_id": name}))
        return snapshot_filter.apply(snapshots)

    async def backup(self, ctx: BackupContext) -> TransferResult:
        package_name = ctx.package.name
        branch = branch_name(package_name)
        tag = tag_name(package_name, ctx.snapshot.id)
        work = await self._workdir("backup", package_name)
        try:
            size = await self._commit_snapshot(ctx, Git(work, ctx.token), work, branch, tag)
        finally:
            await self._release(work)
        logger.info(f"Stored snapshot {tag} ({size} bytes) in {self.name}")
        return TransferResult(bytes=size)

    async def _commit_snapshot(
        self,
        ctx: BackupContext,
        git: Git,
        work: Path,
        branch: str,
        tag: str,
    ) -> int:
        package_name = ctx.package.name
        await git.clone(self.options.repo)
        if await git.remote_branch_exists(branch):
            await git.exec("checkout", "--quiet", branch)
        else:
            logger.info(f"Creating branch {branch} in {self.name}")
            await git.exec("checkout", "--quiet", "--orphan", branch)
            await git.exec("rm", "-r", "--quiet", "--force", "--ignore-unmatch", ".")
            await git.exec("commit", "--quiet", "--allow-empty", "-m", "Initial commit")

        await git.exec("rm", "-r", "--quiet", "--force", "--ignore-unmatch", ".")
        entries = await asyncio.to_thread(
            list_matched_paths, ctx.path, ctx.package.include, ctx.package.exclude or [], (".git",)
        )
        await asyncio.to_thread(_copy_entries, ctx.path, work, entries)
        ProgressCounter(ctx.on_progress, total=len(entries), description="Copied").advance(step=len(entries))

        await git.exec("add", "--all", ".")
        if await git.has_changes():
            await git.exec("commit", "--quiet", "-m", f"{ctx.snapshot.date} {ctx.snapshot.id}")
        else:
            logger.info(f"No changes in {package_name} since the previous snapshot")

        size = await asyncio.to_thread(folder_size, work, ".git")
        snapshot = Snapshot(
            id=ctx.snapshot.id,
            date=ctx.snapshot.date,
            original_id=tag,
            package_name=package_name,
            package_task_name=ctx.package.task.name if ctx.package.task else None,
            tags=ctx.tags,
            hostname=ctx.hostname,
            size=size,
        )
        await git.exec("tag", "-a", tag, "-F", "-", stdin_data=snapshot.model_dump_json())
        await git.exec("push", "--quiet", "origin", branch)
        await git.exec("push", "--quiet", "origin", f"refs/tags/{tag}")
        return size

    async def restore(self, ctx: RestoreContext) -> None:
        git = Git(ctx.snapshot_path, ctx.token)
        await git.clone(self.options.repo, "--depth", "1", "--branch", ctx.snapshot.original_id)
        await asyncio.to_thread(shutil.rmtree, ctx.snapshot_path / ".git")
        logger.info(f"Restored {ctx.snapshot.original_id} into {ctx.snapshot_path}")

    async def copy(self, ctx: CopyContext) -> TransferResult:
        self.check_mirror(ctx.mirror)
        mirror: GitRepositoryConfig = ctx.mirror.config
        branch = branch_name(ctx.snapshot.package_name)
        tag = ctx.snapshot.original_id
        work = await self._workdir("copy")
        try:
            git = Git(work, ctx.token)
            await git.clone(self.options.repo, "--bare")
            refspec = f"refs/heads/{branch}:refs/heads/{branch}"
            result = await git.exec("push", "--quiet", mirror.repo, refspec, check=False)
            if result.exit_code != 0:
                # Source history was rewritten by a prune; tags keep the mirror's snapshots reachable.
                logger.warning(f"Branch {branch} diverged in {ctx.mirror.name}, forcing push")
                await git.exec("push", "--quiet", "--force", mirror.repo, refspec)
            await git.exec("push", "--quiet", mirror.repo, f"refs/tags/{tag}")
        finally:
            await self._release(work)
        logger.info(f"Copied {tag} from {self.name} to {ctx.mirror.name}")
        return TransferResult(bytes=ctx.snapshot.size)

    async def prune(self, snapshot: Snapshot, token: t.Optional[CancelToken] = None) -> None:
        branch = branch_name(snapshot.package_name)
        tag = snapshot.original_id
        work = await self._workdir("prune")
        try:
            git = Git(work, token)
            await git.clone(self.options.repo, "--branch", branch)
            await git.exec("fetch", "--quiet", "origin", f"refs/tags/{tag}:refs/tags/{tag}")
            commit = await git.rev_parse(tag)
            if commit is None:
                raise IntegrityError(f"Commit of snapshot {tag} not found in {self.name}")

            on_branch = await git.exec("merge-base", "--is-ancestor", commit, "HEAD", check=False)
            if on_branch.exit_code == 0 and await git.parents(commit):
                try:
                    await git.exec(
                        "rebase", "--quiet", "-X", "theirs", "--rebase-merges",
                        "--onto", f"{commit}^", commit,
                    )
                except ProcessError:
                    await git.exec("rebase", "--abort", check=False)
                    raise
                await git.exec("push", "--quiet", "--force-with-lease", "origin", branch)
            else:
                logger.debug(f"Commit {commit[:8]} of {tag} is not rewritable, deleting tag only")

            await git.exec("push", "--quiet", "--delete", "origin", f"refs/tags/{tag}")
        finally:
            await self._release(work)
        logger.info(f"Pruned {tag} from {self.name}")
