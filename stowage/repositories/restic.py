"""External-archiver repository driven through the restic CLI.

Snapshot metadata rides on restic's own snapshot tags as
``st-<field>:<value>``; user tags are stored unprefixed.
"""

import asyncio
import json
import shutil
import typing as t
from pathlib import Path

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .. import __version__
from ..config import RepositoryConfig, ResticRepositoryConfig
from ..errors import ConfigurationError, ProcessError
from ..lease import ScratchSession
from ..snapshot import Snapshot, SnapshotFilter
from ..util.cancel import CancelToken
from ..util.logging import get_logger
from ..util.paths import is_local_path
from ..util.patterns import list_matched_paths
from ..util.process import CommandResult, LineCallback, run_command
from ..util.progress import Progress, ProgressCallback, ProgressStats
from .base import BackupContext, CopyContext, DiskStats, Repository, RestoreContext, TransferResult

logger = get_logger(__name__)

TAG_PREFIX = "st-"
TAG_FIELDS = ("id", "short_id", "date", "package", "task", "version", "size")


def format_tag(name: str, value: t.Any) -> str:
    return f"{TAG_PREFIX}{name}:{value}"


def parse_tags(tags: t.Sequence[str]) -> t.Tuple[t.Dict[str, str], t.List[str]]:
    """Split restic tags into reserved fields and user tags."""
    fields: t.Dict[str, str] = {}
    user_tags: t.List[str] = []
    for tag in tags:
        if tag.startswith(TAG_PREFIX) and ":" in tag:
            name, _, value = tag[len(TAG_PREFIX):].partition(":")
            if name in TAG_FIELDS:
                fields[name] = value
                continue
        user_tags.append(tag)
    return fields, user_tags


def repository_env(options: ResticRepositoryConfig, prefix: str = "RESTIC_") -> t.Dict[str, str]:
    env = {f"{prefix}REPOSITORY": options.repository}
    if options.password is not None:
        env[f"{prefix}PASSWORD"] = options.password
    elif options.password_file is not None:
        env[f"{prefix}PASSWORD_FILE"] = str(options.password_file)
    return env


def _is_lock_error(error: BaseException) -> bool:
    return isinstance(error, ProcessError) and "repository is already locked" in error.stderr


class Restic:
    """Thin async wrapper over the restic binary."""

    def __init__(
        self,
        options: ResticRepositoryConfig,
        token: t.Optional[CancelToken] = None,
        env: t.Optional[t.Dict[str, str]] = None,
    ) -> None:
        self.options = options
        self.token = token
        self.env = {**options.env, **repository_env(options), **(env or {})}

    @retry(
        retry=retry_if_exception(_is_lock_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def exec(
        self,
        *args: str,
        cwd: t.Optional[Path] = None,
        check: bool = True,
        on_stdout_line: t.Optional[LineCallback] = None,
    ) -> CommandResult:
        return await run_command(
            [self.options.restic_path, *args],
            cwd=cwd,
            env=self.env,
            token=self.token,
            check=check,
            on_stdout_line=on_stdout_line,
        )

    async def snapshots(self, *args: str) -> t.List[t.Dict[str, t.Any]]:
        result = await self.exec("snapshots", "--json", *args)
        return json.loads(result.stdout or "[]") or []


class BackupOutput:
    """Collects ``restic backup --json`` messages."""

    def __init__(self, on_progress: ProgressCallback) -> None:
        self.on_progress = on_progress
        self.summary: t.Optional[t.Dict[str, t.Any]] = None

    def __call__(self, line: str) -> None:
        if not line.startswith("{"):
            return
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Unparsable restic output: {line}")
            return
        message_type = message.get("message_type")
        if message_type == "status":
            current_files = message.get("current_files") or []
            self.on_progress(Progress(absolute=ProgressStats(
                current=message.get("files_done", 0),
                total=message.get("total_files"),
                percent=round(message.get("percent_done", 0) * 100, 2),
                description="Backing up",
                payload=current_files[0] if current_files else None,
            )))
        elif message_type == "summary":
            self.summary = message


class ResticRepository(Repository):
    """Stores snapshots in a restic repository."""

    def __init__(self, config: RepositoryConfig, session: ScratchSession) -> None:
        super().__init__(config, session)
        self.options: ResticRepositoryConfig = config.config

    def get_source(self) -> str:
        return self.options.repository

    async def fetch_disk_stats(self) -> t.Optional[DiskStats]:
        location = self.options.repository
        if location.startswith("local:"):
            location = location[len("local:"):]
        if ":" in location or not is_local_path(location):
            return None
        existing = Path(location)
        while not existing.exists() and existing != existing.parent:
            existing = existing.parent
        usage = await asyncio.to_thread(shutil.disk_usage, existing)
        return DiskStats(total=usage.total, free=usage.free)

    async def init(self, token: t.Optional[CancelToken] = None) -> None:
        restic = Restic(self.options, token)
        config_check = await restic.exec("cat", "config", check=False)
        if config_check.exit_code == 0:
            logger.info(f"Restic repository {self.name} already initialized")
            return
        await restic.exec("init")
        logger.info(f"Initialized restic repository {self.name} at {self.get_source()}")

    def _to_snapshot(self, native: t.Dict[str, t.Any]) -> t.Optional[Snapshot]:
        fields, user_tags = parse_tags(native.get("tags") or [])
        if "id" not in fields or "package" not in fields or "date" not in fields:
            return None
        return Snapshot(
            id=fields["id"],
            date=fields["date"],
            original_id=native["id"],
            package_name=fields["package"],
            package_task_name=fields.get("task") or None,
            tags=user_tags,
            hostname=native.get("hostname", ""),
            size=int(fields.get("size", 0)),
        )

    async def fetch_snapshots(
        self,
        snapshot_filter: SnapshotFilter,
        token: t.Optional[CancelToken] = None,
    ) -> t.List[Snapshot]:
        natives = await Restic(self.options, token).snapshots()
        snapshots = [s for s in (self._to_snapshot(n) for n in natives) if s is not None]
        return snapshot_filter.apply(snapshots)

    async def _latest_snapshot(self, package_name: str, token: CancelToken) -> t.Optional[Snapshot]:
        snapshots = await self.fetch_snapshots(SnapshotFilter(package_names=[package_name]), token)
        return max(snapshots, key=lambda s: s.date, default=None)

    async def backup(self, ctx: BackupContext) -> TransferResult:
        reserved = [tag for tag in ctx.tags if tag.startswith(TAG_PREFIX)]
        if reserved:
            raise ConfigurationError(f"Tags can not start with '{TAG_PREFIX}': {', '.join(reserved)}")

        restic = Restic(self.options, ctx.token)
        task_name = ctx.package.task.name if ctx.package.task else ""
        tags = [
            format_tag("id", ctx.snapshot.id),
            format_tag("short_id", ctx.snapshot.short_id),
            format_tag("date", ctx.snapshot.date),
            format_tag("package", ctx.package.name),
            format_tag("task", task_name),
            format_tag("version", __version__),
            *ctx.tags,
        ]
        args = ["backup", "--json", "--host", ctx.hostname]
        for tag in tags:
            args.extend(["--tag", tag])

        parent = await self._latest_snapshot(ctx.package.name, ctx.token)
        if parent is not None:
            args.extend(["--parent", parent.original_id])

        if ctx.package.include or ctx.package.exclude:
            entries = await asyncio.to_thread(
                list_matched_paths, ctx.path, ctx.package.include, ctx.package.exclude or []
            )
            files = [entry for entry in entries if not (ctx.path / entry).is_dir()]
            files_from = self.session.make_path("restic", "files")
            files_from.parent.mkdir(parents=True, exist_ok=True)
            files_from.write_text("".join(f"{entry}\n" for entry in files))
            args.extend(["--files-from-verbatim", str(files_from)])
        else:
            args.append(".")

        output = BackupOutput(ctx.on_progress)
        await restic.exec(*args, cwd=ctx.path, on_stdout_line=output)
        if output.summary is None:
            raise ProcessError(args, 0, "restic backup finished without a summary")

        size = int(output.summary.get("total_bytes_processed", 0))
        native_id = output.summary["snapshot_id"]
        await restic.exec("tag", "--add", format_tag("size", size), native_id)
        logger.info(f"Stored snapshot {native_id[:8]} ({size} bytes) in {self.name}")
        return TransferResult(bytes=size)

    async def restore(self, ctx: RestoreContext) -> None:
        restic = Restic(self.options, ctx.token)
        await restic.exec("restore", ctx.snapshot.original_id, "--target", str(ctx.snapshot_path))
        logger.info(f"Restored {ctx.snapshot.original_id[:8]} into {ctx.snapshot_path}")

    async def copy(self, ctx: CopyContext) -> TransferResult:
        self.check_mirror(ctx.mirror)
        mirror: ResticRepositoryConfig = ctx.mirror.config
        restic = Restic(mirror, ctx.token, env=repository_env(self.options, prefix="RESTIC_FROM_"))
        await restic.exec("copy", ctx.snapshot.original_id)
        logger.info(f"Copied {ctx.snapshot.original_id[:8]} from {self.name} to {ctx.mirror.name}")
        return TransferResult(bytes=ctx.snapshot.size)

    async def prune(self, snapshot: Snapshot, token: t.Optional[CancelToken] = None) -> None:
        await Restic(self.options, token).exec("forget", snapshot.original_id, "--prune")
        logger.info(f"Pruned {snapshot.original_id[:8]} from {self.name}")
