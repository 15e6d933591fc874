"""Content-store repository: tar packs plus ``meta.json`` per snapshot.

Layout of one snapshot directory::

    <date>_<package>_<short id>/
        meta.json
        pack-0.tar[.gz]
        pack-1-<name>.tar[.gz]

Every write goes to ``<name>_tmp`` first and is renamed into place once
complete, so a partial snapshot is never visible under its final name.
"""

import asyncio
import json
import re
import tarfile
import typing as t
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote, unquote

from pydantic import BaseModel, Field

from .. import __version__
from ..config import ArchiveRepositoryConfig, RepositoryConfig
from ..errors import AbortedError, IntegrityError
from ..lease import ScratchSession
from ..snapshot import Snapshot, SnapshotFilter
from ..util.cancel import CancelToken
from ..util.hashing import calculate_file_hash, verify_file_integrity
from ..util.logging import get_logger
from ..util.parallel import run_parallel
from ..util.paths import safe_filename
from ..util.patterns import list_matched_paths, match_path, static_prefix
from ..util.progress import ProgressCallback, ProgressCounter
from .base import BackupContext, CopyContext, DiskStats, Repository, RestoreContext, TransferResult
from .fs import StorageFs, create_fs

logger = get_logger(__name__)

META_FILE = "meta.json"
STAGING_SUFFIX = "_tmp"
META_READ_CONCURRENCY = 5

_SNAPSHOT_DIR_RE = re.compile(r"^(?P<date>[^_]+)_(?P<package>.+)_(?P<short_id>[0-9a-f]{8})$")


class PackConfig(BaseModel):
    """Named pack selecting files by include/exclude globs."""

    name: str
    include: t.List[str] = Field(default_factory=lambda: ["**"])
    exclude: t.List[str] = Field(default_factory=list)
    compress: t.Optional[bool] = None
    one_pack_by_result: bool = Field(
        default=False, description="Spawn one child pack per top-level matched entry"
    )


class ArchivePackageConfig(BaseModel):
    """Per-package options for archive repositories."""

    compress: t.Optional[bool] = None
    packs: t.List[PackConfig] = Field(default_factory=list)


class PackStats(BaseModel):
    """Recorded facts about one pack archive."""

    files: int
    size: int
    checksum: str


class SnapshotMeta(BaseModel):
    """Contents of ``meta.json``."""

    id: str
    hostname: str
    date: str
    tags: t.List[str] = Field(default_factory=list)
    package: str
    task: t.Optional[str] = None
    version: str
    size: int = 0
    tar_stats: t.Dict[str, PackStats] = Field(default_factory=dict, alias="tarStats")

    class Config:
        """Pydantic configuration."""

        populate_by_name = True


@dataclass
class Pack:
    """Files assigned to one archive."""

    name: t.Optional[str]
    compress: bool
    entries: t.List[str] = field(default_factory=list)

    def file_name(self, index: int) -> str:
        suffix = f"-{safe_filename(self.name)}" if self.name else ""
        extension = ".tar.gz" if self.compress else ".tar"
        return f"pack-{index}{suffix}{extension}"


def snapshot_dir_name(date: str, package_name: str, snapshot_id: str) -> str:
    return f"{date.replace(':', '-')}_{quote(package_name, safe='')}_{snapshot_id[:8]}"


def parse_snapshot_dir_name(name: str) -> t.Optional[t.Dict[str, str]]:
    match = _SNAPSHOT_DIR_RE.match(name)
    if match is None:
        return None
    return {
        "date": match.group("date"),
        "package": unquote(match.group("package")),
        "short_id": match.group("short_id"),
    }


def plan_packs(
    entries: t.Sequence[str],
    package_config: ArchivePackageConfig,
    default_compress: bool = False,
) -> t.List[Pack]:
    """Assign matched paths to packs.

    Each entry goes to the first configured pack whose globs match it, or to
    the catch-all default pack. A ``one_pack_by_result`` pack is split into
    children named after the first path component below its include prefix.
    Empty packs are dropped.
    """
    base_compress = default_compress if package_config.compress is None else package_config.compress
    default = Pack(name=None, compress=base_compress)
    configured: t.List[t.Tuple[PackConfig, Pack]] = [
        (pack, Pack(name=pack.name, compress=base_compress if pack.compress is None else pack.compress))
        for pack in package_config.packs
    ]

    for entry in entries:
        for pack_config, pack in configured:
            if match_path(entry, pack_config.include, pack_config.exclude):
                pack.entries.append(entry)
                break
        else:
            default.entries.append(entry)

    packs = [default]
    for pack_config, pack in configured:
        if not pack_config.one_pack_by_result:
            packs.append(pack)
            continue
        children: t.Dict[str, Pack] = {}
        for entry in pack.entries:
            child = _child_pack_key(entry, pack_config.include)
            if child not in children:
                name = f"{pack.name}-{child}" if child else pack.name
                children[child] = Pack(name=name, compress=pack.compress)
            children[child].entries.append(entry)
        packs.extend(children.values())

    return [pack for pack in packs if pack.entries]


def _child_pack_key(entry: str, include: t.Sequence[str]) -> str:
    for pattern in include:
        if not match_path(entry, [pattern]):
            continue
        prefix = static_prefix(pattern)
        rest = entry[len(prefix):].lstrip("/") if prefix and entry.startswith(prefix) else entry
        return rest.split("/", 1)[0]
    return ""


def _write_pack(
    source: Path,
    pack: Pack,
    target: Path,
    token: CancelToken,
    on_entry: t.Callable[[str], None],
) -> PackStats:
    with tarfile.open(target, "w:gz" if pack.compress else "w") as tar:
        for entry in pack.entries:
            if token.cancelled:
                raise AbortedError("Backup cancelled")
            tar.add(source / entry, arcname=entry, recursive=False)
            on_entry(entry)
    return PackStats(
        files=len(pack.entries),
        size=target.stat().st_size,
        checksum=calculate_file_hash(target),
    )


def _extract_pack(
    archive: Path,
    target: Path,
    token: CancelToken,
    on_entry: t.Callable[[str], None],
) -> None:
    with tarfile.open(archive, "r:*") as tar:
        for member in tar:
            if token.cancelled:
                raise AbortedError("Restore cancelled")
            try:
                tar.extract(member, target, filter="data")
            except tarfile.FilterError as e:
                raise IntegrityError(f"Unsafe entry in {archive.name}: {member.name}") from e
            on_entry(member.name)


class ArchiveRepository(Repository):
    """Stores each snapshot as a directory of tar packs."""

    def __init__(self, config: RepositoryConfig, session: ScratchSession) -> None:
        super().__init__(config, session)
        self.options: ArchiveRepositoryConfig = config.config
        self.fs: StorageFs = create_fs(self.options.backend, self.options.ssh_key_file)

    def get_source(self) -> str:
        return self.fs.describe()

    def close(self) -> None:
        self.fs.close()

    async def fetch_disk_stats(self) -> t.Optional[DiskStats]:
        return await asyncio.to_thread(self.fs.disk_stats)

    async def init(self, token: t.Optional[CancelToken] = None) -> None:
        await asyncio.to_thread(self.fs.mkdir, "")
        logger.info(f"Initialized archive repository {self.name} at {self.get_source()}")

    async def read_meta(self, snapshot_dir: str) -> SnapshotMeta:
        text = await asyncio.to_thread(self.fs.read_text, f"{snapshot_dir}/{META_FILE}")
        return SnapshotMeta.model_validate(json.loads(text))

    async def fetch_snapshots(
        self,
        snapshot_filter: SnapshotFilter,
        token: t.Optional[CancelToken] = None,
    ) -> t.List[Snapshot]:
        names = await asyncio.to_thread(self.fs.listdir, "")
        candidates = []
        for name in names:
            parsed = parse_snapshot_dir_name(name)
            if parsed is None:
                continue
            if not snapshot_filter.match_package(parsed["package"]):
                continue
            if snapshot_filter.ids and not any(
                prefix[:8] == parsed["short_id"] for prefix in snapshot_filter.ids
            ):
                continue
            candidates.append(name)

        async def load(name: str, index: int, item_token: CancelToken) -> Snapshot:
            meta = await self.read_meta(name)
            return Snapshot(
                id=meta.id,
                date=meta.date,
                original_id=name,
                package_name=meta.package,
                package_task_name=meta.task,
                tags=meta.tags,
                hostname=meta.hostname,
                size=meta.size,
            )

        snapshots = await run_parallel(candidates, load, concurrency=META_READ_CONCURRENCY, token=token)
        return snapshot_filter.apply(snapshots)

    def _thread_progress(self, callback: ProgressCallback, total: int, description: str) -> t.Callable[[str], None]:
        loop = asyncio.get_running_loop()
        counter = ProgressCounter(callback, total=total, description=description)
        return lambda payload: loop.call_soon_threadsafe(counter.advance, payload)

    async def backup(self, ctx: BackupContext) -> TransferResult:
        package_config = ArchivePackageConfig.model_validate(ctx.package_config)
        entries = await asyncio.to_thread(
            list_matched_paths, ctx.path, ctx.package.include, ctx.package.exclude or []
        )
        packs = plan_packs(entries, package_config, self.options.compress)
        name = snapshot_dir_name(ctx.snapshot.date, ctx.package.name, ctx.snapshot.id)
        staging = name + STAGING_SUFFIX

        if await asyncio.to_thread(self.fs.exists, name):
            raise IntegrityError(f"Snapshot {name} already exists in {self.name}")

        logger.info(f"Archiving {len(entries)} entries of {ctx.package.name} into {len(packs)} pack(s)")
        await asyncio.to_thread(self.fs.rmtree, staging)
        await asyncio.to_thread(self.fs.mkdir, staging)
        on_entry = self._thread_progress(ctx.on_progress, len(entries), "Archiving")
        scratch = None if self.fs.is_local else self.session.mkdir("archive", "backup")

        try:
            tar_stats: t.Dict[str, PackStats] = {}
            for index, pack in enumerate(packs):
                file_name = pack.file_name(index)
                if scratch is None:
                    target = self.fs.local_path(f"{staging}/{file_name}")
                else:
                    target = scratch / file_name
                tar_stats[file_name] = await asyncio.to_thread(
                    _write_pack, ctx.path, pack, target, ctx.token, on_entry
                )
                if scratch is not None:
                    await asyncio.to_thread(self.fs.upload, target, f"{staging}/{file_name}")
                    target.unlink()

            meta = SnapshotMeta(
                id=ctx.snapshot.id,
                hostname=ctx.hostname,
                date=ctx.snapshot.date,
                tags=ctx.tags,
                package=ctx.package.name,
                task=ctx.package.task.name if ctx.package.task else None,
                version=__version__,
                size=sum(stats.size for stats in tar_stats.values()),
                tar_stats=tar_stats,
            )
            await asyncio.to_thread(
                self.fs.write_text,
                f"{staging}/{META_FILE}",
                json.dumps(meta.model_dump(by_alias=True), indent=2),
            )
            await asyncio.to_thread(self.fs.rename, staging, name)
        except BaseException:
            await asyncio.to_thread(self.fs.rmtree, staging)
            raise

        logger.info(f"Stored snapshot {name} ({meta.size} bytes) in {self.name}")
        return TransferResult(bytes=meta.size)

    async def restore(self, ctx: RestoreContext) -> None:
        name = ctx.snapshot.original_id
        meta = await self.read_meta(name)
        total = sum(stats.files for stats in meta.tar_stats.values())
        on_entry = self._thread_progress(ctx.on_progress, total, "Extracting")

        for file_name, stats in meta.tar_stats.items():
            ctx.token.raise_if_cancelled()
            if self.fs.is_local:
                archive = self.fs.local_path(f"{name}/{file_name}")
            else:
                archive = self.session.make_path("archive", "restore", file_name)
                await asyncio.to_thread(self.fs.download, f"{name}/{file_name}", archive)
            await asyncio.to_thread(verify_file_integrity, archive, stats.checksum)
            await asyncio.to_thread(_extract_pack, archive, ctx.snapshot_path, ctx.token, on_entry)
            if not self.fs.is_local:
                self.session.remove(archive)

        logger.info(f"Restored {name} into {ctx.snapshot_path}")

    async def copy(self, ctx: CopyContext) -> TransferResult:
        self.check_mirror(ctx.mirror)
        target = ArchiveRepository(ctx.mirror, self.session)
        try:
            return await self._copy_to(target, ctx)
        finally:
            target.close()

    async def _copy_to(self, target: "ArchiveRepository", ctx: CopyContext) -> TransferResult:
        name = ctx.snapshot.original_id
        staging = name + STAGING_SUFFIX
        target_fs = target.fs

        if await asyncio.to_thread(target_fs.exists, name):
            if await asyncio.to_thread(target_fs.listdir, name):
                raise IntegrityError(f"Snapshot {name} already exists in {target.name}")

        entries = await asyncio.to_thread(self.fs.listdir, name)
        if META_FILE not in entries:
            raise IntegrityError(f"Snapshot {name} in {self.name} has no {META_FILE}")

        await asyncio.to_thread(target_fs.rmtree, staging)
        await asyncio.to_thread(target_fs.mkdir, staging)
        counter = ProgressCounter(ctx.on_progress, total=len(entries), description="Copying")
        transferred = 0

        try:
            for entry in entries:
                ctx.token.raise_if_cancelled()
                source_path = f"{name}/{entry}"
                target_path = f"{staging}/{entry}"
                if target_fs.is_local:
                    local = target_fs.local_path(target_path)
                    await asyncio.to_thread(self.fs.download, source_path, local)
                else:
                    local = self.session.make_path("archive", "copy", entry)
                    await asyncio.to_thread(self.fs.download, source_path, local)
                    await asyncio.to_thread(target_fs.upload, local, target_path)
                transferred += local.stat().st_size
                if not target_fs.is_local:
                    self.session.remove(local)
                counter.advance(entry)

            await asyncio.to_thread(target_fs.rmtree, name)
            await asyncio.to_thread(target_fs.rename, staging, name)
        except BaseException:
            await asyncio.to_thread(target_fs.rmtree, staging)
            raise

        logger.info(f"Copied {name} from {self.name} to {target.name}")
        return TransferResult(bytes=transferred)

    async def prune(self, snapshot: Snapshot, token: t.Optional[CancelToken] = None) -> None:
        await asyncio.to_thread(self.fs.rmtree, snapshot.original_id)
        logger.info(f"Pruned {snapshot.original_id} from {self.name}")
