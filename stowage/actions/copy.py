"""Copy snapshots from one repository into its mirrors.

Same-type mirrors receive native copies. For a foreign-type mirror the
snapshot is restored to scratch space and backed up into the mirror; after
that the mirror holds the snapshot, so further mirrors of that type copy
natively from it instead of restoring again.
"""

import typing as t

from pydantic import BaseModel

from ..config import (
    PackageConfig,
    RepositoryConfig,
    StowageConfig,
    filter_repository,
    filter_repository_by_enabled,
    find_package_repository_config,
    find_repository_or_fail,
    sort_repos_by_type,
)
from ..errors import ConfigurationError, NotFoundError
from ..lease import LeaseCollector, ScratchSession
from ..orchestrator import RunSummary, TaskHandle, TaskNode
from ..repositories import (
    BackupContext,
    CopyContext,
    RestoreContext,
    TransferResult,
    create_repository,
)
from ..retention import RetentionPolicy, evaluate
from ..snapshot import ExtendedSnapshot, PreSnapshot, Snapshot, SnapshotFilter
from ..util.logging import get_logger
from ..util.timeutil import parse_iso
from .base import ActionListener, RepositoryFactory, open_repository
from .snapshots import SnapshotsAction, SnapshotsOptions

logger = get_logger(__name__)

MemoKey = t.Tuple[str, str, str]


class CopyOptions(BaseModel):
    """Source snapshots and target mirrors of a copy."""

    repository_name: str
    ids: t.Optional[t.List[str]] = None
    package_names: t.Optional[t.List[str]] = None
    package_task_names: t.Optional[t.List[str]] = None
    last: t.Optional[int] = None
    mirror_names: t.Optional[t.List[str]] = None


class CopyAction:
    """Copy workflow."""

    def __init__(
        self,
        config: StowageConfig,
        options: CopyOptions,
        session: ScratchSession,
        repository_factory: RepositoryFactory = create_repository,
        listener: t.Optional[ActionListener] = None,
    ) -> None:
        self.config = config
        self.options = options
        self.session = session
        self.repository_factory = repository_factory
        self.listener = listener or ActionListener()
        self.source = find_repository_or_fail(config, options.repository_name)
        self.holders: t.Dict[MemoKey, RepositoryConfig] = {}

    def get_mirrors(self) -> t.List[RepositoryConfig]:
        """Explicit mirrors, else the source's configured mirrors, else every other repository."""
        if self.options.mirror_names:
            mirrors = [
                r for r in self.config.repositories
                if filter_repository(r, "backup", include=self.options.mirror_names, exclude=[self.source.name])
            ]
        elif self.source.mirror_repo_names:
            mirrors = [
                find_repository_or_fail(self.config, name) for name in self.source.mirror_repo_names
            ]
            mirrors = [m for m in mirrors if filter_repository_by_enabled(m, "backup")]
        else:
            mirrors = [
                r for r in self.config.repositories
                if filter_repository(r, "backup", exclude=[self.source.name])
            ]
        return sort_repos_by_type(mirrors, self.source.type)

    async def fetch_snapshots(self, handle: TaskHandle) -> t.List[ExtendedSnapshot]:
        """Snapshots of the source newest first, limited to the last ``last`` per package."""
        lister = SnapshotsAction(
            self.config,
            SnapshotsOptions(
                ids=self.options.ids,
                package_names=self.options.package_names,
                package_task_names=self.options.package_task_names,
            ),
            self.session,
            self.repository_factory,
        )
        snapshots = await lister.fetch(self.source, handle.token)
        snapshots.sort(key=lambda s: parse_iso(s.date), reverse=True)
        if self.options.last is not None:
            policy = RetentionPolicy(keep_last=self.options.last)
            snapshots = evaluate(snapshots, ["package_name"], policy).keep
        return snapshots

    def package_for(self, snapshot: Snapshot) -> PackageConfig:
        package = next((p for p in self.config.packages if p.name == snapshot.package_name), None)
        if package is None:
            return PackageConfig(name=snapshot.package_name)
        return package

    async def find_in(self, repository: RepositoryConfig, snapshot: Snapshot, handle: TaskHandle) -> t.List[Snapshot]:
        with open_repository(self.repository_factory, repository, self.session) as repo:
            return await repo.fetch_snapshots(
                SnapshotFilter(ids=[snapshot.id], package_names=[snapshot.package_name]), handle.token
            )

    async def copy_native(
        self,
        handle: TaskHandle,
        holder: RepositoryConfig,
        snapshot: Snapshot,
        mirror: RepositoryConfig,
    ) -> TransferResult:
        if holder.name != self.source.name:
            stored = await self.find_in(holder, snapshot, handle)
            if not stored:
                raise NotFoundError(f"Snapshot {snapshot.short_id} not found in {holder.name}")
            snapshot = stored[0]
        with open_repository(self.repository_factory, holder, self.session) as repo:
            return await repo.copy(CopyContext(
                snapshot=snapshot,
                package=self.package_for(snapshot),
                mirror=mirror,
                on_progress=handle.progress,
                token=handle.token,
            ))

    async def copy_cross(
        self,
        handle: TaskHandle,
        snapshot: ExtendedSnapshot,
        mirror: RepositoryConfig,
    ) -> TransferResult:
        package = self.package_for(snapshot)
        scratch = self.session.mkdir("copy", "restore", snapshot.package_name)
        logger.info(f"Restoring {snapshot.short_id} ({snapshot.package_name}) to copy into {mirror.type} repositories")

        with open_repository(self.repository_factory, self.source, self.session) as source:
            await source.restore(RestoreContext(
                snapshot=snapshot,
                package=package,
                snapshot_path=scratch,
                package_config=find_package_repository_config(package, self.source),
                on_progress=handle.progress,
                token=handle.token,
            ))

        restored = package.model_copy(update={"path": str(scratch), "include": None, "exclude": None})
        with open_repository(self.repository_factory, mirror, self.session) as target:
            return await target.backup(BackupContext(
                snapshot=PreSnapshot(id=snapshot.id, date=snapshot.date),
                package=restored,
                path=scratch,
                hostname=snapshot.hostname,
                tags=snapshot.tags,
                package_config=find_package_repository_config(package, mirror),
                on_progress=handle.progress,
                token=handle.token,
            ))

    async def copy(self, handle: TaskHandle, snapshot: ExtendedSnapshot, mirror: RepositoryConfig) -> None:
        if await self.find_in(mirror, snapshot, handle):
            handle.result.data["skipped"] = True
            handle.skip(f"already in {mirror.name}")

        with open_repository(self.repository_factory, mirror, self.session) as target:
            await target.ensure_free_disk_space(self.config.min_free_disk_space)

        key: MemoKey = (mirror.type, snapshot.id, snapshot.package_name)
        holder = self.holders.get(key)
        if holder is not None:
            result = await self.copy_native(handle, holder, snapshot, mirror)
        else:
            result = await self.copy_cross(handle, snapshot, mirror)
            self.holders[key] = mirror
        handle.result.data["bytes"] = result.bytes

    async def exec(self) -> RunSummary:
        o = self.listener.create_orchestrator(self.config.concurrency)

        async def run_snapshots(handle: TaskHandle) -> t.List[TaskNode]:
            snapshots = await self.fetch_snapshots(handle)
            if not snapshots:
                raise NotFoundError(f"No snapshots found in {self.source.name}")
            mirrors = self.get_mirrors()
            if not mirrors:
                raise ConfigurationError(f"No mirror repositories found for {self.source.name}")

            for snapshot in snapshots:
                self.holders[(self.source.type, snapshot.id, snapshot.package_name)] = self.source

            tasks: t.List[TaskNode] = []
            for snapshot in snapshots:
                for mirror in mirrors:
                    collector = LeaseCollector(self.session)
                    tasks.append(o.task(
                        "copy",
                        key_index=(snapshot.id, snapshot.package_name, mirror.name),
                        data={"bytes": 0, "skipped": False},
                        title=f"Copy {snapshot.short_id} ({snapshot.package_name}) to {mirror.name}",
                        run=lambda h, s=snapshot, m=mirror: self.copy(h, s, m),
                        fatal=False,
                        wrapper=collector.dispose_on_finish,
                    ))
            return tasks

        summary = await o.run(o.task(
            "snapshots",
            title=f"Find snapshots in {self.source.name}",
            run=run_snapshots,
        ))
        logger.info(f"Copy from {self.source.name} finished with {summary.errors} error(s)")
        return summary
