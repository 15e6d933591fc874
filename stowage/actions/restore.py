"""Restore a snapshot of every selected package."""

import typing as t
from pathlib import Path

from pydantic import BaseModel

from ..config import (
    PackageConfig,
    StowageConfig,
    find_package_or_fail,
    find_package_repository_config,
    find_repository_or_fail,
    resolve_package,
)
from ..errors import ConfigurationError, NotFoundError
from ..lease import LeaseCollector, ScratchSession
from ..orchestrator import Orchestrator, RunSummary, TaskHandle, TaskNode
from ..repositories import RestoreContext, create_repository
from ..snapshot import ExtendedSnapshot
from ..tasks import TaskContext, TaskHook, create_task
from ..util.cancel import CancelToken
from ..util.logging import get_logger
from ..util.paths import init_empty_dir
from .base import ActionListener, RepositoryFactory, open_repository
from .snapshots import SnapshotsAction, SnapshotsOptions

logger = get_logger(__name__)


class RestoreOptions(BaseModel):
    """Which snapshot to restore and where."""

    snapshot_id: str
    package_names: t.Optional[t.List[str]] = None
    package_task_names: t.Optional[t.List[str]] = None
    repository_names: t.Optional[t.List[str]] = None
    repository_types: t.Optional[t.List[str]] = None
    tags: t.Optional[t.List[str]] = None
    initial: bool = False


class RestoreAction:
    """Restore workflow."""

    def __init__(
        self,
        config: StowageConfig,
        options: RestoreOptions,
        session: ScratchSession,
        repository_factory: RepositoryFactory = create_repository,
        listener: t.Optional[ActionListener] = None,
    ) -> None:
        self.config = config
        self.options = options
        self.session = session
        self.repository_factory = repository_factory
        self.listener = listener or ActionListener()

    async def find_snapshots(self, token: t.Optional[CancelToken] = None) -> t.List[ExtendedSnapshot]:
        """First matching snapshot per package, in repository order.

        Raises:
            NotFoundError: If no repository holds the snapshot
        """
        if not self.options.snapshot_id:
            raise ConfigurationError("Snapshot id is required")

        lister = SnapshotsAction(
            self.config,
            SnapshotsOptions(
                ids=[self.options.snapshot_id],
                package_names=self.options.package_names,
                package_task_names=self.options.package_task_names,
                repository_names=self.options.repository_names,
                repository_types=self.options.repository_types,
                tags=self.options.tags,
            ),
            self.session,
            self.repository_factory,
        )

        found: t.Dict[str, ExtendedSnapshot] = {}
        for repository in lister.repositories("restore"):
            for snapshot in await lister.fetch(repository, token):
                found.setdefault(snapshot.package_name, snapshot)

        if not found:
            raise NotFoundError(f"Snapshot {self.options.snapshot_id} not found")
        return list(found.values())

    def resolve(self, snapshot: ExtendedSnapshot) -> PackageConfig:
        package = find_package_or_fail(self.config, snapshot.package_name)
        return resolve_package(package, {
            "snapshot_id": snapshot.id,
            "snapshot_date": snapshot.date,
            "action": "restore",
            "temp": str(self.session.make_path("package", package.name)),
        })

    def restore_path(self, package: PackageConfig) -> Path:
        path = package.path if self.options.initial else (package.restore_path or package.path)
        if not path:
            raise ConfigurationError(f"Package '{package.name}' has no restore path")
        return Path(path)

    async def restore(
        self,
        handle: TaskHandle,
        snapshot: ExtendedSnapshot,
        collector: LeaseCollector,
    ) -> t.Optional[t.List[TaskNode]]:
        package = self.resolve(snapshot)
        hook: t.Optional[TaskHook] = create_task(package.task) if package.task else None

        def task_context() -> TaskContext:
            return TaskContext(
                package=package,
                snapshot=snapshot,
                session=self.session,
                on_progress=handle.progress,
                token=handle.token,
            )

        snapshot_path = None
        if hook is not None:
            snapshot_path = (await hook.prepare_restore(task_context())).snapshot_path
        if snapshot_path is None:
            snapshot_path = self.restore_path(package)
        init_empty_dir(snapshot_path)

        repository_config = find_repository_or_fail(self.config, snapshot.repository_name)
        with open_repository(self.repository_factory, repository_config, self.session) as repository:
            await repository.ensure_free_disk_space(self.config.min_free_disk_space)
            await repository.restore(RestoreContext(
                snapshot=snapshot,
                package=package,
                snapshot_path=snapshot_path,
                package_config=find_package_repository_config(package, repository_config),
                on_progress=handle.progress,
                token=handle.token,
            ))
        handle.result.data["snapshot_path"] = snapshot_path

        if hook is None:
            return None

        async def run_hook(child: TaskHandle) -> None:
            await hook.restore(TaskContext(
                package=package,
                snapshot=snapshot,
                session=self.session,
                snapshot_path=snapshot_path,
                on_progress=child.progress,
                token=child.token,
            ))

        return [handle.orchestrator.task(
            "task",
            key_index=(package.name, snapshot.repository_name),
            title=f"Run {package.task.name} task for {package.name}",
            run=run_hook,
            fatal=False,
            wrapper=collector.cleanup_after,
        )]

    async def exec(self) -> RunSummary:
        o: Orchestrator = self.listener.create_orchestrator(self.config.concurrency)

        async def run_snapshots(handle: TaskHandle) -> t.List[TaskNode]:
            snapshots = await self.find_snapshots(handle.token)
            handle.result.data["packages"] = [s.package_name for s in snapshots]
            tasks = []
            for snapshot in snapshots:
                collector = LeaseCollector(self.session)
                tasks.append(o.task(
                    "restore",
                    key_index=(snapshot.package_name, snapshot.repository_name),
                    data={"snapshot_path": None},
                    title=f"Restore {snapshot.package_name} from {snapshot.repository_name}",
                    run=lambda h, s=snapshot, c=collector: self.restore(h, s, c),
                    fatal=False,
                    wrapper=collector.dispose_if_failed,
                ))
            return [o.parallel(*tasks)]

        summary = await o.run(o.task(
            "snapshots",
            data={"id": self.options.snapshot_id, "packages": []},
            title=f"Find snapshot {self.options.snapshot_id}",
            run=run_snapshots,
        ))
        logger.info(f"Restore of {self.options.snapshot_id} finished with {summary.errors} error(s)")
        return summary
