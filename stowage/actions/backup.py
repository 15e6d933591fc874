"""Back up packages into their repositories and mirrors."""

import typing as t
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from ..config import (
    PackageConfig,
    StowageConfig,
    filter_packages,
    filter_repository_by_enabled,
    find_package_repository_config,
    find_repository_or_fail,
    resolve_packages,
)
from ..errors import ConfigurationError, NotFoundError, StowageError
from ..lease import LeaseCollector, ScratchSession
from ..orchestrator import Orchestrator, RunSummary, TaskHandle, TaskNode
from ..reports import format_summary, send_report, should_report
from ..repositories import BackupContext, CopyContext, create_repository
from ..snapshot import PreSnapshot, SnapshotFilter
from ..tasks import TaskContext, create_task
from ..util.logging import get_logger
from ..util.paths import ensure_exists_dir
from .base import ActionListener, RepositoryFactory, open_repository
from .prune import PruneAction, PruneOptions

logger = get_logger(__name__)


class BackupOptions(BaseModel):
    """Selection and switches for a backup run."""

    package_names: t.Optional[t.List[str]] = None
    package_task_names: t.Optional[t.List[str]] = None
    repository_names: t.Optional[t.List[str]] = None
    repository_types: t.Optional[t.List[str]] = None
    tags: t.List[str] = Field(default_factory=list)
    date: t.Optional[str] = Field(default=None, description="Override the snapshot date")
    prune: bool = Field(default=False, description="Prune each package after its backup")


class BackupAction:
    """Backup workflow.

    Per package the tasks run in order: the optional task hook, one backup per
    repository, lease cleanup, one copy per mirror and an optional prune.
    Packages run concurrently; reports run once every package finished.
    """

    def __init__(
        self,
        config: StowageConfig,
        options: BackupOptions,
        session: ScratchSession,
        repository_factory: RepositoryFactory = create_repository,
        listener: t.Optional[ActionListener] = None,
    ) -> None:
        self.config = config
        self.options = options
        self.session = session
        self.repository_factory = repository_factory
        self.listener = listener or ActionListener()
        self.snapshot: t.Optional[PreSnapshot] = None

    def prepare_snapshot(self) -> PreSnapshot:
        try:
            return PreSnapshot.create(self.options.date)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid snapshot date: {self.options.date}") from e

    def get_packages(self, snapshot: PreSnapshot) -> t.List[PackageConfig]:
        packages = filter_packages(
            self.config,
            action="backup",
            package_names=self.options.package_names,
            package_task_names=self.options.package_task_names,
            repository_names=self.options.repository_names,
            repository_types=self.options.repository_types,
        )
        return resolve_packages(
            packages,
            {"snapshot_id": snapshot.id, "snapshot_date": snapshot.date, "action": "backup"},
            temp_path=lambda name: self.session.make_path("package", name),
        )

    def get_repository_names(self, names: t.Sequence[str]) -> t.List[str]:
        """Drop repositories that receive copies from another selected one."""
        mirrors: t.Set[str] = set()
        for name in names:
            mirrors.update(find_repository_or_fail(self.config, name).mirror_repo_names)
        selected = []
        for name in names:
            if name in mirrors:
                logger.debug(f"Skipping direct backup to mirror {name}")
                continue
            selected.append(name)
        return selected

    def get_mirror_names(self, repository_name: str, selected: t.Sequence[str]) -> t.List[str]:
        names = []
        for mirror_name in find_repository_or_fail(self.config, repository_name).mirror_repo_names:
            mirror = find_repository_or_fail(self.config, mirror_name)
            if mirror_name in selected or not filter_repository_by_enabled(mirror, "backup"):
                continue
            names.append(mirror_name)
        return names

    def _package_path(self, o: Orchestrator, package: PackageConfig) -> Path:
        if package.task is not None:
            task_result = o.result("task", package.name)
            if task_result.failed:
                raise StowageError("Task failed")
            if task_result.data.get("snapshot_path") is not None:
                return Path(task_result.data["snapshot_path"])
        if not package.path:
            raise StowageError(f"Package '{package.name}' has no path")
        return ensure_exists_dir(Path(package.path))

    async def backup(
        self,
        handle: TaskHandle,
        snapshot: PreSnapshot,
        package: PackageConfig,
        repository_name: str,
    ) -> None:
        path = self._package_path(handle.orchestrator, package)
        repository_config = find_repository_or_fail(self.config, repository_name)

        with open_repository(self.repository_factory, repository_config, self.session) as repository:
            await repository.ensure_free_disk_space(self.config.min_free_disk_space)
            result = await repository.backup(BackupContext(
                snapshot=snapshot,
                package=package,
                path=path,
                hostname=self.config.get_hostname(),
                tags=self.options.tags,
                package_config=find_package_repository_config(package, repository_config),
                on_progress=handle.progress,
                token=handle.token,
            ))
        handle.result.data["bytes"] = result.bytes

    async def copy(
        self,
        handle: TaskHandle,
        snapshot: PreSnapshot,
        package: PackageConfig,
        repository_name: str,
        mirror_name: str,
    ) -> None:
        backup_result = handle.orchestrator.result("backup", (package.name, repository_name))
        if backup_result.failed:
            raise StowageError(f"Backup to {repository_name} failed")

        repository_config = find_repository_or_fail(self.config, repository_name)
        mirror_config = find_repository_or_fail(self.config, mirror_name)

        with open_repository(self.repository_factory, mirror_config, self.session) as mirror:
            await mirror.ensure_free_disk_space(self.config.min_free_disk_space)

        with open_repository(self.repository_factory, repository_config, self.session) as repository:
            repository.check_mirror(mirror_config)
            stored = await repository.fetch_snapshots(
                SnapshotFilter(ids=[snapshot.id], package_names=[package.name]), handle.token
            )
            if not stored:
                raise NotFoundError(f"Snapshot {snapshot.short_id} not found in {repository_name}")
            result = await repository.copy(CopyContext(
                snapshot=stored[0],
                package=package,
                mirror=mirror_config,
                on_progress=handle.progress,
                token=handle.token,
            ))
        handle.result.data["bytes"] = result.bytes

    def package_tasks(self, o: Orchestrator, snapshot: PreSnapshot, package: PackageConfig) -> TaskNode:
        collector = LeaseCollector(self.session)
        items: t.List[TaskNode] = []

        if package.task is not None:
            async def run_task(handle: TaskHandle) -> None:
                hook = create_task(package.task)
                output = await hook.backup(TaskContext(
                    package=package,
                    snapshot=snapshot,
                    session=self.session,
                    on_progress=handle.progress,
                    token=handle.token,
                ))
                handle.result.data["snapshot_path"] = output.snapshot_path

            items.append(o.task(
                "task",
                key_index=package.name,
                data={"snapshot_path": None},
                title=f"Run {package.task.name} task for {package.name}",
                run=run_task,
                fatal=False,
                wrapper=collector.dispose_if_failed,
            ))

        repository_names = self.get_repository_names(package.repository_names or [])
        for repository_name in repository_names:
            items.append(o.task(
                "backup",
                key_index=(package.name, repository_name),
                data={"bytes": 0},
                title=f"Back up {package.name} to {repository_name}",
                run=lambda handle, name=repository_name: self.backup(handle, snapshot, package, name),
                fatal=False,
                wrapper=collector.dispose_on_finish,
            ))

        items.append(o.task(
            "cleanup",
            key_index=package.name,
            title=f"Clean up {package.name}",
            run=lambda handle: collector.cleanup(),
            fatal=False,
            enabled=lambda: collector.pending,
        ))

        for repository_name in repository_names:
            for mirror_name in self.get_mirror_names(repository_name, repository_names):
                items.append(o.task(
                    "copy",
                    key_index=(package.name, repository_name, mirror_name),
                    data={"bytes": 0},
                    title=f"Copy {package.name} from {repository_name} to {mirror_name}",
                    run=lambda handle, source=repository_name, mirror=mirror_name: self.copy(
                        handle, snapshot, package, source, mirror
                    ),
                    fatal=False,
                    wrapper=collector.cleanup_after,
                ))

        if self.options.prune:
            async def run_prune(handle: TaskHandle) -> None:
                result = await PruneAction(
                    self.config,
                    PruneOptions(
                        package_names=[package.name],
                        repository_names=self.options.repository_names,
                        repository_types=self.options.repository_types,
                        group_by=["package_name", "repository_name"],
                    ),
                    self.session,
                    self.repository_factory,
                ).exec(handle.token)
                handle.result.data.update(total=result.total, prune=result.prune)

            items.append(o.task(
                "prune",
                key_index=package.name,
                data={"total": 0, "prune": 0},
                title=f"Prune {package.name}",
                run=run_prune,
                fatal=False,
            ))

        return o.sequence(*items)

    def report_tasks(self, o: Orchestrator) -> t.List[TaskNode]:
        tasks: t.List[TaskNode] = []
        for index, report in enumerate(self.config.reports):
            async def run_report(handle: TaskHandle, report=report) -> None:
                results = [r for r in handle.orchestrator.results() if r.key != "report"]
                failed = any(r.failed and r.is_leaf for r in results)
                if not should_report(report, failed):
                    handle.skip(f"only on {report.when}")
                await send_report(report, format_summary(results), handle.token)

            tasks.append(o.task(
                "report",
                key_index=index,
                title=f"Send report {report.name or index}",
                run=run_report,
                fatal=False,
            ))
        return tasks

    async def exec(self) -> RunSummary:
        """Run the backup and return the run summary."""
        o = self.listener.create_orchestrator(self.config.concurrency)
        snapshot = self.prepare_snapshot()
        self.snapshot = snapshot

        async def run_snapshot(handle: TaskHandle) -> t.List[TaskNode]:
            self.session.ensure_free_space(self.config.min_free_disk_space)
            packages = self.get_packages(snapshot)
            if not packages:
                logger.warning("No packages selected for backup")
            handle.result.data["packages"] = [p.name for p in packages]
            groups = [self.package_tasks(o, snapshot, package) for package in packages]
            return [o.parallel(*groups), *self.report_tasks(o)]

        summary = await o.run(o.task(
            "snapshot",
            data={"id": snapshot.id, "date": snapshot.date, "packages": []},
            title=f"Create snapshot {snapshot.short_id}",
            run=run_snapshot,
        ))
        logger.info(f"Backup {snapshot.short_id} finished with {summary.errors} error(s)")
        return summary
