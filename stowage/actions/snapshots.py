"""List snapshots across repositories."""

import typing as t

from pydantic import BaseModel, Field

from ..config import RepositoryConfig, StowageConfig, filter_repository
from ..lease import ScratchSession
from ..repositories import create_repository
from ..retention import RetentionPolicy, evaluate
from ..snapshot import ExtendedSnapshot, SnapshotFilter
from ..util.cancel import CancelToken
from ..util.logging import get_logger
from ..util.patterns import create_pattern_filter
from ..util.timeutil import parse_iso
from .base import RepositoryFactory, open_repository

logger = get_logger(__name__)


class SnapshotsOptions(BaseModel):
    """Filters for listing snapshots."""

    ids: t.Optional[t.List[str]] = None
    package_names: t.Optional[t.List[str]] = None
    package_task_names: t.Optional[t.List[str]] = None
    repository_names: t.Optional[t.List[str]] = None
    repository_types: t.Optional[t.List[str]] = None
    tags: t.Optional[t.List[str]] = None
    hostnames: t.Optional[t.List[str]] = None
    group_by: t.List[str] = Field(default_factory=lambda: ["package_name", "repository_name"])
    keep: RetentionPolicy = Field(default_factory=RetentionPolicy)


class SnapshotsAction:
    """Fetch, merge and filter the snapshots of every selected repository."""

    def __init__(
        self,
        config: StowageConfig,
        options: SnapshotsOptions,
        session: ScratchSession,
        repository_factory: RepositoryFactory = create_repository,
    ) -> None:
        self.config = config
        self.options = options
        self.session = session
        self.repository_factory = repository_factory

    def snapshot_filter(self) -> SnapshotFilter:
        return SnapshotFilter(
            ids=self.options.ids,
            package_names=self.options.package_names,
            package_task_names=self.options.package_task_names,
            tags=self.options.tags,
        )

    def repositories(self, action: str) -> t.List[RepositoryConfig]:
        return [
            repository
            for repository in self.config.repositories
            if filter_repository(
                repository,
                action,
                include=self.options.repository_names,
                types=self.options.repository_types,
            )
        ]

    async def fetch(
        self,
        repository: RepositoryConfig,
        token: t.Optional[CancelToken] = None,
    ) -> t.List[ExtendedSnapshot]:
        """Fetch one repository's snapshots matching the id, package, task and tag filters."""
        with open_repository(self.repository_factory, repository, self.session) as repo:
            snapshots = await repo.fetch_snapshots(self.snapshot_filter(), token)
        logger.debug(f"Found {len(snapshots)} snapshot(s) in {repository.name}")
        hostname_filter = create_pattern_filter(self.options.hostnames)
        return [
            ExtendedSnapshot.from_snapshot(snapshot, repository.name, repository.type)
            for snapshot in snapshots
            if hostname_filter(snapshot.hostname)
        ]

    async def exec(
        self,
        action: str = "snapshots",
        token: t.Optional[CancelToken] = None,
    ) -> t.List[ExtendedSnapshot]:
        """List snapshots newest first.

        Args:
            action: Workflow whose repository enablement applies
            token: Cancellation token

        Returns:
            Snapshots sorted by date descending, reduced by the ``keep`` options
        """
        snapshots: t.List[ExtendedSnapshot] = []
        for repository in self.repositories(action):
            snapshots.extend(await self.fetch(repository, token))

        snapshots.sort(key=lambda s: parse_iso(s.date), reverse=True)

        if self.options.keep.has_values():
            snapshots = evaluate(snapshots, self.options.group_by, self.options.keep).keep
        return snapshots
