"""Delete snapshots that a retention policy does not keep."""

import typing as t
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from ..config import StowageConfig, find_repository_or_fail
from ..lease import ScratchSession
from ..repositories import Repository, create_repository
from ..retention import (
    MODE_FILTER,
    MODE_IDS,
    RetentionPolicy,
    RetentionResult,
    evaluate,
    select_prune_mode,
)
from ..snapshot import ExtendedSnapshot
from ..util.cancel import CancelToken
from ..util.logging import get_logger
from .base import RepositoryFactory
from .snapshots import SnapshotsAction, SnapshotsOptions

logger = get_logger(__name__)


class PruneOptions(BaseModel):
    """Selection of snapshots to prune."""

    ids: t.Optional[t.List[str]] = None
    package_names: t.Optional[t.List[str]] = None
    package_task_names: t.Optional[t.List[str]] = None
    repository_names: t.Optional[t.List[str]] = None
    repository_types: t.Optional[t.List[str]] = None
    tags: t.Optional[t.List[str]] = None
    hostnames: t.Optional[t.List[str]] = None
    group_by: t.List[str] = Field(default_factory=lambda: ["package_name", "repository_name"])
    keep: t.Optional[RetentionPolicy] = None
    dry_run: bool = False


@dataclass
class PruneEntry:
    """One listed snapshot and the prune decision."""

    snapshot: ExtendedSnapshot
    keep: bool
    reasons: t.List[str] = field(default_factory=list)


@dataclass
class PruneResult:
    """Totals of a prune run."""

    total: int
    prune: int
    entries: t.List[PruneEntry] = field(default_factory=list)


class PruneAction:
    """List snapshots, evaluate retention and prune the rest."""

    def __init__(
        self,
        config: StowageConfig,
        options: PruneOptions,
        session: ScratchSession,
        repository_factory: RepositoryFactory = create_repository,
    ) -> None:
        self.config = config
        self.options = options
        self.session = session
        self.repository_factory = repository_factory

    def resolve_policy(self, group: t.List[ExtendedSnapshot]) -> t.Optional[RetentionPolicy]:
        """Policy of the group's package, falling back to the global policy."""
        package_name = group[0].package_name
        package = next((p for p in self.config.packages if p.name == package_name), None)
        if package is not None and package.prune_policy is not None:
            return package.prune_policy
        return self.config.prune_policy

    def evaluate(self, mode: str, snapshots: t.List[ExtendedSnapshot]) -> RetentionResult[ExtendedSnapshot]:
        if mode == MODE_IDS:
            return RetentionResult(snapshots, set(), {})
        if mode == MODE_FILTER:
            return evaluate(snapshots, self.options.group_by, self.options.keep)
        return evaluate(snapshots, self.options.group_by, self.resolve_policy)

    async def exec(self, token: t.Optional[CancelToken] = None) -> PruneResult:
        """Run the prune.

        Raises:
            ConfigurationError: On conflicting filters, before any repository call
        """
        options = self.options
        mode = select_prune_mode(options.ids, options.keep, options.group_by)

        snapshots = await SnapshotsAction(
            self.config,
            SnapshotsOptions(
                ids=options.ids,
                package_names=options.package_names,
                package_task_names=options.package_task_names,
                repository_names=options.repository_names,
                repository_types=options.repository_types,
                tags=options.tags,
                hostnames=options.hostnames,
                group_by=options.group_by,
            ),
            self.session,
            self.repository_factory,
        ).exec("prune", token)

        retention = self.evaluate(mode, snapshots)
        entries = [
            PruneEntry(snapshot=s, keep=retention.is_kept(s), reasons=retention.reasons_for(s))
            for s in snapshots
        ]
        to_prune = retention.drop
        result = PruneResult(total=len(snapshots), prune=len(to_prune), entries=entries)

        if options.dry_run:
            logger.info(f"Dry run: {len(to_prune)} of {len(snapshots)} snapshot(s) would be pruned")
            return result

        repositories: t.Dict[str, Repository] = {}
        try:
            for snapshot in to_prune:
                repository = repositories.get(snapshot.repository_name)
                if repository is None:
                    repository = self.repository_factory(
                        find_repository_or_fail(self.config, snapshot.repository_name), self.session
                    )
                    repositories[snapshot.repository_name] = repository
                logger.info(f"Pruning {snapshot.short_id} ({snapshot.package_name}) from {repository.name}")
                await repository.prune(snapshot, token)
        finally:
            for repository in repositories.values():
                repository.close()

        return result
