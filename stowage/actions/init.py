"""Initialize the configured repositories."""

import typing as t

from pydantic import BaseModel

from ..config import RepositoryConfig, StowageConfig, filter_repository
from ..lease import ScratchSession
from ..orchestrator import RunSummary, TaskHandle
from ..repositories import create_repository
from ..util.logging import get_logger
from .base import ActionListener, RepositoryFactory, open_repository

logger = get_logger(__name__)


class InitOptions(BaseModel):
    """Repositories to initialize."""

    repository_names: t.Optional[t.List[str]] = None
    repository_types: t.Optional[t.List[str]] = None


class InitAction:
    """Run ``init`` on every selected repository, one task each."""

    def __init__(
        self,
        config: StowageConfig,
        options: InitOptions,
        session: ScratchSession,
        repository_factory: RepositoryFactory = create_repository,
        listener: t.Optional[ActionListener] = None,
    ) -> None:
        self.config = config
        self.options = options
        self.session = session
        self.repository_factory = repository_factory
        self.listener = listener or ActionListener()

    def repositories(self) -> t.List[RepositoryConfig]:
        return [
            repository
            for repository in self.config.repositories
            if filter_repository(
                repository,
                "init",
                include=self.options.repository_names,
                types=self.options.repository_types,
            )
        ]

    async def init(self, handle: TaskHandle, repository_config: RepositoryConfig) -> None:
        with open_repository(self.repository_factory, repository_config, self.session) as repository:
            await repository.init(handle.token)
        logger.info(f"Initialized repository {repository_config.name}")

    async def exec(self) -> RunSummary:
        o = self.listener.create_orchestrator(self.config.concurrency)
        repositories = self.repositories()
        if not repositories:
            logger.warning("No repositories selected for init")

        tasks = [
            o.task(
                "init",
                key_index=repository.name,
                title=f"Initialize {repository.name}",
                run=lambda handle, repository=repository: self.init(handle, repository),
                fatal=False,
            )
            for repository in repositories
        ]
        return await o.run(o.parallel(*tasks))
