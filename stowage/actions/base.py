"""Helpers shared by the workflow actions."""

import typing as t
from contextlib import contextmanager
from dataclasses import dataclass

from ..config import RepositoryConfig
from ..lease import ScratchSession
from ..orchestrator import Orchestrator, TaskResult
from ..repositories import Repository
from ..util.progress import Progress

RepositoryFactory = t.Callable[[RepositoryConfig, ScratchSession], Repository]


@dataclass
class ActionListener:
    """Observers forwarded to the orchestrator of an action."""

    on_state: t.Optional[t.Callable[[TaskResult], None]] = None
    on_progress: t.Optional[t.Callable[[TaskResult, Progress], None]] = None

    def create_orchestrator(self, concurrency: int) -> Orchestrator:
        return Orchestrator(
            concurrency=concurrency,
            on_state=self.on_state,
            on_progress=self.on_progress,
        )


@contextmanager
def open_repository(
    factory: RepositoryFactory,
    config: RepositoryConfig,
    session: ScratchSession,
) -> t.Iterator[Repository]:
    """Create a repository and close it when the block ends."""
    repository = factory(config, session)
    try:
        yield repository
    finally:
        repository.close()
