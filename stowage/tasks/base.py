"""Task hook contract.

A task hook produces a package's working copy before a backup (for example
a database dump) and consumes the restored copy afterwards.
"""

import typing as t
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from ..config import PackageConfig
from ..lease import ScratchSession
from ..snapshot import PreSnapshot
from ..util.cancel import CancelToken
from ..util.progress import ProgressCallback, noop_progress


@dataclass
class TaskContext:
    """Data handed to every hook call."""

    package: PackageConfig
    snapshot: PreSnapshot
    session: ScratchSession
    snapshot_path: t.Optional[Path] = None
    on_progress: ProgressCallback = noop_progress
    token: CancelToken = field(default_factory=CancelToken)


@dataclass
class TaskOutput:
    """Where the hook left (or wants) the package files."""

    snapshot_path: t.Optional[Path] = None


class TaskHook(ABC):
    """Base class for package task hooks."""

    name: str = ""

    def __init__(self, config: t.Dict[str, t.Any]) -> None:
        self.config = config

    @abstractmethod
    async def backup(self, ctx: TaskContext) -> TaskOutput:
        """Produce the files to back up."""

    async def prepare_restore(self, ctx: TaskContext) -> TaskOutput:
        """Choose where the repository should restore the files."""
        return TaskOutput()

    @abstractmethod
    async def restore(self, ctx: TaskContext) -> None:
        """Consume the files restored into ``ctx.snapshot_path``."""
