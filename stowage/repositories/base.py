"""Repository contract shared by every backend."""

import typing as t
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from ..config import PackageConfig, RepositoryConfig, ensure_same_repository_type
from ..errors import DiskSpaceError
from ..lease import ScratchSession
from ..snapshot import PreSnapshot, Snapshot, SnapshotFilter
from ..util.cancel import CancelToken
from ..util.logging import get_logger
from ..util.paths import format_size, parse_size
from ..util.progress import ProgressCallback, noop_progress

logger = get_logger(__name__)


@dataclass
class DiskStats:
    """Space of the volume holding a repository."""

    total: int
    free: int


@dataclass
class TransferResult:
    """Bytes written by a backup or copy."""

    bytes: int = 0


@dataclass
class BackupContext:
    """Everything a repository needs to store one package snapshot."""

    snapshot: PreSnapshot
    package: PackageConfig
    path: Path
    hostname: str
    tags: t.List[str] = field(default_factory=list)
    package_config: t.Dict[str, t.Any] = field(default_factory=dict)
    on_progress: ProgressCallback = noop_progress
    token: CancelToken = field(default_factory=CancelToken)


@dataclass
class RestoreContext:
    """Everything a repository needs to materialise one snapshot."""

    snapshot: Snapshot
    package: PackageConfig
    snapshot_path: Path
    package_config: t.Dict[str, t.Any] = field(default_factory=dict)
    on_progress: ProgressCallback = noop_progress
    token: CancelToken = field(default_factory=CancelToken)


@dataclass
class CopyContext:
    """Native copy of one snapshot into a mirror repository of the same type."""

    snapshot: Snapshot
    package: PackageConfig
    mirror: RepositoryConfig
    on_progress: ProgressCallback = noop_progress
    token: CancelToken = field(default_factory=CancelToken)


class Repository(ABC):
    """Uniform storage operations over one configured backend.

    ``fetch_snapshots`` must rebuild every Snapshot from the backend's own
    metadata so listing never depends on a side database.
    """

    def __init__(self, config: RepositoryConfig, session: ScratchSession) -> None:
        """Initialize repository.

        Args:
            config: Repository configuration
            session: Scratch session for temporary files
        """
        self.config = config
        self.session = session

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def type(self) -> str:
        return self.config.type

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.get_source()!r})"

    @abstractmethod
    def get_source(self) -> str:
        """Human readable location of the backend."""

    async def fetch_disk_stats(self) -> t.Optional[DiskStats]:
        """Free and total space of the backend, when it can be known."""
        return None

    async def ensure_free_disk_space(self, min_free: t.Optional[t.Union[int, str]]) -> None:
        """Raise DiskSpaceError if the backend has less than ``min_free`` bytes free.

        Backends that can not report disk stats always pass.
        """
        if not min_free:
            return
        stats = await self.fetch_disk_stats()
        if stats is None:
            logger.debug(f"Disk stats unavailable for {self.name}, skipping space check")
            return
        required = parse_size(min_free)
        if stats.free < required:
            raise DiskSpaceError(
                f"Not enough free space in repository '{self.name}': "
                f"{format_size(stats.free)} available, {format_size(required)} required"
            )

    def check_mirror(self, mirror: RepositoryConfig) -> None:
        """Raise ConfigurationError unless ``mirror`` can receive native copies."""
        ensure_same_repository_type(self.config, mirror)

    @abstractmethod
    async def init(self, token: t.Optional[CancelToken] = None) -> None:
        """Create the backend storage when missing."""

    @abstractmethod
    async def fetch_snapshots(
        self,
        snapshot_filter: SnapshotFilter,
        token: t.Optional[CancelToken] = None,
    ) -> t.List[Snapshot]:
        """List stored snapshots matching the filter."""

    @abstractmethod
    async def backup(self, ctx: BackupContext) -> TransferResult:
        """Store the files of ``ctx.path`` as a new snapshot."""

    @abstractmethod
    async def restore(self, ctx: RestoreContext) -> None:
        """Write the snapshot's files into ``ctx.snapshot_path``."""

    @abstractmethod
    async def copy(self, ctx: CopyContext) -> TransferResult:
        """Copy a snapshot into ``ctx.mirror`` using the backend's own primitives."""

    @abstractmethod
    async def prune(self, snapshot: Snapshot, token: t.Optional[CancelToken] = None) -> None:
        """Delete one snapshot."""

    def close(self) -> None:
        """Release connections held by the backend."""
