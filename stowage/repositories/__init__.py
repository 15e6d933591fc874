"""Repository backends."""

from ..config import RepositoryConfig
from ..errors import ConfigurationError
from ..lease import ScratchSession
from .archive import ArchiveRepository
from .base import (
    BackupContext,
    CopyContext,
    DiskStats,
    Repository,
    RestoreContext,
    TransferResult,
)
from .git import GitRepository
from .restic import ResticRepository


def create_repository(config: RepositoryConfig, session: ScratchSession) -> Repository:
    """Create the backend for a repository configuration.

    Raises:
        ConfigurationError: If the repository type is unknown
    """
    if config.type == "archive":
        return ArchiveRepository(config, session)
    elif config.type == "git":
        return GitRepository(config, session)
    elif config.type == "restic":
        return ResticRepository(config, session)
    else:
        raise ConfigurationError(f"Invalid repository type: {config.type}")


__all__ = [
    # base
    "BackupContext",
    "CopyContext",
    "DiskStats",
    "Repository",
    "RestoreContext",
    "TransferResult",
    # backends
    "ArchiveRepository",
    "GitRepository",
    "ResticRepository",
    "create_repository",
]
