"""Workflow actions."""

from .backup import BackupAction, BackupOptions
from .base import ActionListener, RepositoryFactory, open_repository
from .copy import CopyAction, CopyOptions
from .init import InitAction, InitOptions
from .prune import PruneAction, PruneEntry, PruneOptions, PruneResult
from .restore import RestoreAction, RestoreOptions
from .snapshots import SnapshotsAction, SnapshotsOptions

__all__ = [
    # base
    "ActionListener",
    "RepositoryFactory",
    "open_repository",
    # init
    "InitAction",
    "InitOptions",
    # snapshots
    "SnapshotsAction",
    "SnapshotsOptions",
    # backup
    "BackupAction",
    "BackupOptions",
    # restore
    "RestoreAction",
    "RestoreOptions",
    # copy
    "CopyAction",
    "CopyOptions",
    # prune
    "PruneAction",
    "PruneEntry",
    "PruneOptions",
    "PruneResult",
]
