"""
Stowage - multi-repository backup orchestrator.

Moves package data into and out of heterogeneous storage backends under a
single snapshot model:
- Content-store archives (tar packs on local disk or SFTP)
- Git repositories (one commit and tag per snapshot)
- Restic repositories (metadata carried as snapshot tags)
- Retention based pruning and cross-repository mirroring
"""

__version__ = "0.1.0"
__author__ = "Stowage Contributors"
