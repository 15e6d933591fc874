"""Scratch directory leases with guaranteed cleanup.

A :class:`ScratchSession` owns the per-process scratch root. Every path it
hands out is recorded in the lease scopes active in the current async
context, and :class:`LeaseCollector` decides when those paths are released:

- ``dispose_on_finish()`` releases the block's leases when the block exits
- ``dispose_if_failed()`` releases them only when the block raises, otherwise
  they become pending on the collector until ``cleanup()``
"""

import asyncio
import os
import shutil
import tempfile
import typing as t
import uuid
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from pathlib import Path

from .errors import DiskSpaceError, IntegrityError
from .util.logging import get_logger
from .util.paths import folder_size, format_size, get_available_space, parse_size

logger = get_logger(__name__)

ROOT_NAME = "stowage-temp"


class LeaseScope:
    """Paths leased while a scope was active."""

    def __init__(self) -> None:
        self.paths: t.Set[Path] = set()


class ScratchSession:
    """Per-process scratch area under ``<base>/stowage-temp/<pid>``."""

    def __init__(self, base_dir: t.Optional[Path] = None) -> None:
        self.root = self.cache_dir(base_dir) / str(os.getpid())
        self._scopes: ContextVar[t.Tuple[LeaseScope, ...]] = ContextVar(
            f"stowage_lease_scopes_{id(self)}", default=()
        )

    @staticmethod
    def cache_dir(base_dir: t.Optional[Path] = None) -> Path:
        """Shared parent of every session root under ``base_dir``."""
        base = Path(base_dir) if base_dir else Path(tempfile.gettempdir())
        return (base / ROOT_NAME).absolute()

    @classmethod
    def clean_cache(cls, base_dir: t.Optional[Path] = None) -> int:
        """Delete the scratch data of every session, including crashed runs.

        Args:
            base_dir: Base directory the sessions were created in

        Returns:
            Number of bytes freed
        """
        cache = cls.cache_dir(base_dir)
        if not cache.exists():
            return 0
        freed = folder_size(cache)
        shutil.rmtree(cache)
        logger.info(f"Removed {cache}, freed {format_size(freed)}")
        return freed

    def __enter__(self) -> "ScratchSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def make_path(self, *keys: str) -> Path:
        """Lease a fresh path named after ``keys``.

        The session root is created; the leased path itself is not.
        """
        name = "-".join([*(str(k) for k in keys if k), uuid.uuid4().hex[:8]])
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / name
        for scope in self._scopes.get():
            scope.paths.add(path)
        return path

    def mkdir(self, *keys: str) -> Path:
        """Lease and create a fresh directory."""
        path = self.make_path(*keys)
        path.mkdir(parents=True)
        return path

    def contains(self, path: Path) -> bool:
        candidate = Path(os.path.abspath(path))
        return candidate != self.root and candidate.is_relative_to(self.root)

    def remove(self, path: Path) -> None:
        """Delete a leased path.

        Raises:
            IntegrityError: If ``path`` lies outside the scratch root
        """
        if not self.contains(path):
            raise IntegrityError(f"Refusing to remove path outside scratch root: {path}")
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()

    async def release(self, paths: t.Iterable[Path]) -> None:
        """Delete leased paths, deepest first, raising the first failure at the end."""
        errors = []
        for path in sorted(paths, key=lambda p: len(p.parts), reverse=True):
            try:
                await asyncio.to_thread(self.remove, path)
            except OSError as e:
                logger.warning(f"Failed to remove scratch path {path}: {e}")
                errors.append(e)
        if errors:
            raise errors[0]

    @contextmanager
    def track(self) -> t.Iterator[LeaseScope]:
        """Record every path leased in the current context while the block runs."""
        scope = LeaseScope()
        reset_token = self._scopes.set(self._scopes.get() + (scope,))
        try:
            yield scope
        finally:
            self._scopes.reset(reset_token)

    def ensure_free_space(self, min_free: t.Optional[t.Union[int, str]]) -> None:
        """Raise DiskSpaceError if the scratch volume has less than ``min_free`` bytes."""
        if not min_free:
            return
        required = parse_size(min_free)
        available = get_available_space(self.root)
        if available < required:
            raise DiskSpaceError(
                f"Not enough free space in {self.root}: "
                f"{format_size(available)} available, {format_size(required)} required"
            )

    def close(self) -> None:
        """Delete the whole session root."""
        if self.root.exists():
            logger.debug(f"Removing scratch root {self.root}")
            shutil.rmtree(self.root)


class LeaseCollector:
    """Owns leases until an explicit release point."""

    def __init__(self, session: ScratchSession) -> None:
        self.session = session
        self._pending: t.Set[Path] = set()
        self._children: t.List["LeaseCollector"] = []

    def create(self) -> "LeaseCollector":
        """Create a child collector whose pending leases this one also releases."""
        child = LeaseCollector(self.session)
        self._children.append(child)
        return child

    @property
    def pending(self) -> bool:
        return bool(self._pending) or any(child.pending for child in self._children)

    def adopt(self, paths: t.Iterable[Path]) -> None:
        """Take ownership of already leased paths."""
        self._pending.update(paths)

    def _drain(self) -> t.Set[Path]:
        paths, self._pending = self._pending, set()
        for child in self._children:
            paths |= child._drain()
        return paths

    async def cleanup(self) -> None:
        """Release every pending lease, including those of child collectors."""
        paths = self._drain()
        if paths:
            logger.debug(f"Releasing {len(paths)} scratch path(s)")
            await self.session.release(paths)

    @asynccontextmanager
    async def dispose_on_finish(self) -> t.AsyncIterator[LeaseScope]:
        with self.session.track() as scope:
            try:
                yield scope
            finally:
                await self.session.release(scope.paths)

    @asynccontextmanager
    async def dispose_if_failed(self) -> t.AsyncIterator[LeaseScope]:
        with self.session.track() as scope:
            try:
                yield scope
            except BaseException:
                await self.session.release(scope.paths)
                raise
        self.adopt(scope.paths)

    @asynccontextmanager
    async def cleanup_after(self) -> t.AsyncIterator[LeaseScope]:
        """Release the block's leases and everything pending once the block ends."""
        with self.session.track() as scope:
            try:
                yield scope
            finally:
                self.adopt(scope.paths)
                await self.cleanup()
