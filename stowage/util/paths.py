"""Utility functions for path operations."""

import os
import re
import shutil
from pathlib import Path
from typing import Optional, Union

from ..errors import ConfigurationError, IntegrityError, NotFoundError
from ..util.logging import get_logger

logger = get_logger(__name__)

_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "k": 1024,
    "kb": 1024,
    "m": 1024 ** 2,
    "mb": 1024 ** 2,
    "g": 1024 ** 3,
    "gb": 1024 ** 3,
    "t": 1024 ** 4,
    "tb": 1024 ** 4,
}


def ensure_directory(path: Path) -> Path:
    """Ensure directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def ensure_exists_dir(path: Path) -> Path:
    """Ensure ``path`` is an existing directory.

    Raises:
        NotFoundError: If the directory does not exist
    """
    if not path.is_dir():
        raise NotFoundError(f"Directory does not exist: {path}")
    return path


def is_empty_dir(path: Path) -> bool:
    """Check whether a directory is missing or has no entries."""
    if not path.exists():
        return True
    return not any(path.iterdir())


def init_empty_dir(path: Path) -> Path:
    """Create ``path`` if needed and make sure it is empty.

    Raises:
        IntegrityError: If the directory already holds entries
    """
    ensure_directory(path)
    if not is_empty_dir(path):
        raise IntegrityError(f"Target directory is not empty: {path}")
    logger.debug(f"Using empty directory {path}")
    return path


def folder_size(path: Path, exclude: Optional[str] = None) -> int:
    """Sum the size of every regular file below ``path``."""
    total = 0
    for root, dirs, files in os.walk(path):
        if exclude and exclude in dirs:
            dirs.remove(exclude)
        for name in files:
            file_path = Path(root) / name
            if not file_path.is_symlink():
                total += file_path.stat().st_size
    return total


def safe_filename(filename: str) -> str:
    """Create a safe filename by replacing problematic characters."""
    safe_name = re.sub(r'[/\\:*?"<>|\n\r\t]', "_", filename).strip(" .")
    return safe_name or "unknown"


def is_local_path(location: str) -> bool:
    """Check whether a repository location refers to the local filesystem."""
    return "://" not in location or location.startswith("file://")


def get_available_space(path: Path) -> int:
    """Get available space in bytes for the given path (or its nearest existing parent)."""
    existing = path
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    return shutil.disk_usage(existing).free


def parse_size(value: Union[int, str]) -> int:
    """Parse a size such as ``512``, ``"10MB"`` or ``"1.5 GB"`` into bytes."""
    if isinstance(value, int):
        return value
    match = re.fullmatch(r"\s*([\d.]+)\s*([a-zA-Z]*)\s*", value)
    if not match or match.group(2).lower() not in _SIZE_UNITS:
        raise ConfigurationError(f"Invalid size value: {value!r}")
    return int(float(match.group(1)) * _SIZE_UNITS[match.group(2).lower()])


def format_size(size_bytes: Union[int, float]) -> str:
    """Format file size in human readable format."""
    if size_bytes == 0:
        return "0 B"

    size_names = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while size_bytes >= 1024.0 and i < len(size_names) - 1:
        size_bytes /= 1024.0
        i += 1

    return f"{size_bytes:.1f} {size_names[i]}"
