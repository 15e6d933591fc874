"""Utility module initialization."""

from .cancel import CancelToken
from .hashing import calculate_file_hash, calculate_stream_hash, verify_file_integrity
from .logging import get_logger, setup_logging
from .parallel import run_parallel
from .paths import (
    ensure_directory,
    ensure_exists_dir,
    folder_size,
    format_size,
    get_available_space,
    init_empty_dir,
    is_empty_dir,
    parse_size,
    safe_filename,
)
from .patterns import EMPTY_TASK, match_path, match_patterns, render
from .process import CommandResult, run_command
from .progress import Progress, ProgressCounter, ProgressStats, TqdmProgressRenderer
from .timeutil import format_duration, format_iso, now_iso, parse_iso

__all__ = [
    # cancel
    "CancelToken",
    # hashing
    "calculate_file_hash",
    "calculate_stream_hash",
    "verify_file_integrity",
    # logging
    "get_logger",
    "setup_logging",
    # parallel
    "run_parallel",
    # paths
    "ensure_directory",
    "ensure_exists_dir",
    "folder_size",
    "format_size",
    "get_available_space",
    "init_empty_dir",
    "is_empty_dir",
    "parse_size",
    "safe_filename",
    # patterns
    "EMPTY_TASK",
    "match_path",
    "match_patterns",
    "render",
    # process
    "CommandResult",
    "run_command",
    # progress
    "Progress",
    "ProgressCounter",
    "ProgressStats",
    "TqdmProgressRenderer",
    # timeutil
    "format_duration",
    "format_iso",
    "now_iso",
    "parse_iso",
]
