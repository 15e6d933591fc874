"""Utility functions for hashing operations."""

import hashlib
from pathlib import Path
from typing import BinaryIO

from ..errors import IntegrityError
from ..util.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ALGORITHM = "sha1"


def calculate_file_hash(
    file_path: Path,
    algorithm: str = DEFAULT_ALGORITHM,
    chunk_size: int = 65536
) -> str:
    """Calculate hash of a file."""
    with open(file_path, "rb") as f:
        return calculate_stream_hash(f, algorithm, chunk_size)


def calculate_stream_hash(
    stream: BinaryIO,
    algorithm: str = DEFAULT_ALGORITHM,
    chunk_size: int = 65536
) -> str:
    """Calculate hash of a binary stream."""
    hasher = hashlib.new(algorithm)

    while chunk := stream.read(chunk_size):
        hasher.update(chunk)

    return hasher.hexdigest()


def verify_file_integrity(
    file_path: Path,
    expected_hash: str,
    algorithm: str = DEFAULT_ALGORITHM
) -> None:
    """Verify file integrity against expected hash.

    Raises:
        IntegrityError: If the computed hash differs
    """
    actual_hash = calculate_file_hash(file_path, algorithm)

    if actual_hash.lower() != expected_hash.lower():
        logger.error(f"Checksum mismatch for {file_path}: {actual_hash} != {expected_hash}")
        raise IntegrityError(
            f"Checksum mismatch for {file_path.name}: expected {expected_hash}, got {actual_hash}"
        )
