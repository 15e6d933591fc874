"""Error types shared across stowage."""

import typing as t


class StowageError(Exception):
    """Base class for stowage errors."""
    pass


class ConfigurationError(StowageError):
    """Invalid configuration or mutually exclusive options."""
    pass


class NotFoundError(StowageError):
    """Missing snapshot, package or repository."""
    pass


class IntegrityError(StowageError):
    """Stored data does not match what was expected."""
    pass


class DiskSpaceError(StowageError):
    """Not enough free space to run an operation."""
    pass


class AbortedError(StowageError):
    """Operation cancelled before completion."""
    pass


class ProcessError(StowageError):
    """Spawned command exited with a non-zero status."""

    max_stderr_lines = 20

    def __init__(
        self,
        command: t.Sequence[str],
        exit_code: t.Optional[int],
        stderr: str = "",
    ) -> None:
        self.command = list(command)
        self.exit_code = exit_code
        lines = stderr.strip().splitlines()
        self.stderr = "\n".join(lines[-self.max_stderr_lines:])
        message = f"Command failed with exit code {exit_code}: {' '.join(self.command)}"
        if self.stderr:
            message += f"\n{self.stderr}"
        super().__init__(message)


class StorageError(StowageError):
    """Remote storage could not be reached or written."""
    pass
