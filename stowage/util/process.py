"""Async subprocess runner used by the repository backends."""

import asyncio
import os
import typing as t
from dataclasses import dataclass
from pathlib import Path

from ..errors import AbortedError, ProcessError
from ..util.cancel import CancelToken
from ..util.logging import get_logger

logger = get_logger(__name__)

LineCallback = t.Callable[[str], None]

STREAM_LIMIT = 2 ** 20


@dataclass
class CommandResult:
    """Outcome of a finished command."""

    command: t.List[str]
    exit_code: int
    stdout: str
    stderr: str


async def _pump(
    stream: asyncio.StreamReader,
    sink: t.List[str],
    on_line: t.Optional[LineCallback],
) -> None:
    async for raw in stream:
        line = raw.decode(errors="replace")
        sink.append(line)
        if on_line:
            on_line(line.rstrip("\r\n"))


async def run_command(
    command: t.Sequence[str],
    cwd: t.Optional[Path] = None,
    env: t.Optional[t.Mapping[str, str]] = None,
    token: t.Optional[CancelToken] = None,
    on_stdout_line: t.Optional[LineCallback] = None,
    on_stderr_line: t.Optional[LineCallback] = None,
    stdin_data: t.Optional[str] = None,
    check: bool = True,
) -> CommandResult:
    """Run a command and capture its output.

    Args:
        command: Program and arguments
        cwd: Working directory
        env: Variables added to the current environment
        token: Cancellation token; cancelling terminates the process
        on_stdout_line: Called for each stdout line as it arrives
        on_stderr_line: Called for each stderr line as it arrives
        stdin_data: Text written to the process stdin
        check: Raise on a non-zero exit code

    Returns:
        CommandResult with the captured output

    Raises:
        ProcessError: If the command cannot start or exits non-zero with check
        AbortedError: If the token was cancelled
    """
    command = [str(part) for part in command]
    if token:
        token.raise_if_cancelled()

    logger.debug(f"Running: {' '.join(command)}" + (f" (cwd={cwd})" if cwd else ""))

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd) if cwd else None,
            env={**os.environ, **env} if env else None,
            stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
    except FileNotFoundError as e:
        raise ProcessError(command, None, f"{command[0]}: command not found") from e

    def terminate() -> None:
        if process.returncode is None:
            process.terminate()

    unregister = token.on_cancel(terminate) if token else (lambda: None)
    stdout: t.List[str] = []
    stderr: t.List[str] = []

    try:
        if stdin_data is not None:
            process.stdin.write(stdin_data.encode())
            await process.stdin.drain()
            process.stdin.close()
        await asyncio.gather(
            _pump(process.stdout, stdout, on_stdout_line),
            _pump(process.stderr, stderr, on_stderr_line),
        )
        exit_code = await process.wait()
    except asyncio.CancelledError:
        terminate()
        raise
    finally:
        unregister()

    if token and token.cancelled:
        raise AbortedError(f"Command aborted: {' '.join(command)}")

    result = CommandResult(command, exit_code, "".join(stdout), "".join(stderr))
    if check and exit_code != 0:
        raise ProcessError(command, exit_code, result.stderr)
    return result
