"""Run summaries and report commands."""

import typing as t

from .config import ReportConfig
from .orchestrator import TaskResult
from .util.cancel import CancelToken
from .util.logging import get_logger
from .util.process import run_command
from .util.timeutil import format_duration

logger = get_logger(__name__)


def should_report(report: ReportConfig, failed: bool) -> bool:
    if report.when == "always":
        return True
    return (report.when == "error") == failed


def format_summary(results: t.Sequence[TaskResult]) -> str:
    """Plain text table of task outcomes."""
    lines = []
    for result in results:
        if result.failed:
            status = f"FAILED: {result.error}"
        elif result.skipped:
            status = f"skipped ({result.skipped})"
        else:
            status = "ok"
        lines.append(f"{result.title}: {status} [{format_duration(result.elapsed)}]")
    failed = sum(1 for r in results if r.failed and r.is_leaf)
    lines.append(f"{len(results)} task(s), {failed} failed")
    return "\n".join(lines) + "\n"


async def send_report(
    report: ReportConfig,
    text: str,
    token: t.Optional[CancelToken] = None,
) -> None:
    """Run the report command with ``text`` on its stdin."""
    command = ["sh", "-c", report.run] if isinstance(report.run, str) else report.run
    logger.debug(f"Sending report {report.name or command[-1]}")
    await run_command(command, stdin_data=text, token=token)
