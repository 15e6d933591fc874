"""Task hook running configured commands."""

import typing as t
from pathlib import Path

from pydantic import BaseModel, Field

from ..util.logging import get_logger
from ..util.process import run_command
from ..util.progress import ProgressCounter
from .base import TaskContext, TaskHook, TaskOutput

logger = get_logger(__name__)

ScriptStep = t.Union[str, t.List[str]]


class ScriptTaskConfig(BaseModel):
    """Commands run before a backup and after a restore.

    A string step runs through ``sh -c``; a list step runs as-is.
    """

    env: t.Dict[str, str] = Field(default_factory=dict)
    backup_steps: t.List[ScriptStep] = Field(default_factory=list)
    restore_steps: t.List[ScriptStep] = Field(default_factory=list)


class ScriptTask(TaskHook):
    """Runs shell steps with the snapshot exposed as ``STOWAGE_*`` variables."""

    name = "script"

    def __init__(self, config: t.Dict[str, t.Any]) -> None:
        super().__init__(config)
        self.options = ScriptTaskConfig.model_validate(config)

    def _env(self, ctx: TaskContext, snapshot_path: Path) -> t.Dict[str, str]:
        return {
            **self.options.env,
            "STOWAGE_SNAPSHOT_ID": ctx.snapshot.id,
            "STOWAGE_SNAPSHOT_DATE": ctx.snapshot.date,
            "STOWAGE_PACKAGE_NAME": ctx.package.name,
            "STOWAGE_SNAPSHOT_PATH": str(snapshot_path),
        }

    async def _run_steps(self, steps: t.Sequence[ScriptStep], ctx: TaskContext, snapshot_path: Path) -> None:
        counter = ProgressCounter(ctx.on_progress, total=len(steps), description="Running steps")
        env = self._env(ctx, snapshot_path)
        for step in steps:
            command = ["sh", "-c", step] if isinstance(step, str) else step
            await run_command(
                command,
                cwd=snapshot_path,
                env=env,
                token=ctx.token,
                on_stdout_line=lambda line: logger.debug(f"[{ctx.package.name}] {line}"),
            )
            counter.advance(command[-1])

    async def backup(self, ctx: TaskContext) -> TaskOutput:
        if ctx.package.path:
            snapshot_path = Path(ctx.package.path)
            snapshot_path.mkdir(parents=True, exist_ok=True)
        else:
            snapshot_path = ctx.session.mkdir("script", "backup", ctx.package.name)
        await self._run_steps(self.options.backup_steps, ctx, snapshot_path)
        return TaskOutput(snapshot_path=snapshot_path)

    async def prepare_restore(self, ctx: TaskContext) -> TaskOutput:
        if ctx.package.restore_path:
            return TaskOutput(snapshot_path=Path(ctx.package.restore_path))
        return TaskOutput(snapshot_path=ctx.session.mkdir("script", "restore", ctx.package.name))

    async def restore(self, ctx: TaskContext) -> None:
        if ctx.snapshot_path is None:
            raise ValueError("Restore hook needs a snapshot path")
        await self._run_steps(self.options.restore_steps, ctx, ctx.snapshot_path)
