"""Package task hooks."""

from pydantic import ValidationError

from ..config import TaskConfig
from ..errors import ConfigurationError
from .base import TaskContext, TaskHook, TaskOutput
from .script import ScriptTask, ScriptTaskConfig


def create_task(config: TaskConfig) -> TaskHook:
    """Create the hook for a package task configuration.

    Raises:
        ConfigurationError: If the task name is unknown
    """
    if config.name != ScriptTask.name:
        raise ConfigurationError(f"Invalid task name: {config.name}")
    try:
        return ScriptTask(config.config)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid {config.name} task configuration:\n{e}") from e


__all__ = [
    "ScriptTask",
    "ScriptTaskConfig",
    "TaskContext",
    "TaskHook",
    "TaskOutput",
    "create_task",
]
