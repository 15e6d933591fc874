"""Declarative task graph executor.

Tasks are declared with a symbolic key and an optional composite index. The
placeholder :class:`TaskResult` is registered at declaration time, so a task
declared later can look up an earlier one's result synchronously; declaration
order is the dependency order. A task body may return further tasks or
groups, which run as its children once the body has finished.

Failure handling:
- a fatal task (the default) that fails aborts the rest of its group and
  fails its parent
- a non-fatal task records its error and lets its siblings carry on
"""

import time
import typing as t
from dataclasses import dataclass, field
from enum import Enum

from .errors import NotFoundError
from .util.cancel import CancelToken
from .util.logging import get_logger
from .util.parallel import run_parallel
from .util.progress import Progress

logger = get_logger(__name__)

KeyIndex = t.Tuple[t.Union[str, int], ...]


class TaskState(str, Enum):
    """Lifecycle of a task."""

    INITIAL = "initial"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskResult:
    """Bookkeeping record owned by exactly one task."""

    key: str
    key_index: KeyIndex
    data: t.Any = None
    title: str = ""
    elapsed: float = 0.0
    error: t.Optional[BaseException] = None
    state: TaskState = TaskState.INITIAL
    skipped: t.Optional[str] = None
    children: t.List["TaskResult"] = field(default_factory=list, repr=False)

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def is_leaf(self) -> bool:
        return not self.children


class TaskSkipped(Exception):
    """Raised by :meth:`TaskHandle.skip` to end a task early without failing it."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class TaskHandle:
    """View of the running task handed to its body."""

    def __init__(self, orchestrator: "Orchestrator", result: TaskResult, token: CancelToken) -> None:
        self.orchestrator = orchestrator
        self.result = result
        self.token = token

    @property
    def data(self) -> t.Any:
        return self.result.data

    @property
    def title(self) -> str:
        return self.result.title

    @title.setter
    def title(self, value: str) -> None:
        self.result.title = value
        self.orchestrator._notify_state(self.result)

    def progress(self, progress: Progress) -> None:
        """Forward a progress update to the listener (never awaited)."""
        if self.orchestrator.on_progress:
            self.orchestrator.on_progress(self.result, progress)

    def skip(self, reason: str) -> t.NoReturn:
        raise TaskSkipped(reason)


TaskBody = t.Callable[[TaskHandle], t.Awaitable[t.Optional[t.Iterable["TaskNode"]]]]
TaskWrapper = t.Callable[[], t.AsyncContextManager[t.Any]]


@dataclass
class TaskSpec:
    """A declared task ready to run."""

    result: TaskResult
    run: TaskBody
    fatal: bool = True
    wrapper: t.Optional[TaskWrapper] = None
    enabled: t.Union[bool, t.Callable[[], bool]] = True

    def is_enabled(self) -> bool:
        return self.enabled() if callable(self.enabled) else bool(self.enabled)


@dataclass
class TaskGroup:
    """Tasks run one after another, or concurrently up to ``concurrency``."""

    items: t.List["TaskNode"]
    concurrent: bool = False
    concurrency: t.Optional[int] = None


TaskNode = t.Union[TaskSpec, TaskGroup]


@dataclass
class RunSummary:
    """Outcome of an orchestrator run."""

    elapsed: float
    errors: int
    results: t.List[TaskResult]

    @property
    def ok(self) -> bool:
        return self.errors == 0

    def failed(self) -> t.List[TaskResult]:
        return [r for r in self.results if r.failed and r.is_leaf]


def normalize_index(key_index: t.Any) -> KeyIndex:
    if key_index is None:
        return ()
    if isinstance(key_index, (list, tuple)):
        return tuple(key_index)
    return (key_index,)


class Orchestrator:
    """Runs declared tasks and keeps their results by key."""

    def __init__(
        self,
        concurrency: int = 4,
        on_state: t.Optional[t.Callable[[TaskResult], None]] = None,
        on_progress: t.Optional[t.Callable[[TaskResult, Progress], None]] = None,
        token: t.Optional[CancelToken] = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            concurrency: Default limit for concurrent groups
            on_state: Called whenever a task changes state or title
            on_progress: Called with every progress update of a task
            token: Cancellation token for the whole run
        """
        self.concurrency = concurrency
        self.on_state = on_state
        self.on_progress = on_progress
        self.token = token or CancelToken()
        self._results: t.Dict[t.Tuple[str, KeyIndex], TaskResult] = {}

    def task(
        self,
        key: str,
        run: TaskBody,
        key_index: t.Any = None,
        data: t.Any = None,
        title: t.Optional[str] = None,
        fatal: bool = True,
        wrapper: t.Optional[TaskWrapper] = None,
        enabled: t.Union[bool, t.Callable[[], bool]] = True,
    ) -> TaskSpec:
        """Declare a task and register its placeholder result.

        Raises:
            ValueError: If ``(key, key_index)`` was already declared
        """
        index = normalize_index(key_index)
        if (key, index) in self._results:
            raise ValueError(f"Duplicate task result: {key} {list(index)}")

        if title is None:
            title = key if not index else f"{key} [{', '.join(str(i) for i in index)}]"
        result = TaskResult(key=key, key_index=index, data=data, title=title)
        self._results[(key, index)] = result
        return TaskSpec(result=result, run=run, fatal=fatal, wrapper=wrapper, enabled=enabled)

    def sequence(self, *items: TaskNode) -> TaskGroup:
        return TaskGroup(items=list(items))

    def parallel(self, *items: TaskNode, concurrency: t.Optional[int] = None) -> TaskGroup:
        return TaskGroup(items=list(items), concurrent=True, concurrency=concurrency)

    def result(self, key: str, key_index: t.Any = None) -> TaskResult:
        """Look up a declared task's result.

        Raises:
            NotFoundError: If no task was declared under that key
        """
        result = self._results.get((key, normalize_index(key_index)))
        if result is None:
            raise NotFoundError(f"Task result not found: {key} {list(normalize_index(key_index))}")
        return result

    def results(self) -> t.List[TaskResult]:
        """Results of tasks that ran, in declaration order."""
        return [r for r in self._results.values() if r.state != TaskState.INITIAL]

    async def run(self, *items: TaskNode) -> RunSummary:
        """Run tasks in order and summarize the outcome.

        A fatal failure stops the remaining top level tasks; it is recorded on
        the failing result rather than raised.
        """
        start = time.monotonic()
        try:
            await self._run_group(TaskGroup(items=list(items)), None, self.token)
        except Exception as e:
            logger.debug(f"Run stopped by fatal failure: {e}")

        results = self.results()
        errors = sum(1 for r in results if r.failed and r.is_leaf)
        return RunSummary(elapsed=time.monotonic() - start, errors=errors, results=results)

    def _notify_state(self, result: TaskResult) -> None:
        if self.on_state:
            self.on_state(result)

    async def _run_group(
        self,
        group: TaskGroup,
        parent: t.Optional[TaskResult],
        token: CancelToken,
    ) -> None:
        if not group.concurrent:
            for item in group.items:
                await self._run_node(item, parent, token)
            return

        async def handler(item: TaskNode, index: int, item_token: CancelToken) -> None:
            await self._run_node(item, parent, item_token)

        await run_parallel(
            group.items,
            handler,
            concurrency=group.concurrency or self.concurrency,
            fail_fast=True,
            token=token,
        )

    async def _run_node(
        self,
        node: TaskNode,
        parent: t.Optional[TaskResult],
        token: CancelToken,
    ) -> None:
        if isinstance(node, TaskGroup):
            await self._run_group(node, parent, token)
        else:
            await self._run_task(node, parent, token)

    async def _invoke(self, spec: TaskSpec, handle: TaskHandle) -> t.Optional[t.Iterable[TaskNode]]:
        if spec.wrapper is None:
            return await spec.run(handle)
        async with spec.wrapper():
            return await spec.run(handle)

    async def _run_task(
        self,
        spec: TaskSpec,
        parent: t.Optional[TaskResult],
        token: CancelToken,
    ) -> None:
        result = spec.result
        if result.state != TaskState.INITIAL:
            raise ValueError(f"Task already ran: {result.title}")
        if not spec.is_enabled():
            logger.debug(f"Task disabled: {result.title}")
            return
        token.raise_if_cancelled()

        if parent is not None:
            parent.children.append(result)
        result.state = TaskState.STARTED
        self._notify_state(result)
        handle = TaskHandle(self, result, token)
        start = time.monotonic()

        try:
            try:
                children = await self._invoke(spec, handle)
            except TaskSkipped as e:
                result.skipped = e.reason
                children = None
            if children:
                await self._run_group(TaskGroup(items=list(children)), result, token)
            result.state = TaskState.COMPLETED
        except Exception as e:
            if result.error is None:
                result.error = e
            result.state = TaskState.FAILED
            if result.is_leaf:
                logger.error(f"{result.title} failed: {e}")
            if spec.fatal:
                raise
        finally:
            result.elapsed = time.monotonic() - start
            self._notify_state(result)
