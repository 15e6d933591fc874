"""Bounded worker pool for per-item concurrency."""

import asyncio
import typing as t

from ..util.cancel import CancelToken
from ..util.logging import get_logger

logger = get_logger(__name__)

T = t.TypeVar("T")
R = t.TypeVar("R")


async def run_parallel(
    items: t.Iterable[T],
    handler: t.Callable[[T, int, CancelToken], t.Awaitable[R]],
    concurrency: int = 4,
    fail_fast: bool = True,
    token: t.Optional[CancelToken] = None,
) -> t.List[t.Optional[R]]:
    """Run ``handler`` over ``items`` with at most ``concurrency`` in flight.

    Each item gets its own child cancel token. With ``fail_fast`` the first
    failure stops dispatching new items and cancels the tokens of items still
    running; the pool then waits for them and re-raises the first error.
    Without it every item runs and the first error is raised at the end.

    Args:
        items: Work items
        handler: Coroutine function called as ``handler(item, index, token)``
        concurrency: Maximum number of handlers running at once
        fail_fast: Stop on the first failure
        token: Parent cancellation token

    Returns:
        Handler results in item order
    """
    entries = list(enumerate(items))
    results: t.List[t.Optional[R]] = [None] * len(entries)
    errors: t.List[BaseException] = []
    running: t.Dict[int, CancelToken] = {}
    pending = iter(entries)
    parent = token or CancelToken()

    async def worker() -> None:
        for index, item in pending:
            if parent.cancelled or (fail_fast and errors):
                return
            item_token = parent.child()
            running[index] = item_token
            try:
                results[index] = await handler(item, index, item_token)
            except Exception as e:
                errors.append(e)
                if fail_fast:
                    logger.debug(f"Item {index} failed, stopping {len(running) - 1} running item(s)")
                    for other_index, other in list(running.items()):
                        if other_index != index:
                            other.cancel()
            finally:
                running.pop(index, None)
                item_token.detach()

    workers = max(1, min(concurrency, len(entries)))
    await asyncio.gather(*(worker() for _ in range(workers)))

    if errors:
        raise errors[0]
    parent.raise_if_cancelled()
    return results
