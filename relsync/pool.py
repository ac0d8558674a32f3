import asyncio
import logging
import math
from typing import Awaitable, Callable, List, Sequence, TypeVar

logit = logging.getLogger("relsync")

T = TypeVar("T")
R = TypeVar("R")


def pool_size(count: int, total: int, parallelism: int) -> int:
    """Return the number of workers for a category with `count` items.

    Each category receives a share of `parallelism` proportional to its share
    of `total` items, but always at least one and never more than
    `parallelism` workers.

    """
    if total <= 0:
        return 1
    share = math.ceil(count * parallelism / total)
    return max(1, min(parallelism, share))


async def _cancel(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def run_bounded(items: Sequence[T],
                      func: Callable[[T], Awaitable[R]],
                      workers: int) -> List[R]:
    """Return `[await func(item) for item in items]` with limited concurrency.

    At most `workers` calls run at the same time. The first exception cancels
    all outstanding calls and is re-raised. The results are in the same order
    as the `items`.

    """
    if not items:
        return []

    results: List[R] = [None] * len(items)   # type: ignore
    todo = iter(enumerate(items))

    # All workers pull from the same iterator. This is safe because `next`
    # never yields to the event loop.
    async def worker():
        for idx, item in todo:
            results[idx] = await func(item)

    tasks = [asyncio.create_task(worker()) for _ in range(min(workers, len(items)))]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        await _cancel(tasks)
        raise
    return results


async def gather_in_order(*aws: Awaitable) -> list:
    """Run `aws` concurrently and return their results in order.

    The awaitables are awaited in the order they were given. The first one
    that fails cancels all others and determines the raised exception.

    """
    tasks = [asyncio.ensure_future(_) for _ in aws]
    results = []
    try:
        for task in tasks:
            results.append(await task)
    except BaseException:
        await _cancel(tasks)
        raise
    return results
