from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Hashable, Iterable
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, TypeVar, ParamSpec

P = ParamSpec("P")
R = TypeVar("R")

_executor = ThreadPoolExecutor(
    max_workers=8,
    thread_name_prefix="calbot_async_",
)


async def run_in_executor(
    func: Callable[P, R],
    *args: P.args,
    **kwargs: P.kwargs,
) -> R:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, lambda: func(*args, **kwargs))


async def gather_bounded(
    limit: int,
    coros: Iterable[Awaitable[R]],
) -> list[R | BaseException]:
    """Await ``coros`` with at most ``limit`` in flight; failures are returned, not raised."""
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(coro: Awaitable[R]) -> R:
        async with semaphore:
            return await coro

    return await asyncio.gather(*(_run(coro) for coro in coros), return_exceptions=True)


class KeyedLock:
    """One ``asyncio.Lock`` per key, dropped again once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


def shutdown_executor() -> None:
    _executor.shutdown(wait=True)
