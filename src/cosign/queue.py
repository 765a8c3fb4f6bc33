"""Bounded-concurrency runner for outbound ledger work."""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import cosign.constants as C

log = logging.getLogger("cosign.queue")

T = TypeVar("T")

TaskFn = Callable[[], Awaitable[Any]]


class ConcurrencyQueue:
    """FIFO queue that runs at most `concurrency` tasks at once.

    `add()` returns a future for that task only. A failing task rejects its own
    future and never cancels or blocks its siblings.
    """

    def __init__(self, concurrency: int = C.DEFAULT_CONCURRENCY) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.concurrency = concurrency
        self.running = 0
        self._pending: deque[tuple[TaskFn, asyncio.Future]] = deque()
        self._tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    def add(self, task_fn: Callable[[], Awaitable[T]]) -> "asyncio.Future[T]":
        fut: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._pending.append((task_fn, fut))
        self._idle.clear()
        self._pump()
        return fut

    def _pump(self) -> None:
        while self.running < self.concurrency and self._pending:
            task_fn, fut = self._pending.popleft()
            if fut.cancelled():
                continue
            self.running += 1
            task = asyncio.create_task(self._run(task_fn, fut))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        if self.running == 0 and not self._pending:
            self._idle.set()

    async def _run(self, task_fn: TaskFn, fut: asyncio.Future) -> None:
        try:
            result = await task_fn()
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            log.debug("queued task failed: %s: %s", type(e).__name__, e)
            if not fut.done():
                fut.set_exception(e)
        else:
            if not fut.done():
                fut.set_result(result)
        finally:
            self.running -= 1
            self._pump()

    async def wait_all(self) -> None:
        """Block until nothing is running and nothing is waiting."""
        await self._idle.wait()

    def status(self) -> dict[str, int]:
        return {"running": self.running, "pending": len(self._pending), "concurrency": self.concurrency}

    async def cancel_all(self) -> None:
        for _, fut in self._pending:
            fut.cancel()
        self._pending.clear()
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._idle.set()
