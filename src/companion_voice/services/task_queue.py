"""Strict FIFO task chain owned by a single voice session."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

TaskFn = Callable[[], Awaitable[Any]]
ErrorHandler = Callable[[BaseException], Awaitable[None]]


class SessionTaskQueue:
    """Runs submitted coroutines one at a time in submission order.

    Every mutation of a session's state goes through this queue. A failing task
    never stops the worker: the exception is handed to ``on_error`` and the
    task's future resolves to ``None``.

    Never ``await queue.run(...)`` from inside a queued task; the worker would
    wait on itself.
    """

    def __init__(self, name: str, *, on_error: Optional[ErrorHandler] = None):
        self.name = name
        self._on_error = on_error
        self._queue: asyncio.Queue[tuple[TaskFn, asyncio.Future]] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._worker is None and not self._closed:
            self._worker = asyncio.create_task(self._run(), name=f"session-queue-{self.name}")

    def submit(self, fn: TaskFn) -> asyncio.Future:
        """Append ``fn`` to the chain and return a future for its result."""

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        if self._closed:
            future.cancel()
            return future
        self.start()
        self._queue.put_nowait((fn, future))
        return future

    async def run(self, fn: TaskFn) -> Any:
        """Submit ``fn`` and wait for it to finish."""

        return await self.submit(fn)

    async def drain(self) -> None:
        """Wait until every task submitted so far has completed."""

        if self._closed:
            return
        await self.run(_noop)

    async def close(self) -> None:
        """Stop the worker and cancel tasks that have not started."""

        if self._closed:
            return
        self._closed = True
        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            with suppress(asyncio.CancelledError):
                await worker
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.cancel()

    async def _run(self) -> None:
        while True:
            fn, future = await self._queue.get()
            if future.cancelled():
                continue
            try:
                result = await fn()
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                logger.error(f"Task failed in session {self.name}: {exc}", exc_info=True)
                if self._on_error is not None:
                    try:
                        await self._on_error(exc)
                    except Exception as handler_exc:
                        logger.error(f"Error handler failed for session {self.name}: {handler_exc}")
                if not future.done():
                    future.set_result(None)
            else:
                if not future.done():
                    future.set_result(result)


async def _noop() -> None:
    return None


__all__ = ["SessionTaskQueue"]
