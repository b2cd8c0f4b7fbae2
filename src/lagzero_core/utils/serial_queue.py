"""
Single-worker async task queue.

Jobs submitted to a ``SerialTaskQueue`` run strictly one at a time in
submission order. ``submit`` enqueues synchronously, so the order of
``submit`` calls is the execution order even when the caller never awaits.
"""

from typing import Any, Awaitable, Callable, Optional, Tuple
import asyncio
import itertools

from .logging import get_logger


logger = get_logger("lagzero.serial_queue")

_Job = Tuple[int, asyncio.Future, Callable[..., Awaitable[Any]], tuple, dict]


class QueueClosedError(RuntimeError):
    """Raised when submitting to a closed queue."""


class SerialTaskQueue:
    """FIFO actor executing coroutine functions one by one."""

    def __init__(self, name: str):
        self.name = name
        self._queue: "asyncio.Queue[_Job]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._closed = False
        self._ids = itertools.count(1)
        self._current: Optional[int] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def busy(self) -> bool:
        return self._current is not None

    def in_worker(self) -> bool:
        """True when called from inside a job running on this queue."""
        return self._worker is not None and asyncio.current_task() is self._worker

    def submit(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> asyncio.Future:
        """
        Enqueue ``fn(*args, **kwargs)``.

        Returns:
            Future resolving to the job's result or exception
        """
        if self._closed:
            raise QueueClosedError(f"queue {self.name} is closed")

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        job_id = next(self._ids)
        self._queue.put_nowait((job_id, future, fn, args, kwargs))

        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run(), name=f"serial-queue:{self.name}")

        logger.debug(
            "job_submitted",
            queue=self.name,
            job_id=job_id,
            job=getattr(fn, '__name__', repr(fn)),
            pending=self._queue.qsize(),
        )
        return future

    async def _run(self) -> None:
        while True:
            job_id, future, fn, args, kwargs = await self._queue.get()
            if future.done():
                continue

            self._current = job_id
            try:
                result = await fn(*args, **kwargs)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._current = None

    async def join(self) -> None:
        """Wait until every job submitted so far has finished."""
        if self._closed:
            return
        marker = self.submit(_noop)
        await asyncio.shield(marker)

    async def close(self) -> None:
        """Cancel pending jobs and stop the worker."""
        self._closed = True

        while not self._queue.empty():
            _, future, _, _, _ = self._queue.get_nowait()
            if not future.done():
                future.cancel()

        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        logger.debug("queue_closed", queue=self.name)


async def _noop() -> None:
    return None


__all__ = [
    'SerialTaskQueue',
    'QueueClosedError',
]
