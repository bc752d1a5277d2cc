import asyncio
from typing import Any, Awaitable, Callable, Optional

from spindle_service.core.logging import logger

Job = Callable[[], Awaitable[Any]]

_STOP = object()


class ExecutionLane:
    """
    Single worker draining a FIFO of jobs. Job N+1 is not started until job N
    has returned, so effects land in submission order whatever each job
    awaits internally. One lane per turn; lanes are never shared.
    """

    def __init__(self, max_pending: int = 0, name: str = "lane"):
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    def _ensure_worker(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name=f"{self.name}-worker")

    async def submit(self, job: Job) -> asyncio.Future:
        """
        Queue a job and return a future for its result. Only waits when the
        queue already holds max_pending jobs.
        """
        if self._closed:
            raise RuntimeError(f"{self.name} is closed")
        self._ensure_worker()
        fut = asyncio.get_running_loop().create_future()
        await self._queue.put((job, fut))
        return fut

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                self._queue.task_done()
                return
            job, fut = item
            try:
                result = await job()
            except asyncio.CancelledError:
                if not fut.done():
                    fut.cancel()
                raise
            except Exception as e:
                logger.exception(f"{self.name}: job failed")
                if not fut.done():
                    fut.set_exception(e)
            else:
                if not fut.done():
                    fut.set_result(result)
            finally:
                self._queue.task_done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def close(self) -> None:
        """Stop accepting jobs and wait until every queued job has finished."""
        if self._closed:
            return
        self._closed = True
        if self._worker is None:
            return
        await self._queue.put(_STOP)
        await self._worker
