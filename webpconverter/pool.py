import asyncio
import os

from . import util

_STOP = object()


def default_pool_size() -> int:
    # Reserve one core for the system
    return max(1, (os.cpu_count() or 1) - 1)


class WorkerPool:
    """
    A fixed number of workers consuming a job queue.

    ``submit`` takes a permit before queueing a job & the permit is only given
    back once the job is done, so there are never more than ``size`` jobs
    queued or running. When the pool is full ``submit`` waits, that's the only
    backpressure there is.
    """

    def __init__(self, handler, size: int = None):
        self.handler = handler
        self.size = max(1, size or default_pool_size())
        self._permits = asyncio.Semaphore(self.size)
        self._queue = asyncio.Queue()
        self._workers = []
        self.holding = 0
        self.peak = 0
        self.completed = 0

    def start(self):
        if not self._workers:
            self._workers = [asyncio.ensure_future(self._worker(index)) for index in range(self.size)]

    async def submit(self, job):
        await self._permits.acquire()
        self.holding += 1
        self.peak = max(self.peak, self.holding)
        self._queue.put_nowait(job)

    def _release(self):
        self.holding -= 1
        self.completed += 1
        self._permits.release()

    async def _worker(self, index):
        while True:
            job = await self._queue.get()
            try:
                if job is _STOP:
                    return
                try:
                    await self.handler(job)
                except asyncio.CancelledError:
                    raise
                except Exception as error:
                    util.logger.exception("Worker %d failed on %s: %s", index, job, error)
                finally:
                    self._release()
            finally:
                self._queue.task_done()

    async def drain(self):
        """Wait until every submitted job has finished."""
        await self._queue.join()

    async def close(self):
        await self.drain()
        for _ in self._workers:
            self._queue.put_nowait(_STOP)
        await asyncio.gather(*self._workers)
        self._workers = []

    def cancel(self):
        for worker in self._workers:
            worker.cancel()
        self._workers = []

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            await self.close()
        else:
            self.cancel()
