"""
Background job queue for derivation work.
"""
import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Optional, Set

from config import config

logger = logging.getLogger(__name__)


class JobQueue:
    """Runs submitted coroutines on a fixed pool of asyncio workers.

    Submission is fire-and-forget and may come from the event loop or from
    a worker thread. A job id that is already queued or running is not
    accepted a second time.
    """

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.workers = []
        self._inflight: Set[str] = set()
        self._inflight_lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.completed_jobs = 0
        self.failed_jobs = 0

    async def start_workers(self, num_workers: Optional[int] = None):
        """Start background workers."""
        if num_workers is None:
            num_workers = config.num_workers

        self._loop = asyncio.get_running_loop()
        for i in range(num_workers):
            worker = asyncio.create_task(self._worker(f"worker-{i}"))
            self.workers.append(worker)
        logger.info(f"Started {num_workers} background workers")

    async def _worker(self, name: str):
        logger.info(f"Worker {name} started")
        while True:
            task = await self.queue.get()
            if task is None:  # Shutdown signal
                self.queue.task_done()
                break

            job_id, process_func, args = task
            try:
                await process_func(*args)
                self.completed_jobs += 1
            except Exception:
                self.failed_jobs += 1
                logger.exception(f"Worker {name} job {job_id} raised")
            finally:
                with self._inflight_lock:
                    self._inflight.discard(job_id)
                self.queue.task_done()

    def is_inflight(self, job_id: str) -> bool:
        with self._inflight_lock:
            return job_id in self._inflight

    def submit(self, job_id: str, process_func: Callable[..., Awaitable[Any]], *args) -> bool:
        """Enqueue a job. Returns False if the same job id is already queued or running."""
        with self._inflight_lock:
            if job_id in self._inflight:
                logger.info(f"Job {job_id} already in flight, not enqueued again")
                return False
            self._inflight.add(job_id)

        item = (job_id, process_func, args)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is not None and running is not self._loop:
            # asyncio.Queue is not thread-safe; hand the put to the workers' loop
            self._loop.call_soon_threadsafe(self.queue.put_nowait, item)
        else:
            self.queue.put_nowait(item)
        return True

    async def join(self):
        """Wait until every queued job has finished."""
        await self.queue.join()

    async def shutdown(self):
        """Shutdown workers."""
        for _ in self.workers:
            await self.queue.put(None)
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []
        self._loop = None

    def get_status(self) -> dict:
        """Get current queue status for health checks."""
        with self._inflight_lock:
            inflight = len(self._inflight)
        return {
            "queue_size": self.queue.qsize(),
            "active_workers": len(self.workers),
            "inflight_jobs": inflight,
            "completed_jobs": self.completed_jobs,
            "failed_jobs": self.failed_jobs,
        }
