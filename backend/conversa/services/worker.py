"""Worker pool — asyncio tasks draining the durable job queue.

Each worker runs ``run_next_job`` in a thread (sync SQLAlchemy) with its
own session. Workers never wait on one another; an idle worker sleeps
for WORKER_POLL_INTERVAL_SECONDS before polling again.
"""

import asyncio
import logging

from conversa.core.config import settings
from conversa.core.database import SessionLocal
from conversa.services.jobs import run_next_job

logger = logging.getLogger(__name__)


class WorkerPool:
    def __init__(
        self,
        db_factory=SessionLocal,
        concurrency: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self._db_factory = db_factory
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS
        )
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._work(index), name=f"conversa-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("Worker pool started (%d workers)", self.concurrency)

    async def _work(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                processed = await asyncio.to_thread(run_next_job, self._db_factory)
            except Exception:
                logger.exception("Worker %d failed to poll the job queue", index)
                processed = False

            if not processed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def stop(self, timeout: float = 10.0) -> None:
        """Signal workers to finish their current job and wait for them."""
        self._stopping.set()
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")

    async def run_forever(self) -> None:
        self.start()
        try:
            await self._stopping.wait()
        finally:
            await self.stop()
