from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass, field
from queue import Empty, Queue
from typing import Any, Callable, Dict

from ..metrics import metrics

logger = logging.getLogger(__name__)


@dataclass
class BatchJob:
    name: str
    fn: Callable[..., Any]
    args: tuple = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)


class JobQueue:
    """In-process queue for batch runs requested with ``background=true``.

    One daemon worker drains the queue; coroutine functions are run to
    completion on a private event loop. Failures are logged and counted.
    """

    def __init__(self, poll_interval: float = 0.1) -> None:
        self._queue: Queue[BatchJob] = Queue()
        self._poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.completed: Dict[str, int] = {}

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="booking-batch-worker"
        )
        self._thread.start()
        logger.info("job_queue_started")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2.0)
        logger.info("job_queue_stopped")

    def enqueue(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self._queue.put(BatchJob(name=name, fn=fn, args=args, kwargs=kwargs))
        logger.info("batch_job_enqueued", extra={"job": name})

    def join(self) -> None:
        """Block until every queued job has been processed."""
        self._queue.join()

    def run_job(self, job: BatchJob) -> None:
        try:
            result = job.fn(*job.args, **job.kwargs)
            if inspect.isawaitable(result):
                asyncio.run(_await(result))
        except Exception:
            metrics.background_job_errors += 1
            logger.exception("background_job_failed", extra={"job": job.name})
            return
        self.completed[job.name] = self.completed.get(job.name, 0) + 1
        logger.info("background_job_completed", extra={"job": job.name})

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self._queue.get(timeout=self._poll_interval)
            except Empty:
                continue
            try:
                self.run_job(job)
            finally:
                self._queue.task_done()


async def _await(awaitable: Any) -> Any:
    return await awaitable


job_queue = JobQueue()
