"""
queue.py - Durable background job queue and worker pool.

The queue stores continuations (QueueMessage) in the ``queue_tasks`` table so
they survive process restarts. Delivery is at-least-once:

    pending --claim--> claimed --ack--> (deleted)
                          |
                          +--nack--> pending (backoff) ... --> dead
                          +--visibility timeout--> pending (redelivered)

The queue itself does not prevent duplicates. The Step Executor leases each
job step before running it, so a redelivered message for a step that already
advanced is dropped and one for a step still in flight is deferred. Handlers
stay safe to repeat after an expired lease because item creation is guarded
by the Dedup Tracker.

Usage:
    from flowmachine.runtime.queue import JobQueue, WorkerPool

    queue = JobQueue(store)
    queue.enqueue(QueueMessage(job_id, flow_step_id, packets))

    # synchronous processing (CLI, tests)
    queue.drain(executor.execute)

    # background processing
    pool = WorkerPool(queue, executor.execute, workers=2)
    pool.start()
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from flowmachine.runtime.db import Store
from flowmachine.runtime.types import QueueMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[QueueMessage], Any]


@dataclass
class ClaimedTask:
    """A message claimed by one consumer."""

    task_id: str
    message: QueueMessage
    attempts: int


class JobQueue:
    """DuckDB-backed at-least-once queue.

    Args:
        store: Persistent store holding ``queue_tasks``.
        visibility_timeout_seconds: Claimed tasks older than this are
            returned to pending by ``requeue_stale``.
        max_attempts: Deliveries before a task is marked dead.
        retry_backoff_seconds: Delay added per attempt on nack.
        clock: Time source (epoch seconds), injectable for tests.
    """

    def __init__(
        self,
        store: Store,
        visibility_timeout_seconds: float = 600.0,
        max_attempts: int = 5,
        retry_backoff_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self._clock = clock

    def enqueue(self, message: QueueMessage, delay_seconds: float = 0.0) -> str:
        task_id = f"task-{secrets.token_hex(8)}"
        self._store.insert_task(
            task_id, message.job_id, message.to_dict(), available_at=self._clock() + delay_seconds
        )
        logger.debug("Enqueued %s for job %s at %s", task_id, message.job_id, message.flow_step_id)
        return task_id

    def claim(self) -> Optional[ClaimedTask]:
        row = self._store.claim_task(self._clock())
        if row is None:
            return None
        return ClaimedTask(
            task_id=row["task_id"],
            message=QueueMessage.from_dict(row["payload"]),
            attempts=row["attempts"],
        )

    def ack(self, task: ClaimedTask) -> None:
        self._store.delete_task(task.task_id)

    def nack(self, task: ClaimedTask, error: str) -> bool:
        """Return a task to the queue after a failed delivery.

        Returns:
            True if the task will be redelivered, False if it is now dead.
        """
        if task.attempts >= self.max_attempts:
            logger.error(
                "Task %s for job %s dead after %d attempts: %s",
                task.task_id,
                task.message.job_id,
                task.attempts,
                error,
            )
            self._store.release_task(task.task_id, self._clock(), error, dead=True)
            return False
        delay = self.retry_backoff_seconds * task.attempts
        logger.warning(
            "Task %s for job %s will be redelivered in %.0fs: %s",
            task.task_id,
            task.message.job_id,
            delay,
            error,
        )
        self._store.release_task(task.task_id, self._clock() + delay, error)
        return True

    def requeue_stale(self) -> int:
        now = self._clock()
        count = self._store.requeue_stale_tasks(now - self.visibility_timeout_seconds, now)
        if count:
            logger.warning("Redelivering %d tasks past visibility timeout", count)
        return count

    def counts(self) -> Dict[str, int]:
        return self._store.task_counts()

    def process_one(self, handler: MessageHandler) -> bool:
        """Claim and process one task. Returns False when nothing was available."""
        task = self.claim()
        if task is None:
            return False
        try:
            handler(task.message)
        except Exception as e:
            logger.exception("Handler raised for task %s (job %s)", task.task_id, task.message.job_id)
            self.nack(task, f"{type(e).__name__}: {e}")
        else:
            self.ack(task)
        return True

    def drain(self, handler: MessageHandler, max_tasks: Optional[int] = None) -> int:
        """Process available tasks on the calling thread until the queue is empty.

        Follow-up tasks enqueued by the handler are processed too.

        Returns:
            Number of tasks processed.
        """
        processed = 0
        while max_tasks is None or processed < max_tasks:
            if not self.process_one(handler):
                break
            processed += 1
        return processed


class WorkerPool:
    """Daemon threads that poll the queue and run the handler.

    Worker loops log and continue on any exception so one bad message never
    stops processing.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: MessageHandler,
        workers: int = 2,
        poll_interval_seconds: float = 1.0,
    ):
        self.queue = queue
        self.handler = handler
        self.workers = max(1, workers)
        self.poll_interval_seconds = poll_interval_seconds
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = []
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._run,
                name=f"flowmachine-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d queue workers", self.workers)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Queue workers stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.queue.requeue_stale()
                worked = self.queue.process_one(self.handler)
            except Exception:
                logger.exception("Queue worker loop error")
                worked = False
            if not worked:
                self._stop.wait(self.poll_interval_seconds)
