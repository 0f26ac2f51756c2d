"""
Background worker pool for breach notifications.

Breach notifications (regulator and affected players) are slow, call
external systems, and must survive a transient outage of those systems.
They therefore never run inside the request or event that detected the
breach: the BreachMonitor submits one task per audience and a worker
delivers it.

Lifecycle of a task:
    PENDING -> RUNNING -> COMPLETED
                       -> PENDING   (failed, attempts left, after backoff)
                       -> FAILED    (attempts exhausted, dead letter queue)
    PENDING -> CANCELLED            (cancel_task before a worker picks it up)

Backoff between attempts is ``retry_delay * 2 ** (attempts - 1)`` seconds.
The worker that saw the failure waits out the delay before requeueing, so
``join()`` only returns once every task reached a terminal state.

With ``drain=True`` shutdown waits for the queue to empty, then puts one
stop marker per worker on it. With ``drain=False`` the workers are
cancelled and queued tasks stay PENDING.

Task state lives in memory; the breach record carries the durable outcome.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

log = structlog.get_logger(__name__)


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class TaskType(StrEnum):
    BREACH_REGULATOR_NOTIFICATION = "breach_regulator_notification"
    BREACH_USER_NOTIFICATION = "breach_user_notification"


@dataclass
class Task:
    """One unit of background work and its delivery history."""
    type: TaskType
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: TaskStatus = TaskStatus.PENDING
    submitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    finished_at: datetime | None = None
    attempts: int = 0
    max_attempts: int = 3
    error: str | None = None

    @property
    def done(self) -> bool:
        return self.status in TERMINAL_STATUSES


TaskHandler = Callable[[Task], Awaitable[None]]

_STOP = None


class BackgroundWorkerPool:
    """
    Fixed set of worker coroutines draining one asyncio queue.

    Example:
        pool = BackgroundWorkerPool(max_workers=2)
        pool.register_handler(TaskType.BREACH_USER_NOTIFICATION, monitor.handle_task)
        await pool.start()
        task_id = await pool.submit_task(
            task_type=TaskType.BREACH_USER_NOTIFICATION,
            payload={"breach_id": record.id},
        )
        ...
        await pool.shutdown()
    """

    def __init__(
        self,
        *,
        max_workers: int = 2,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        """
        Args:
            max_workers: Number of concurrent worker coroutines
            max_attempts: Deliveries tried before a task is dead-lettered
            retry_delay: Base backoff in seconds, doubled per failed attempt
        """
        self._max_workers = max_workers
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._queue: asyncio.Queue[Task | None] = asyncio.Queue()
        self._tasks: dict[str, Task] = {}
        self._handlers: dict[TaskType, TaskHandler] = {}
        self._workers: list[asyncio.Task[None]] = []
        self._dead_letter: list[Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def register_handler(self, task_type: TaskType, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    async def start(self) -> None:
        if self._workers:
            log.warning("worker_pool.already_running")
            return
        self._workers = [
            asyncio.create_task(self._work(worker_id), name=f"worker-{worker_id}")
            for worker_id in range(self._max_workers)
        ]
        log.info("worker_pool.started", workers=self._max_workers, handlers=sorted(self._handlers))

    async def shutdown(self, *, drain: bool = True) -> None:
        """Stop the workers, first finishing queued tasks when ``drain`` is set."""
        if not self._workers:
            return
        log.info("worker_pool.stopping", drain=drain, queued=self._queue.qsize())

        if drain:
            await self._queue.join()
            for _ in self._workers:
                await self._queue.put(_STOP)
            await asyncio.gather(*self._workers, return_exceptions=True)
        else:
            for worker in self._workers:
                worker.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        log.info("worker_pool.stopped", **self.stats())

    async def submit_task(
        self,
        *,
        task_type: TaskType,
        payload: dict[str, Any],
        max_attempts: int | None = None,
    ) -> str:
        task = Task(
            type=task_type,
            payload=payload,
            max_attempts=max_attempts or self._max_attempts,
        )
        self._tasks[task.id] = task
        await self._queue.put(task)
        log.info("worker_pool.task_submitted", task_id=task.id, task_type=task_type)
        return task.id

    def get_task_status(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel a task no worker has picked up yet. False when unknown, running or finished."""
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return False
        task.status = TaskStatus.CANCELLED
        task.finished_at = datetime.now(UTC)
        log.info("worker_pool.task_cancelled", task_id=task_id)
        return True

    def get_dead_letter_queue(self) -> list[Task]:
        return list(self._dead_letter)

    def stats(self) -> dict[str, int]:
        counts = Counter(task.status for task in self._tasks.values())
        return {
            "queued": self._queue.qsize(),
            **{status.value: counts.get(status, 0) for status in TaskStatus},
            "dead_letter": len(self._dead_letter),
        }

    async def join(self) -> None:
        """Wait until every submitted task has reached a terminal state."""
        await self._queue.join()

    async def _work(self, worker_id: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                if task is _STOP:
                    return
                if task.status == TaskStatus.CANCELLED:
                    continue
                await self._run(task, worker_id)
            finally:
                self._queue.task_done()

    async def _run(self, task: Task, worker_id: int) -> None:
        handler = self._handlers.get(task.type)
        task.status = TaskStatus.RUNNING
        task.started_at = datetime.now(UTC)
        task.attempts += 1

        try:
            if handler is None:
                raise LookupError(f"No handler registered for {task.type}")
            await handler(task)
        except Exception as exc:
            task.error = str(exc)
            if task.attempts >= task.max_attempts:
                task.status = TaskStatus.FAILED
                task.finished_at = datetime.now(UTC)
                self._dead_letter.append(task)
                log.error(
                    "worker_pool.task_dead_lettered",
                    worker_id=worker_id,
                    task_id=task.id,
                    task_type=task.type,
                    attempts=task.attempts,
                    error=task.error,
                )
                return

            delay = self._retry_delay * 2 ** (task.attempts - 1)
            log.warning(
                "worker_pool.task_retrying",
                worker_id=worker_id,
                task_id=task.id,
                attempt=task.attempts,
                delay_s=delay,
                error=task.error,
            )
            task.status = TaskStatus.PENDING
            if delay:
                await asyncio.sleep(delay)
            await self._queue.put(task)
            return

        task.status = TaskStatus.COMPLETED
        task.finished_at = datetime.now(UTC)
        log.info(
            "worker_pool.task_completed",
            worker_id=worker_id,
            task_id=task.id,
            attempts=task.attempts,
            duration_s=(task.finished_at - task.started_at).total_seconds(),
        )
