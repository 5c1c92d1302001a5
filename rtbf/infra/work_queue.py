"""
Per-shard work queue for forget requests.

The orchestrator enqueues one WorkItem per attached shard; a worker picks it
up and runs the shard engine against that shard. Delivery is at-least-once:
an item whose handler raises or returns False is retried up to max_retries
times before it lands in the dead letter list, so handlers must be idempotent.

InProcessWorkQueue is the bundled implementation:
- asyncio.Queue for work distribution, one long-running coroutine per worker
- only in-flight jobs and the dead letter list are kept in memory (a
  durable broker can implement WorkQueue instead)
- graceful shutdown with optional draining
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Protocol

import structlog

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WorkItem:
    """Everything a shard worker needs to anonymise one user on one shard."""

    request_id: int
    user_id: int
    original_name: str
    target_name: str
    shard_id: str


class WorkQueue(Protocol):
    async def enqueue(self, shard_id: str, item: WorkItem) -> None: ...


WorkHandler = Callable[[WorkItem], Awaitable[bool]]


class JobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """Lifecycle record of one queued WorkItem."""

    item: WorkItem
    shard_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    retry_count: int = 0
    max_retries: int = 3


class InProcessWorkQueue:
    """
    Asyncio worker pool consuming shard work items.

    Example usage:
        queue = InProcessWorkQueue(worker.run, max_workers=4)
        await queue.start()
        await queue.enqueue("enwiki", item)
        await queue.join()
        await queue.shutdown()
    """

    def __init__(
        self,
        handler: WorkHandler,
        *,
        max_workers: int = 4,
        max_retries: int = 3,
    ) -> None:
        self._handler = handler
        self._max_workers = max_workers
        self._max_retries = max_retries
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._jobs: dict[str, Job] = {}
        self._workers: list[asyncio.Task[None]] = []
        self._dead_letter: list[Job] = []
        self._completed = 0
        self._shutdown_event = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def completed_count(self) -> int:
        return self._completed

    async def start(self) -> None:
        if self._running:
            log.warning("work_queue.already_running")
            return

        self._running = True
        self._shutdown_event.clear()
        for i in range(self._max_workers):
            self._workers.append(asyncio.create_task(self._worker_loop(worker_id=i)))

        log.info("work_queue.started", worker_count=self._max_workers)

    async def shutdown(self, *, drain: bool = True) -> None:
        """Stop the workers, optionally after the queue has drained."""
        if not self._running:
            return

        log.info("work_queue.shutdown_initiated", drain=drain)
        if drain:
            await self._queue.join()
        self._running = False
        self._shutdown_event.set()

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        log.info(
            "work_queue.shutdown_complete",
            completed=self._completed,
            dead_letter_count=len(self._dead_letter),
        )

    async def enqueue(self, shard_id: str, item: WorkItem) -> None:
        job = Job(item=item, shard_id=shard_id, max_retries=self._max_retries)
        self._jobs[job.id] = job
        await self._queue.put(job)
        log.info(
            "work_queue.item_enqueued",
            job_id=job.id,
            request_id=item.request_id,
            shard_id=shard_id,
            queue_size=self._queue.qsize(),
        )

    async def join(self) -> None:
        """Wait until every enqueued item (including retries) was processed."""
        await self._queue.join()

    def jobs(self) -> list[Job]:
        """Jobs still queued or running; finished jobs are dropped."""
        return list(self._jobs.values())

    def get_dead_letter_queue(self) -> list[Job]:
        return list(self._dead_letter)

    async def _worker_loop(self, worker_id: int) -> None:
        while not self._shutdown_event.is_set():
            try:
                # Timeout so shutdown is noticed without a queued item
                job = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except TimeoutError:
                continue

            try:
                await self._execute(job, worker_id=worker_id)
            finally:
                self._queue.task_done()

    async def _execute(self, job: Job, worker_id: int) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now(UTC)
        item = job.item

        try:
            ok = await self._handler(item)
            if not ok:
                raise RuntimeError("handler reported no work done")
        except Exception as exc:
            job.error = f"{type(exc).__name__}: {exc}"
            job.retry_count += 1
            log.error(
                "work_queue.item_failed",
                worker_id=worker_id,
                job_id=job.id,
                request_id=item.request_id,
                shard_id=job.shard_id,
                error=job.error,
                retry_count=job.retry_count,
                max_retries=job.max_retries,
            )
            if job.retry_count <= job.max_retries:
                job.status = JobStatus.PENDING
                await self._queue.put(job)
            else:
                job.status = JobStatus.FAILED
                job.completed_at = datetime.now(UTC)
                self._jobs.pop(job.id, None)
                self._dead_letter.append(job)
                log.error(
                    "work_queue.item_dead_letter",
                    job_id=job.id,
                    request_id=item.request_id,
                    shard_id=job.shard_id,
                    error=job.error,
                )
            return

        job.status = JobStatus.COMPLETED
        job.completed_at = datetime.now(UTC)
        self._jobs.pop(job.id, None)
        self._completed += 1
        log.info(
            "work_queue.item_completed",
            worker_id=worker_id,
            job_id=job.id,
            request_id=item.request_id,
            shard_id=job.shard_id,
            duration_seconds=(job.completed_at - job.started_at).total_seconds(),
        )
