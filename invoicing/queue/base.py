"""Job queue abstraction for invoice processing.

The pipeline depends on a minimal contract: enqueue a job, lease it, then ack
or fail it. `ArqJobQueue` maps that onto arq (the arq worker does the leasing
and acking); `InMemoryJobQueue` implements it directly for tests and
single-process use.

Both queues de-duplicate on the job id `process-invoice:{invoice_id}`, so an
invoice is never waiting in the queue twice.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any, Literal

from pydantic import BaseModel

logger = logging.getLogger(__name__)

JobSource = Literal["upload", "retry", "recovery", "manual"]


class InvoiceJob(BaseModel):
    """One request to process an invoice.

    Attributes:
        invoice_id: Invoice to process
        tenant_id: Owning tenant
        source: What put the job on the queue
    """

    invoice_id: int
    tenant_id: int
    source: JobSource = "upload"

    @property
    def job_id(self) -> str:
        return f"process-invoice:{self.invoice_id}"


class JobQueue(ABC):
    """Minimal enqueue contract used by intake, retry and recovery."""

    @abstractmethod
    async def enqueue(self, job: InvoiceJob, defer_seconds: int = 0) -> bool:
        """Put a job on the queue.

        Args:
            job: Job to enqueue
            defer_seconds: Delay before the job becomes visible to workers

        Returns:
            True if enqueued, False if the same job is already queued
        """


class InMemoryJobQueue(JobQueue):
    """Process-local queue with explicit lease / ack / fail."""

    def __init__(self) -> None:
        self._ready: deque[InvoiceJob] = deque()
        self._deferred: list[tuple[float, InvoiceJob]] = []
        self._leased: dict[str, InvoiceJob] = {}
        self._queued_ids: set[str] = set()
        self.failed: list[tuple[InvoiceJob, str]] = []

    def __len__(self) -> int:
        return len(self._ready) + len(self._deferred)

    @property
    def queued_jobs(self) -> list[InvoiceJob]:
        return list(self._ready) + [job for _, job in self._deferred]

    async def enqueue(self, job: InvoiceJob, defer_seconds: int = 0) -> bool:
        if job.job_id in self._queued_ids:
            logger.info(f"Job {job.job_id} already queued; skipping")
            return False

        self._queued_ids.add(job.job_id)
        if defer_seconds > 0:
            ready_at = asyncio.get_running_loop().time() + defer_seconds
            self._deferred.append((ready_at, job))
        else:
            self._ready.append(job)
        logger.info(f"Enqueued {job.job_id} (source={job.source}, defer={defer_seconds}s)")
        return True

    def _promote_deferred(self, now: float) -> None:
        due = [item for item in self._deferred if item[0] <= now]
        self._deferred = [item for item in self._deferred if item[0] > now]
        self._ready.extend(job for _, job in sorted(due, key=lambda item: item[0]))

    async def lease(self) -> InvoiceJob | None:
        """Take the next visible job, or None if nothing is ready."""
        self._promote_deferred(asyncio.get_running_loop().time())
        if not self._ready:
            return None
        job = self._ready.popleft()
        self._queued_ids.discard(job.job_id)
        self._leased[job.job_id] = job
        return job

    async def ack(self, job: InvoiceJob) -> None:
        self._leased.pop(job.job_id, None)

    async def fail(self, job: InvoiceJob, error: str) -> None:
        self._leased.pop(job.job_id, None)
        self.failed.append((job, error))
        logger.error(f"Job {job.job_id} failed: {error}")

    async def process_next(self, handler: Callable[[InvoiceJob], Awaitable[Any]]) -> bool:
        """Lease one job, run the handler, then ack or fail it.

        Returns:
            False if no job was ready
        """
        job = await self.lease()
        if job is None:
            return False
        try:
            await handler(job)
        except Exception as e:
            await self.fail(job, str(e))
        else:
            await self.ack(job)
        return True


class ArqJobQueue(JobQueue):
    """JobQueue backed by an arq Redis pool.

    Jobs run with keep_result=0, so a finished job id can be enqueued again
    (retry, recovery) while a queued or running one cannot.
    """

    def __init__(self, pool: Any, queue_name: str) -> None:
        """Initialize with an ArqRedis pool (from arq.create_pool or the worker ctx)."""
        self.pool = pool
        self.queue_name = queue_name

    async def enqueue(self, job: InvoiceJob, defer_seconds: int = 0) -> bool:
        arq_job = await self.pool.enqueue_job(
            "process_invoice",
            job.invoice_id,
            job.tenant_id,
            job.source,
            _job_id=job.job_id,
            _queue_name=self.queue_name,
            _defer_by=timedelta(seconds=defer_seconds) if defer_seconds else None,
        )
        if arq_job is None:
            logger.info(f"Job {job.job_id} already queued or running; skipping")
            return False

        logger.info(f"Enqueued {job.job_id} (source={job.source}, defer={defer_seconds}s)")
        return True
