"""Unit tests for the job queues and the arq tasks.

Tests queue semantics, task definitions and worker configuration.
"""

from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from arq.connections import RedisSettings
from sqlalchemy.orm import Session, sessionmaker

from invoicing.extraction.fallback import AIFallbackExtractor
from invoicing.queue.base import ArqJobQueue, InMemoryJobQueue, InvoiceJob
from invoicing.queue.processor import InvoiceProcessor, ProcessingSummary
from invoicing.queue.tasks import (
    WorkerSettings,
    build_cron_jobs,
    process_invoice,
    recover_stuck,
    retry_sweep,
    shutdown,
    startup,
)
from invoicing.recovery.service import RecoveryService
from invoicing.retry.service import RetryService, SweepResult
from invoicing.shared.config import Settings

from conftest import SAMPLE_OCR, FakeProvider, load_invoice


def _job(invoice_id: int = 1, source: str = "upload") -> InvoiceJob:
    return InvoiceJob(invoice_id=invoice_id, tenant_id=1, source=source)  # type: ignore[arg-type]


class TestInvoiceJob:
    def test_job_id_is_per_invoice(self) -> None:
        assert _job(42).job_id == "process-invoice:42"
        assert _job(42, "retry").job_id == _job(42).job_id


class TestInMemoryJobQueue:
    """Test lease / ack / fail semantics of the in-process queue."""

    @pytest.mark.asyncio
    async def test_duplicate_jobs_are_rejected(self, queue: InMemoryJobQueue) -> None:
        """Should keep an invoice on the queue at most once."""
        assert await queue.enqueue(_job(1)) is True
        assert await queue.enqueue(_job(1, "recovery")) is False
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_lease_is_fifo(self, queue: InMemoryJobQueue) -> None:
        await queue.enqueue(_job(1))
        await queue.enqueue(_job(2))

        first = await queue.lease()
        second = await queue.lease()

        assert [first.invoice_id, second.invoice_id] == [1, 2]  # type: ignore[union-attr]
        assert await queue.lease() is None

    @pytest.mark.asyncio
    async def test_leased_job_can_be_enqueued_again(self, queue: InMemoryJobQueue) -> None:
        await queue.enqueue(_job(1))
        await queue.lease()

        assert await queue.enqueue(_job(1, "retry")) is True

    @pytest.mark.asyncio
    async def test_deferred_job_is_not_visible(self, queue: InMemoryJobQueue) -> None:
        await queue.enqueue(_job(1), defer_seconds=600)

        assert len(queue) == 1
        assert await queue.lease() is None

    @pytest.mark.asyncio
    async def test_process_next_acks_on_success(self, queue: InMemoryJobQueue) -> None:
        handler = AsyncMock()
        await queue.enqueue(_job(1))

        assert await queue.process_next(handler) is True

        handler.assert_awaited_once_with(_job(1))
        assert queue.failed == []
        assert await queue.process_next(handler) is False

    @pytest.mark.asyncio
    async def test_process_next_records_failure(self, queue: InMemoryJobQueue) -> None:
        await queue.enqueue(_job(1))

        await queue.process_next(AsyncMock(side_effect=RuntimeError("worker crashed")))

        assert queue.failed == [(_job(1), "worker crashed")]


class TestArqJobQueue:
    """Test the arq-backed queue with a mocked Redis pool."""

    @pytest.mark.asyncio
    async def test_enqueue(self) -> None:
        pool = MagicMock()
        pool.enqueue_job = AsyncMock(return_value=MagicMock(job_id="process-invoice:5"))
        queue = ArqJobQueue(pool, "invoice-processing")

        assert await queue.enqueue(_job(5, "recovery")) is True

        pool.enqueue_job.assert_awaited_once_with(
            "process_invoice",
            5,
            1,
            "recovery",
            _job_id="process-invoice:5",
            _queue_name="invoice-processing",
            _defer_by=None,
        )

    @pytest.mark.asyncio
    async def test_enqueue_deferred(self) -> None:
        pool = MagicMock()
        pool.enqueue_job = AsyncMock(return_value=MagicMock())

        await ArqJobQueue(pool, "q").enqueue(_job(5, "manual"), defer_seconds=600)

        assert pool.enqueue_job.call_args.kwargs["_defer_by"] == timedelta(seconds=600)

    @pytest.mark.asyncio
    async def test_duplicate_job(self) -> None:
        """arq returns None when a job with the same id is queued or running."""
        pool = MagicMock()
        pool.enqueue_job = AsyncMock(return_value=None)

        assert await ArqJobQueue(pool, "q").enqueue(_job(5)) is False


class TestTasks:
    """Test the arq task functions."""

    @pytest.mark.asyncio
    async def test_process_invoice_returns_summary(
        self,
        session_factory: sessionmaker[Session],
        settings: Settings,
        fallback: AIFallbackExtractor,
        make_invoice,
    ) -> None:
        invoice_id = make_invoice(SAMPLE_OCR)
        ctx: dict[str, Any] = {"processor": InvoiceProcessor(session_factory, settings, fallback)}

        result = await process_invoice(ctx, invoice_id, 1, "upload")

        assert result is not None
        assert result["status"] == "reviewing"
        assert result["method"] == "ai"
        assert load_invoice(session_factory, invoice_id).status == "reviewing"

    @pytest.mark.asyncio
    async def test_process_invoice_not_claimable(self) -> None:
        processor = MagicMock()
        processor.process.return_value = None

        assert await process_invoice({"processor": processor}, 9, 1) is None
        processor.process.assert_called_once_with(9, 1, "upload")

    @pytest.mark.asyncio
    async def test_failed_attempt_is_not_raised(self) -> None:
        """Failures are stored on the invoice; the arq job itself succeeds."""
        processor = MagicMock()
        processor.process.return_value = ProcessingSummary(
            invoice_id=9, status="error", error_kind="transient", error_message="unavailable"
        )

        result = await process_invoice({"processor": processor}, 9, 1)

        assert result is not None
        assert result["error_kind"] == "transient"

    @pytest.mark.asyncio
    async def test_sweeps(self) -> None:
        retry_service = MagicMock(spec=RetryService)
        retry_service.sweep = AsyncMock(return_value=SweepResult(found=2, requeued=2))
        recovery_service = MagicMock(spec=RecoveryService)
        recovery_service.recover_stuck_invoices = AsyncMock(return_value=SweepResult(found=1, skipped=1))
        ctx: dict[str, Any] = {"retry_service": retry_service, "recovery_service": recovery_service}

        assert (await retry_sweep(ctx))["requeued"] == 2
        assert (await recover_stuck(ctx))["skipped"] == 1

    @pytest.mark.asyncio
    async def test_startup_builds_services_and_recovers(self, settings: Settings) -> None:
        ctx: dict[str, Any] = {"redis": MagicMock(), "settings": settings}

        with patch(
            "invoicing.queue.tasks.create_extraction_provider",
            return_value=FakeProvider(settings),
        ):
            await startup(ctx)

        assert isinstance(ctx["processor"], InvoiceProcessor)
        assert ctx["processor"].product_matcher.gateway is ctx["catalog"]
        assert isinstance(ctx["retry_service"], RetryService)
        assert isinstance(ctx["recovery_service"], RecoveryService)
        assert ctx["retry_service"].queue.pool is ctx["redis"]
        assert ctx["retry_service"].queue.queue_name == "invoice-processing"

        await shutdown(ctx)

    @pytest.mark.asyncio
    async def test_startup_survives_failed_recovery(self, settings: Settings) -> None:
        ctx: dict[str, Any] = {"redis": MagicMock(), "settings": settings}

        with (
            patch(
                "invoicing.queue.tasks.create_extraction_provider",
                return_value=FakeProvider(settings),
            ),
            patch.object(
                RecoveryService,
                "recover_stuck_invoices",
                AsyncMock(side_effect=RuntimeError("database locked")),
            ),
        ):
            await startup(ctx)

        assert "processor" in ctx
        await shutdown(ctx)


class TestWorkerSettings:
    """Test worker configuration and cron schedules."""

    def test_cron_jobs(self) -> None:
        settings = Settings(retry_sweep_interval_minutes=5, recovery_interval_minutes=15)

        retry_job, recovery_job = build_cron_jobs(settings)

        assert retry_job.coroutine is retry_sweep
        assert retry_job.minute == set(range(0, 60, 5))
        assert recovery_job.coroutine is recover_stuck
        assert recovery_job.minute == {0, 15, 30, 45}

    def test_configure(self) -> None:
        settings = Settings(
            redis_url="redis://cache:6380/2",
            queue_name="invoices-test",
            queue_max_jobs=2,
            queue_job_timeout=120,
        )

        WorkerSettings.configure(settings)

        assert isinstance(WorkerSettings.redis_settings, RedisSettings)
        assert WorkerSettings.redis_settings.host == "cache"
        assert WorkerSettings.redis_settings.port == 6380
        assert WorkerSettings.redis_settings.database == 2
        assert WorkerSettings.queue_name == "invoices-test"
        assert WorkerSettings.max_jobs == 2
        assert WorkerSettings.job_timeout == 120
        assert len(WorkerSettings.cron_jobs) == 2

    def test_results_are_not_kept(self) -> None:
        """Finished invoice jobs must be re-enqueueable."""
        assert WorkerSettings.keep_result == 0
        assert process_invoice in WorkerSettings.functions
