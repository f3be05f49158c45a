"""Unit tests for the retry worker and user-requested retries."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from invoicing.queue.base import InMemoryJobQueue, InvoiceJob
from invoicing.retry.service import RetryService
from invoicing.shared.config import Settings
from invoicing.shared.db import session_scope, utcnow
from invoicing.shared.errors import InvalidTransitionError
from invoicing.store.models import Invoice

from conftest import load_invoice


@pytest.fixture
def retry(
    session_factory: sessionmaker[Session], queue: InMemoryJobQueue, settings: Settings
) -> RetryService:
    return RetryService(session_factory, queue, settings)


@pytest.fixture
def failed_invoice(session_factory: sessionmaker[Session], make_invoice):  # type: ignore[no-untyped-def]
    """Factory for an invoice in error with a given kind and failure age."""

    def _make(kind: str, minutes_ago: int, retry_count: int = 0, tenant_id: int = 1) -> int:
        invoice_id: int = make_invoice(tenant_id=tenant_id)
        with session_scope(session_factory) as session:
            session.execute(
                update(Invoice)
                .where(Invoice.id == invoice_id)
                .values(
                    status="error",
                    error_kind=kind,
                    error_message="failed",
                    last_failed_at=utcnow() - timedelta(minutes=minutes_ago),
                    retry_count=retry_count,
                )
            )
        return invoice_id

    return _make


class TestSweep:
    """Test which failures the retry worker picks up."""

    @pytest.mark.asyncio
    async def test_transient_after_cooldown(
        self,
        retry: RetryService,
        queue: InMemoryJobQueue,
        session_factory: sessionmaker[Session],
        failed_invoice,
    ) -> None:
        invoice_id = failed_invoice("transient", minutes_ago=11)

        result = await retry.sweep()

        assert (result.found, result.requeued) == (1, 1)
        invoice = load_invoice(session_factory, invoice_id)
        assert invoice.status == "pending"
        assert invoice.retry_count == 1
        assert queue.queued_jobs == [InvoiceJob(invoice_id=invoice_id, tenant_id=1, source="retry")]

    @pytest.mark.asyncio
    async def test_cooldowns_per_kind(
        self, retry: RetryService, queue: InMemoryJobQueue, failed_invoice
    ) -> None:
        """Transient failures wait 10 minutes, rate limits 30."""
        failed_invoice("transient", minutes_ago=5)
        failed_invoice("rate_limited", minutes_ago=20)
        due = failed_invoice("rate_limited", minutes_ago=31)

        result = await retry.sweep()

        assert result.requeued == 1
        assert [job.invoice_id for job in queue.queued_jobs] == [due]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", ["bad_input", "validation", "configuration", "unknown"])
    async def test_permanent_failures_are_left_alone(
        self, retry: RetryService, queue: InMemoryJobQueue, failed_invoice, kind: str
    ) -> None:
        failed_invoice(kind, minutes_ago=120)

        result = await retry.sweep()

        assert result.found == 0
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_max_attempts(
        self, retry: RetryService, queue: InMemoryJobQueue, failed_invoice
    ) -> None:
        """An invoice that already used its three automatic retries stays in error."""
        failed_invoice("transient", minutes_ago=60, retry_count=3)

        assert (await retry.sweep()).found == 0
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_enqueue_failure_does_not_stop_sweep(
        self, session_factory: sessionmaker[Session], settings: Settings, failed_invoice
    ) -> None:
        failed_invoice("transient", minutes_ago=30)
        failed_invoice("transient", minutes_ago=20)
        queue = MagicMock()
        queue.enqueue = AsyncMock(side_effect=[RuntimeError("redis down"), True])

        result = await RetryService(session_factory, queue, settings).sweep()

        assert (result.found, result.requeued, result.failed) == (2, 1, 1)

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, retry: RetryService) -> None:
        result = await retry.sweep()

        assert result.found == 0
        assert result.requeued == 0


class TestRequestRetry:
    """Test user-requested retries."""

    @pytest.mark.asyncio
    async def test_resets_counter_and_defers(
        self, session_factory: sessionmaker[Session], settings: Settings, failed_invoice
    ) -> None:
        """Any failure kind can be retried by hand, after the manual delay."""
        invoice_id = failed_invoice("validation", minutes_ago=1, retry_count=3)
        queue = MagicMock()
        queue.enqueue = AsyncMock(return_value=True)

        assert await RetryService(session_factory, queue, settings).request_retry(invoice_id, 1) is True

        queue.enqueue.assert_awaited_once_with(
            InvoiceJob(invoice_id=invoice_id, tenant_id=1, source="manual"),
            defer_seconds=600,
        )
        invoice = load_invoice(session_factory, invoice_id)
        assert invoice.status == "pending"
        assert invoice.retry_count == 0
        assert invoice.error_kind is None
        assert invoice.error_message is None

    @pytest.mark.asyncio
    async def test_not_in_error(self, retry: RetryService, make_invoice) -> None:
        invoice_id = make_invoice()

        with pytest.raises(InvalidTransitionError, match="cannot be retried from status 'pending'"):
            await retry.request_retry(invoice_id, 1)

    @pytest.mark.asyncio
    async def test_approved_invoice(
        self, retry: RetryService, session_factory: sessionmaker[Session], make_invoice
    ) -> None:
        invoice_id = make_invoice()
        with session_scope(session_factory) as session:
            session.execute(update(Invoice).where(Invoice.id == invoice_id).values(status="approved"))

        with pytest.raises(InvalidTransitionError, match="already approved"):
            await retry.request_retry(invoice_id, 1)

    @pytest.mark.asyncio
    async def test_other_tenant(
        self, retry: RetryService, queue: InMemoryJobQueue, failed_invoice
    ) -> None:
        invoice_id = failed_invoice("transient", minutes_ago=1, tenant_id=1)

        with pytest.raises(InvalidTransitionError, match="not found"):
            await retry.request_retry(invoice_id, 2)
        assert len(queue) == 0
