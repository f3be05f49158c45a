"""Unit tests for the stuck-invoice recovery sweep."""

from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from invoicing.queue.base import InMemoryJobQueue, InvoiceJob
from invoicing.recovery.service import RecoveryService
from invoicing.shared.config import Settings
from invoicing.shared.db import session_scope, utcnow
from invoicing.store.models import Invoice

from conftest import load_invoice


@pytest.fixture
def recovery(
    session_factory: sessionmaker[Session], queue: InMemoryJobQueue, settings: Settings
) -> RecoveryService:
    return RecoveryService(session_factory, queue, settings)


@pytest.fixture
def aged_invoice(session_factory: sessionmaker[Session], make_invoice):  # type: ignore[no-untyped-def]
    """Factory for an invoice that entered a status some minutes ago."""

    def _make(status: str, minutes_ago: int, processed: bool = False) -> int:
        invoice_id: int = make_invoice()
        now = utcnow()
        with session_scope(session_factory) as session:
            session.execute(
                update(Invoice)
                .where(Invoice.id == invoice_id)
                .values(
                    status=status,
                    status_changed_at=now - timedelta(minutes=minutes_ago),
                    processed_at=now if processed else None,
                )
            )
        return invoice_id

    return _make


class TestRecoverStuckInvoices:
    """Test selection and reset of stuck invoices."""

    @pytest.mark.asyncio
    async def test_stuck_processing_invoice_is_requeued(
        self,
        recovery: RecoveryService,
        queue: InMemoryJobQueue,
        session_factory: sessionmaker[Session],
        aged_invoice,
    ) -> None:
        """A worker crash leaves an invoice in processing; it is reset and queued once."""
        invoice_id = aged_invoice("processing", minutes_ago=6)

        result = await recovery.recover_stuck_invoices()

        assert (result.found, result.requeued) == (1, 1)
        assert load_invoice(session_factory, invoice_id).status == "pending"
        assert queue.queued_jobs == [InvoiceJob(invoice_id=invoice_id, tenant_id=1, source="recovery")]

    @pytest.mark.asyncio
    async def test_second_sweep_does_nothing(
        self, recovery: RecoveryService, queue: InMemoryJobQueue, aged_invoice
    ) -> None:
        """The reset restarts the timeout window."""
        aged_invoice("pending", minutes_ago=10)

        await recovery.recover_stuck_invoices()
        result = await recovery.recover_stuck_invoices()

        assert result.found == 0
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_recent_invoices_are_left_alone(
        self, recovery: RecoveryService, queue: InMemoryJobQueue, aged_invoice
    ) -> None:
        aged_invoice("processing", minutes_ago=2)

        assert (await recovery.recover_stuck_invoices()).found == 0
        assert len(queue) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["reviewing", "approved", "rejected", "error"])
    async def test_other_statuses_are_never_selected(
        self, recovery: RecoveryService, queue: InMemoryJobQueue, aged_invoice, status: str
    ) -> None:
        aged_invoice(status, minutes_ago=60)

        assert (await recovery.recover_stuck_invoices()).found == 0
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_completed_work_is_not_reprocessed(
        self, recovery: RecoveryService, queue: InMemoryJobQueue, aged_invoice
    ) -> None:
        """An invoice with processed_at set lost only its status update."""
        aged_invoice("processing", minutes_ago=60, processed=True)

        assert (await recovery.recover_stuck_invoices()).found == 0

    @pytest.mark.asyncio
    async def test_already_queued_job_is_not_duplicated(
        self, recovery: RecoveryService, queue: InMemoryJobQueue, aged_invoice
    ) -> None:
        invoice_id = aged_invoice("pending", minutes_ago=10)
        await queue.enqueue(InvoiceJob(invoice_id=invoice_id, tenant_id=1))

        result = await recovery.recover_stuck_invoices()

        assert result.requeued == 1
        assert len(queue) == 1
