"""Retry worker: re-submit invoices that failed for transient reasons.

Only failures classified as transient (provider overload, network) or rate
limited are eligible, each after its own cool-down, and at most
`retry_max_attempts` times per invoice. Bad input, validation and
configuration failures stay in error until a user acts. A user-requested
retry resets the counter and is deferred by `manual_retry_delay_seconds`.
"""

import asyncio
import logging
from datetime import timedelta

from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from invoicing.queue.base import InvoiceJob, JobQueue
from invoicing.shared.config import Settings
from invoicing.shared.db import session_scope, utcnow
from invoicing.shared.errors import InvalidTransitionError
from invoicing.shared.metrics import invoices_requeued_total
from invoicing.store.invoices import InvoiceRepository
from invoicing.store.models import Invoice, InvoiceStatus

logger = logging.getLogger(__name__)


class SweepResult(BaseModel):
    """Counts from one retry or recovery sweep."""

    found: int = 0
    requeued: int = 0
    skipped: int = 0
    failed: int = 0


class RetryService:
    """Finds retryable failures and puts them back on the queue."""

    def __init__(
        self, session_factory: sessionmaker[Session], queue: JobQueue, settings: Settings
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.settings = settings

    def _candidates(self) -> list[tuple[int, int]]:
        now = utcnow()
        with session_scope(self.session_factory) as session:
            invoices = InvoiceRepository(session).find_retryable(
                transient_cutoff=now - timedelta(seconds=self.settings.retry_cooldown_seconds),
                rate_limit_cutoff=now - timedelta(seconds=self.settings.rate_limit_cooldown_seconds),
                max_retries=self.settings.retry_max_attempts,
                limit=self.settings.retry_batch_size,
            )
            return [(invoice.id, invoice.tenant_id) for invoice in invoices]

    def _reset(self, invoice_id: int) -> bool:
        with session_scope(self.session_factory) as session:
            return InvoiceRepository(session).transition(
                invoice_id,
                [InvoiceStatus.ERROR],
                InvoiceStatus.PENDING,
                Invoice.retry_count < self.settings.retry_max_attempts,
                retry_count=Invoice.retry_count + 1,
            )

    async def sweep(self) -> SweepResult:
        """Re-submit every eligible failed invoice.

        A failure on one invoice is logged and does not stop the sweep.
        """
        candidates = await asyncio.to_thread(self._candidates)
        result = SweepResult(found=len(candidates))

        for invoice_id, tenant_id in candidates:
            try:
                if not await asyncio.to_thread(self._reset, invoice_id):
                    result.skipped += 1
                    continue
                await self.queue.enqueue(InvoiceJob(invoice_id=invoice_id, tenant_id=tenant_id, source="retry"))
                invoices_requeued_total.labels(reason="retry").inc()
                result.requeued += 1
            except Exception:
                logger.exception(f"Retry of invoice {invoice_id} failed; continuing sweep")
                result.failed += 1

        if candidates:
            logger.info(
                f"Retry sweep: {result.requeued} requeued, {result.skipped} skipped, "
                f"{result.failed} failed of {result.found}"
            )
        return result

    def _reset_manual(self, invoice_id: int, tenant_id: int) -> None:
        with session_scope(self.session_factory) as session:
            repo = InvoiceRepository(session)
            invoice = repo.get(invoice_id, tenant_id)
            if invoice is None:
                raise InvalidTransitionError(f"Invoice {invoice_id} not found")
            if invoice.status == InvoiceStatus.APPROVED.value:
                raise InvalidTransitionError(f"Invoice {invoice_id} is already approved")
            moved = repo.transition(
                invoice_id,
                [InvoiceStatus.ERROR],
                InvoiceStatus.PENDING,
                tenant_id=tenant_id,
                retry_count=0,
                error_kind=None,
                error_message=None,
            )
            if not moved:
                raise InvalidTransitionError(
                    f"Invoice {invoice_id} cannot be retried from status '{invoice.status}'"
                )

    async def request_retry(self, invoice_id: int, tenant_id: int) -> bool:
        """User-requested retry of a failed invoice (any failure kind).

        Raises:
            InvalidTransitionError: If the invoice is not in error
        """
        await asyncio.to_thread(self._reset_manual, invoice_id, tenant_id)
        enqueued = await self.queue.enqueue(
            InvoiceJob(invoice_id=invoice_id, tenant_id=tenant_id, source="manual"),
            defer_seconds=self.settings.manual_retry_delay_seconds,
        )
        invoices_requeued_total.labels(reason="manual").inc()
        logger.info(
            f"Manual retry of invoice {invoice_id} scheduled in "
            f"{self.settings.manual_retry_delay_seconds}s"
        )
        return enqueued
