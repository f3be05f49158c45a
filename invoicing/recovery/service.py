"""Recovery of invoices stuck in pending/processing.

Jobs can be lost to worker crashes or queue delivery failures. The sweep
runs at worker startup and on a fixed interval and re-enqueues invoices that
have sat in pending or processing for longer than the timeout without ever
completing:

- only invoices with `processed_at IS NULL` are touched, so completed work
  whose status update was lost is never reprocessed;
- the reset is a compare-and-set that also re-checks the age, and refreshes
  `status_changed_at`, so an invoice is re-enqueued once per timeout window;
- batches are bounded so a sweep cannot flood the queue.
"""

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session, sessionmaker

from invoicing.queue.base import InvoiceJob, JobQueue
from invoicing.retry.service import SweepResult
from invoicing.shared.config import Settings
from invoicing.shared.db import session_scope, utcnow
from invoicing.shared.metrics import invoices_requeued_total
from invoicing.store.invoices import InvoiceRepository
from invoicing.store.models import Invoice, InvoiceStatus

logger = logging.getLogger(__name__)


class RecoveryService:
    """Finds stuck invoices and re-enqueues them."""

    def __init__(
        self, session_factory: sessionmaker[Session], queue: JobQueue, settings: Settings
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.settings = settings

    def _cutoff(self) -> datetime:
        return utcnow() - timedelta(seconds=self.settings.recovery_timeout_seconds)

    def _candidates(self) -> list[tuple[int, int, str]]:
        with session_scope(self.session_factory) as session:
            invoices = InvoiceRepository(session).find_stuck(
                self._cutoff(), self.settings.recovery_batch_size
            )
            return [(invoice.id, invoice.tenant_id, invoice.status) for invoice in invoices]

    def _reset(self, invoice_id: int) -> bool:
        with session_scope(self.session_factory) as session:
            return InvoiceRepository(session).transition(
                invoice_id,
                [InvoiceStatus.PENDING, InvoiceStatus.PROCESSING],
                InvoiceStatus.PENDING,
                Invoice.processed_at.is_(None),
                Invoice.status_changed_at < self._cutoff(),
            )

    async def recover_stuck_invoices(self) -> SweepResult:
        """Reset stuck invoices to pending and re-enqueue them.

        A failure on one invoice is logged and does not stop the sweep.
        """
        candidates = await asyncio.to_thread(self._candidates)
        result = SweepResult(found=len(candidates))
        if not candidates:
            logger.debug("Recovery sweep: no stuck invoices")
            return result

        logger.warning(f"Recovery sweep found {len(candidates)} stuck invoice(s)")
        for invoice_id, tenant_id, status in candidates:
            try:
                if not await asyncio.to_thread(self._reset, invoice_id):
                    result.skipped += 1
                    continue
                await self.queue.enqueue(
                    InvoiceJob(invoice_id=invoice_id, tenant_id=tenant_id, source="recovery")
                )
                invoices_requeued_total.labels(reason="recovery").inc()
                result.requeued += 1
                logger.info(f"Recovered invoice {invoice_id} (was {status})")
            except Exception:
                logger.exception(f"Recovery of invoice {invoice_id} failed; continuing sweep")
                result.failed += 1

        logger.info(
            f"Recovery sweep: {result.requeued} requeued, {result.skipped} skipped, "
            f"{result.failed} failed of {result.found}"
        )
        return result
