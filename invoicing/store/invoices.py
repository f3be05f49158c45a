"""Invoice persistence and status transitions.

Every status change is a compare-and-set UPDATE guarded by the expected
current status. Whoever wins the CAS owns the transition; a losing caller
sees `False` and must treat the job as a no-op. This is what guarantees at
most one concurrent processing attempt per invoice and keeps recovery and
retry from re-enqueueing the same invoice twice.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import ColumnElement, or_, select, update
from sqlalchemy.orm import Session

from invoicing.extraction.schema import ExtractedLine, InvoiceHeader
from invoicing.shared.db import utcnow
from invoicing.shared.errors import ClassifiedError, ErrorKind
from invoicing.store.models import Invoice, InvoiceLine, InvoiceStatus, ProcessingMetric

logger = logging.getLogger(__name__)


class InvoiceRepository:
    """Tenant-scoped access to invoices and their processing metrics."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def create(
        self,
        tenant_id: int,
        file_name: str,
        file_type: str,
        storage_ref: str,
        uploaded_by: int | None = None,
        upload_source: str = "web",
        ocr_text: str | None = None,
    ) -> Invoice:
        invoice = Invoice(
            tenant_id=tenant_id,
            uploaded_by=uploaded_by,
            upload_source=upload_source,
            file_name=file_name,
            file_type=file_type,
            storage_ref=storage_ref,
            ocr_text=ocr_text,
            status=InvoiceStatus.PENDING.value,
            status_changed_at=utcnow(),
        )
        self.session.add(invoice)
        self.session.flush()
        logger.info(f"Created invoice {invoice.id} for tenant {tenant_id} ({file_name})")
        return invoice

    def get(self, invoice_id: int, tenant_id: int | None = None) -> Invoice | None:
        invoice = self.session.get(Invoice, invoice_id)
        if invoice is None or (tenant_id is not None and invoice.tenant_id != tenant_id):
            return None
        return invoice

    def transition(
        self,
        invoice_id: int,
        from_statuses: Iterable[InvoiceStatus],
        to_status: InvoiceStatus,
        *conditions: ColumnElement[bool],
        tenant_id: int | None = None,
        **values: Any,
    ) -> bool:
        """Compare-and-set the status of one invoice.

        Args:
            invoice_id: Invoice to update
            from_statuses: Statuses the invoice must currently have
            to_status: New status
            *conditions: Extra WHERE clauses that must hold
            tenant_id: Optional tenant guard
            **values: Extra columns to set in the same statement

        Returns:
            True if this call performed the transition
        """
        now = utcnow()
        stmt = update(Invoice).where(
            Invoice.id == invoice_id,
            Invoice.status.in_([s.value for s in from_statuses]),
            *conditions,
        )
        if tenant_id is not None:
            stmt = stmt.where(Invoice.tenant_id == tenant_id)

        result = self.session.execute(
            stmt.values(status=to_status.value, status_changed_at=now, updated_at=now, **values)
            .execution_options(synchronize_session="fetch")
        )
        changed = result.rowcount == 1
        if changed:
            logger.info(f"Invoice {invoice_id} -> {to_status.value}")
        return changed

    def claim_for_processing(self, invoice_id: int, tenant_id: int) -> bool:
        """Take the processing lock (pending -> processing)."""
        return self.transition(
            invoice_id, [InvoiceStatus.PENDING], InvoiceStatus.PROCESSING, tenant_id=tenant_id
        )

    def mark_error(self, invoice_id: int, error: ClassifiedError, ai_attempts: int = 0) -> bool:
        """Record a classified failure on an invoice being processed."""
        return self.transition(
            invoice_id,
            [InvoiceStatus.PROCESSING],
            InvoiceStatus.ERROR,
            error_kind=error.kind.value,
            error_message=error.message,
            last_failed_at=utcnow(),
            ai_attempts=Invoice.ai_attempts + ai_attempts,
        )

    def store_extraction(
        self,
        invoice: Invoice,
        header: InvoiceHeader,
        lines: list[ExtractedLine],
        discounts: dict[int, Decimal] | None = None,
    ) -> None:
        """Write extracted header fields and replace the invoice's lines."""
        discounts = discounts or {}
        invoice.supplier_name = header.supplier_name
        invoice.supplier_tax_id = header.supplier_tax_id
        invoice.invoice_number = header.invoice_number
        invoice.invoice_date = header.invoice_date
        invoice.total_net = header.total_net
        invoice.total_tax = header.total_tax
        invoice.total_gross = header.total_gross
        invoice.lines = [
            InvoiceLine(
                tenant_id=invoice.tenant_id,
                line_number=line.line_number,
                description=line.description,
                quantity=line.quantity,
                unit=line.unit,
                unit_price=line.unit_price,
                line_total=line.line_total,
                tax_rate=line.tax_rate,
                discount_pct=discounts.get(line.line_number),
            )
            for line in lines
        ]
        self.session.flush()

    def add_metric(self, **values: Any) -> ProcessingMetric:
        """Append one immutable processing metric."""
        metric = ProcessingMetric(**values)
        self.session.add(metric)
        self.session.flush()
        return metric

    def metrics_for(self, invoice_id: int) -> list[ProcessingMetric]:
        stmt = (
            select(ProcessingMetric)
            .where(ProcessingMetric.invoice_id == invoice_id)
            .order_by(ProcessingMetric.id)
        )
        return list(self.session.scalars(stmt))

    def find_stuck(self, cutoff: datetime, limit: int) -> list[Invoice]:
        """Invoices pending/processing since before `cutoff` that never completed."""
        stmt = (
            select(Invoice)
            .where(
                Invoice.status.in_([InvoiceStatus.PENDING.value, InvoiceStatus.PROCESSING.value]),
                Invoice.status_changed_at < cutoff,
                Invoice.processed_at.is_(None),
            )
            .order_by(Invoice.status_changed_at)
            .limit(limit)
        )
        return list(self.session.scalars(stmt))

    def find_retryable(
        self,
        transient_cutoff: datetime,
        rate_limit_cutoff: datetime,
        max_retries: int,
        limit: int,
    ) -> list[Invoice]:
        """Failed invoices whose failure kind is retryable and whose cool-down elapsed."""
        stmt = (
            select(Invoice)
            .where(
                Invoice.status == InvoiceStatus.ERROR.value,
                Invoice.retry_count < max_retries,
                or_(
                    (Invoice.error_kind == ErrorKind.TRANSIENT.value)
                    & (Invoice.last_failed_at < transient_cutoff),
                    (Invoice.error_kind == ErrorKind.RATE_LIMITED.value)
                    & (Invoice.last_failed_at < rate_limit_cutoff),
                ),
            )
            .order_by(Invoice.last_failed_at)
            .limit(limit)
        )
        return list(self.session.scalars(stmt))


def header_of(invoice: Invoice) -> InvoiceHeader:
    """Header fields currently stored on an invoice."""
    return InvoiceHeader(
        supplier_name=invoice.supplier_name,
        supplier_tax_id=invoice.supplier_tax_id,
        invoice_number=invoice.invoice_number,
        invoice_date=invoice.invoice_date,
        total_net=invoice.total_net,
        total_tax=invoice.total_tax,
        total_gross=invoice.total_gross,
    )


def lines_of(invoice: Invoice) -> list[ExtractedLine]:
    """Stored line items of an invoice, in line order."""
    return [
        ExtractedLine(
            line_number=line.line_number,
            description=line.description,
            quantity=line.quantity,
            unit=line.unit,
            unit_price=line.unit_price,
            line_total=line.line_total,
            tax_rate=line.tax_rate,
        )
        for line in invoice.lines
    ]
