"""Human review of processed invoices.

Reviewers work on invoices in `reviewing`: they correct lines, link lines
to catalog products, and finally approve or reject. Failed invoices can be
completed by hand (manual lines) or sent back to the queue (manual retry).

Approval is the only trigger for template learning and catalog integration.
Both run after the approval is committed and neither can undo it.
"""

import logging
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from invoicing.extraction.schema import ExtractedLine, InvoiceHeader, ManualResult
from invoicing.integration.service import IntegrationService, IntegrationSummary
from invoicing.learning.service import LearningOutcome, TemplateLearning
from invoicing.matching.products import ProductMatch, ProductMatcher
from invoicing.reconciliation.service import ReconciliationEngine, validate_structure
from invoicing.retry.service import RetryService
from invoicing.shared.config import Settings
from invoicing.shared.db import session_scope, utcnow
from invoicing.shared.errors import InvalidTransitionError
from invoicing.store.invoices import InvoiceRepository, header_of, lines_of
from invoicing.store.models import ExtractionMethod, Invoice, InvoiceLine, InvoiceStatus
from invoicing.store.product_matches import ProductMatchStore

logger = logging.getLogger(__name__)


class LineCorrection(BaseModel):
    """Reviewer edits to one line; only fields that are set are applied."""

    description: str | None = None
    quantity: Decimal | None = None
    unit: str | None = None
    unit_price: Decimal | None = None
    line_total: Decimal | None = None
    tax_rate: Decimal | None = None


class ApprovalResult(BaseModel):
    """What happened when an invoice was approved."""

    invoice_id: int
    learning: LearningOutcome | None = None
    integration: IntegrationSummary | None = None


class ReviewService:
    """Reviewer operations on a tenant's invoices."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: Settings,
        learning: TemplateLearning | None = None,
        integration: IntegrationService | None = None,
        retry: RetryService | None = None,
        product_matcher: ProductMatcher | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.learning = learning or TemplateLearning(settings)
        self.integration = integration
        self.retry_service = retry
        self.product_matcher = product_matcher
        self.reconciler = ReconciliationEngine(settings)

    def _reviewing_invoice(self, repo: InvoiceRepository, invoice_id: int, tenant_id: int) -> Invoice:
        invoice = repo.get(invoice_id, tenant_id)
        if invoice is None:
            raise InvalidTransitionError(f"Invoice {invoice_id} not found")
        if invoice.status != InvoiceStatus.REVIEWING.value:
            raise InvalidTransitionError(
                f"Invoice {invoice_id} is '{invoice.status}', not under review"
            )
        return invoice

    def _line(self, invoice: Invoice, line_number: int) -> InvoiceLine:
        for line in invoice.lines:
            if line.line_number == line_number:
                return line
        raise InvalidTransitionError(f"Invoice {invoice.id} has no line {line_number}")

    def _refresh_reconciliation(self, invoice: Invoice) -> None:
        report = self.reconciler.reconcile(header_of(invoice), lines_of(invoice))
        discounts = report.line_discounts()
        for line in invoice.lines:
            line.discount_pct = discounts.get(line.line_number)
        invoice.reconciliation = report.model_dump(mode="json")
        invoice.updated_at = utcnow()

    def correct_line(
        self, invoice_id: int, tenant_id: int, line_number: int, correction: LineCorrection
    ) -> None:
        """Apply a reviewer correction and re-run reconciliation.

        A corrected line means the extraction was not right as-is, so a
        template that produced it earns no success on approval.

        Raises:
            InvalidTransitionError: If the invoice is not under review or the line is missing
        """
        changes = correction.model_dump(exclude_unset=True)
        with session_scope(self.session_factory) as session:
            invoice = self._reviewing_invoice(InvoiceRepository(session), invoice_id, tenant_id)
            line = self._line(invoice, line_number)
            for field, value in changes.items():
                setattr(line, field, value.upper() if field == "unit" and value else value)
            line.corrected = True
            session.flush()
            self._refresh_reconciliation(invoice)
        logger.info(f"Invoice {invoice_id} line {line_number} corrected ({', '.join(changes)})")

    def assign_product(
        self,
        invoice_id: int,
        tenant_id: int,
        line_number: int,
        product_id: int | None,
        user_id: int | None = None,
    ) -> None:
        """Link a line to a catalog product (or unlink it with None).

        A link made by the reviewer is a confirmed match: it is remembered
        for the line's description and supplier, and proposed first on
        later invoices.

        Raises:
            InvalidTransitionError: If the invoice is not under review or the line is missing
        """
        with session_scope(self.session_factory) as session:
            invoice = self._reviewing_invoice(InvoiceRepository(session), invoice_id, tenant_id)
            line = self._line(invoice, line_number)
            line.product_id = product_id
            if product_id is not None:
                ProductMatchStore(session).record(
                    tenant_id,
                    line.description,
                    product_id,
                    supplier_name=invoice.supplier_name,
                    initial_confidence=line.match_confidence,
                    confirmed_by=user_id,
                )
            line.match_confidence = None
        logger.info(f"Invoice {invoice_id} line {line_number} linked to product {product_id}")

    def suggest_products(
        self, invoice_id: int, tenant_id: int, line_number: int, limit: int = 10
    ) -> list[ProductMatch]:
        """Catalog products a reviewer may want to link to a line.

        Raises:
            InvalidTransitionError: If the invoice is not under review, the line is
                missing or product matching is not configured
            CatalogError: If the catalog could not be read
        """
        if self.product_matcher is None:
            raise InvalidTransitionError("Product suggestions are not available without a catalog")
        with session_scope(self.session_factory) as session:
            invoice = self._reviewing_invoice(InvoiceRepository(session), invoice_id, tenant_id)
            description = self._line(invoice, line_number).description
        return self.product_matcher.suggestions(tenant_id, description, limit)

    def _confirm_matches(self, session: Session, invoice: Invoice, user_id: int | None) -> None:
        store = ProductMatchStore(session)
        confirmed = 0
        for line in invoice.lines:
            if line.product_id is None:
                continue
            store.record(
                invoice.tenant_id,
                line.description,
                line.product_id,
                supplier_name=invoice.supplier_name,
                initial_confidence=line.match_confidence,
                confirmed_by=user_id,
            )
            confirmed += 1
        if confirmed:
            logger.debug(f"Invoice {invoice.id}: {confirmed} product match(es) confirmed")

    def submit_manual_lines(
        self,
        invoice_id: int,
        tenant_id: int,
        lines: list[ExtractedLine],
        header: InvoiceHeader | None = None,
        user_id: int | None = None,
    ) -> None:
        """Complete a failed invoice by hand (error -> reviewing).

        Args:
            invoice_id: Invoice in error
            tenant_id: Owning tenant
            lines: Reviewer-entered lines
            header: Optional header fields; missing ones keep their stored value
            user_id: Reviewer

        Raises:
            ValidationFailedError: If the lines fail structural checks
            InvalidTransitionError: If the invoice is not in error
        """
        with session_scope(self.session_factory) as session:
            repo = InvoiceRepository(session)
            invoice = repo.get(invoice_id, tenant_id)
            if invoice is None:
                raise InvalidTransitionError(f"Invoice {invoice_id} not found")

            merged = (header or InvoiceHeader()).merged_with(header_of(invoice))
            result = ManualResult(entered_by=user_id, header=merged, lines=lines)
            validate_structure(result.header, result.lines)
            report = self.reconciler.reconcile_outcome(result)

            moved = repo.transition(
                invoice_id,
                [InvoiceStatus.ERROR],
                InvoiceStatus.REVIEWING,
                tenant_id=tenant_id,
                extraction_method=ExtractionMethod.MANUAL.value,
                reconciliation=report.model_dump(mode="json"),
                processed_at=utcnow(),
                error_kind=None,
                error_message=None,
            )
            if not moved:
                raise InvalidTransitionError(
                    f"Manual lines can only be entered for failed invoices (status '{invoice.status}')"
                )
            repo.store_extraction(invoice, result.header, result.lines, report.line_discounts())
        logger.info(f"Invoice {invoice_id} completed manually with {len(lines)} lines")

    def approve(self, invoice_id: int, tenant_id: int, user_id: int | None = None) -> ApprovalResult:
        """Approve an invoice (reviewing -> approved), then learn and integrate.

        Lines linked to products are stored as confirmed matches together with
        the approval.

        Learning and integration failures are logged; the approval stands.

        Raises:
            InvalidTransitionError: If the invoice is not under review
        """
        with session_scope(self.session_factory) as session:
            repo = InvoiceRepository(session)
            moved = repo.transition(
                invoice_id,
                [InvoiceStatus.REVIEWING],
                InvoiceStatus.APPROVED,
                tenant_id=tenant_id,
                approved_at=utcnow(),
                approved_by=user_id,
            )
            approved = repo.get(invoice_id, tenant_id) if moved else None
            if approved is not None:
                self._confirm_matches(session, approved, user_id)
        if not moved:
            raise InvalidTransitionError(f"Invoice {invoice_id} is not under review")

        result = ApprovalResult(invoice_id=invoice_id)
        try:
            with session_scope(self.session_factory) as session:
                invoice = InvoiceRepository(session).get(invoice_id, tenant_id)
                if invoice is None:
                    raise InvalidTransitionError(f"Invoice {invoice_id} not found after approval")
                result.learning = self.learning.on_approved(session, invoice)
        except Exception:
            logger.exception(f"Template learning for invoice {invoice_id} failed")

        if self.integration is not None:
            try:
                result.integration = self.integration.apply_approved_invoice(
                    invoice_id, tenant_id, user_id
                )
            except Exception:
                logger.exception(f"Catalog integration for invoice {invoice_id} failed")

        logger.info(f"Invoice {invoice_id} approved by user {user_id}")
        return result

    def reject(self, invoice_id: int, tenant_id: int, user_id: int | None = None) -> None:
        """Reject an invoice under review (terminal).

        Raises:
            InvalidTransitionError: If the invoice is not under review
        """
        with session_scope(self.session_factory) as session:
            moved = InvoiceRepository(session).transition(
                invoice_id, [InvoiceStatus.REVIEWING], InvoiceStatus.REJECTED, tenant_id=tenant_id
            )
        if not moved:
            raise InvalidTransitionError(f"Invoice {invoice_id} is not under review")
        logger.info(f"Invoice {invoice_id} rejected by user {user_id}")

    async def retry(self, invoice_id: int, tenant_id: int) -> bool:
        """Send a failed invoice back to the queue after the manual-retry delay.

        Raises:
            InvalidTransitionError: If the invoice is not in error
        """
        if self.retry_service is None:
            raise InvalidTransitionError("Manual retry is not available without a job queue")
        return await self.retry_service.request_retry(invoice_id, tenant_id)
