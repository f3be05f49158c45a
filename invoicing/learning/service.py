"""Template learning from reviewer approvals.

Usage counters are updated by the processor after every run that used a
template. This module handles what happens once a reviewer approves:

- template run, no line corrected: the template earns a success;
- AI run from a supplier without a template: a template is learned from the
  approved lines, provided the inferred zones reproduce them from the OCR
  text with sufficient coverage. Suppliers that already have a template keep
  it; its statistics decide whether it is retired.
"""

import logging
from typing import Literal

from pydantic import BaseModel
from sqlalchemy.orm import Session

from invoicing.extraction.zones import ZoneExtractor, infer_zone_config
from invoicing.matching.fingerprint import compute_fingerprint
from invoicing.shared.config import Settings
from invoicing.store.invoices import header_of, lines_of
from invoicing.store.models import ExtractionMethod, Invoice
from invoicing.store.templates import TemplateStore

logger = logging.getLogger(__name__)


class LearningOutcome(BaseModel):
    """What approval taught the template store."""

    action: Literal["success_recorded", "template_created", "skipped"]
    template_id: int | None = None
    reason: str | None = None


class TemplateLearning:
    """Updates templates when an invoice is approved."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.zones = ZoneExtractor()

    def on_approved(self, session: Session, invoice: Invoice) -> LearningOutcome:
        """Learn from an approved invoice.

        Args:
            session: Open session (the caller commits)
            invoice: The approved invoice, with its lines

        Returns:
            LearningOutcome describing the template change, if any
        """
        method = invoice.extraction_method
        if method == ExtractionMethod.TEMPLATE.value and invoice.template_id is not None:
            return self._rate_template(session, invoice, invoice.template_id)
        if method == ExtractionMethod.AI.value:
            return self._learn_template(session, invoice)
        return LearningOutcome(action="skipped", reason=f"extraction method {method}")

    def _rate_template(self, session: Session, invoice: Invoice, template_id: int) -> LearningOutcome:
        if any(line.corrected for line in invoice.lines):
            logger.info(
                f"Invoice {invoice.id} approved with corrections; "
                f"template {template_id} earns no success"
            )
            return LearningOutcome(action="skipped", template_id=template_id, reason="lines corrected")

        TemplateStore(session).record_success(template_id)
        return LearningOutcome(action="success_recorded", template_id=template_id)

    def _learn_template(self, session: Session, invoice: Invoice) -> LearningOutcome:
        if not invoice.supplier_name:
            return LearningOutcome(action="skipped", reason="supplier unknown")
        if not invoice.ocr_text:
            return LearningOutcome(action="skipped", reason="no OCR text")
        if invoice.template_id is not None or TemplateStore(session).has_active_for_supplier(
            invoice.tenant_id, invoice.supplier_name, invoice.supplier_tax_id
        ):
            logger.info(
                f"Supplier of invoice {invoice.id} already has a template; relying on its statistics"
            )
            return LearningOutcome(
                action="skipped", template_id=invoice.template_id, reason="template exists"
            )

        lines = lines_of(invoice)
        config = infer_zone_config(invoice.ocr_text, lines)
        if config is None:
            return LearningOutcome(action="skipped", reason="table layout not recognised")

        check = self.zones.extract(invoice.ocr_text, config)
        if not check.lines or check.coverage < self.settings.zone_min_coverage:
            logger.info(
                f"Learned zones for invoice {invoice.id} cover {check.coverage:.0%} "
                f"({len(check.lines)}/{check.candidate_rows} rows); no template created"
            )
            return LearningOutcome(action="skipped", reason="insufficient zone coverage")

        header = header_of(invoice)
        fingerprint = compute_fingerprint(invoice.ocr_text, header)
        template = TemplateStore(session).create_template(
            tenant_id=invoice.tenant_id,
            supplier_name=invoice.supplier_name,
            supplier_tax_id=invoice.supplier_tax_id,
            family=fingerprint.family,
            fingerprint=fingerprint.model_dump(mode="json"),
            zone_config=config.model_dump(mode="json"),
            created_from_ai=True,
        )
        logger.info(f"Learned template {template.id} from approved invoice {invoice.id}")
        return LearningOutcome(action="template_created", template_id=template.id)
