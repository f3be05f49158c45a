"""Fingerprint matcher: pick the best active template for an invoice.

Candidates are first restricted to the invoice's supplier (exact tax id, or a
fuzzy normalized name when no tax id is available on either side), then ranked
by fingerprint similarity. Ties go to the higher confidence score, then the
most recently updated template. Matching is pure: nothing is written.
"""

import logging
from difflib import SequenceMatcher

from pydantic import BaseModel

from invoicing.extraction.parsing import normalize_supplier_name
from invoicing.extraction.schema import InvoiceHeader
from invoicing.matching.fingerprint import LayoutFingerprint, SimilarityScore, similarity
from invoicing.shared.config import Settings
from invoicing.store.models import Template
from invoicing.store.templates import TemplateStore

logger = logging.getLogger(__name__)


class MatchResult(BaseModel):
    """Best template candidate for an invoice.

    Attributes:
        template_id: Matched template
        score: Fingerprint similarity breakdown
        confidence: Template confidence score at match time
        accepted: Whether the match is confident enough to skip the AI fallback
    """

    template_id: int
    score: SimilarityScore
    confidence: float
    accepted: bool


def supplier_name_similarity(left: str, right: str) -> float:
    """Similarity (0-1) of two supplier names, case and diacritic insensitive."""
    a = normalize_supplier_name(left)
    b = normalize_supplier_name(right)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return SequenceMatcher(None, a, b).ratio()


class FingerprintMatcher:
    """Ranks a tenant's templates against a new invoice."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _same_supplier(self, template: Template, header: InvoiceHeader) -> bool:
        if header.supplier_tax_id and template.supplier_tax_id:
            return header.supplier_tax_id == template.supplier_tax_id
        if header.supplier_name:
            return (
                supplier_name_similarity(header.supplier_name, template.supplier_name)
                >= self.settings.supplier_name_similarity
            )
        return False

    def is_acceptable(self, template: Template, score: float) -> bool:
        """Acceptance gate for skipping the AI fallback.

        A template's confidence is only trusted once it has enough samples;
        before that, the similarity threshold alone decides.
        """
        if score < self.settings.template_match_threshold:
            return False
        if template.times_used < self.settings.template_min_samples:
            return True
        return template.confidence_score >= self.settings.template_min_confidence

    def match(
        self,
        store: TemplateStore,
        tenant_id: int,
        header: InvoiceHeader,
        ocr_text: str,
    ) -> MatchResult | None:
        """Find the best-matching active template for this tenant and supplier.

        Args:
            store: Template repository
            tenant_id: Tenant that owns the invoice
            header: Sniffed header fields (supplier tax id / name)
            ocr_text: Raw OCR text

        Returns:
            MatchResult for the best candidate, or None if the supplier has no
            active template
        """
        candidates = [
            template
            for template in store.active_for_tenant(tenant_id)
            if self._same_supplier(template, header)
        ]
        if not candidates:
            logger.info(f"No template candidates for tenant {tenant_id}")
            return None

        scored = [
            (similarity(ocr_text, LayoutFingerprint.model_validate(t.fingerprint)), t)
            for t in candidates
        ]
        best_score, best = max(
            scored,
            key=lambda item: (item[0].score, item[1].confidence_score, item[1].updated_at),
        )

        result = MatchResult(
            template_id=best.id,
            score=best_score,
            confidence=best.confidence_score,
            accepted=self.is_acceptable(best, best_score.score),
        )
        logger.info(
            f"Best template {best.id} for tenant {tenant_id}: score={best_score.score:.1f} "
            f"confidence={best.confidence_score:.1f} accepted={result.accepted}"
        )
        return result
