"""Per-invoice processing run: match, extract, reconcile, persist.

One call to `InvoiceProcessor.process` is one processing attempt:

1. Claim the invoice (pending -> processing). Losing the claim means another
   worker owns it, or it already completed: the run is a no-op and writes
   nothing, not even a metric.
2. Sniff the header, match a template and run its zones; fall back to the AI
   extractor when nothing matched confidently or coverage was insufficient.
   If the AI fails and a template matched, that template is tried as a last
   resort before the failure is recorded.
3. Validate and reconcile, then store lines, propose catalog products for
   them and move the invoice to reviewing.

Any failure is classified and stored on the invoice (status error). Exactly
one ProcessingMetric is written per attempt, success or failure. The
processor never re-runs a failed attempt; that is the retry worker's job.
"""

import logging
import time

from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from invoicing.extraction.fallback import AIFallbackExtractor
from invoicing.extraction.schema import AIResult, InvoiceHeader, ManualResult, TemplateResult
from invoicing.extraction.zones import ZoneConfig, ZoneExtraction, ZoneExtractor
from invoicing.matching.header import extract_header_fields
from invoicing.matching.matcher import FingerprintMatcher, MatchResult
from invoicing.matching.products import ProductMatcher
from invoicing.ocr.service import OCRService
from invoicing.reconciliation.service import (
    ReconciliationEngine,
    ReconciliationReport,
    validate_structure,
)
from invoicing.shared.config import Settings
from invoicing.shared.db import session_scope, utcnow
from invoicing.shared.errors import (
    AIError,
    BadInputError,
    CatalogError,
    ErrorKind,
    InvalidTransitionError,
    ValidationFailedError,
    classify_error,
)
from invoicing.shared.metrics import (
    invoice_processing_duration_seconds,
    invoices_processed_total,
    template_match_score,
)
from invoicing.storage.service import BlobStore
from invoicing.store.invoices import InvoiceRepository
from invoicing.store.models import Invoice, InvoiceStatus
from invoicing.store.templates import TemplateStore

logger = logging.getLogger(__name__)

Outcome = TemplateResult | AIResult | ManualResult


class ProcessingSummary(BaseModel):
    """What one processing attempt did (returned to the queue task)."""

    invoice_id: int
    status: str
    method: str | None = None
    template_id: int | None = None
    match_score: float | None = None
    ai_attempts: int = 0
    ai_model: str | None = None
    lines_extracted: int = 0
    error_kind: ErrorKind | None = None
    error_message: str | None = None


class _Snapshot(BaseModel):
    invoice_id: int
    tenant_id: int
    upload_source: str
    file_type: str
    storage_ref: str
    ocr_text: str | None


class _Attempt:
    """Mutable bookkeeping for one attempt, filled in as the run progresses."""

    def __init__(self) -> None:
        self.method: str | None = None
        self.template_id: int | None = None
        self.match_score: float | None = None
        self.used_template_id: int | None = None
        self.ai_attempts = 0
        self.ai_model: str | None = None
        self.ocr_text: str | None = None


class InvoiceProcessor:
    """Runs one processing attempt for one invoice."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: Settings,
        fallback: AIFallbackExtractor,
        blob_store: BlobStore | None = None,
        ocr: OCRService | None = None,
        product_matcher: ProductMatcher | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.fallback = fallback
        self.blob_store = blob_store
        self.ocr = ocr
        self.product_matcher = product_matcher
        self.matcher = FingerprintMatcher(settings)
        self.zones = ZoneExtractor()
        self.reconciler = ReconciliationEngine(settings)

    def process(self, invoice_id: int, tenant_id: int, source: str = "upload") -> ProcessingSummary | None:
        """Process an invoice if it is pending.

        Args:
            invoice_id: Invoice to process
            tenant_id: Owning tenant
            source: What enqueued the job (for logs)

        Returns:
            ProcessingSummary, or None when the invoice was not claimable
        """
        with session_scope(self.session_factory) as session:
            repo = InvoiceRepository(session)
            if not repo.claim_for_processing(invoice_id, tenant_id):
                invoice = repo.get(invoice_id)
                status = invoice.status if invoice else "missing"
                logger.info(
                    f"Invoice {invoice_id} not claimable (status={status}, source={source}); skipping"
                )
                return None
            invoice = repo.get(invoice_id)
            if invoice is None:
                raise InvalidTransitionError(f"Invoice {invoice_id} disappeared after being claimed")
            snapshot = _Snapshot(
                invoice_id=invoice.id,
                tenant_id=invoice.tenant_id,
                upload_source=invoice.upload_source,
                file_type=invoice.file_type,
                storage_ref=invoice.storage_ref,
                ocr_text=invoice.ocr_text,
            )

        logger.info(f"Processing invoice {invoice_id} for tenant {tenant_id} (source={source})")
        started = time.perf_counter()
        attempt = _Attempt()

        try:
            outcome = self._extract(snapshot, attempt)
            validate_structure(outcome.header, outcome.lines)
            report = self.reconciler.reconcile_outcome(outcome)
        except Exception as e:
            return self._record_failure(snapshot, attempt, e, started)

        return self._record_success(snapshot, attempt, outcome, report, started)

    def _read_text(self, snapshot: _Snapshot) -> str:
        if snapshot.ocr_text and snapshot.ocr_text.strip():
            return snapshot.ocr_text

        if not snapshot.file_type.startswith("image/"):
            raise BadInputError(f"no text available for {snapshot.file_type} file; OCR text is required")
        if self.blob_store is None or self.ocr is None:
            raise BadInputError("image has no OCR text and OCR is not available")

        result = self.ocr.extract_text(self.blob_store.get(snapshot.storage_ref))
        if not result.success:
            raise BadInputError(result.error or "unreadable scan")
        if not result.text.strip():
            raise BadInputError("no text could be read from the scan")
        return result.text

    def _extract(self, snapshot: _Snapshot, attempt: _Attempt) -> Outcome:
        ocr_text = self._read_text(snapshot)
        attempt.ocr_text = ocr_text
        header = extract_header_fields(ocr_text)

        match = None
        zone_config: ZoneConfig | None = None
        with session_scope(self.session_factory) as session:
            store = TemplateStore(session)
            match = self.matcher.match(store, snapshot.tenant_id, header, ocr_text)
            if match is not None:
                template = store.get(match.template_id)
                if template is None:
                    match = None
                else:
                    zone_config = ZoneConfig.model_validate(template.zone_config)

        if match is not None:
            template_match_score.observe(match.score.score)
            attempt.template_id = match.template_id
            attempt.match_score = match.score.score

        extraction: ZoneExtraction | None = None
        if match is not None and match.accepted and zone_config is not None:
            attempt.used_template_id = match.template_id
            extraction = self.zones.extract(ocr_text, zone_config)
            if extraction.lines and extraction.coverage >= self.settings.zone_min_coverage:
                attempt.method = "template"
                return TemplateResult(
                    template_id=match.template_id,
                    match_score=match.score.score,
                    header=extraction.header.merged_with(header),
                    lines=extraction.lines,
                    dropped_rows=extraction.dropped_rows,
                )
            logger.info(
                f"Template {match.template_id} coverage {extraction.coverage:.0%} "
                f"({len(extraction.lines)}/{extraction.candidate_rows} rows); using AI fallback"
            )

        attempt.method = "ai"
        attempt.ai_model = self.fallback.provider.model_name
        try:
            result = self.fallback.extract(
                ocr_text,
                template_id=attempt.template_id,
                match_score=attempt.match_score,
            )
        except AIError as e:
            if match is None or zone_config is None:
                raise
            last_resort = self._template_last_resort(ocr_text, header, match, zone_config, extraction)
            if last_resort is None:
                raise
            logger.warning(
                f"AI fallback failed ({e.detail}); template {match.template_id} used as last resort"
            )
            attempt.ai_attempts = e.attempts
            attempt.ai_model = e.model
            attempt.used_template_id = match.template_id
            attempt.method = "template"
            return last_resort
        attempt.ai_attempts = result.attempts
        attempt.ai_model = result.model
        return result.model_copy(update={"header": result.header.merged_with(header)})

    def _template_last_resort(
        self,
        ocr_text: str,
        header: InvoiceHeader,
        match: MatchResult,
        zone_config: ZoneConfig,
        extraction: ZoneExtraction | None,
    ) -> TemplateResult | None:
        """Run the matched template when the AI could not answer.

        Coverage is not enforced here; the result only has to be structurally
        usable, and dropped rows surface as a reconciliation flag.
        """
        if extraction is None:
            extraction = self.zones.extract(ocr_text, zone_config)
        if not extraction.lines:
            return None

        result = TemplateResult(
            template_id=match.template_id,
            match_score=match.score.score,
            header=extraction.header.merged_with(header),
            lines=extraction.lines,
            dropped_rows=extraction.dropped_rows,
        )
        try:
            validate_structure(result.header, result.lines)
        except ValidationFailedError:
            return None
        return result

    def _record_usage(self, session: Session, attempt: _Attempt) -> None:
        if attempt.used_template_id is None:
            return
        store = TemplateStore(session)
        store.record_usage(attempt.used_template_id)
        store.deactivate_if_collapsed(
            attempt.used_template_id,
            self.settings.template_retire_min_uses,
            self.settings.template_retire_floor,
        )

    def _record_success(
        self,
        snapshot: _Snapshot,
        attempt: _Attempt,
        outcome: Outcome,
        report: ReconciliationReport,
        started: float,
    ) -> ProcessingSummary | None:
        duration = time.perf_counter() - started
        discounts = report.line_discounts()
        header = outcome.header

        with session_scope(self.session_factory) as session:
            repo = InvoiceRepository(session)
            moved = repo.transition(
                snapshot.invoice_id,
                [InvoiceStatus.PROCESSING],
                InvoiceStatus.REVIEWING,
                extraction_method=outcome.method,
                template_id=attempt.template_id,
                match_score=attempt.match_score,
                ai_attempts=Invoice.ai_attempts + attempt.ai_attempts,
                reconciliation=report.model_dump(mode="json"),
                processed_at=utcnow(),
                error_kind=None,
                error_message=None,
            )
            if not moved:
                logger.warning(
                    f"Invoice {snapshot.invoice_id} left processing during the run; result discarded"
                )
                return None

            invoice = repo.get(snapshot.invoice_id)
            if invoice is None:
                raise InvalidTransitionError(f"Invoice {snapshot.invoice_id} disappeared during the run")
            if attempt.ocr_text and not invoice.ocr_text:
                invoice.ocr_text = attempt.ocr_text
            repo.store_extraction(invoice, header, outcome.lines, discounts)
            if self.product_matcher is not None:
                try:
                    self.product_matcher.match_lines(session, invoice)
                except CatalogError as e:
                    logger.warning(f"Invoice {snapshot.invoice_id}: product matching skipped ({e})")

            self._record_usage(session, attempt)
            repo.add_metric(
                tenant_id=snapshot.tenant_id,
                invoice_id=snapshot.invoice_id,
                upload_source=snapshot.upload_source,
                extraction_method=outcome.method,
                template_id=attempt.template_id,
                match_score=attempt.match_score,
                duration_ms=int(duration * 1000),
                ai_attempts=attempt.ai_attempts,
                lines_extracted=len(outcome.lines),
                success=True,
                ai_model=attempt.ai_model if outcome.method == "ai" else None,
            )

        invoices_processed_total.labels(method=outcome.method, outcome="success").inc()
        invoice_processing_duration_seconds.observe(duration)
        logger.info(
            f"Invoice {snapshot.invoice_id} ready for review via {outcome.method} "
            f"({len(outcome.lines)} lines, {len(report.flags)} flags, {duration:.2f}s)"
        )
        return ProcessingSummary(
            invoice_id=snapshot.invoice_id,
            status=InvoiceStatus.REVIEWING.value,
            method=outcome.method,
            template_id=attempt.template_id,
            match_score=attempt.match_score,
            ai_attempts=attempt.ai_attempts,
            ai_model=attempt.ai_model if outcome.method == "ai" else None,
            lines_extracted=len(outcome.lines),
        )

    def _record_failure(
        self, snapshot: _Snapshot, attempt: _Attempt, exc: Exception, started: float
    ) -> ProcessingSummary:
        duration = time.perf_counter() - started
        classified = classify_error(exc)
        attempt.ai_attempts = getattr(exc, "attempts", attempt.ai_attempts)
        if getattr(exc, "model", None):
            attempt.ai_model = exc.model  # type: ignore[attr-defined]

        if classified.kind is ErrorKind.UNKNOWN:
            logger.exception(f"Invoice {snapshot.invoice_id} failed with an unclassified error")
        else:
            logger.error(f"Invoice {snapshot.invoice_id} failed ({classified.kind.value}): {exc}")

        with session_scope(self.session_factory) as session:
            repo = InvoiceRepository(session)
            repo.mark_error(snapshot.invoice_id, classified, ai_attempts=attempt.ai_attempts)
            self._record_usage(session, attempt)
            repo.add_metric(
                tenant_id=snapshot.tenant_id,
                invoice_id=snapshot.invoice_id,
                upload_source=snapshot.upload_source,
                extraction_method=attempt.method,
                template_id=attempt.template_id,
                match_score=attempt.match_score,
                duration_ms=int(duration * 1000),
                ai_attempts=attempt.ai_attempts,
                lines_extracted=0,
                success=False,
                ai_model=attempt.ai_model if attempt.ai_attempts else None,
                error_kind=classified.kind.value,
            )

        invoices_processed_total.labels(method=attempt.method or "none", outcome="failed").inc()
        invoice_processing_duration_seconds.observe(duration)
        return ProcessingSummary(
            invoice_id=snapshot.invoice_id,
            status=InvoiceStatus.ERROR.value,
            method=attempt.method,
            template_id=attempt.template_id,
            match_score=attempt.match_score,
            ai_attempts=attempt.ai_attempts,
            ai_model=attempt.ai_model if attempt.ai_attempts else None,
            error_kind=classified.kind,
            error_message=classified.message,
        )
