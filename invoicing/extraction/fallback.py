"""AI fallback extractor with bounded retries.

Wraps an extraction provider for invoices the template path could not handle.
Overload / connection errors are retried with exponential backoff and jitter
(tenacity); rate limits and configuration errors are never retried in-call.
Every attempt is counted so the processing metric can record it, whether the
run ends in success or failure.
"""

import logging

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from invoicing.extraction.base import AIExtraction, ExtractionProvider
from invoicing.extraction.schema import AIResult
from invoicing.shared.config import Settings
from invoicing.shared.errors import (
    AIError,
    AIUnavailableError,
    ConfigurationError,
    RateLimitedError,
    TransientProviderError,
)
from invoicing.shared.metrics import ai_attempts_total

logger = logging.getLogger(__name__)


def _outcome(exc: BaseException | None) -> str:
    if exc is None:
        return "success"
    if isinstance(exc, TransientProviderError):
        return "overloaded"
    if isinstance(exc, RateLimitedError):
        return "rate_limited"
    if isinstance(exc, ConfigurationError):
        return "config"
    return "error"


class AIFallbackExtractor:
    """Runs the AI provider with retry/backoff and attempt accounting."""

    def __init__(self, provider: ExtractionProvider, settings: Settings) -> None:
        self.provider = provider
        self.settings = settings

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"AI attempt {retry_state.attempt_number} via {self.provider.provider_name} "
            f"failed ({exc}); retrying in {wait:.1f}s"
        )

    def extract(
        self,
        ocr_text: str,
        template_id: int | None = None,
        match_score: float | None = None,
    ) -> AIResult:
        """Extract line items with the AI provider.

        Args:
            ocr_text: Raw OCR text
            template_id: Template that matched but had insufficient coverage
            match_score: Its similarity score

        Returns:
            AIResult with the attempt count and the model that answered

        Raises:
            AIUnavailableError: Overload retries exhausted (transient)
            RateLimitedError: Quota hit; retry later after a cool-down
            ConfigurationError: Credentials missing or rejected; never retried
            AIError: Any other provider failure, with attempts and model attached
        """
        provider_name = self.provider.provider_name
        model = self.provider.model_name
        attempts = 0

        retrying = Retrying(
            retry=retry_if_exception_type(TransientProviderError),
            wait=wait_exponential_jitter(
                initial=self.settings.ai_retry_initial_wait,
                max=self.settings.ai_retry_max_wait,
                jitter=self.settings.ai_retry_initial_wait,
            ),
            stop=stop_after_attempt(self.settings.ai_max_attempts),
            before_sleep=self._log_retry,
            reraise=True,
        )

        extraction: AIExtraction | None = None
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    try:
                        extraction = self.provider.extract_invoice(ocr_text)
                    except Exception as e:
                        ai_attempts_total.labels(provider=provider_name, outcome=_outcome(e)).inc()
                        raise
                    ai_attempts_total.labels(provider=provider_name, outcome="success").inc()
        except TransientProviderError as e:
            logger.error(f"AI provider {provider_name} unavailable after {attempts} attempts")
            raise AIUnavailableError(
                f"{e.detail} (gave up after {attempts} attempts)",
                attempts=attempts,
                model=e.model or model,
            ) from e
        except AIError as e:
            e.attempts = attempts
            e.model = e.model or model
            logger.error(f"AI extraction failed on attempt {attempts}: {e.detail}")
            raise
        except Exception as e:
            logger.exception(f"AI extraction failed on attempt {attempts}")
            raise AIError(str(e) or type(e).__name__, attempts=attempts, model=model) from e

        if extraction is None:
            raise AIError("provider returned no extraction", attempts=attempts, model=model)
        logger.info(
            f"AI extraction succeeded with {extraction.model} after {attempts} attempt(s): "
            f"{len(extraction.lines)} lines"
        )
        return AIResult(
            model=extraction.model,
            attempts=attempts,
            header=extraction.header,
            lines=extraction.lines,
            template_id=template_id,
            match_score=match_score,
        )
