"""Error taxonomy for the invoice pipeline.

Every failure that reaches the worker boundary is turned into a
`ClassifiedError`: a kind (which decides whether the retry worker may
re-submit the invoice) plus the message stored on the invoice.
"""

from enum import Enum

from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Failure classes, ordered from most to least automatically recoverable."""

    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    BAD_INPUT = "bad_input"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED})


class PipelineError(Exception):
    """Base class for classified pipeline failures.

    Attributes:
        kind: Error class
        detail: Technical detail for logs and messages
    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class AIError(PipelineError):
    """Failure raised by the AI fallback extractor.

    Carries the number of attempts made and the model that was called so the
    processing metric can be recorded even when extraction fails.
    """

    def __init__(self, detail: str, attempts: int = 0, model: str | None = None) -> None:
        super().__init__(detail)
        self.attempts = attempts
        self.model = model


class TransientProviderError(AIError):
    """Provider overloaded (503) or unreachable; safe to retry with backoff."""

    kind = ErrorKind.TRANSIENT


class AIUnavailableError(TransientProviderError):
    """Overload retries were exhausted within one processing run."""


class RateLimitedError(AIError):
    """Provider quota or rate limit hit (429); retry after a cool-down."""

    kind = ErrorKind.RATE_LIMITED


class ConfigurationError(AIError):
    """Missing or invalid credentials; never retried."""

    kind = ErrorKind.CONFIGURATION


class InvalidAIResponseError(AIError):
    """Model answered but the payload could not be parsed into line items."""

    kind = ErrorKind.VALIDATION


class BadInputError(PipelineError):
    """Unsupported, oversized or unreadable file."""

    kind = ErrorKind.BAD_INPUT


class ValidationFailedError(PipelineError):
    """Extracted data failed structural sanity checks."""

    kind = ErrorKind.VALIDATION


class StorageError(PipelineError):
    """The blob store could not persist an uploaded file."""

    kind = ErrorKind.TRANSIENT


class InvalidTransitionError(Exception):
    """Requested invoice state transition is not allowed from its current status."""


class CatalogError(Exception):
    """The catalog subsystem rejected or failed a read or a field update."""


class ClassifiedError(BaseModel):
    """User-facing classification of a failure.

    Attributes:
        kind: Error class
        message: Human-readable message stored on the invoice
        retryable: Whether the retry worker may re-submit automatically
    """

    kind: ErrorKind
    message: str
    retryable: bool


def classify_error(exc: BaseException) -> ClassifiedError:
    """Translate any exception into a classified, user-facing error.

    Args:
        exc: Exception caught at the worker boundary

    Returns:
        ClassifiedError with kind, message and retryable flag
    """
    kind = exc.kind if isinstance(exc, PipelineError) else ErrorKind.UNKNOWN
    detail = exc.detail if isinstance(exc, PipelineError) else (str(exc) or type(exc).__name__)

    if kind is ErrorKind.TRANSIENT:
        message = (
            "The AI extraction service is temporarily unavailable. "
            "The invoice will be retried automatically."
        )
    elif kind is ErrorKind.RATE_LIMITED:
        message = (
            "The AI extraction quota was exceeded. Please wait; "
            "the invoice will be retried automatically after a cool-down."
        )
    elif kind is ErrorKind.BAD_INPUT:
        message = f"The file could not be processed ({detail}). Please upload a corrected file."
    elif kind is ErrorKind.VALIDATION:
        message = (
            f"The extracted data failed validation ({detail}). "
            "Please review the invoice or upload it again."
        )
    elif kind is ErrorKind.CONFIGURATION:
        message = (
            "Invoice extraction is not configured correctly. "
            f"An operator must fix the configuration ({detail})."
        )
    else:
        message = f"{detail}. Delete the invoice and upload it again."

    return ClassifiedError(kind=kind, message=message, retryable=kind in RETRYABLE_KINDS)
