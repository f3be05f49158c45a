"""OpenAI-based extraction provider for invoice line items.

Uses OpenAI chat completions with function calling for structured outputs.
The SDK's own retries are disabled: each call is one attempt, and the AI
fallback extractor decides whether and when to try again.
"""

import json
import logging
import os
from typing import Any

import openai
from openai import OpenAI

from invoicing.extraction.base import (
    INVOICE_SCHEMA,
    AIExtraction,
    ExtractionProvider,
    payload_to_extraction,
)
from invoicing.shared.config import Settings
from invoicing.shared.errors import (
    ConfigurationError,
    InvalidAIResponseError,
    RateLimitedError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)


class OpenAIExtractionProvider(ExtractionProvider):
    """OpenAI-based extraction provider.

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: OpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openai"

    @property
    def model_name(self) -> str:
        return self.settings.openai_model

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return bool(os.getenv("OPENAI_API_KEY"))

    def _get_client(self) -> OpenAI:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY environment variable not set")

        if self._client is None or self._client.api_key != api_key:
            self._client = OpenAI(
                api_key=api_key,
                timeout=self.settings.ai_request_timeout,
                max_retries=0,
            )
        return self._client

    def extract_invoice(self, ocr_text: str) -> AIExtraction:
        """Extract header and line items using one OpenAI call.

        Args:
            ocr_text: Raw text from OCR engine

        Returns:
            AIExtraction carrying the model id reported by the API
        """
        client = self._get_client()
        model = self.model_name

        try:
            response = self._call_openai(client, self.build_prompt(ocr_text))
        except openai.RateLimitError as e:
            raise RateLimitedError(f"OpenAI rate limit: {e}", model=model) from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ConfigurationError(f"OpenAI rejected the credentials: {e}", model=model) from e
        except openai.NotFoundError as e:
            raise ConfigurationError(f"OpenAI model '{model}' not found", model=model) from e
        except openai.InternalServerError as e:
            raise TransientProviderError(
                f"OpenAI overloaded (HTTP {e.status_code})", model=model
            ) from e
        except openai.APITimeoutError as e:
            raise TransientProviderError(
                f"OpenAI timed out after {self.settings.ai_request_timeout}s", model=model
            ) from e
        except openai.APIConnectionError as e:
            raise TransientProviderError(f"OpenAI unreachable: {e}", model=model) from e

        message = response.choices[0].message
        if message.function_call is None:
            raise InvalidAIResponseError("No function call in API response", model=model)

        try:
            payload = json.loads(message.function_call.arguments)
        except json.JSONDecodeError as e:
            raise InvalidAIResponseError(f"Function arguments are not JSON: {e}", model=model) from e

        extraction = payload_to_extraction(payload, model=response.model or model)
        logger.info(f"OpenAI extracted {len(extraction.lines)} lines with {extraction.model}")
        return extraction

    def _call_openai(self, client: OpenAI, prompt: str) -> Any:
        # function_call (legacy) is still fully supported and enough for a
        # single extraction function
        return client.chat.completions.create(  # type: ignore[call-overload]
            model=self.model_name,
            messages=[
                {
                    "role": "system",
                    "content": "You are an invoice data extraction assistant.",
                },
                {"role": "user", "content": prompt},
            ],
            functions=[self._get_invoice_schema()],
            function_call={"name": "extract_invoice_lines"},
            temperature=0,
        )

    def _get_invoice_schema(self) -> dict[str, Any]:
        """Get OpenAI function calling schema for header plus line items."""
        return {
            "name": "extract_invoice_lines",
            "description": "Extract supplier invoice header and line items from OCR text",
            "parameters": INVOICE_SCHEMA,
        }
