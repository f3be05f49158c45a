"""Ollama-based extraction provider for self-hosted LLM inference.

Uses a local Ollama server for line-item extraction from OCR text.
Supports data sovereignty requirements by running entirely on-premises.

Requires Ollama server running on localhost:11434.
See: https://ollama.ai/
"""

import json
import logging

import httpx

from invoicing.extraction.base import (
    INVOICE_SCHEMA,
    AIExtraction,
    ExtractionProvider,
    parse_json_payload,
    payload_to_extraction,
)
from invoicing.shared.config import Settings
from invoicing.shared.errors import (
    ConfigurationError,
    RateLimitedError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

_OVERLOADED_STATUS = {500, 502, 503, 504}


class OllamaExtractionProvider(ExtractionProvider):
    """Ollama-based extraction provider for self-hosted LLM inference.

    Supports models like Qwen2.5, Llama3, Mistral.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize Ollama extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._base_url = settings.ollama_base_url
        self._model = settings.ollama_model
        self._client = httpx.Client(timeout=settings.ai_request_timeout)

    @property
    def provider_name(self) -> str:
        return "ollama"

    @property
    def model_name(self) -> str:
        return self._model

    def is_available(self) -> bool:
        """Check if Ollama server is running and model is available.

        Returns:
            True if Ollama server responds and model is loaded
        """
        try:
            response = self._client.get(f"{self._base_url}/api/tags")
        except httpx.HTTPError as e:
            logger.warning(f"Ollama server unreachable: {e}")
            return False
        if response.status_code != 200:
            return False
        models = response.json().get("models", [])
        model_names = [m.get("name", "").split(":")[0] for m in models]
        return self._model.split(":")[0] in model_names

    def extract_invoice(self, ocr_text: str) -> AIExtraction:
        """Extract header and line items with one Ollama generate call.

        Args:
            ocr_text: Raw text from OCR engine

        Returns:
            AIExtraction with model id of the configured Ollama model
        """
        response_text = self._call_ollama(self.build_prompt(ocr_text))
        extraction = payload_to_extraction(parse_json_payload(response_text), model=self._model)
        logger.info(f"Ollama extracted {len(extraction.lines)} lines with {self._model}")
        return extraction

    def _call_ollama(self, prompt: str) -> str:
        """Call the Ollama generate API and translate failures.

        Args:
            prompt: Extraction prompt for the LLM

        Returns:
            Raw response text from Ollama
        """
        model = self._model
        try:
            response = self._client.post(
                f"{self._base_url}/api/generate",
                json={
                    "model": model,
                    "prompt": f"{prompt}\n\nReturn ONLY JSON matching this schema:\n"
                    f"{json.dumps(INVOICE_SCHEMA)}",
                    "stream": False,
                    "format": "json",
                    "options": {
                        "temperature": 0,  # Deterministic output
                        "num_predict": 2048,
                    },
                },
            )
        except httpx.TimeoutException as e:
            raise TransientProviderError(
                f"Ollama timed out after {self.settings.ai_request_timeout}s", model=model
            ) from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Ollama unreachable: {e}", model=model) from e

        status = response.status_code
        if status == 429:
            raise RateLimitedError("Ollama rate limit (HTTP 429)", model=model)
        if status in _OVERLOADED_STATUS:
            raise TransientProviderError(f"Ollama overloaded (HTTP {status})", model=model)
        if status in (401, 403):
            raise ConfigurationError(f"Ollama rejected the request (HTTP {status})", model=model)
        if status == 404:
            raise ConfigurationError(f"Ollama model '{model}' is not installed", model=model)
        response.raise_for_status()

        result: str = response.json().get("response", "")
        return result
