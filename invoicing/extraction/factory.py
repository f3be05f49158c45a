"""Selection of the AI extraction provider used by the fallback extractor.

Providers register under the name used in `APP_EXTRACTION_PROVIDER`; the
worker builds exactly one at startup.

Based on:
- Factory Pattern: https://refactoring.guru/design-patterns/factory-method/python
- Registry Pattern: Python Cookbook 3rd Edition, Recipe 9.22
"""

import logging

from invoicing.extraction.base import ExtractionProvider
from invoicing.extraction.ollama_provider import OllamaExtractionProvider
from invoicing.extraction.openai_provider import OpenAIExtractionProvider
from invoicing.shared.config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Name -> provider class lookup for the AI fallback."""

    _providers: dict[str, type[ExtractionProvider]] = {
        "openai": OpenAIExtractionProvider,
        "ollama": OllamaExtractionProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: type[ExtractionProvider]) -> None:
        """Make a provider selectable by name (e.g. a self-hosted model server)."""
        cls._providers[name] = provider_class
        logger.info(f"Registered extraction provider: {name}")

    @classmethod
    def get_provider_class(cls, name: str) -> type[ExtractionProvider]:
        """Look up a provider class.

        Raises:
            ValueError: If no provider is registered under name
        """
        provider_class = cls._providers.get(name)
        if provider_class is None:
            raise ValueError(
                f"Unknown extraction provider: '{name}'. "
                f"Available providers: {', '.join(cls._providers)}"
            )
        return provider_class

    @classmethod
    def list_providers(cls) -> list[str]:
        return list(cls._providers)


def create_extraction_provider(settings: Settings) -> ExtractionProvider:
    """Build the provider named by settings.extraction_provider.

    A provider that is not ready (no API key, server down) is still returned:
    the worker must start so template extraction keeps working, and AI calls
    then fail as configuration or transient errors.

    Raises:
        ValueError: If the configured name is not registered
    """
    name = settings.extraction_provider
    provider = ProviderRegistry.get_provider_class(name)(settings)

    if not provider.is_available():
        logger.warning(
            f"Extraction provider '{name}' is not fully available; "
            f"AI fallback calls will fail until it is configured (API key, running server)"
        )

    logger.info(f"Created extraction provider: {name} ({provider.model_name})")
    return provider
