"""Extraction provider selection.

``APP_EXTRACTION_PROVIDER`` names one of the registered vision backends.
"""

from services.extraction.base import ExtractionProvider
from services.extraction.ollama_provider import OllamaExtractionProvider
from services.extraction.openai_provider import OpenAIExtractionProvider
from services.shared.config import Settings
from services.shared.registry import ProviderRegistry

extraction_providers: ProviderRegistry[ExtractionProvider] = ProviderRegistry(
    "extraction",
    {
        "openai": OpenAIExtractionProvider,
        "ollama": OllamaExtractionProvider,
    },
)


def create_extraction_provider(settings: Settings) -> ExtractionProvider:
    """Create the provider named by ``settings.extraction_provider``.

    Raises:
        ValueError: If configured provider is unknown
    """
    return extraction_providers.create(settings.extraction_provider, settings)
