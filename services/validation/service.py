"""Validation service: provider selection plus the failure policy.

Whatever goes wrong inside a validator (exception, timeout, malformed
output) the pipeline still gets a verdict: the conservative fallback with
``hitl_required=True``.
"""

import asyncio
import logging

from services.api import metrics
from services.extraction.schema import ExtractedDocument
from services.review.confidence import aggregate_confidence
from services.shared.config import Settings
from services.shared.registry import ProviderRegistry
from services.validation.base import ValidationProvider
from services.validation.models import ValidationResult, fallback_result
from services.validation.openai_provider import OpenAIValidationProvider
from services.validation.rules_provider import RulesValidationProvider

logger = logging.getLogger(__name__)

validation_providers: ProviderRegistry[ValidationProvider] = ProviderRegistry(
    "validation",
    {
        "rules": RulesValidationProvider,
        "openai": OpenAIValidationProvider,
    },
)


class ValidationService:
    """Wraps a provider with a bounded timeout and the fallback verdict."""

    def __init__(self, provider: ValidationProvider, settings: Settings) -> None:
        self.provider = provider
        self.settings = settings

    async def validate(self, document: ExtractedDocument) -> ValidationResult:
        """Validate a document; never raises.

        Args:
            document: Normalized extraction

        Returns:
            Provider verdict, or the fallback verdict if the provider failed
        """
        try:
            result = await asyncio.wait_for(
                self.provider.validate(document),
                timeout=self.settings.validation_timeout_seconds,
            )
            if not isinstance(result, ValidationResult):
                raise TypeError(f"Validator returned {type(result).__name__}")
            return result
        except asyncio.TimeoutError:
            reason = f"timed out after {self.settings.validation_timeout_seconds}s"
        except Exception as e:
            reason = str(e) or type(e).__name__

        logger.warning(
            f"Validation provider '{self.provider.provider_name}' failed ({reason}); "
            f"using fallback verdict"
        )
        metrics.validation_fallbacks_total.labels(provider=self.provider.provider_name).inc()
        return fallback_result(aggregate_confidence(document), reason)


def create_validation_service(settings: Settings) -> ValidationService:
    """Factory function to create the validation service from configuration.

    Args:
        settings: Application settings with validation_provider field

    Returns:
        ValidationService wrapping the configured provider

    Raises:
        ValueError: If configured provider is unknown
    """
    provider = validation_providers.create(settings.validation_provider, settings)
    return ValidationService(provider, settings)
