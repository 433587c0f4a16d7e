"""Abstract base class for validation providers.

A validation provider turns a normalized extraction into a ValidationResult.
Providers may raise; ``ValidationService`` owns the fallback policy so that
no provider failure can ever lead to a silent auto-approval.
"""

from abc import ABC, abstractmethod

from services.extraction.schema import ExtractedDocument
from services.shared.config import Settings
from services.validation.models import ValidationResult


class ValidationProvider(ABC):
    """Interface every validator implements."""

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    async def validate(self, document: ExtractedDocument) -> ValidationResult:
        """Validate a normalized extraction.

        Args:
            document: Normalized extraction

        Returns:
            ValidationResult

        Raises:
            Exception: Any failure; the caller substitutes the fallback verdict
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier for logging/metrics."""
