"""Abstract base class for bill extraction providers.

Enables switching between vision model backends (OpenAI, Ollama) while
keeping one interface. Providers return the raw extraction payload; the
schema adapter in normalize.py turns it into an ExtractedDocument.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

import base64
import json
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from services.shared.config import Settings

EXTRACTION_SYSTEM_PROMPT = """Extract ALL fields from this Irish utility bill with maximum accuracy. \
Provide confidence scores (0.0-1.0) for EVERY field in the sibling "<field>_conf" key.

CONFIDENCE RULES:
- 0.95-1.00: Clear text, perfect read
- 0.85-0.94: Readable but slightly unclear
- 0.70-0.84: Inferred from context
- 0.00-0.69: Missing or very uncertain (use null)

FIELD RULES:
- Dates: ISO format (YYYY-MM-DD). "29 Jul 26" -> "2026-07-29"
- Money: EUR with 2 decimals. Credits shown as negative (e.g. -56.06)
- MPRN: 11 digits, digits only ("10 009 543 173" -> "10009543173")
- GPRN: 7 digits
- Time bands: standard, day, night, peak, ev, nightboost, export
- MCC codes: from patterns like "MCC12"; DG codes from "DG1", "DG2"
- Address: split into line1, line2, city, county, eircode
- Reading type: "A" (Actual), "E" (Estimated), "C" (Customer)
- Extract EVERY field, use null if not found

CRITICAL: Be meticulous with numbers, dates, and identifiers. These are financial documents."""


class DocumentPage(BaseModel):
    """One page image of a bill.

    Attributes:
        content: Raw image bytes
        content_type: MIME type (image/png, image/jpeg, ...)
        url: Presigned URL for the stored image, when storage is enabled
    """

    content: bytes
    content_type: str
    url: str | None = None

    def data_url(self) -> str:
        encoded = base64.b64encode(self.content).decode("ascii")
        return f"data:{self.content_type};base64,{encoded}"

    def image_url(self) -> str:
        """URL handed to the vision model: the stored copy, else an inline data URL."""
        return self.url or self.data_url()


class ExtractionResult(BaseModel):
    """Result of extraction operation.

    Attributes:
        payload: Raw extraction (fields with ``_conf`` siblings) or None if extraction failed
        success: Whether operation succeeded
        error: Error message if operation failed
        provider: Name of provider that performed extraction (e.g., 'openai', 'ollama')
    """

    payload: dict[str, Any] | None
    success: bool
    error: str | None = None
    provider: str


def build_user_instruction(page_count: int, hints: dict[str, Any] | None) -> str:
    """Text sent after the page images.

    Args:
        page_count: Number of pages in the document
        hints: Supplier template_data, when one has been learned
    """
    text = (
        f"Extract all fields from this {page_count}-page document with confidence scores. "
        "Treat all pages as a single document."
    )
    if hints:
        text += (
            "\n\nSUPPLIER-SPECIFIC TEMPLATE (use these patterns as hints for field locations):\n"
            f"{json.dumps(hints, indent=2)}"
        )
    return text


class ExtractionProvider(ABC):
    """Abstract base class for bill extraction providers.

    Implementations:
    - OpenAIExtractionProvider: OpenAI vision API (cloud-based)
    - OllamaExtractionProvider: Ollama vision model (self-hosted)
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    async def extract(
        self, pages: list[DocumentPage], hints: dict[str, Any] | None = None
    ) -> ExtractionResult:
        """Extract the structured bill from page images.

        Args:
            pages: Page images, in order
            hints: Supplier template data to steer the model

        Returns:
            ExtractionResult with the raw payload or error (never raises)
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is available/configured.

        Returns:
            True if provider can be used, False otherwise
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier (e.g., 'openai', 'ollama')
        """
        pass
