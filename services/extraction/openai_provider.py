"""OpenAI vision extraction provider for utility bills.

Sends the page images to a vision-capable OpenAI model and forces a single
tool call whose arguments follow build_extraction_schema().

The client is built with ``max_retries=0``: an extraction is attempted once
and a failure is reported to the caller as an unsuccessful result.
"""

import json
import logging
import os
from typing import Any

from openai import AsyncOpenAI

from services.extraction.base import (
    EXTRACTION_SYSTEM_PROMPT,
    DocumentPage,
    ExtractionProvider,
    ExtractionResult,
    build_user_instruction,
)
from services.extraction.schema import build_extraction_schema
from services.shared.config import Settings

logger = logging.getLogger(__name__)

EXTRACTION_TOOL_NAME = "extract_utility_bill"


class OpenAIExtractionProvider(ExtractionProvider):
    """OpenAI-based extraction provider using a vision model.

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: AsyncOpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return os.getenv("OPENAI_API_KEY") is not None

    def _get_client(self) -> AsyncOpenAI:
        api_key = os.getenv("OPENAI_API_KEY")
        if self._client is None or self._client.api_key != api_key:
            self._client = AsyncOpenAI(
                api_key=api_key,
                max_retries=0,
                timeout=self.settings.extraction_timeout_seconds,
            )
        return self._client

    async def extract(
        self, pages: list[DocumentPage], hints: dict[str, Any] | None = None
    ) -> ExtractionResult:
        """Extract the bill from page images using OpenAI.

        Args:
            pages: Page images, in order
            hints: Supplier template data to steer the model

        Returns:
            ExtractionResult with the raw payload or error, provider='openai'
        """
        if not self.is_available():
            return ExtractionResult(
                payload=None,
                success=False,
                error="OPENAI_API_KEY environment variable not set",
                provider=self.provider_name,
            )

        if not pages:
            return ExtractionResult(
                payload=None,
                success=False,
                error="No pages provided",
                provider=self.provider_name,
            )

        try:
            response = await self._get_client().chat.completions.create(
                model=self.settings.openai_extraction_model,
                messages=self._build_messages(pages, hints),
                tools=[self._get_tool()],
                tool_choice={"type": "function", "function": {"name": EXTRACTION_TOOL_NAME}},
                temperature=0,
            )

            tool_calls = response.choices[0].message.tool_calls
            if not tool_calls:
                return ExtractionResult(
                    payload=None,
                    success=False,
                    error="Model did not return structured extraction data",
                    provider=self.provider_name,
                )

            payload = json.loads(tool_calls[0].function.arguments)
            if not isinstance(payload, dict):
                raise ValueError("Tool call arguments are not a JSON object")

            logger.info(
                "OpenAI extraction complete: supplier="
                f"{(payload.get('supplier_details') or {}).get('supplier_name', 'Unknown')}"
            )
            return ExtractionResult(payload=payload, success=True, provider=self.provider_name)

        except Exception as e:
            logger.error(f"OpenAI extraction failed: {e}")
            return ExtractionResult(
                payload=None,
                success=False,
                error=f"Extraction failed: {str(e)}",
                provider=self.provider_name,
            )

    def _build_messages(
        self, pages: list[DocumentPage], hints: dict[str, Any] | None
    ) -> list[dict[str, Any]]:
        content: list[dict[str, Any]] = [
            {"type": "image_url", "image_url": {"url": page.image_url(), "detail": "high"}}
            for page in pages
        ]
        content.append({"type": "text", "text": build_user_instruction(len(pages), hints)})
        return [
            {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
            {"role": "user", "content": content},
        ]

    def _get_tool(self) -> dict[str, Any]:
        """Get the OpenAI tool definition for bill extraction.

        Returns:
            Tool definition dict for OpenAI API
        """
        return {
            "type": "function",
            "function": {
                "name": EXTRACTION_TOOL_NAME,
                "description": "Extract Irish utility bill data with confidence scores",
                "parameters": build_extraction_schema(),
            },
        }
