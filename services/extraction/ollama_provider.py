"""Ollama-based extraction provider for self-hosted vision inference.

Uses a local Ollama server with a vision model (e.g. qwen2.5vl, llava).
Supports data sovereignty requirements by running entirely on-premises.

Requires Ollama server running on localhost:11434.
See: https://ollama.ai/
"""

import json
import logging
from typing import Any

import httpx

from services.extraction.base import (
    EXTRACTION_SYSTEM_PROMPT,
    DocumentPage,
    ExtractionProvider,
    ExtractionResult,
    build_user_instruction,
)
from services.extraction.schema import build_extraction_schema
from services.shared.config import Settings
from services.shared.json_utils import parse_json_response

logger = logging.getLogger(__name__)


class OllamaExtractionProvider(ExtractionProvider):
    """Ollama-based extraction provider for self-hosted vision models."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        """Initialize Ollama extraction provider.

        Args:
            settings: Application settings
            http_client: Optional client (tests inject one with a mock transport)
        """
        super().__init__(settings)
        self._base_url = settings.ollama_base_url
        self._model = settings.ollama_model
        self._client = http_client or httpx.AsyncClient(
            timeout=settings.extraction_timeout_seconds
        )

    @property
    def provider_name(self) -> str:
        return "ollama"

    def is_available(self) -> bool:
        """Check if Ollama server is configured.

        Server reachability is checked by check_model(); this stays sync so
        the factory can call it at startup.
        """
        return bool(self._base_url and self._model)

    async def check_model(self) -> bool:
        """Check if Ollama server is running and the model is pulled.

        Returns:
            True if Ollama server responds and model is loaded
        """
        try:
            response = await self._client.get(f"{self._base_url}/api/tags")
            if response.status_code != 200:
                return False
            models = response.json().get("models", [])
            model_names = [m.get("name", "").split(":")[0] for m in models]
            return self._model.split(":")[0] in model_names
        except httpx.HTTPError:
            return False

    async def extract(
        self, pages: list[DocumentPage], hints: dict[str, Any] | None = None
    ) -> ExtractionResult:
        """Extract the bill from page images using Ollama.

        Args:
            pages: Page images, in order
            hints: Supplier template data to steer the model

        Returns:
            ExtractionResult with the raw payload or error
        """
        if not pages:
            return ExtractionResult(
                payload=None,
                success=False,
                error="No pages provided",
                provider=self.provider_name,
            )

        try:
            response_text = await self._generate(pages, hints)
            payload = parse_json_response(response_text)
            return ExtractionResult(payload=payload, success=True, provider=self.provider_name)

        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Failed to parse JSON from Ollama response: {e}")
            return ExtractionResult(
                payload=None,
                success=False,
                error=f"JSON parsing failed: {str(e)}",
                provider=self.provider_name,
            )
        except Exception as e:
            logger.error(f"Ollama extraction failed: {e}")
            return ExtractionResult(
                payload=None,
                success=False,
                error=f"Extraction failed: {str(e)}",
                provider=self.provider_name,
            )

    async def _generate(self, pages: list[DocumentPage], hints: dict[str, Any] | None) -> str:
        """Call the Ollama generate API once.

        Raises:
            httpx.HTTPError: On transport failure or error status
        """
        prompt = (
            f"{EXTRACTION_SYSTEM_PROMPT}\n\n"
            f"Return ONLY valid JSON matching this schema:\n"
            f"{json.dumps(build_extraction_schema())}\n\n"
            f"{build_user_instruction(len(pages), hints)}"
        )
        images = [page.data_url().split(",", 1)[1] for page in pages]
        response = await self._client.post(
            f"{self._base_url}/api/generate",
            json={
                "model": self._model,
                "prompt": prompt,
                "images": images,
                "format": "json",
                "stream": False,
                "options": {"temperature": 0},
            },
        )
        response.raise_for_status()
        result: str = response.json().get("response", "")
        return result
