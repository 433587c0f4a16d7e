"""Unit tests for OllamaExtractionProvider.

Tests the Ollama-based extraction provider with a mocked HTTP transport.
"""

import base64
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from services.extraction.base import DocumentPage
from services.extraction.ollama_provider import OllamaExtractionProvider
from services.shared.config import Settings


@pytest.fixture
def settings() -> Settings:
    """Create test settings with Ollama provider."""
    return Settings(
        extraction_provider="ollama",
        ollama_base_url="http://localhost:11434",
        ollama_model="qwen2.5vl:7b",
    )


@pytest.fixture
def pages() -> list[DocumentPage]:
    """Create a single-page document."""
    return [DocumentPage(content=b"bill-image", content_type="image/png")]


def _provider(
    settings: Settings, handler: Callable[[httpx.Request], httpx.Response]
) -> OllamaExtractionProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaExtractionProvider(settings, http_client=client)


class TestOllamaExtractionProviderProperties:
    """Test provider properties and availability."""

    def test_provider_name(self, settings: Settings) -> None:
        """Provider name should be 'ollama'."""
        assert OllamaExtractionProvider(settings).provider_name == "ollama"

    def test_is_available_when_configured(self, settings: Settings) -> None:
        """Availability only reflects configuration."""
        assert OllamaExtractionProvider(settings).is_available() is True

    @pytest.mark.asyncio
    async def test_check_model_found(self, settings: Settings) -> None:
        """Should return True when Ollama server responds with model."""
        provider = _provider(
            settings,
            lambda request: httpx.Response(200, json={"models": [{"name": "qwen2.5vl:7b"}]}),
        )
        assert await provider.check_model() is True

    @pytest.mark.asyncio
    async def test_check_model_not_found(self, settings: Settings) -> None:
        """Should return False when configured model is not pulled."""
        provider = _provider(
            settings,
            lambda request: httpx.Response(200, json={"models": [{"name": "llama3.1:8b"}]}),
        )
        assert await provider.check_model() is False

    @pytest.mark.asyncio
    async def test_check_model_server_down(self, settings: Settings) -> None:
        """Should return False when Ollama server is unreachable."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        assert await _provider(settings, handler).check_model() is False


class TestOllamaExtraction:
    """Test bill extraction."""

    @pytest.mark.asyncio
    async def test_no_pages(self, settings: Settings) -> None:
        """Should return error for an empty document."""
        result = await OllamaExtractionProvider(settings).extract([])
        assert result.success is False
        assert result.error == "No pages provided"

    @pytest.mark.asyncio
    async def test_successful_response(
        self,
        settings: Settings,
        pages: list[DocumentPage],
        legacy_payload: dict[str, Any],
    ) -> None:
        """Should send base64 images and parse the JSON response."""
        seen: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": json.dumps(legacy_payload)})

        result = await _provider(settings, handler).extract(pages, hints={"a": 1})

        assert result.success is True
        assert result.payload == legacy_payload
        assert seen["path"] == "/api/generate"
        assert seen["body"]["model"] == "qwen2.5vl:7b"
        assert seen["body"]["images"] == [base64.b64encode(b"bill-image").decode("ascii")]
        assert "SUPPLIER-SPECIFIC TEMPLATE" in seen["body"]["prompt"]

    @pytest.mark.asyncio
    async def test_json_in_markdown_block(
        self, settings: Settings, pages: list[DocumentPage]
    ) -> None:
        """Should parse JSON wrapped in a markdown code block."""
        text = '```json\n{"classification": {"document_class": "utility_bill"}}\n```'
        provider = _provider(settings, lambda request: httpx.Response(200, json={"response": text}))

        result = await provider.extract(pages)

        assert result.success is True
        assert result.payload == {"classification": {"document_class": "utility_bill"}}

    @pytest.mark.asyncio
    async def test_invalid_json(self, settings: Settings, pages: list[DocumentPage]) -> None:
        """Should report unparseable output."""
        provider = _provider(
            settings, lambda request: httpx.Response(200, json={"response": "not json"})
        )

        result = await provider.extract(pages)

        assert result.success is False
        assert result.error is not None
        assert result.error.startswith("JSON parsing failed")

    @pytest.mark.asyncio
    async def test_server_error(self, settings: Settings, pages: list[DocumentPage]) -> None:
        """Should report HTTP failures."""
        provider = _provider(settings, lambda request: httpx.Response(500))

        result = await provider.extract(pages)

        assert result.success is False
        assert result.error is not None
        assert result.error.startswith("Extraction failed")
