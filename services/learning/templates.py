"""Supplier template learning.

Each (supplier, document type) pair owns at most one template. Every batch of
reviewer corrections updates it:

- ``correction_frequency[field_path]`` grows by one per correction and is
  never reset here
- ``total_corrections`` accumulates across batches
- ``avg_confidence_before`` is the mean over the latest batch only
- ``template_data`` is replaced by whatever the pattern-synthesis oracle
  returns

Unlike validation, learning has no fallback: if the oracle fails, the
learning operation fails and nothing is saved.
"""

import asyncio
import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any, Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from services.api import metrics
from services.learning.corrections import Correction, get_path
from services.shared.config import Settings
from services.shared.json_utils import parse_json_response

logger = logging.getLogger(__name__)


class TemplateLearningError(Exception):
    """Raised when the pattern-synthesis oracle fails."""


class AccuracyStats(BaseModel):
    total_corrections: int = 0
    avg_confidence_before: float = 0.0
    correction_frequency: dict[str, int] = Field(default_factory=dict)
    last_updated: datetime | None = None


class SupplierTemplate(BaseModel):
    """Extraction hints and accuracy statistics for one supplier/document type.

    Attributes:
        template_data: Oracle-authored hints (field_patterns, layout_hints,
            common_values, extraction_rules, confidence_adjustments), stored verbatim
        accuracy_stats: Running correction statistics
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    supplier_name: str
    document_type: str
    template_data: dict[str, Any] = Field(default_factory=dict)
    accuracy_stats: AccuracyStats = Field(default_factory=AccuracyStats)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))


class LearningContext(BaseModel):
    """What the learner knows about the corrected document."""

    document_id: str | None = None
    supplier_name: str | None = None
    document_type: str | None = None
    extraction: dict[str, Any] = Field(default_factory=dict)


class TemplateStore(Protocol):
    """Persistence the learner needs."""

    async def get_template(self, supplier_name: str, document_type: str) -> SupplierTemplate | None:
        ...

    async def save_template(self, template: SupplierTemplate) -> None:
        ...


class TemplateSynthesizer(ABC):
    """Pattern-synthesis oracle interface."""

    @abstractmethod
    async def synthesize(
        self,
        existing: dict[str, Any] | None,
        corrections: list[Correction],
        context: LearningContext,
        supplier_name: str,
        document_type: str,
    ) -> dict[str, Any]:
        """Return the new template_data for the supplier."""


TEMPLATE_SYSTEM_PROMPT = """You are a template learning expert. Based on human corrections, \
generate extraction hints and patterns for Irish utility bills.

Create a supplier template with:
1. Field locations and patterns (regex, keywords, anchors)
2. Common field values and formats
3. Extraction hints for future documents
4. Layout markers and section identifiers"""

TEMPLATE_SHAPE = """{
  "field_patterns": { "field_name": { "regex": "...", "keywords": [...], "anchors": [...] } },
  "layout_hints": { "sections": [...], "table_positions": [...] },
  "common_values": { "field_name": ["value1", "value2"] },
  "extraction_rules": { "field_name": "rule description" },
  "confidence_adjustments": { "field_name": 0.05 }
}"""


class OpenAITemplateSynthesizer(TemplateSynthesizer):
    """Pattern synthesis with an OpenAI JSON-mode completion.

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY environment variable not set")
        if self._client is None or self._client.api_key != api_key:
            self._client = AsyncOpenAI(
                api_key=api_key,
                max_retries=0,
                timeout=self.settings.learning_timeout_seconds,
            )
        return self._client

    async def synthesize(
        self,
        existing: dict[str, Any] | None,
        corrections: list[Correction],
        context: LearningContext,
        supplier_name: str,
        document_type: str,
    ) -> dict[str, Any]:
        client = self._get_client()
        system_prompt = TEMPLATE_SYSTEM_PROMPT
        if existing:
            system_prompt += f"\n\nEXISTING TEMPLATE:\n{json.dumps(existing, indent=2)}"

        corrections_json = json.dumps(
            [c.model_dump(mode="json", exclude={"created_at"}) for c in corrections], indent=2
        )
        response = await client.chat.completions.create(
            model=self.settings.openai_learning_model,
            messages=[
                {"role": "system", "content": system_prompt},
                {
                    "role": "user",
                    "content": (
                        f"Update the supplier template for {supplier_name} ({document_type}) "
                        f"based on these corrections:\n\nCorrections: {corrections_json}\n\n"
                        f"Document data: {json.dumps(context.extraction, indent=2, default=str)}\n\n"
                        f"Return a JSON template with:\n{TEMPLATE_SHAPE}"
                    ),
                },
            ],
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content
        if not content:
            raise RuntimeError("Empty response from pattern-synthesis oracle")
        return parse_json_response(content)


class TemplateLearner:
    """Folds correction batches into supplier templates."""

    def __init__(
        self,
        store: TemplateStore,
        synthesizer: TemplateSynthesizer,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.store = store
        self.synthesizer = synthesizer
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def resolve_key(context: LearningContext) -> tuple[str, str]:
        """Supplier and document type from the context, else the extraction's classification.

        Raises:
            ValueError: If no supplier can be determined
        """
        supplier = context.supplier_name or get_path(
            context.extraction, "classification.supplier_name"
        )
        if not supplier or not str(supplier).strip():
            raise ValueError("Cannot learn a template without a supplier name")
        document_type = (
            context.document_type
            or get_path(context.extraction, "classification.document_class")
            or "utility_bill"
        )
        return str(supplier).strip(), str(document_type)

    async def learn(
        self, corrections: list[Correction], context: LearningContext
    ) -> SupplierTemplate:
        """Update (or create) the template for the corrected document's supplier.

        Args:
            corrections: Corrections from one approval
            context: Supplier, document type and the original extraction

        Returns:
            The saved SupplierTemplate

        Raises:
            ValueError: If the batch is empty or the supplier is unknown
            TemplateLearningError: If the pattern-synthesis oracle fails
        """
        if not corrections:
            raise ValueError("Cannot learn from an empty correction batch")
        supplier, document_type = self.resolve_key(context)

        existing = await self.store.get_template(supplier, document_type)
        try:
            template_data = await asyncio.wait_for(
                self.synthesizer.synthesize(
                    existing.template_data if existing else None,
                    corrections,
                    context,
                    supplier,
                    document_type,
                ),
                timeout=self.timeout_seconds,
            )
            if not isinstance(template_data, dict):
                raise TypeError(f"Oracle returned {type(template_data).__name__}, not an object")
        except Exception as e:
            metrics.template_updates_total.labels(status="failed").inc()
            logger.error(f"Template learning failed for {supplier} ({document_type}): {e}")
            raise TemplateLearningError(f"Pattern synthesis failed: {e}") from e

        now = datetime.now(UTC)
        previous = existing.accuracy_stats if existing else AccuracyStats()
        frequency = dict(previous.correction_frequency)
        for correction in corrections:
            frequency[correction.field_path] = frequency.get(correction.field_path, 0) + 1

        stats = AccuracyStats(
            total_corrections=previous.total_corrections + len(corrections),
            avg_confidence_before=(
                sum(c.confidence_before for c in corrections) / len(corrections)
            ),
            correction_frequency=frequency,
            last_updated=now,
        )

        if existing:
            template = existing.model_copy(
                update={"template_data": template_data, "accuracy_stats": stats, "last_updated": now}
            )
            metrics.template_updates_total.labels(status="updated").inc()
        else:
            template = SupplierTemplate(
                supplier_name=supplier,
                document_type=document_type,
                template_data=template_data,
                accuracy_stats=stats,
                created_at=now,
                last_updated=now,
            )
            metrics.template_updates_total.labels(status="created").inc()

        await self.store.save_template(template)
        logger.info(
            f"Template for {supplier} ({document_type}) learned from "
            f"{len(corrections)} correction(s)"
        )
        return template
