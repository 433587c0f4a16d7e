"""Training examples and the statistics shown to operators."""

import uuid
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from services.learning.corrections import Correction

RECENT_CORRECTIONS_LIMIT = 20


class TrainingExample(BaseModel):
    """Full reviewed payload kept for bulk retraining.

    ``confidence_before`` is the document's overall confidence at extraction;
    ``confidence_after`` is 1.0 once a human has approved it.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    document_id: str
    document_type: str | None = None
    supplier_name: str | None = None
    example_data: dict[str, Any]
    notes: str = ""
    confidence_before: float = 0.0
    confidence_after: float = 1.0
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SupplierAccuracy(BaseModel):
    name: str
    count: int
    avg_confidence: float


class TrainingStats(BaseModel):
    total_corrections: int
    total_examples: int
    avg_confidence_improvement: float
    supplier_accuracy: list[SupplierAccuracy]
    recent_corrections: list[Correction]


def compute_training_stats(
    corrections: list[Correction],
    examples: list[TrainingExample],
) -> TrainingStats:
    """Summarize learning activity.

    Args:
        corrections: All stored corrections
        examples: All stored training examples

    Returns:
        TrainingStats with per-supplier counts and the most recent corrections
    """
    by_supplier: dict[str, list[float]] = defaultdict(list)
    for example in examples:
        by_supplier[example.supplier_name or "Unknown"].append(example.confidence_after)

    improvement = sum(e.confidence_after - e.confidence_before for e in examples) / (
        len(examples) or 1
    )
    recent = sorted(corrections, key=lambda c: c.created_at, reverse=True)

    return TrainingStats(
        total_corrections=len(corrections),
        total_examples=len(examples),
        avg_confidence_improvement=improvement,
        supplier_accuracy=[
            SupplierAccuracy(name=name, count=len(values), avg_confidence=sum(values) / len(values))
            for name, values in sorted(by_supplier.items())
        ],
        recent_corrections=recent[:RECENT_CORRECTIONS_LIMIT],
    )
