"""Overall document confidence.

The overall confidence of a document is the minimum of every confidence
annotation it carries. A document with no annotations at all scores 0.0:
knowing nothing means the lowest possible trust.
"""

from collections.abc import Iterator, Mapping
from typing import Any

from pydantic import BaseModel

from services.extraction.schema import ExtractedDocument, Valued


def iter_confidences(document: ExtractedDocument) -> list[float]:
    """Collect every non-null confidence in the canonical document.

    Traversal is iterative so deeply nested bill lists cannot hit the
    recursion limit.
    """
    return [field.confidence for _, field in iter_fields(document) if field.confidence is not None]


def iter_fields(node: Any, path: str = "") -> Iterator[tuple[str, Valued]]:
    """Yield (path, field) for every Valued leaf, with dot/bracket paths."""
    stack: list[tuple[str, Any]] = [(path, node)]
    while stack:
        current_path, current = stack.pop()
        if isinstance(current, Valued):
            yield current_path, current
        elif isinstance(current, BaseModel):
            for name in reversed(list(type(current).model_fields)):
                child_path = f"{current_path}.{name}" if current_path else name
                stack.append((child_path, getattr(current, name)))
        elif isinstance(current, Mapping):
            for key, value in current.items():
                # extras are already keyed by their raw path
                stack.append((str(key), value))
        elif isinstance(current, list | tuple):
            for index in reversed(range(len(current))):
                stack.append((f"{current_path}[{index}]", current[index]))


def aggregate_confidence(document: ExtractedDocument) -> float:
    """Overall confidence of a canonical document.

    Args:
        document: Normalized extraction

    Returns:
        Minimum confidence across all annotated fields, or 0.0 if none
    """
    confidences = iter_confidences(document)
    return min(confidences) if confidences else 0.0
