"""Field-level correction tracking for human review.

A reviewer edits fields of the raw extraction payload by path
(``"supplier_details.due_date"``, ``"bills[0].totals.total_due"``). Each
change from the original becomes a ``Correction``; repeated edits to the
same path in one session coalesce into one correction carrying the latest
value.
"""

import copy
import logging
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from services.extraction.normalize import CONF_SUFFIX

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


class FieldPathError(ValueError):
    """Raised when a field path is malformed or cannot be written."""


class FieldEdit(BaseModel):
    """One reviewer edit: set ``value`` at ``field_path``."""

    field_path: str = Field(min_length=1)
    value: Any = None


class Correction(BaseModel):
    """An accepted change to an extracted field.

    Values are stored as strings so heterogeneous fields share one audit format.
    """

    model_config = ConfigDict(frozen=True)

    document_id: str
    field_path: str
    original_value: str
    corrected_value: str
    confidence_before: float = Field(ge=0, le=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


def parse_path(path: str) -> list[str | int]:
    """Split a dot/bracket path into keys and list indexes.

    Examples:
        >>> parse_path("bills[0].totals.total_due")
        ['bills', 0, 'totals', 'total_due']

    Raises:
        FieldPathError: If the path is empty or contains stray characters
    """
    tokens: list[str | int] = []
    position = 0
    for match in _TOKEN_PATTERN.finditer(path):
        gap = path[position : match.start()]
        if gap not in ("", "."):
            raise FieldPathError(f"Malformed field path: '{path}'")
        key, index = match.groups()
        tokens.append(int(index) if index is not None else key)
        position = match.end()
    if not tokens or path[position:]:
        raise FieldPathError(f"Malformed field path: '{path}'")
    return tokens


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Read the value at ``path``; ``default`` when any step is missing."""
    node = data
    for token in parse_path(path):
        if isinstance(token, int):
            if not isinstance(node, list) or token >= len(node):
                return default
            node = node[token]
        else:
            if not isinstance(node, Mapping) or token not in node:
                return default
            node = node[token]
    return node


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    """Write ``value`` at ``path`` in place, creating missing mappings.

    Raises:
        FieldPathError: If the path runs through a scalar or past the end of a list
    """
    tokens = parse_path(path)
    node: Any = data
    for token, following in zip(tokens, tokens[1:], strict=False):
        if isinstance(token, int):
            if not isinstance(node, list) or token >= len(node):
                raise FieldPathError(f"Index {token} out of range in '{path}'")
            node = node[token]
        else:
            if not isinstance(node, dict):
                raise FieldPathError(f"Cannot descend into '{token}' in '{path}'")
            if node.get(token) is None:
                node[token] = [] if isinstance(following, int) else {}
            node = node[token]

    last = tokens[-1]
    if isinstance(last, int):
        if not isinstance(node, list) or last >= len(node):
            raise FieldPathError(f"Index {last} out of range in '{path}'")
        node[last] = value
    else:
        if not isinstance(node, dict):
            raise FieldPathError(f"Cannot set '{last}' in '{path}'")
        node[last] = value


def confidence_at(data: Any, path: str) -> float:
    """Confidence annotation of the field at ``path``; 0.0 when there is none."""
    tokens = parse_path(path)
    last = tokens[-1]
    if isinstance(last, int):
        return 0.0
    parent_path = path[: -len(last)].rstrip(".")
    parent = get_path(data, parent_path) if parent_path else data
    if not isinstance(parent, Mapping):
        return 0.0
    raw = parent.get(last + CONF_SUFFIX)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        return 0.0
    return min(max(float(raw), 0.0), 1.0)


def stringify(value: Any) -> str:
    return str(value)


def detect_correction(
    document_id: str,
    original: Any,
    edited: Any,
    field_path: str,
) -> Correction | None:
    """Compare one field between the original and edited payloads.

    Args:
        document_id: Document being reviewed
        original: Payload as extracted
        edited: Payload after reviewer edits
        field_path: Dot/bracket path of the field

    Returns:
        Correction when the stringified values differ, else None
    """
    before = get_path(original, field_path)
    after = get_path(edited, field_path)
    if stringify(before) == stringify(after):
        return None
    return Correction(
        document_id=document_id,
        field_path=field_path,
        original_value=stringify(before),
        corrected_value=stringify(after),
        confidence_before=confidence_at(original, field_path),
    )


class CorrectionSession:
    """Applies a reviewer's ordered edits and keeps one correction per path.

    The original payload is never modified; edits go to a deep copy.
    """

    def __init__(self, document_id: str, original: dict[str, Any]) -> None:
        self.document_id = document_id
        self.original = original
        self.edited: dict[str, Any] = copy.deepcopy(original)
        self._corrections: dict[str, Correction] = {}

    def apply(self, field_path: str, value: Any) -> Correction | None:
        """Apply one edit and update the path's correction.

        An edit that restores the original value drops the path's correction.
        """
        set_path(self.edited, field_path, value)
        correction = detect_correction(self.document_id, self.original, self.edited, field_path)
        self._corrections.pop(field_path, None)
        if correction is not None:
            self._corrections[field_path] = correction
        return correction

    def apply_all(self, edits: Iterable[FieldEdit]) -> list[Correction]:
        for edit in edits:
            self.apply(edit.field_path, edit.value)
        logger.debug(
            f"Document {self.document_id}: {len(self._corrections)} correction(s) after edits"
        )
        return self.corrections

    @property
    def corrections(self) -> list[Correction]:
        """Coalesced corrections, most recently edited last."""
        return list(self._corrections.values())
