"""Helpers for reading JSON out of language model responses."""

import json
import re
from typing import Any


def parse_json_response(response_text: str) -> dict[str, Any]:
    """Extract and parse a JSON object from an LLM response.

    Handles common LLM quirks like markdown code blocks and prose around
    the object.

    Args:
        response_text: Raw LLM response

    Returns:
        Parsed JSON dict

    Raises:
        json.JSONDecodeError: If no valid JSON found
        ValueError: If the JSON is not an object
    """
    json_match = re.search(r"```(?:json)?\s*([\s\S]*?)```", response_text)
    if json_match:
        candidate = json_match.group(1).strip()
    else:
        json_match = re.search(r"\{[\s\S]*\}", response_text)
        candidate = json_match.group(0) if json_match else response_text.strip()

    result = json.loads(candidate)
    if not isinstance(result, dict):
        raise ValueError(f"Expected a JSON object, got {type(result).__name__}")
    return result
