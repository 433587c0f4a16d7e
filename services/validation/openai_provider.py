"""OpenAI-backed validation oracle.

Runs the deterministic rule engine first, then asks an OpenAI model to
review the extraction for anything the rules cannot see (implausible
tariffs, mislabeled bands, values that contradict each other). The model's
findings are merged into the rule verdict; they can only make it stricter.

The client is built with ``max_retries=0``: every oracle call is at most
once, and ValidationService turns any failure into the fallback verdict.
"""

import json
import logging
import os

from openai import AsyncOpenAI
from pydantic import ValidationError

from services.extraction.schema import ExtractedDocument
from services.shared.config import Settings
from services.shared.json_utils import parse_json_response
from services.validation.base import ValidationProvider
from services.validation.models import ValidationIssue, ValidationResult
from services.validation.rules import RuleValidationEngine

logger = logging.getLogger(__name__)

VALIDATION_SYSTEM_PROMPT = """You are a validation expert for Irish utility bill data.

You receive an extracted bill (every field has a value and a confidence) and the
issues a rule engine already found. Report ONLY additional problems the rules missed:
- charges, usage or rates that are implausible for an Irish residential bill
- time bands mislabeled for the meter configuration
- values that contradict each other across bills on the same document
Do not repeat issues already listed.

Return JSON:
{
  "issues": [
    {
      "field": "dot/bracket path to field",
      "code": "UPPER_SNAKE_CASE_CODE",
      "message": "Human readable message",
      "severity": "error|warning",
      "current_value": "value",
      "expected": "expected value or rule"
    }
  ],
  "hitl_required": true|false,
  "hitl_reasons": ["reason"]
}"""


class OpenAIValidationProvider(ValidationProvider):
    """Rules plus an OpenAI review pass.

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.engine = RuleValidationEngine(settings)
        self._client: AsyncOpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        return os.getenv("OPENAI_API_KEY") is not None

    def _get_client(self) -> AsyncOpenAI:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY environment variable not set")
        if self._client is None or self._client.api_key != api_key:
            self._client = AsyncOpenAI(
                api_key=api_key,
                max_retries=0,
                timeout=self.settings.validation_timeout_seconds,
            )
        return self._client

    async def validate(self, document: ExtractedDocument) -> ValidationResult:
        """Validate with rules, then merge the oracle's findings.

        Raises:
            RuntimeError: If the API key is missing or the response is empty
            ValueError: If the oracle returns malformed output
        """
        rule_result = self.engine.validate(document)
        client = self._get_client()

        payload = {
            "document": document.model_dump(mode="json"),
            "rule_issues": [issue.model_dump(mode="json") for issue in rule_result.issues],
        }
        response = await client.chat.completions.create(
            model=self.settings.openai_validation_model,
            messages=[
                {"role": "system", "content": VALIDATION_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        f"Validate this extracted {document.classification.document_class or 'utility bill'} "
                        f"data:\n\n{json.dumps(payload, indent=2)}"
                    ),
                },
            ],
            response_format={"type": "json_object"},
            temperature=0,
        )

        content = response.choices[0].message.content
        if not content:
            raise RuntimeError("Empty response from validation oracle")

        return self._merge(rule_result, parse_json_response(content))

    def _merge(self, rule_result: ValidationResult, oracle: dict) -> ValidationResult:
        raw_issues = oracle.get("issues", [])
        if not isinstance(raw_issues, list):
            raise ValueError("Validation oracle 'issues' is not a list")
        try:
            extra_issues = [ValidationIssue(**item) for item in raw_issues]
        except (TypeError, ValidationError) as e:
            raise ValueError(f"Malformed issue from validation oracle: {e}") from e

        issues = list(rule_result.issues) + extra_issues
        hitl_reasons = list(rule_result.hitl_reasons)
        oracle_reasons = oracle.get("hitl_reasons") or []
        if oracle.get("hitl_required") is True:
            hitl_reasons.extend(str(reason) for reason in oracle_reasons)
            if not oracle_reasons:
                hitl_reasons.append("Validation oracle requested human review")

        if any(issue.severity == "error" for issue in issues):
            status = "failed"
            if not any(issue.severity == "error" for issue in rule_result.issues):
                hitl_reasons.insert(0, "Validation oracle reported errors")
        elif rule_result.status == "passed" and not extra_issues:
            status = "passed"
        else:
            status = "warning"

        logger.info(
            f"OpenAI validation merged {len(extra_issues)} oracle issue(s); status={status}"
        )
        return rule_result.model_copy(
            update={
                "status": status,
                "issues": issues,
                "hitl_required": bool(hitl_reasons),
                "hitl_reasons": hitl_reasons,
                "provider": self.provider_name,
            }
        )
