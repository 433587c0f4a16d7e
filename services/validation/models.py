"""Validation result models.

Issues are data, never exceptions: every rule violation becomes a frozen
``ValidationIssue`` on the ``ValidationResult`` that feeds the review gate.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Severity = Literal["error", "warning"]
ValidationStatus = Literal["passed", "warning", "failed"]


class ValidationIssue(BaseModel):
    """A single rule violation.

    Attributes:
        field: Dot/bracket path into the extraction (e.g. "bills[0].billing.due_date")
        code: Symbolic issue code (e.g. "ARITHMETIC_MISMATCH")
        message: Human-readable description
        severity: "error" fails validation, "warning" only downgrades it
        current_value: Value found on the bill
        expected: Value or format the rule expected
    """

    model_config = ConfigDict(frozen=True)

    field: str
    code: str
    message: str
    severity: Severity
    current_value: Any = None
    expected: Any = None


class Reconciliation(BaseModel):
    """Outcome of arithmetic reconciliation across all bills."""

    arithmetic_ok: bool = True
    details: list[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    """Verdict of a validation run.

    Attributes:
        status: passed / warning / failed
        overall_confidence: Overall document confidence seen by the validator
        issues: All rule violations found
        reconciliation: Arithmetic reconciliation summary
        hitl_required: Whether the validator insists on human review
        hitl_reasons: Why human review is required
        provider: Validator that produced the verdict ("rules", "openai", "fallback")
    """

    status: ValidationStatus
    overall_confidence: float = Field(ge=0, le=1)
    issues: list[ValidationIssue] = Field(default_factory=list)
    reconciliation: Reconciliation = Field(default_factory=Reconciliation)
    hitl_required: bool = False
    hitl_reasons: list[str] = Field(default_factory=list)
    provider: str = "rules"

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "warning"]


def fallback_result(overall_confidence: float, reason: str) -> ValidationResult:
    """Conservative verdict used whenever validation could not run.

    The document is never silently auto-approved when this is returned.
    """
    return ValidationResult(
        status="warning",
        overall_confidence=min(max(overall_confidence, 0.0), 1.0),
        issues=[
            ValidationIssue(
                field="",
                code="VALIDATION_UNAVAILABLE",
                message=f"Validation could not be completed: {reason}",
                severity="warning",
            )
        ],
        reconciliation=Reconciliation(arithmetic_ok=False, details=["validation unavailable"]),
        hitl_required=True,
        hitl_reasons=["Validation service unavailable"],
        provider="fallback",
    )
