"""Review gate: decides whether a document needs a human before approval.

The decision is a pure function of its inputs. Five independent conditions
each force review; only when none fires is the document eligible for
auto-approval:

1. a critical field is below the critical threshold
2. overall confidence is below the overall threshold
3. autopilot is off
4. the validator asked for human review
5. the validator failed the document
"""

from pydantic import BaseModel, ConfigDict, Field

from services.shared.config import Settings
from services.validation.models import ValidationResult

REASON_CRITICAL_FIELDS = "critical_fields"
REASON_OVERALL_CONFIDENCE = "overall_confidence"
REASON_AUTOPILOT_OFF = "autopilot_off"
REASON_VALIDATION_HITL = "validation_hitl"
REASON_VALIDATION_FAILED = "validation_failed"


class ReviewThresholds(BaseModel):
    """Confidence bars used by the gate.

    ``important`` is carried for validators and future gating; the gate
    itself does not read it.
    """

    model_config = ConfigDict(frozen=True)

    critical: float = Field(default=0.995, ge=0, le=1)
    important: float = Field(default=0.98, ge=0, le=1)
    overall: float = Field(default=0.90, ge=0, le=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReviewThresholds":
        return cls(
            critical=settings.critical_threshold,
            important=settings.important_threshold,
            overall=settings.overall_threshold,
        )


class ReviewDecision(BaseModel):
    """Outcome of the review gate.

    Attributes:
        requires_review: True when any gate condition fired
        reasons: Human-readable reasons, in gate condition order
        reason_codes: Machine-readable codes matching ``reasons``
        overall_confidence: Overall confidence the decision was made on
        critical_fields_ok: True when no critical field was below threshold
        critical_fields_low: (label, confidence) pairs below threshold
    """

    model_config = ConfigDict(frozen=True)

    requires_review: bool
    reasons: list[str] = Field(default_factory=list)
    reason_codes: list[str] = Field(default_factory=list)
    overall_confidence: float
    critical_fields_ok: bool
    critical_fields_low: list[tuple[str, float]] = Field(default_factory=list)


def decide_review(
    overall_confidence: float,
    critical_fields_low: list[tuple[str, float]],
    validation: ValidationResult,
    autopilot: bool,
    thresholds: ReviewThresholds | None = None,
) -> ReviewDecision:
    """Decide whether a document requires human review.

    Args:
        overall_confidence: Minimum confidence across the document
        critical_fields_low: Critical fields below the critical threshold
        validation: Validator verdict
        autopilot: Operator flag permitting automatic approval
        thresholds: Confidence bars (defaults apply when omitted)

    Returns:
        ReviewDecision with every condition that fired, in order
    """
    thresholds = thresholds or ReviewThresholds()
    reasons: list[str] = []
    codes: list[str] = []

    if critical_fields_low:
        listed = ", ".join(f"{label} ({confidence:.3f})" for label, confidence in critical_fields_low)
        reasons.append(f"Critical fields below {thresholds.critical} confidence: {listed}")
        codes.append(REASON_CRITICAL_FIELDS)

    if overall_confidence < thresholds.overall:
        reasons.append(
            f"Overall confidence {overall_confidence:.3f} below threshold {thresholds.overall}"
        )
        codes.append(REASON_OVERALL_CONFIDENCE)

    if not autopilot:
        reasons.append("Autopilot disabled; manual approval required")
        codes.append(REASON_AUTOPILOT_OFF)

    if validation.hitl_required:
        detail = "; ".join(validation.hitl_reasons) or "no reason given"
        reasons.append(f"Validation requires human review: {detail}")
        codes.append(REASON_VALIDATION_HITL)

    if validation.status == "failed":
        reasons.append(f"Validation failed with {len(validation.errors)} error(s)")
        codes.append(REASON_VALIDATION_FAILED)

    return ReviewDecision(
        requires_review=bool(codes),
        reasons=reasons,
        reason_codes=codes,
        overall_confidence=overall_confidence,
        critical_fields_ok=not critical_fields_low,
        critical_fields_low=list(critical_fields_low),
    )
