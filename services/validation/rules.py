"""Deterministic validation rule engine for utility bills.

Rules run per bill on the canonical document:

- arithmetic reconciliation of itemized charges against the stated total
- register and meter read consistency
- date ordering
- identifier formats (MPRN, GPRN, IBAN, BIC, Eircode, VAT rate)
- meter configuration (MCC) against the registers carried
- field confidence against the important and critical thresholds

Nothing here raises on bad data; every problem becomes a ValidationIssue.
"""

import logging
import re
from datetime import date
from decimal import Decimal
from typing import Any

from services.extraction.schema import Amount, Bill, BroadbandDetails, ExtractedDocument, Text
from services.review.confidence import aggregate_confidence, iter_fields
from services.review.critical import critical_field_confidences
from services.shared.config import Settings
from services.shared.dates import parse_date
from services.validation.bands import classify_band
from services.validation.models import (
    Reconciliation,
    ValidationIssue,
    ValidationResult,
)

logger = logging.getLogger(__name__)

VALID_VAT_RATES = frozenset({Decimal("0"), Decimal("9"), Decimal("13.5"), Decimal("23")})
REGISTER_TOLERANCE = Decimal("0.5")

EIRCODE_PATTERN = re.compile(r"(?:[A-Z]\d{2}|D6W)\s?[A-Z0-9]{4}", re.IGNORECASE)
IBAN_PATTERN = re.compile(r"[A-Z]{2}\d{2}[A-Z0-9]{11,30}")
BIC_PATTERN = re.compile(r"[A-Z]{4}[A-Z]{2}[A-Z0-9]{2}(?:[A-Z0-9]{3})?")
IE_IBAN_LENGTH = 22

# MCC code -> named bands the meter may carry (None = anything goes)
_MCC_ALLOWED: dict[str, frozenset[str] | None] = {
    "01": frozenset(),
    "02": frozenset({"day", "night"}),
    "12": None,
}


def iban_checksum_ok(iban: str) -> bool:
    """ISO 13616 mod-97 check."""
    rearranged = iban[4:] + iban[:4]
    digits = "".join(str(int(char, 36)) for char in rearranged)
    return int(digits) % 97 == 1


def normalize_mcc(raw: str) -> str:
    digits = re.sub(r"\D", "", raw)
    return digits.zfill(2) if digits else ""


class RuleValidationEngine:
    """Rule-based validator.

    Thresholds and identifier conventions come from Settings so deployments
    can tune them without code changes.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.tolerance = Decimal(str(settings.arithmetic_tolerance))

    def validate(self, document: ExtractedDocument) -> ValidationResult:
        """Run every rule and derive the verdict.

        Args:
            document: Normalized extraction

        Returns:
            ValidationResult (never raises on bad data)
        """
        issues: list[ValidationIssue] = []
        reconciliation = Reconciliation()

        for index, bill in enumerate(document.bills):
            prefix = f"bills[{index}]"
            self._check_arithmetic(bill, prefix, issues, reconciliation)
            self._check_registers(bill, prefix, issues)
            self._check_dates(bill, prefix, issues)
            self._check_identifiers(bill, prefix, issues)
            self._check_meter_configuration(bill, prefix, issues)

        self._check_eircode(document, issues)
        hitl_reasons = self._check_confidence(document, issues)

        overall = aggregate_confidence(document)
        errors = [issue for issue in issues if issue.severity == "error"]

        if errors:
            status = "failed"
            codes = sorted({issue.code for issue in errors})
            hitl_reasons.insert(0, f"Validation errors: {', '.join(codes)}")
        elif issues or overall < self.settings.validation_overall_threshold:
            status = "warning"
        else:
            status = "passed"

        logger.info(
            f"Rule validation finished: status={status}, issues={len(issues)}, "
            f"overall_confidence={overall:.3f}"
        )
        return ValidationResult(
            status=status,
            overall_confidence=overall,
            issues=issues,
            reconciliation=reconciliation,
            hitl_required=bool(hitl_reasons),
            hitl_reasons=hitl_reasons,
            provider="rules",
        )

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def _check_arithmetic(
        self,
        bill: Bill,
        prefix: str,
        issues: list[ValidationIssue],
        reconciliation: Reconciliation,
    ) -> None:
        total = bill.charges.total_due.value
        if total is None:
            return

        components: list[Decimal] = []
        if bill.electricity is not None:
            for register in bill.electricity.registers:
                charge = _unit_charge(register.unit_charge, register.units_used, register.unit_rate)
                if charge is not None:
                    components.append(charge)
        if bill.gas is not None:
            charge = _unit_charge(bill.gas.unit_charge, bill.gas.units_used_kwh, bill.gas.unit_rate)
            if charge is not None:
                components.append(charge)

        charges = bill.charges
        for added in (
            charges.service_charge,
            charges.standing_charge,
            charges.pso_levy,
            charges.carbon_tax,
            charges.vat_amount,
        ):
            if added.value is not None:
                components.append(added.value)
        for subtracted in (charges.discount_amount, charges.credits):
            if subtracted.value is not None:
                components.append(-abs(subtracted.value))

        if not components:
            return

        computed = sum(components, Decimal("0"))
        difference = abs(computed - total)
        if difference <= self.tolerance:
            reconciliation.details.append(f"{prefix}: charges reconcile to {total}")
            return

        reconciliation.arithmetic_ok = False
        reconciliation.details.append(
            f"{prefix}: itemized charges {computed} differ from total {total} by {difference}"
        )
        issues.append(
            ValidationIssue(
                field=f"{prefix}.charges.total_due",
                code="ARITHMETIC_MISMATCH",
                message=f"Itemized charges sum to {computed} but the bill states {total}",
                severity="error",
                current_value=str(total),
                expected=str(computed),
            )
        )

    def _check_registers(self, bill: Bill, prefix: str, issues: list[ValidationIssue]) -> None:
        if bill.electricity is not None:
            multiplier = bill.electricity.multiplier.value or Decimal("1")
            for index, register in enumerate(bill.electricity.registers):
                self._check_usage(
                    register.current_reading,
                    register.previous_reading,
                    register.units_used,
                    multiplier,
                    f"{prefix}.electricity.registers[{index}].units_used",
                    issues,
                )
        if bill.gas is not None:
            self._check_usage(
                bill.gas.current_reading,
                bill.gas.previous_reading,
                bill.gas.units_used_m3,
                Decimal("1"),
                f"{prefix}.gas.units_used_m3",
                issues,
            )

    def _check_usage(
        self,
        current: Amount,
        previous: Amount,
        used: Amount,
        multiplier: Decimal,
        path: str,
        issues: list[ValidationIssue],
    ) -> None:
        if current.value is None or previous.value is None or used.value is None:
            return
        expected = (current.value - previous.value) * multiplier
        if abs(expected - used.value) > REGISTER_TOLERANCE:
            issues.append(
                ValidationIssue(
                    field=path,
                    code="REGISTER_USAGE_MISMATCH",
                    message=(
                        f"Readings {previous.value} -> {current.value} (x{multiplier}) "
                        f"give {expected} units, bill states {used.value}"
                    ),
                    severity="warning",
                    current_value=str(used.value),
                    expected=str(expected),
                )
            )

    # ------------------------------------------------------------------
    # Dates
    # ------------------------------------------------------------------

    def _check_dates(self, bill: Bill, prefix: str, issues: list[ValidationIssue]) -> None:
        billing = bill.billing
        parsed: dict[str, date | None] = {}
        dated_fields: list[tuple[str, Text]] = [
            ("issue_date", billing.issue_date),
            ("due_date", billing.due_date),
            ("period_start", billing.period_start),
            ("period_end", billing.period_end),
            ("contract_end_date", billing.contract_end_date),
        ]
        for name, field in dated_fields:
            parsed[name] = self._parse_field_date(field, f"{prefix}.billing.{name}", issues)

        if bill.broadband is not None and not billing.contract_end_date.present:
            parsed["contract_end_date"] = self._parse_field_date(
                bill.broadband.contract_end_date, f"{prefix}.broadband.contract_end_date", issues
            )

        self._check_order(
            parsed["issue_date"],
            parsed["due_date"],
            f"{prefix}.billing.due_date",
            "DUE_BEFORE_ISSUE",
            "Payment due date is before the issue date",
            issues,
        )
        self._check_order(
            parsed["period_start"],
            parsed["period_end"],
            f"{prefix}.billing.period_end",
            "PERIOD_END_BEFORE_START",
            "Billing period ends before it starts",
            issues,
        )
        self._check_order(
            parsed["period_end"],
            parsed["contract_end_date"],
            f"{prefix}.billing.contract_end_date",
            "CONTRACT_END_BEFORE_PERIOD_END",
            "Contract ends before the billing period ends",
            issues,
        )

    @staticmethod
    def _parse_field_date(field: Text, path: str, issues: list[ValidationIssue]) -> date | None:
        if field.value is None:
            return None
        parsed = parse_date(field.value)
        if parsed is None:
            issues.append(
                ValidationIssue(
                    field=path,
                    code="INVALID_DATE",
                    message=f"Unrecognized date '{field.value}'",
                    severity="error",
                    current_value=field.value,
                    expected="YYYY-MM-DD",
                )
            )
        return parsed

    @staticmethod
    def _check_order(
        earlier: date | None,
        later: date | None,
        path: str,
        code: str,
        message: str,
        issues: list[ValidationIssue],
    ) -> None:
        if earlier is None or later is None or later >= earlier:
            return
        issues.append(
            ValidationIssue(
                field=path,
                code=code,
                message=message,
                severity="error",
                current_value=later.isoformat(),
                expected=f">= {earlier.isoformat()}",
            )
        )

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    def _check_identifiers(self, bill: Bill, prefix: str, issues: list[ValidationIssue]) -> None:
        if bill.electricity is not None and bill.electricity.mprn.value is not None:
            mprn = re.sub(r"\s", "", bill.electricity.mprn.value)
            if not (
                mprn.isdigit()
                and len(mprn) == self.settings.mprn_length
                and mprn.startswith(self.settings.mprn_prefix)
            ):
                issues.append(
                    ValidationIssue(
                        field=f"{prefix}.electricity.mprn",
                        code="INVALID_MPRN",
                        message="MPRN does not match the electricity meter point format",
                        severity="error",
                        current_value=bill.electricity.mprn.value,
                        expected=(
                            f"{self.settings.mprn_length} digits starting "
                            f"'{self.settings.mprn_prefix}'"
                        ),
                    )
                )

        if bill.gas is not None and bill.gas.gprn.value is not None:
            gprn = re.sub(r"\s", "", bill.gas.gprn.value)
            if not (gprn.isdigit() and len(gprn) == self.settings.gprn_length):
                issues.append(
                    ValidationIssue(
                        field=f"{prefix}.gas.gprn",
                        code="INVALID_GPRN",
                        message="GPRN does not match the gas meter point format",
                        severity="error",
                        current_value=bill.gas.gprn.value,
                        expected=f"{self.settings.gprn_length} digits",
                    )
                )

        if bill.broadband is not None:
            self._check_bank_details(bill.broadband, prefix, issues)

        vat_rate = bill.charges.vat_rate.value
        if vat_rate is not None:
            percent = vat_rate * 100 if 0 < vat_rate < 1 else vat_rate
            if percent not in VALID_VAT_RATES:
                issues.append(
                    ValidationIssue(
                        field=f"{prefix}.charges.vat_rate",
                        code="UNEXPECTED_VAT_RATE",
                        message=f"VAT rate {vat_rate} is not an Irish VAT rate",
                        severity="warning",
                        current_value=str(vat_rate),
                        expected="0, 9, 13.5 or 23",
                    )
                )

    @staticmethod
    def _check_bank_details(
        broadband: BroadbandDetails, prefix: str, issues: list[ValidationIssue]
    ) -> None:
        iban_raw = broadband.iban.value
        if iban_raw is not None:
            iban = re.sub(r"\s", "", iban_raw).upper()
            valid = (
                IBAN_PATTERN.fullmatch(iban) is not None
                and (not iban.startswith("IE") or len(iban) == IE_IBAN_LENGTH)
                and iban_checksum_ok(iban)
            )
            if not valid:
                issues.append(
                    ValidationIssue(
                        field=f"{prefix}.broadband.iban",
                        code="INVALID_IBAN",
                        message="IBAN fails format or checksum validation",
                        severity="error",
                        current_value=iban_raw,
                        expected="ISO 13616 IBAN",
                    )
                )

        bic_raw = broadband.bic.value
        if bic_raw is not None:
            bic = re.sub(r"\s", "", bic_raw).upper()
            if BIC_PATTERN.fullmatch(bic) is None:
                issues.append(
                    ValidationIssue(
                        field=f"{prefix}.broadband.bic",
                        code="INVALID_BIC",
                        message="BIC is not 8 or 11 characters in SWIFT format",
                        severity="error",
                        current_value=bic_raw,
                        expected="AAAABBCC or AAAABBCCDDD",
                    )
                )

    @staticmethod
    def _check_eircode(document: ExtractedDocument, issues: list[ValidationIssue]) -> None:
        eircode = document.customer.address.eircode.value
        if eircode is None:
            return
        if EIRCODE_PATTERN.fullmatch(eircode.strip()) is None:
            issues.append(
                ValidationIssue(
                    field="customer.address.eircode",
                    code="INVALID_EIRCODE",
                    message=f"'{eircode}' is not a valid Eircode",
                    severity="warning",
                    current_value=eircode,
                    expected="A65 F4E2",
                )
            )

    # ------------------------------------------------------------------
    # Meter configuration
    # ------------------------------------------------------------------

    @staticmethod
    def _check_meter_configuration(
        bill: Bill, prefix: str, issues: list[ValidationIssue]
    ) -> None:
        if bill.electricity is None or bill.electricity.mcc.value is None:
            return
        mcc = normalize_mcc(bill.electricity.mcc.value)
        if mcc not in _MCC_ALLOWED:
            return

        labels = [register.band for register in bill.electricity.registers]
        labels += [rate.band for rate in bill.electricity.unit_rates]
        if not labels:
            return
        named = {classify_band(label) for label in labels} - {"24_hour"}

        allowed = _MCC_ALLOWED[mcc]
        if allowed is None:
            return
        if mcc == "01":
            consistent = not named
            expected = "single 24-hour register"
        else:
            consistent = named == allowed
            expected = "day and night registers only"
        if not consistent:
            issues.append(
                ValidationIssue(
                    field=f"{prefix}.electricity.mcc",
                    code="METER_CONFIG_MISMATCH",
                    message=f"MCC{mcc} meter carries bands {sorted(named) or ['24_hour']}",
                    severity="error",
                    current_value=bill.electricity.mcc.value,
                    expected=expected,
                )
            )

    # ------------------------------------------------------------------
    # Confidence
    # ------------------------------------------------------------------

    def _check_confidence(
        self, document: ExtractedDocument, issues: list[ValidationIssue]
    ) -> list[str]:
        hitl_reasons: list[str] = []
        for label, confidence in critical_field_confidences(document).items():
            if confidence < self.settings.critical_threshold:
                issues.append(
                    ValidationIssue(
                        field=label,
                        code="LOW_CONFIDENCE_CRITICAL",
                        message=f"Critical field '{label}' confidence {confidence:.3f}",
                        severity="warning",
                        current_value=confidence,
                        expected=f">= {self.settings.critical_threshold}",
                    )
                )
                hitl_reasons.append(f"Critical field '{label}' below confidence threshold")

        for path, field in iter_fields(document):
            if field.value is not None and field.confidence is None:
                issues.append(
                    ValidationIssue(
                        field=path,
                        code="MISSING_CONFIDENCE",
                        message="Populated field carries no confidence annotation",
                        severity="warning",
                        current_value=_display(field.value),
                    )
                )
            elif (
                field.confidence is not None
                and _is_important(path)
                and field.confidence < self.settings.important_threshold
            ):
                issues.append(
                    ValidationIssue(
                        field=path,
                        code="LOW_CONFIDENCE",
                        message=f"Confidence {field.confidence:.3f} below important threshold",
                        severity="warning",
                        current_value=field.confidence,
                        expected=f">= {self.settings.important_threshold}",
                    )
                )
        return hitl_reasons


_IMPORTANT_LEAVES = frozenset(
    {
        "units_used",
        "unit_rate",
        "rate",
        "units_used_kwh",
        "standing_charge",
        "standing_charge_per_day",
    }
)


def _is_important(path: str) -> bool:
    return path.rsplit(".", 1)[-1] in _IMPORTANT_LEAVES


def _unit_charge(charge: Amount, used: Amount, rate: Amount) -> Decimal | None:
    if charge.value is not None:
        return charge.value
    if used.value is not None and rate.value is not None:
        return used.value * rate.value
    return None


def _display(value: Any) -> Any:
    return str(value) if isinstance(value, Decimal) else value
