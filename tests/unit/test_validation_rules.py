"""Unit tests for the deterministic validation rule engine."""

from typing import Any

import pytest

from services.extraction.normalize import normalize_extraction
from services.shared.config import Settings
from services.validation.bands import classify_band
from services.validation.models import ValidationResult
from services.validation.rules import RuleValidationEngine, iban_checksum_ok, normalize_mcc


@pytest.fixture
def engine() -> RuleValidationEngine:
    """Create a rule engine with default thresholds."""
    return RuleValidationEngine(Settings())


def _validate(engine: RuleValidationEngine, payload: dict[str, Any]) -> ValidationResult:
    return engine.validate(normalize_extraction(payload))


def _codes(result: ValidationResult) -> set[str]:
    return {issue.code for issue in result.issues}


class TestBandClassification:
    """Test time band bucketing."""

    @pytest.mark.parametrize(
        ("label", "band"),
        [
            ("Day Units", "day"),
            ("NIGHT", "night"),
            ("Peak", "peak"),
            ("EV Charging", "ev"),
            ("24hr", "24_hour"),
            ("Standard", "24_hour"),
            ("Day/Night", "24_hour"),
            ("", "24_hour"),
        ],
    )
    def test_classify_band(self, label: str, band: str) -> None:
        """Single keyword matches name the band; anything else is 24-hour."""
        assert classify_band(label) == band


class TestCleanBills:
    """Test that well-formed bills pass."""

    def test_legacy_bill_passes(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """A reconciled, fully annotated bill passes."""
        result = _validate(engine, legacy_payload)

        assert result.status == "passed"
        assert result.issues == []
        assert result.hitl_required is False
        assert result.reconciliation.arithmetic_ok is True
        assert result.provider == "rules"

    def test_dual_fuel_passes(
        self, engine: RuleValidationEngine, multi_bill_payload: dict[str, Any]
    ) -> None:
        """Both bills reconcile independently."""
        result = _validate(engine, multi_bill_payload)

        assert result.status == "passed", result.issues
        assert len(result.reconciliation.details) == 2

    def test_broadband_passes(
        self, engine: RuleValidationEngine, broadband_payload: dict[str, Any]
    ) -> None:
        """Valid IBAN and BIC pass."""
        result = _validate(engine, broadband_payload)
        assert result.status == "passed", result.issues


class TestArithmetic:
    """Test reconciliation of itemized charges."""

    def test_mismatch_is_an_error(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """Charges that do not sum to the total fail validation."""
        legacy_payload["electricity_bill"]["total_charges"] = 130.00

        result = _validate(engine, legacy_payload)

        assert result.status == "failed"
        assert "ARITHMETIC_MISMATCH" in _codes(result)
        assert result.reconciliation.arithmetic_ok is False
        assert result.hitl_required is True
        assert result.hitl_reasons[0].startswith("Validation errors")

    def test_within_tolerance(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """A one cent rounding difference is accepted."""
        legacy_payload["electricity_bill"]["total_charges"] = 120.01
        legacy_payload["payment_details"]["total_amount_due"] = 120.01
        assert "ARITHMETIC_MISMATCH" not in _codes(_validate(engine, legacy_payload))

    def test_units_times_rate_when_no_unit_charge(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """Missing unit charges are derived from usage and rate."""
        register = legacy_payload["electricity_bill"]["registers"][0]
        del register["unit_charge"], register["unit_charge_conf"]

        result = _validate(engine, legacy_payload)

        assert "ARITHMETIC_MISMATCH" not in _codes(result)

    def test_discount_subtracted_regardless_of_sign(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """A discount reduces the total whether printed positive or negative."""
        section = legacy_payload["electricity_bill"]
        section["discount_amount"] = 10.00
        section["discount_amount_conf"] = 0.999
        section["total_charges"] = 110.00
        legacy_payload["payment_details"]["total_amount_due"] = 110.00
        assert "ARITHMETIC_MISMATCH" not in _codes(_validate(engine, legacy_payload))

        section["discount_amount"] = -10.00
        assert "ARITHMETIC_MISMATCH" not in _codes(_validate(engine, legacy_payload))


class TestRegistersAndDates:
    """Test meter reads and date ordering."""

    def test_register_usage_mismatch(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """Readings that do not explain the units used are flagged."""
        legacy_payload["electricity_bill"]["registers"][0]["previous_reading"] = 12000

        result = _validate(engine, legacy_payload)

        assert result.status == "warning"
        assert "REGISTER_USAGE_MISMATCH" in _codes(result)

    def test_multiplier_applies(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """Usage is the read difference times the meter multiplier."""
        section = legacy_payload["electricity_bill"]
        section["multiplier"] = 2
        section["multiplier_conf"] = 0.999
        section["registers"][0]["previous_reading"] = 12300
        assert "REGISTER_USAGE_MISMATCH" not in _codes(_validate(engine, legacy_payload))

    def test_due_before_issue(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """A due date before the issue date is an error."""
        legacy_payload["supplier_details"]["due_date"] = "2025-01-15"

        result = _validate(engine, legacy_payload)

        assert result.status == "failed"
        assert "DUE_BEFORE_ISSUE" in _codes(result)

    def test_period_end_before_start(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """An inverted billing period is an error."""
        legacy_payload["supplier_details"]["billing_period_end"] = "2024-12-01"
        assert "PERIOD_END_BEFORE_START" in _codes(_validate(engine, legacy_payload))

    def test_unparseable_date(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """Dates must be recognizable."""
        legacy_payload["supplier_details"]["issue_date"] = "sometime in February"
        assert "INVALID_DATE" in _codes(_validate(engine, legacy_payload))

    def test_irish_day_first_dates(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """Day-first dates are accepted."""
        legacy_payload["supplier_details"]["issue_date"] = "01/02/2025"
        legacy_payload["supplier_details"]["due_date"] = "01/03/2025"
        assert _validate(engine, legacy_payload).status == "passed"


class TestIdentifiers:
    """Test identifier and format checks."""

    def test_invalid_mprn(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """MPRN must be 11 digits starting with 10."""
        legacy_payload["electricity_bill"]["mprn"] = "20012345678"
        assert "INVALID_MPRN" in _codes(_validate(engine, legacy_payload))

    def test_mprn_with_spaces(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """Spacing as printed on the bill is tolerated."""
        legacy_payload["electricity_bill"]["mprn"] = "10 012 345 678"
        assert "INVALID_MPRN" not in _codes(_validate(engine, legacy_payload))

    def test_invalid_gprn(
        self, engine: RuleValidationEngine, multi_bill_payload: dict[str, Any]
    ) -> None:
        """GPRN must be 7 digits."""
        multi_bill_payload["bills"][1]["account"]["gprn"] = "12345"
        assert "INVALID_GPRN" in _codes(_validate(engine, multi_bill_payload))

    def test_iban_checksum(self) -> None:
        """The mod-97 check accepts a valid IBAN and rejects a typo."""
        assert iban_checksum_ok("IE29AIBK93115212345678") is True
        assert iban_checksum_ok("IE29AIBK93115212345679") is False

    def test_invalid_iban(
        self, engine: RuleValidationEngine, broadband_payload: dict[str, Any]
    ) -> None:
        """A broken IBAN fails validation."""
        bank = broadband_payload["bills"][0]["broadband_specific"]["bank_transfer"]
        bank["iban"] = "IE29AIBK9311521234567"
        assert "INVALID_IBAN" in _codes(_validate(engine, broadband_payload))

    def test_invalid_bic(
        self, engine: RuleValidationEngine, broadband_payload: dict[str, Any]
    ) -> None:
        """BIC must be 8 or 11 characters."""
        bank = broadband_payload["bills"][0]["broadband_specific"]["bank_transfer"]
        bank["bic"] = "AIBK"
        assert "INVALID_BIC" in _codes(_validate(engine, broadband_payload))

    def test_unexpected_vat_rate(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """Only Irish VAT rates are expected."""
        legacy_payload["electricity_bill"]["vat_rate"] = 20
        result = _validate(engine, legacy_payload)
        assert "UNEXPECTED_VAT_RATE" in _codes(result)
        assert result.status == "warning"

    def test_fractional_vat_rate(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """0.09 is read as 9%."""
        legacy_payload["electricity_bill"]["vat_rate"] = 0.09
        assert "UNEXPECTED_VAT_RATE" not in _codes(_validate(engine, legacy_payload))

    def test_invalid_eircode(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """Eircodes are checked against the routing key format."""
        legacy_payload["customer_details"]["billing_address"]["eircode"] = "NOT AN EIRCODE"
        assert "INVALID_EIRCODE" in _codes(_validate(engine, legacy_payload))


class TestMeterConfiguration:
    """Test MCC against the registers carried."""

    def test_normalize_mcc(self) -> None:
        """MCC labels reduce to two digits."""
        assert normalize_mcc("MCC02") == "02"
        assert normalize_mcc("1") == "01"
        assert normalize_mcc("none") == ""

    def test_mcc01_with_day_register(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """A 24-hour meter cannot carry a day register."""
        legacy_payload["electricity_bill"]["registers"][0]["time_band"] = "Day"

        result = _validate(engine, legacy_payload)

        assert "METER_CONFIG_MISMATCH" in _codes(result)
        assert result.status == "failed"

    def test_mcc02_requires_day_and_night(
        self, engine: RuleValidationEngine, multi_bill_payload: dict[str, Any]
    ) -> None:
        """A day/night meter with only a day band is inconsistent."""
        specific = multi_bill_payload["bills"][0]["electricity_specific"]
        specific["meter_reads"][1]["band"] = "Day"
        specific["unit_rates"][1]["band"] = "Day"
        assert "METER_CONFIG_MISMATCH" in _codes(_validate(engine, multi_bill_payload))

    def test_mcc12_allows_anything(
        self, engine: RuleValidationEngine, multi_bill_payload: dict[str, Any]
    ) -> None:
        """Smart meters may carry any bands."""
        account = multi_bill_payload["bills"][0]["account"]
        account["mcc"] = "MCC12"
        specific = multi_bill_payload["bills"][0]["electricity_specific"]
        specific["meter_reads"][1]["band"] = "Peak"
        specific["unit_rates"][1]["band"] = "Peak"
        assert "METER_CONFIG_MISMATCH" not in _codes(_validate(engine, multi_bill_payload))


class TestConfidenceRules:
    """Test confidence-driven issues."""

    def test_low_critical_confidence_requires_hitl(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """A weak critical field asks for a human."""
        legacy_payload["electricity_bill"]["mprn_conf"] = 0.80

        result = _validate(engine, legacy_payload)

        assert result.status == "warning"
        assert "LOW_CONFIDENCE_CRITICAL" in _codes(result)
        assert result.hitl_required is True

    def test_low_important_confidence(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """Usage below the important threshold is a warning only."""
        legacy_payload["electricity_bill"]["registers"][0]["units_used_conf"] = 0.95

        result = _validate(engine, legacy_payload)

        assert "LOW_CONFIDENCE" in _codes(result)
        assert result.hitl_required is False

    def test_missing_confidence(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """A populated field with no annotation is flagged."""
        del legacy_payload["electricity_bill"]["tariff_name_conf"]

        result = _validate(engine, legacy_payload)

        missing = [issue for issue in result.issues if issue.code == "MISSING_CONFIDENCE"]
        assert [issue.field for issue in missing] == ["bills[0].billing.plan_name"]

    def test_low_overall_downgrades_to_warning(
        self, engine: RuleValidationEngine, legacy_payload: dict[str, Any]
    ) -> None:
        """A non-critical weak field keeps the verdict at warning without hitl."""
        legacy_payload["customer_details"]["customer_name_conf"] = 0.93

        result = _validate(engine, legacy_payload)

        assert result.status == "warning"
        assert result.issues == []
        assert result.hitl_required is False
        assert result.overall_confidence == pytest.approx(0.93)
