"""Unit tests for the raw payload adapter (both extraction shapes)."""

from decimal import Decimal
from typing import Any

import pytest

from services.extraction.normalize import (
    SchemaShapeError,
    is_not_found,
    normalize_extraction,
    to_confidence,
    to_decimal,
)


class TestScalarCoercion:
    """Test value and confidence coercion helpers."""

    @pytest.mark.parametrize("value", [None, "N/A", "n/a", "null", "", "  "])
    def test_not_found_sentinels(self, value: Any) -> None:
        """Textual sentinels and None mean 'not on the bill'."""
        assert is_not_found(value) is True

    def test_zero_is_found(self) -> None:
        """A zero amount is a real value."""
        assert is_not_found(0) is False

    def test_to_decimal_parses_euro_strings(self) -> None:
        """Currency symbols and thousands separators should be stripped."""
        assert to_decimal("€1,234.50") == Decimal("1234.50")

    def test_to_decimal_keeps_float_precision_readable(self) -> None:
        """Floats go through str() so 0.1 stays 0.1."""
        assert to_decimal(0.1) == Decimal("0.1")

    def test_to_decimal_rejects_text(self) -> None:
        """Non-numeric text becomes None, not an exception."""
        assert to_decimal("about forty") is None

    @pytest.mark.parametrize("value", ["NaN", "Infinity", "-inf", float("inf"), Decimal("NaN")])
    def test_to_decimal_rejects_non_finite(self, value: Any) -> None:
        """Non-finite numbers are treated as not found."""
        assert to_decimal(value) is None

    def test_out_of_range_confidence_is_zero(self) -> None:
        """Broken annotations can only lower trust."""
        assert to_confidence(1.7) == 0.0
        assert to_confidence(-0.2) == 0.0
        assert to_confidence(float("nan")) == 0.0

    def test_numeric_string_confidence_is_parsed(self) -> None:
        """Quoted numbers are read as confidences."""
        assert to_confidence("0.9") == pytest.approx(0.9)
        assert to_confidence(" 0.30 ") == pytest.approx(0.30)

    @pytest.mark.parametrize("value", [True, "high", "", {"score": 1}, [0.9]])
    def test_unreadable_confidence_is_zero(self, value: Any) -> None:
        """Any other present annotation counts as zero confidence."""
        assert to_confidence(value) == 0.0

    def test_missing_confidence_is_none(self) -> None:
        """Only an absent annotation means 'not annotated'."""
        assert to_confidence(None) is None


class TestLegacyShape:
    """Test normalization of the legacy single-document shape."""

    def test_electricity_bill_is_mapped(self, legacy_payload: dict[str, Any]) -> None:
        """Legacy sections should land on the canonical bill."""
        document = normalize_extraction(legacy_payload)

        assert document.source_shape == "legacy"
        assert len(document.bills) == 1
        bill = document.bills[0]
        assert bill.services == ["electricity"]
        assert bill.electricity is not None
        assert bill.electricity.mprn.value == "10012345678"
        assert bill.electricity.mprn.confidence == pytest.approx(0.999)
        assert bill.charges.total_due.value == Decimal("120.0")
        assert bill.billing.due_date.value == "2025-03-01"
        assert bill.billing.plan_name.value == "Home Electric+"
        assert bill.electricity.registers[0].band == "24hr"
        assert bill.electricity.unit_rates[0].rate.value == Decimal("0.2")

    def test_customer_and_account_are_shared(self, legacy_payload: dict[str, Any]) -> None:
        """Every legacy bill inherits the customer's account number."""
        document = normalize_extraction(legacy_payload)

        assert document.customer.name.value == "Mary Murphy"
        assert document.customer.address.eircode.value == "E45 NW99"
        assert document.bills[0].account_number.value == "950123456"

    def test_payment_details(self, legacy_payload: dict[str, Any]) -> None:
        """Document-level payment summary should be read."""
        document = normalize_extraction(legacy_payload)
        assert document.payment.total_amount_due.value == Decimal("120.0")

    def test_no_service_sections_still_yields_a_bill(self, legacy_payload: dict[str, Any]) -> None:
        """Invoice identity and dates survive even without a service block."""
        legacy_payload["electricity_bill"] = None
        legacy_payload["services_details"] = {}

        document = normalize_extraction(legacy_payload)

        assert len(document.bills) == 1
        assert document.bills[0].services == []
        assert document.bills[0].billing.due_date.value == "2025-03-01"

    def test_flagged_service_without_section_is_attached(
        self, legacy_payload: dict[str, Any]
    ) -> None:
        """A declared service is never silently dropped."""
        legacy_payload["services_details"]["gas"] = True

        document = normalize_extraction(legacy_payload)

        assert document.detected_services() == ["electricity", "gas"]
        assert document.bills[0].gas is not None
        assert document.bills[0].gas.gprn.present is False

    def test_flags_widen_to_detected_services(self, legacy_payload: dict[str, Any]) -> None:
        """A bill block found on the document sets its flag."""
        legacy_payload["services_details"] = {}
        document = normalize_extraction(legacy_payload)
        assert document.services.electricity is True

    def test_unmapped_confidence_goes_to_extras(self, legacy_payload: dict[str, Any]) -> None:
        """Annotated fields without a canonical home still count."""
        legacy_payload["electricity_bill"]["smart_meter_id"] = "SM-1"
        legacy_payload["electricity_bill"]["smart_meter_id_conf"] = 0.42

        document = normalize_extraction(legacy_payload)

        extra = document.extras["electricity_bill.smart_meter_id"]
        assert extra.value == "SM-1"
        assert extra.confidence == pytest.approx(0.42)

    def test_classification_confidence_is_not_an_extra(
        self, legacy_payload: dict[str, Any]
    ) -> None:
        """The classification confidence is plain metadata."""
        document = normalize_extraction(legacy_payload)
        assert document.classification.confidence == pytest.approx(0.97)
        assert document.extras == {}


class TestMultiBillShape:
    """Test normalization of the multi-bill shape."""

    def test_dual_fuel_bills(self, multi_bill_payload: dict[str, Any]) -> None:
        """Each bills[] entry becomes one canonical bill."""
        document = normalize_extraction(multi_bill_payload)

        assert document.source_shape == "multi_bill"
        assert [bill.services for bill in document.bills] == [["electricity"], ["gas"]]
        assert document.detected_services() == ["electricity", "gas"]

        electricity = document.bills[0].electricity
        assert electricity is not None
        assert electricity.mcc.value == "MCC02"
        assert [reg.band for reg in electricity.registers] == ["Day", "Night"]
        assert electricity.registers[0].read_type.value == "A"
        assert electricity.standing_charge_per_day.value == Decimal("0.4098")

        gas = document.bills[1].gas
        assert gas is not None
        assert gas.gprn.value == "1234567"
        assert gas.units_used_kwh.value == Decimal("1340")
        assert gas.unit_charge.value == Decimal("160.8")

    def test_customer_comes_from_first_account(self, multi_bill_payload: dict[str, Any]) -> None:
        """The first bill's account holder is the customer."""
        document = normalize_extraction(multi_bill_payload)

        assert document.customer.name.value == "Sean Kelly"
        assert document.customer.account_number.value == "7001234567"
        assert document.customer.address.raw.value is not None
        assert document.customer.address.raw.value.endswith("K67 X2Y3")

    def test_payment_total_is_derived_from_bills(
        self, multi_bill_payload: dict[str, Any]
    ) -> None:
        """Without payment_details the total is the sum of bill totals."""
        multi_bill_payload["bills"][1]["totals"]["total_due_conf"] = 0.97

        document = normalize_extraction(multi_bill_payload)

        assert document.payment.total_amount_due.value == Decimal("398.40")
        assert document.payment.total_amount_due.confidence == pytest.approx(0.97)

    def test_not_available_values_are_missing(self, multi_bill_payload: dict[str, Any]) -> None:
        """'N/A' in the multi-bill shape means not found."""
        multi_bill_payload["bills"][0]["billing"]["contract_end_date"] = "N/A"
        multi_bill_payload["bills"][0]["billing"]["contract_end_date_conf"] = 0.0

        document = normalize_extraction(multi_bill_payload)

        field = document.bills[0].billing.contract_end_date
        assert field.present is False
        assert field.confidence == 0.0

    def test_dg_mapped_value_fallback(self, multi_bill_payload: dict[str, Any]) -> None:
        """dg_mapped_value is used when dg is absent."""
        account = multi_bill_payload["bills"][0]["account"]
        del account["dg"], account["dg_conf"]
        account["dg_mapped_value"] = "DG2"
        account["dg_mapped_value_conf"] = 0.99

        document = normalize_extraction(multi_bill_payload)

        assert document.bills[0].electricity is not None
        assert document.bills[0].electricity.dg.value == "DG2"

    def test_broadband_block(self, broadband_payload: dict[str, Any]) -> None:
        """Broadband-specific fields should be mapped."""
        document = normalize_extraction(broadband_payload)

        broadband = document.bills[0].broadband
        assert broadband is not None
        assert broadband.landline_number.value == "091 555 123"
        assert broadband.package_name.value == "Fibre 500"
        assert broadband.download_mbps.value == Decimal("500")
        assert broadband.iban.value == "IE29AIBK93115212345678"

    def test_empty_bills_array(self) -> None:
        """An empty bills array is a valid, empty document."""
        document = normalize_extraction({"bills": []})
        assert document.bills == []
        assert document.payment.total_amount_due.present is False


class TestShapeErrors:
    """Test rejection of unusable payloads."""

    def test_non_object_payload(self) -> None:
        """Lists and scalars are rejected."""
        with pytest.raises(SchemaShapeError):
            normalize_extraction([1, 2, 3])

    def test_payload_without_bills_container(self) -> None:
        """A payload with neither shape is rejected."""
        with pytest.raises(SchemaShapeError, match="no bills container"):
            normalize_extraction({"classification": {"document_class": "utility_bill"}})
