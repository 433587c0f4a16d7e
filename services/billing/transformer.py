"""Transformation of extracted bills into the billing API wire format.

Input of either historical shape is normalized first, so the mapping below
only ever sees the canonical document. One wire entry is emitted per
service carried by each bill; a service that was not detected never gets
an entry.
"""

import logging
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from services.billing.address import AddressParser, CommaAddressParser
from services.billing.wire import (
    UNKNOWN_DATE,
    BankDetails,
    BillingPayload,
    BroadbandEntry,
    BroadbandFinancialInformation,
    BroadbandServiceDetails,
    CustomerDetails,
    CustomerEntry,
    DetailedUsage,
    ElectricityCharges,
    ElectricityEntry,
    ElectricityMeterDetails,
    ElectricityMeterReading,
    ElectricityUnitRates,
    FinancialInformation,
    GasCharges,
    GasEntry,
    GasMeterDetails,
    GasMeterReading,
    GasUnitRates,
    PackageInformation,
    SupplierDetails,
    WhatsIncluded,
    WireAddress,
    WireBills,
    WireServices,
    quantize_money,
)
from services.billing.wire import BroadbandDetails as WireBroadbandDetails
from services.billing.wire import ElectricityDetails as WireElectricityDetails
from services.billing.wire import GasDetails as WireGasDetails
from services.extraction.normalize import SchemaShapeError, normalize_extraction
from services.extraction.schema import (
    Address,
    Amount,
    Bill,
    BroadbandDetails,
    ElectricityDetails,
    ExtractedDocument,
    GasDetails,
    Text,
)
from services.shared.dates import parse_date
from services.validation.bands import classify_band

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class TransformError(ValueError):
    """Raised when a document cannot be mapped onto the billing payload."""


def _text(field: Text) -> str:
    return field.value or ""


def _number(field: Amount) -> Decimal:
    return field.value if field.value is not None else ZERO


def _money(field: Amount) -> Decimal:
    return quantize_money(_number(field))


def _date(field: Text) -> str:
    if field.value is None:
        return UNKNOWN_DATE
    parsed = parse_date(field.value)
    return parsed.isoformat() if parsed else UNKNOWN_DATE


def _first_date(*fields: Text) -> str:
    for field in fields:
        value = _date(field)
        if value != UNKNOWN_DATE:
            return value
    return UNKNOWN_DATE


def _period(bill: Bill) -> str:
    start, end = bill.billing.period_start, bill.billing.period_end
    if start.value and end.value:
        return f"{_date(start)} to {_date(end)}"
    return ""


class BillingTransformer:
    """Maps a canonical document onto the billing API payload."""

    def __init__(self, address_parser: AddressParser | None = None) -> None:
        self.address_parser = address_parser or CommaAddressParser()

    def transform(self, extraction: dict[str, Any] | ExtractedDocument) -> BillingPayload:
        """Build the billing payload.

        Args:
            extraction: Raw payload of either shape, or an already normalized document

        Returns:
            BillingPayload; missing optional data is filled with defaults

        Raises:
            TransformError: If the input has no bills container or holds values
                the canonical or wire models reject
        """
        try:
            if isinstance(extraction, ExtractedDocument):
                document = extraction
            else:
                document = normalize_extraction(extraction)
            return self._build(document)
        except (SchemaShapeError, ValidationError) as e:
            raise TransformError(str(e)) from e

    def _build(self, document: ExtractedDocument) -> BillingPayload:
        bills = WireBills(cus_details=[self._customer(document)])
        for bill in document.bills:
            if bill.electricity is not None:
                bills.electricity.append(self._electricity(bill, bill.electricity))
            if bill.gas is not None:
                bills.gas.append(self._gas(bill, bill.gas))
            if bill.broadband is not None:
                bills.broadband.append(self._broadband(bill, bill.broadband))

        logger.debug(
            f"Transformed document: electricity={len(bills.electricity)}, "
            f"gas={len(bills.gas)}, broadband={len(bills.broadband)}"
        )
        return BillingPayload(bills=bills)

    def _customer(self, document: ExtractedDocument) -> CustomerEntry:
        return CustomerEntry(
            details=CustomerDetails(
                customer_name=_text(document.customer.name),
                address=self._address(document.customer.address),
            ),
            services=WireServices(
                gas=document.services.gas,
                broadband=document.services.broadband,
                electricity=document.services.electricity,
            ),
        )

    def _address(self, address: Address) -> WireAddress:
        structured = (address.line1, address.line2, address.city, address.county, address.eircode)
        if any(part.present for part in structured):
            return WireAddress(
                line_1=_text(address.line1),
                line_2=_text(address.line2),
                city=_text(address.city),
                county=_text(address.county),
                eircode=_text(address.eircode),
            )
        if address.raw.value:
            return self.address_parser.parse(address.raw.value)
        return WireAddress()

    @staticmethod
    def _supplier(bill: Bill, tariff_name: str) -> SupplierDetails:
        return SupplierDetails(
            name=_text(bill.supplier.name),
            tariff_name=tariff_name,
            issue_date=_date(bill.billing.issue_date),
            billing_period=_period(bill),
        )

    @staticmethod
    def _financial(bill: Bill) -> FinancialInformation:
        total = _money(bill.charges.total_due)
        due = _date(bill.billing.due_date)
        return FinancialInformation(
            total_due=total, amount_due=total, due_date=due, payment_due_date=due
        )

    def _electricity(self, bill: Bill, elec: ElectricityDetails) -> ElectricityEntry:
        readings: list[ElectricityMeterReading] = []
        usage: list[DetailedUsage] = []
        if elec.registers:
            reading = ElectricityMeterReading(
                reading_type=_text(elec.reading_type) or _text(elec.registers[0].read_type),
                date=_date(bill.billing.period_end),
            )
            used = DetailedUsage(
                start_read_date=_date(bill.billing.period_start),
                end_read_date=_date(bill.billing.period_end),
            )
            for register in elec.registers:
                band = classify_band(register.band)
                current = _number(register.current_reading)
                units = _number(register.units_used)
                if band in ("day", "night", "peak"):
                    setattr(reading, f"{band}_reading", current)
                else:
                    reading.nsh_reading = current
                if band != "24_hour":
                    setattr(used, f"{band}_kWh", units)
            readings.append(reading)
            usage.append(used)

        rates = ElectricityUnitRates()
        for unit_rate in elec.unit_rates:
            band = classify_band(unit_rate.band)
            value = _number(unit_rate.rate)
            if band == "24_hour":
                rates.hour_24_rate = value
                rates.nsh = value
            else:
                setattr(rates, band, value)

        standing = (
            elec.standing_charge_per_day
            if elec.standing_charge_per_day.present
            else bill.charges.standing_charge
        )
        return ElectricityEntry(
            electricity_details=WireElectricityDetails(
                invoice_number=_text(bill.billing.invoice_number),
                account_number=_text(bill.account_number),
                contract_end_date=_date(bill.billing.contract_end_date),
                meter_details=ElectricityMeterDetails(
                    mprn=_text(elec.mprn),
                    dg=_text(elec.dg),
                    mcc=_text(elec.mcc),
                    profile=_text(elec.profile),
                ),
            ),
            supplier_details=self._supplier(bill, _text(bill.billing.plan_name)),
            charges_and_usage=ElectricityCharges(
                meter_readings=readings,
                detailed_kWh_usage=usage,
                unit_rates=rates,
                standing_charge=_number(standing),
                standing_charge_period=_period(bill),
                pso_levy=_money(bill.charges.pso_levy),
            ),
            financial_information=self._financial(bill),
        )

    def _gas(self, bill: Bill, gas: GasDetails) -> GasEntry:
        readings: list[GasMeterReading] = []
        if gas.current_reading.present:
            readings.append(
                GasMeterReading(
                    date=_date(bill.billing.period_end),
                    reading=_number(gas.current_reading),
                )
            )
        standing = (
            gas.standing_charge_per_day
            if gas.standing_charge_per_day.present
            else bill.charges.standing_charge
        )
        return GasEntry(
            gas_details=WireGasDetails(
                invoice_number=_text(bill.billing.invoice_number),
                account_number=_text(bill.account_number),
                contract_end_date=_date(bill.billing.contract_end_date),
                meter_details=GasMeterDetails(gprn=_text(gas.gprn)),
            ),
            supplier_details=self._supplier(bill, _text(bill.billing.plan_name)),
            charges_and_usage=GasCharges(
                meter_readings=readings,
                unit_rates=GasUnitRates(rate=_number(gas.unit_rate)),
                standing_charge=_number(standing),
                standing_charge_period=_period(bill),
                carbon_tax=_money(bill.charges.carbon_tax),
            ),
            financial_information=self._financial(bill),
        )

    def _broadband(self, bill: Bill, bb: BroadbandDetails) -> BroadbandEntry:
        bandwidth = ""
        if bb.download_mbps.present or bb.upload_mbps.present:
            bandwidth = (
                f"{_number(bb.download_mbps).normalize():f} Mbps down / "
                f"{_number(bb.upload_mbps).normalize():f} Mbps up"
            )
        landline = _text(bb.landline_number)
        package = _text(bb.package_name)
        financial = self._financial(bill)

        return BroadbandEntry(
            broadband_details=WireBroadbandDetails(
                account_number=_text(bill.account_number),
                phone_numbers=[landline] if landline else [],
            ),
            supplier_details=self._supplier(bill, package or _text(bill.billing.plan_name)),
            service_details=BroadbandServiceDetails(
                broadband_number=_text(bb.broadband_number),
                uan_number=_text(bb.uan),
                connection_type=_text(bb.technology),
                home_phone_number=landline,
            ),
            package_information=PackageInformation(
                package_name=package,
                contract_end_date=_first_date(bb.contract_end_date, bill.billing.contract_end_date),
                what_s_included=WhatsIncluded(usage=_text(bb.data_usage), bandwidth=bandwidth),
            ),
            financial_information=BroadbandFinancialInformation(
                **financial.model_dump(),
                previous_bill_amount=_money(bill.charges.previous_bill_amount),
                payment_method=_text(bill.billing.payment_method),
                bank_details=BankDetails(iban=_text(bb.iban), bic=_text(bb.bic)),
            ),
        )
