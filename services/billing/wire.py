"""Billing API wire format.

Field names mirror the billing API's JSON exactly. Every field has a
default, so a transform never fails on missing optional data: numbers
default to 0, dates to ``0000-00-00``, strings to "".

Money is quantized to two places; rates and readings keep their precision.
Serialize with ``model_dump(by_alias=True, mode="json")``.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

UNKNOWN_DATE = "0000-00-00"
CURRENCY = "euro"
CENTS = Decimal("0.01")


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


Money = Annotated[
    Decimal,
    PlainSerializer(lambda v: float(quantize_money(v)), return_type=float, when_used="json"),
]
Number = Annotated[Decimal, PlainSerializer(lambda v: float(v), return_type=float, when_used="json")]
WireDate = str


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# Customer


class WireAddress(WireModel):
    line_1: str = ""
    line_2: str = ""
    city: str = ""
    county: str = ""
    eircode: str = ""


class CustomerDetails(WireModel):
    customer_name: str = ""
    address: WireAddress = Field(default_factory=WireAddress)


class WireServices(WireModel):
    gas: bool = False
    broadband: bool = False
    electricity: bool = False


class CustomerEntry(WireModel):
    details: CustomerDetails = Field(default_factory=CustomerDetails)
    services: WireServices = Field(default_factory=WireServices)


# Shared blocks


class SupplierDetails(WireModel):
    name: str = ""
    tariff_name: str = ""
    issue_date: WireDate = UNKNOWN_DATE
    billing_period: str = ""


class FinancialInformation(WireModel):
    total_due: Money = Decimal("0")
    amount_due: Money = Decimal("0")
    due_date: WireDate = UNKNOWN_DATE
    payment_due_date: WireDate = UNKNOWN_DATE


# Electricity


class ElectricityMeterDetails(WireModel):
    mprn: str = ""
    dg: str = ""
    mcc: str = ""
    profile: str = ""


class ElectricityDetails(WireModel):
    invoice_number: str = ""
    account_number: str = ""
    contract_end_date: WireDate = UNKNOWN_DATE
    meter_details: ElectricityMeterDetails = Field(default_factory=ElectricityMeterDetails)


class ElectricityMeterReading(WireModel):
    reading_type: str = ""
    date: WireDate = UNKNOWN_DATE
    nsh_reading: Number = Decimal("0")
    day_reading: Number = Decimal("0")
    night_reading: Number = Decimal("0")
    peak_reading: Number = Decimal("0")


class DetailedUsage(WireModel):
    start_read_date: WireDate = UNKNOWN_DATE
    end_read_date: WireDate = UNKNOWN_DATE
    day_kWh: Number = Decimal("0")
    night_kWh: Number = Decimal("0")
    peak_kWh: Number = Decimal("0")
    ev_kWh: Number = Decimal("0")


class ElectricityUnitRates(WireModel):
    hour_24_rate: Number = Field(default=Decimal("0"), alias="24_hour_rate")
    day: Number = Decimal("0")
    night: Number = Decimal("0")
    peak: Number = Decimal("0")
    ev: Number = Decimal("0")
    nsh: Number = Decimal("0")
    rate_currency: str = CURRENCY
    rate_discount_percentage: Number = Decimal("0")


class ElectricityCharges(WireModel):
    meter_readings: list[ElectricityMeterReading] = Field(default_factory=list)
    detailed_kWh_usage: list[DetailedUsage] = Field(default_factory=list)
    unit_rates: ElectricityUnitRates = Field(default_factory=ElectricityUnitRates)
    standing_charge: Number = Decimal("0")
    standing_charge_currency: str = CURRENCY
    standing_charge_period: str = ""
    nsh_standing_charge: Number = Decimal("0")
    nsh_standing_charge_currency: str = CURRENCY
    nsh_standing_charge_period: str = ""
    pso_levy: Money = Decimal("0")


class ElectricityEntry(WireModel):
    electricity_details: ElectricityDetails = Field(default_factory=ElectricityDetails)
    supplier_details: SupplierDetails = Field(default_factory=SupplierDetails)
    charges_and_usage: ElectricityCharges = Field(default_factory=ElectricityCharges)
    financial_information: FinancialInformation = Field(default_factory=FinancialInformation)


# Gas


class GasMeterDetails(WireModel):
    gprn: str = ""


class GasDetails(WireModel):
    invoice_number: str = ""
    account_number: str = ""
    contract_end_date: WireDate = UNKNOWN_DATE
    meter_details: GasMeterDetails = Field(default_factory=GasMeterDetails)


class GasMeterReading(WireModel):
    meter_type: str = "m3"
    date: WireDate = UNKNOWN_DATE
    reading: Number = Decimal("0")


class GasUnitRates(WireModel):
    rate: Number = Decimal("0")
    rate_currency: str = CURRENCY


class GasCharges(WireModel):
    meter_readings: list[GasMeterReading] = Field(default_factory=list)
    unit_rates: GasUnitRates = Field(default_factory=GasUnitRates)
    standing_charge: Number = Decimal("0")
    standing_charge_currency: str = CURRENCY
    standing_charge_period: str = ""
    carbon_tax: Money = Decimal("0")


class GasEntry(WireModel):
    gas_details: GasDetails = Field(default_factory=GasDetails)
    supplier_details: SupplierDetails = Field(default_factory=SupplierDetails)
    charges_and_usage: GasCharges = Field(default_factory=GasCharges)
    financial_information: FinancialInformation = Field(default_factory=FinancialInformation)


# Broadband


class BroadbandDetails(WireModel):
    account_number: str = ""
    phone_numbers: list[str] = Field(default_factory=list)


class BroadbandServiceDetails(WireModel):
    broadband_number: str = ""
    uan_number: str = ""
    connection_type: str = ""
    home_phone_number: str = ""
    mobile_phone_numbers: list[str] = Field(default_factory=list)
    utility_types: list[str] = Field(default_factory=list)


class WhatsIncluded(WireModel):
    calls: str = ""
    usage: str = ""
    bandwidth: str = ""
    usage_minutes: str = ""
    int_call_packages: str = ""
    local_national_calls: str = ""


class PackageInformation(WireModel):
    package_name: str = ""
    contract_changes: str = ""
    contract_end_date: WireDate = UNKNOWN_DATE
    what_s_included: WhatsIncluded = Field(default_factory=WhatsIncluded)


class BankDetails(WireModel):
    iban: str = ""
    bic: str = ""


class BroadbandFinancialInformation(FinancialInformation):
    previous_bill_amount: Money = Decimal("0")
    payment_method: str = ""
    payments_received: str = ""
    bank_details: BankDetails = Field(default_factory=BankDetails)


class BroadbandEntry(WireModel):
    broadband_details: BroadbandDetails = Field(default_factory=BroadbandDetails)
    supplier_details: SupplierDetails = Field(default_factory=SupplierDetails)
    service_details: BroadbandServiceDetails = Field(default_factory=BroadbandServiceDetails)
    package_information: PackageInformation = Field(default_factory=PackageInformation)
    financial_information: BroadbandFinancialInformation = Field(
        default_factory=BroadbandFinancialInformation
    )


# Envelope


class WireBills(WireModel):
    cus_details: list[CustomerEntry] = Field(default_factory=list)
    electricity: list[ElectricityEntry] = Field(default_factory=list)
    gas: list[GasEntry] = Field(default_factory=list)
    broadband: list[BroadbandEntry] = Field(default_factory=list)


class BillingPayload(WireModel):
    """Top-level billing API body (the phone number is added by the client)."""

    bills: WireBills = Field(default_factory=WireBills)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")
