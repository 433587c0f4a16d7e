"""Canonical utility bill data models.

Every extracted leaf is a ``Valued`` wrapper carrying the value together with
the confidence the extraction model assigned to it. Raw payloads from the
extraction oracle come in two historical shapes; ``normalize.py`` converts
both into the ``ExtractedDocument`` defined here before any other component
reads them.
"""

from collections.abc import Iterator
from decimal import Decimal
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")

ServiceType = Literal["electricity", "gas", "broadband"]
SERVICE_TYPES: tuple[ServiceType, ...] = ("electricity", "gas", "broadband")


class Valued(BaseModel, Generic[T]):
    """An extracted value and the model's confidence in it.

    ``value`` is None when the field was not found on the bill.
    ``confidence`` is None when the extraction carried no annotation.
    """

    value: T | None = None
    confidence: float | None = Field(None, ge=0, le=1)

    @property
    def present(self) -> bool:
        return self.value is not None


Text = Valued[str]
Amount = Valued[Decimal]


class Classification(BaseModel):
    """Document class reported by the extraction oracle."""

    document_class: str | None = None
    document_subclass: str | None = None
    supplier_name: str | None = None
    confidence: float | None = None


class Address(BaseModel):
    """Customer address; ``raw`` holds the free-text form when that is all we got."""

    raw: Text = Field(default_factory=Text)
    line1: Text = Field(default_factory=Text)
    line2: Text = Field(default_factory=Text)
    city: Text = Field(default_factory=Text)
    county: Text = Field(default_factory=Text)
    eircode: Text = Field(default_factory=Text)


class Customer(BaseModel):
    name: Text = Field(default_factory=Text)
    account_number: Text = Field(default_factory=Text)
    address: Address = Field(default_factory=Address)


class ServiceFlags(BaseModel):
    """Services the bill declares, independent of which bill blocks were found."""

    electricity: bool = False
    gas: bool = False
    broadband: bool = False


class Payment(BaseModel):
    total_amount_due: Amount = Field(default_factory=Amount)
    previous_balance: Amount = Field(default_factory=Amount)
    current_charges: Amount = Field(default_factory=Amount)


class Supplier(BaseModel):
    name: Text = Field(default_factory=Text)
    vat_number: Text = Field(default_factory=Text)


class Billing(BaseModel):
    """Invoice identity and the dates that govern it (all dates ISO strings)."""

    invoice_number: Text = Field(default_factory=Text)
    issue_date: Text = Field(default_factory=Text)
    due_date: Text = Field(default_factory=Text)
    period_start: Text = Field(default_factory=Text)
    period_end: Text = Field(default_factory=Text)
    contract_end_date: Text = Field(default_factory=Text)
    plan_name: Text = Field(default_factory=Text)
    payment_method: Text = Field(default_factory=Text)


class Charges(BaseModel):
    """Bill-level money amounts. Discounts and credits may arrive signed either way."""

    service_charge: Amount = Field(default_factory=Amount)
    standing_charge: Amount = Field(default_factory=Amount)
    pso_levy: Amount = Field(default_factory=Amount)
    carbon_tax: Amount = Field(default_factory=Amount)
    discount_amount: Amount = Field(default_factory=Amount)
    credits: Amount = Field(default_factory=Amount)
    vat_rate: Amount = Field(default_factory=Amount)
    vat_amount: Amount = Field(default_factory=Amount)
    total_due: Amount = Field(default_factory=Amount)
    previous_bill_amount: Amount = Field(default_factory=Amount)


class Register(BaseModel):
    """One electricity meter register (time band) on the bill."""

    band: str = ""
    read_type: Text = Field(default_factory=Text)
    current_reading: Amount = Field(default_factory=Amount)
    previous_reading: Amount = Field(default_factory=Amount)
    units_used: Amount = Field(default_factory=Amount)
    unit_rate: Amount = Field(default_factory=Amount)
    unit_charge: Amount = Field(default_factory=Amount)


class UnitRate(BaseModel):
    band: str = ""
    rate: Amount = Field(default_factory=Amount)


class ElectricityDetails(BaseModel):
    mprn: Text = Field(default_factory=Text)
    mcc: Text = Field(default_factory=Text)
    dg: Text = Field(default_factory=Text)
    profile: Text = Field(default_factory=Text)
    meter_number: Text = Field(default_factory=Text)
    multiplier: Amount = Field(default_factory=Amount)
    reading_type: Text = Field(default_factory=Text)
    standing_charge_per_day: Amount = Field(default_factory=Amount)
    registers: list[Register] = Field(default_factory=list)
    unit_rates: list[UnitRate] = Field(default_factory=list)


class GasDetails(BaseModel):
    gprn: Text = Field(default_factory=Text)
    read_type: Text = Field(default_factory=Text)
    current_reading: Amount = Field(default_factory=Amount)
    previous_reading: Amount = Field(default_factory=Amount)
    units_used_m3: Amount = Field(default_factory=Amount)
    units_used_kwh: Amount = Field(default_factory=Amount)
    unit_rate: Amount = Field(default_factory=Amount)
    unit_charge: Amount = Field(default_factory=Amount)
    standing_charge_per_day: Amount = Field(default_factory=Amount)


class BroadbandDetails(BaseModel):
    landline_number: Text = Field(default_factory=Text)
    broadband_number: Text = Field(default_factory=Text)
    uan: Text = Field(default_factory=Text)
    package_name: Text = Field(default_factory=Text)
    contract_end_date: Text = Field(default_factory=Text)
    technology: Text = Field(default_factory=Text)
    download_mbps: Amount = Field(default_factory=Amount)
    upload_mbps: Amount = Field(default_factory=Amount)
    data_usage: Text = Field(default_factory=Text)
    iban: Text = Field(default_factory=Text)
    bic: Text = Field(default_factory=Text)


class Bill(BaseModel):
    """A single supplier bill. One bill may carry more than one service (dual fuel)."""

    bill_type: str | None = None
    supplier: Supplier = Field(default_factory=Supplier)
    account_number: Text = Field(default_factory=Text)
    billing: Billing = Field(default_factory=Billing)
    charges: Charges = Field(default_factory=Charges)
    electricity: ElectricityDetails | None = None
    gas: GasDetails | None = None
    broadband: BroadbandDetails | None = None

    @property
    def services(self) -> list[ServiceType]:
        return [service for service in SERVICE_TYPES if getattr(self, service) is not None]


class ExtractedDocument(BaseModel):
    """Canonical extraction result, independent of the raw payload shape.

    Attributes:
        source_shape: Which raw shape the document was normalized from
        classification: Document class and supplier as reported by the oracle
        customer: Account holder details
        services: Declared service flags
        payment: Document-level payment summary
        bills: One entry per supplier bill on the document
        extras: Confidence-annotated raw fields with no canonical home, keyed by raw path
    """

    source_shape: Literal["legacy", "multi_bill"] = "legacy"
    classification: Classification = Field(default_factory=Classification)
    customer: Customer = Field(default_factory=Customer)
    services: ServiceFlags = Field(default_factory=ServiceFlags)
    payment: Payment = Field(default_factory=Payment)
    bills: list[Bill] = Field(default_factory=list)
    extras: dict[str, Valued[Any]] = Field(default_factory=dict)

    def detected_services(self) -> list[ServiceType]:
        """Services carried by at least one bill, in canonical order."""
        found = {service for bill in self.bills for service in bill.services}
        return [service for service in SERVICE_TYPES if service in found]

    def iter_bills(self, service: ServiceType) -> Iterator[tuple[int, Bill]]:
        for index, bill in enumerate(self.bills):
            if getattr(bill, service) is not None:
                yield index, bill


# Target schema handed to the extraction oracle. Every scalar is paired with a
# "<name>_conf" number; see build_extraction_schema().
_SECTION_FIELDS: dict[str, dict[str, str]] = {
    "customer_details": {
        "account_number": "string",
        "customer_name": "string",
    },
    "supplier_details": {
        "supplier_name": "string",
        "vat_number": "string",
        "invoice_number": "string",
        "issue_date": "string",
        "due_date": "string",
        "billing_period_start": "string",
        "billing_period_end": "string",
        "payment_method": "string",
    },
    "electricity_bill": {
        "mprn": "string",
        "mcc_code": "string",
        "dg_code": "string",
        "profile_code": "string",
        "tariff_name": "string",
        "contract_end_date": "string",
        "meter_number": "string",
        "multiplier": "number",
        "reading_type": "string",
        "standing_charge": "number",
        "pso_levy": "number",
        "discount_description": "string",
        "discount_amount": "number",
        "discount_end_date": "string",
        "microgen_credit": "number",
        "vat_rate": "number",
        "vat_amount": "number",
        "total_charges": "number",
    },
    "gas_bill": {
        "gprn": "string",
        "tariff_name": "string",
        "contract_end_date": "string",
        "current_reading": "number",
        "previous_reading": "number",
        "units_used_m3": "number",
        "units_used_kwh": "number",
        "unit_rate": "number",
        "standing_charge": "number",
        "carbon_tax": "number",
        "vat_rate": "number",
        "vat_amount": "number",
        "total_charges": "number",
    },
    "broadband_bill": {
        "phone_number": "string",
        "account_number": "string",
        "package_name": "string",
        "connection_type": "string",
        "contract_end_date": "string",
        "data_usage": "string",
        "monthly_charge": "number",
        "vat_rate": "number",
        "vat_amount": "number",
        "total_charges": "number",
    },
    "payment_details": {
        "total_amount_due": "number",
        "previous_balance": "number",
        "current_charges": "number",
    },
}

_ADDRESS_FIELDS = ("line1", "line2", "city", "county", "eircode")

_REGISTER_FIELDS: dict[str, str] = {
    "current_reading": "number",
    "previous_reading": "number",
    "units_used": "number",
    "unit_rate": "number",
    "unit_charge": "number",
}

_NULLABLE_SECTIONS = {"electricity_bill", "gas_bill", "broadband_bill"}


def _annotated(fields: dict[str, str]) -> dict[str, Any]:
    properties: dict[str, Any] = {}
    for name, kind in fields.items():
        properties[name] = {"type": [kind, "null"]}
        properties[f"{name}_conf"] = {"type": "number", "minimum": 0, "maximum": 1}
    return properties


def build_extraction_schema() -> dict[str, Any]:
    """Build the JSON schema the extraction oracle fills in.

    Returns:
        JSON schema dict in the legacy single-document shape
    """
    properties: dict[str, Any] = {}
    for section, fields in _SECTION_FIELDS.items():
        section_props = _annotated(fields)
        if section == "customer_details":
            section_props["billing_address"] = {
                "type": "object",
                "properties": _annotated({name: "string" for name in _ADDRESS_FIELDS}),
            }
        if section == "electricity_bill":
            section_props["registers"] = {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "time_band": {"type": "string"},
                        **_annotated(_REGISTER_FIELDS),
                    },
                },
            }
        properties[section] = {
            "type": ["object", "null"] if section in _NULLABLE_SECTIONS else "object",
            "properties": section_props,
        }

    properties["classification"] = {
        "type": "object",
        "properties": {
            "document_class": {"type": "string"},
            "document_subclass": {"type": "string"},
            "confidence": {"type": "number"},
        },
    }

    return {
        "type": "object",
        "properties": properties,
        "required": ["customer_details", "supplier_details", "classification", "payment_details"],
    }
