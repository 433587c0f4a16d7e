"""Normalization of raw extraction payloads into the canonical schema.

Two raw shapes have been produced by the extraction oracle over time:

* ``legacy``: one document with ``customer_details``, ``supplier_details``,
  ``payment_details`` and optional ``electricity_bill`` / ``gas_bill`` /
  ``broadband_bill`` sections. Missing values are ``null``.
* ``multi_bill``: a ``bills`` array, one entry per supplier bill, each with
  ``supplier``, ``account``, ``billing``, ``totals`` and
  ``electricity_specific`` / ``gas_specific`` / ``broadband_specific`` blocks,
  plus top-level ``services_details`` flags. Missing values are ``"N/A"``.

In both shapes a scalar ``field`` carries its confidence in a sibling
``field_conf``. This module is the only place that knows about either the
shapes or the suffix convention.
"""

import logging
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from services.extraction.schema import (
    SERVICE_TYPES,
    Address,
    Amount,
    Bill,
    Billing,
    BroadbandDetails,
    Charges,
    Classification,
    Customer,
    ElectricityDetails,
    ExtractedDocument,
    GasDetails,
    Payment,
    Register,
    ServiceFlags,
    Supplier,
    Text,
    UnitRate,
    Valued,
)

logger = logging.getLogger(__name__)

CONF_SUFFIX = "_conf"
NOT_FOUND_SENTINELS = frozenset({"n/a", "na", "null", "none", ""})

_LEGACY_SECTIONS = (
    "customer_details",
    "supplier_details",
    "payment_details",
    "electricity_bill",
    "gas_bill",
    "broadband_bill",
)


class SchemaShapeError(ValueError):
    """Raised when a payload matches neither known extraction shape."""


def is_not_found(value: Any) -> bool:
    """True for None and for the textual "not found" sentinels."""
    if value is None:
        return True
    return isinstance(value, str) and value.strip().lower() in NOT_FOUND_SENTINELS


def to_decimal(value: Any) -> Decimal | None:
    """Parse a raw number or numeric string ("€1,234.50") into a Decimal.

    Returns:
        Decimal, or None when the value is missing, not numeric or not finite
    """
    if is_not_found(value) or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, int | float):
        number = Decimal(str(value))
    elif isinstance(value, str):
        cleaned = value.replace("€", "").replace(",", "").replace(" ", "").strip()
        try:
            number = Decimal(cleaned)
        except InvalidOperation:
            return None
    else:
        return None
    return number if number.is_finite() else None


def to_confidence(value: Any) -> float | None:
    """Coerce a raw confidence annotation.

    Only a missing annotation yields None. Numeric strings are parsed; any
    other present value, and out-of-range or NaN numbers, count as zero
    confidence so a broken annotation can only lower trust.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return 0.0
    elif isinstance(value, int | float | Decimal):
        number = float(value)
    else:
        return 0.0
    if number != number or number < 0 or number > 1:  # NaN or out of range
        return 0.0
    return number


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


class _Reader:
    """Reads annotated fields from raw sections and remembers which it consumed."""

    def __init__(self) -> None:
        self.consumed: set[str] = set()

    def text(self, section: Mapping[str, Any], key: str, path: str) -> Text:
        full_path = _join(path, key)
        self.consumed.add(full_path)
        raw = section.get(key)
        value = None if is_not_found(raw) else str(raw).strip()
        return Text(value=value, confidence=to_confidence(section.get(key + CONF_SUFFIX)))

    def first_text(self, section: Mapping[str, Any], keys: tuple[str, ...], path: str) -> Text:
        """Read the first of several alternative keys that holds a value."""
        candidates = [self.text(section, key, path) for key in keys]
        for candidate in candidates:
            if candidate.present:
                return candidate
        return candidates[0]

    def amount(self, section: Mapping[str, Any], key: str, path: str) -> Amount:
        full_path = _join(path, key)
        self.consumed.add(full_path)
        return Amount(
            value=to_decimal(section.get(key)),
            confidence=to_confidence(section.get(key + CONF_SUFFIX)),
        )


def normalize_extraction(raw: Any) -> ExtractedDocument:
    """Convert a raw extraction payload of either shape into an ExtractedDocument.

    Args:
        raw: Parsed JSON payload from the extraction oracle (or a reviewer's edit of it)

    Returns:
        Canonical ExtractedDocument

    Raises:
        SchemaShapeError: If the payload has neither a bills array nor any legacy section
    """
    if not isinstance(raw, Mapping):
        raise SchemaShapeError(f"Extraction payload must be an object, got {type(raw).__name__}")

    reader = _Reader()
    if isinstance(raw.get("bills"), list):
        document = _normalize_multi_bill(raw, reader)
    elif any(isinstance(raw.get(section), Mapping) for section in _LEGACY_SECTIONS):
        document = _normalize_legacy(raw, reader)
    else:
        raise SchemaShapeError("Extraction payload has no bills container")

    _attach_flagged_services(document)
    document.extras = collect_unmapped_confidences(raw, reader.consumed)
    return document


def _classification(raw: Mapping[str, Any]) -> Classification:
    section = _mapping(raw.get("classification"))
    return Classification(
        document_class=section.get("document_class") or raw.get("document_class"),
        document_subclass=section.get("document_subclass") or raw.get("document_subclass"),
        supplier_name=section.get("supplier_name") or raw.get("supplier_name"),
        confidence=to_confidence(section.get("confidence")),
    )


def _service_flags(raw: Mapping[str, Any]) -> ServiceFlags:
    flags = _mapping(raw.get("services_details"))
    return ServiceFlags(**{service: _flag(flags.get(service)) for service in SERVICE_TYPES})


def _payment(raw: Mapping[str, Any], reader: _Reader) -> Payment:
    section = _mapping(raw.get("payment_details"))
    return Payment(
        total_amount_due=reader.amount(section, "total_amount_due", "payment_details"),
        previous_balance=reader.amount(section, "previous_balance", "payment_details"),
        current_charges=reader.amount(section, "current_charges", "payment_details"),
    )


# ---------------------------------------------------------------------------
# Legacy shape
# ---------------------------------------------------------------------------


def _normalize_legacy(raw: Mapping[str, Any], reader: _Reader) -> ExtractedDocument:
    customer_raw = _mapping(raw.get("customer_details"))
    address_raw = _mapping(customer_raw.get("billing_address"))
    supplier_raw = _mapping(raw.get("supplier_details"))

    address_path = "customer_details.billing_address"
    customer = Customer(
        name=reader.text(customer_raw, "customer_name", "customer_details"),
        account_number=reader.text(customer_raw, "account_number", "customer_details"),
        address=Address(
            raw=reader.text(customer_raw, "address", "customer_details"),
            line1=reader.text(address_raw, "line1", address_path),
            line2=reader.text(address_raw, "line2", address_path),
            city=reader.text(address_raw, "city", address_path),
            county=reader.text(address_raw, "county", address_path),
            eircode=reader.text(address_raw, "eircode", address_path),
        ),
    )

    supplier = Supplier(
        name=reader.text(supplier_raw, "supplier_name", "supplier_details"),
        vat_number=reader.text(supplier_raw, "vat_number", "supplier_details"),
    )
    shared_billing = Billing(
        invoice_number=reader.text(supplier_raw, "invoice_number", "supplier_details"),
        issue_date=reader.text(supplier_raw, "issue_date", "supplier_details"),
        due_date=reader.text(supplier_raw, "due_date", "supplier_details"),
        period_start=reader.text(supplier_raw, "billing_period_start", "supplier_details"),
        period_end=reader.text(supplier_raw, "billing_period_end", "supplier_details"),
        payment_method=reader.text(supplier_raw, "payment_method", "supplier_details"),
    )

    bills: list[Bill] = []

    elec_raw = raw.get("electricity_bill")
    if isinstance(elec_raw, Mapping):
        bills.append(
            _legacy_electricity(elec_raw, reader, supplier, customer, shared_billing)
        )

    gas_raw = raw.get("gas_bill")
    if isinstance(gas_raw, Mapping):
        bills.append(_legacy_gas(gas_raw, reader, supplier, customer, shared_billing))

    bb_raw = raw.get("broadband_bill")
    if isinstance(bb_raw, Mapping):
        bills.append(_legacy_broadband(bb_raw, reader, supplier, customer, shared_billing))

    if not bills:
        # Keep invoice identity and dates even when no service section was found
        bills.append(
            Bill(supplier=supplier, account_number=customer.account_number, billing=shared_billing)
        )

    services = _service_flags(raw)
    return ExtractedDocument(
        source_shape="legacy",
        classification=_classification(raw),
        customer=customer,
        services=services,
        payment=_payment(raw, reader),
        bills=bills,
    )


def _legacy_electricity(
    section: Mapping[str, Any],
    reader: _Reader,
    supplier: Supplier,
    customer: Customer,
    shared_billing: Billing,
) -> Bill:
    path = "electricity_bill"
    registers: list[Register] = []
    raw_registers = section.get("registers")
    if isinstance(raw_registers, list):
        for index, item in enumerate(raw_registers):
            reg = _mapping(item)
            reg_path = f"{path}.registers[{index}]"
            registers.append(
                Register(
                    band=str(reg.get("time_band") or ""),
                    current_reading=reader.amount(reg, "current_reading", reg_path),
                    previous_reading=reader.amount(reg, "previous_reading", reg_path),
                    units_used=reader.amount(reg, "units_used", reg_path),
                    unit_rate=reader.amount(reg, "unit_rate", reg_path),
                    unit_charge=reader.amount(reg, "unit_charge", reg_path),
                )
            )

    details = ElectricityDetails(
        mprn=reader.text(section, "mprn", path),
        mcc=reader.text(section, "mcc_code", path),
        dg=reader.text(section, "dg_code", path),
        profile=reader.text(section, "profile_code", path),
        meter_number=reader.text(section, "meter_number", path),
        multiplier=reader.amount(section, "multiplier", path),
        reading_type=reader.text(section, "reading_type", path),
        registers=registers,
        unit_rates=[UnitRate(band=reg.band, rate=reg.unit_rate) for reg in registers],
    )
    return Bill(
        bill_type="electricity",
        supplier=supplier,
        account_number=customer.account_number,
        billing=shared_billing.model_copy(
            update={
                "contract_end_date": reader.text(section, "contract_end_date", path),
                "plan_name": reader.text(section, "tariff_name", path),
            }
        ),
        charges=Charges(
            standing_charge=reader.amount(section, "standing_charge", path),
            pso_levy=reader.amount(section, "pso_levy", path),
            discount_amount=reader.amount(section, "discount_amount", path),
            credits=reader.amount(section, "microgen_credit", path),
            vat_rate=reader.amount(section, "vat_rate", path),
            vat_amount=reader.amount(section, "vat_amount", path),
            total_due=reader.amount(section, "total_charges", path),
        ),
        electricity=details,
    )


def _legacy_gas(
    section: Mapping[str, Any],
    reader: _Reader,
    supplier: Supplier,
    customer: Customer,
    shared_billing: Billing,
) -> Bill:
    path = "gas_bill"
    details = GasDetails(
        gprn=reader.text(section, "gprn", path),
        current_reading=reader.amount(section, "current_reading", path),
        previous_reading=reader.amount(section, "previous_reading", path),
        units_used_m3=reader.amount(section, "units_used_m3", path),
        units_used_kwh=reader.amount(section, "units_used_kwh", path),
        unit_rate=reader.amount(section, "unit_rate", path),
        unit_charge=reader.amount(section, "unit_charge", path),
    )
    return Bill(
        bill_type="gas",
        supplier=supplier,
        account_number=customer.account_number,
        billing=shared_billing.model_copy(
            update={
                "contract_end_date": reader.text(section, "contract_end_date", path),
                "plan_name": reader.text(section, "tariff_name", path),
            }
        ),
        charges=Charges(
            standing_charge=reader.amount(section, "standing_charge", path),
            carbon_tax=reader.amount(section, "carbon_tax", path),
            vat_rate=reader.amount(section, "vat_rate", path),
            vat_amount=reader.amount(section, "vat_amount", path),
            total_due=reader.amount(section, "total_charges", path),
        ),
        gas=details,
    )


def _legacy_broadband(
    section: Mapping[str, Any],
    reader: _Reader,
    supplier: Supplier,
    customer: Customer,
    shared_billing: Billing,
) -> Bill:
    path = "broadband_bill"
    package = reader.text(section, "package_name", path)
    details = BroadbandDetails(
        landline_number=reader.text(section, "phone_number", path),
        broadband_number=reader.text(section, "account_number", path),
        package_name=package,
        contract_end_date=reader.text(section, "contract_end_date", path),
        technology=reader.text(section, "connection_type", path),
        data_usage=reader.text(section, "data_usage", path),
    )
    return Bill(
        bill_type="broadband",
        supplier=supplier,
        account_number=customer.account_number,
        billing=shared_billing.model_copy(
            update={"contract_end_date": details.contract_end_date, "plan_name": package}
        ),
        charges=Charges(
            service_charge=reader.amount(section, "monthly_charge", path),
            vat_rate=reader.amount(section, "vat_rate", path),
            vat_amount=reader.amount(section, "vat_amount", path),
            total_due=reader.amount(section, "total_charges", path),
        ),
        broadband=details,
    )


# ---------------------------------------------------------------------------
# Multi-bill shape
# ---------------------------------------------------------------------------


def _normalize_multi_bill(raw: Mapping[str, Any], reader: _Reader) -> ExtractedDocument:
    bills = [
        _multi_bill_entry(_mapping(item), f"bills[{index}]", reader)
        for index, item in enumerate(raw["bills"])
    ]

    customer = Customer()
    if raw["bills"]:
        first_account = _mapping(_mapping(raw["bills"][0]).get("account"))
        account_path = "bills[0].account"
        customer = Customer(
            name=reader.text(first_account, "account_holder_name", account_path),
            account_number=bills[0].account_number,
            address=Address(raw=reader.text(first_account, "account_address", account_path)),
        )

    if isinstance(raw.get("payment_details"), Mapping):
        payment = _payment(raw, reader)
    else:
        payment = Payment(total_amount_due=_sum_amounts([b.charges.total_due for b in bills]))

    return ExtractedDocument(
        source_shape="multi_bill",
        classification=_classification(raw),
        customer=customer,
        services=_service_flags(raw),
        payment=payment,
        bills=bills,
    )


def _sum_amounts(amounts: list[Amount]) -> Amount:
    """Combine per-bill totals; the result is only as trustworthy as its weakest part."""
    present = [amount for amount in amounts if amount.present]
    if not present:
        return Amount()
    confidences = [0.0 if a.confidence is None else a.confidence for a in present]
    return Amount(
        value=sum((a.value for a in present if a.value is not None), Decimal("0")),
        confidence=min(confidences),
    )


def _multi_bill_entry(bill: Mapping[str, Any], path: str, reader: _Reader) -> Bill:
    bill_type = str(bill.get("bill_type") or "").lower()
    supplier_raw = _mapping(bill.get("supplier"))
    account = _mapping(bill.get("account"))
    billing_raw = _mapping(bill.get("billing"))
    totals = _mapping(bill.get("totals"))

    supplier_path = f"{path}.supplier"
    account_path = f"{path}.account"
    billing_path = f"{path}.billing"
    totals_path = f"{path}.totals"

    entry = Bill(
        bill_type=bill_type or None,
        supplier=Supplier(
            name=reader.text(supplier_raw, "name", supplier_path),
            vat_number=reader.text(supplier_raw, "vat_number", supplier_path),
        ),
        account_number=reader.text(account, "account_number", account_path),
        billing=Billing(
            invoice_number=reader.text(billing_raw, "invoice_number", billing_path),
            issue_date=reader.text(billing_raw, "bill_issue_date", billing_path),
            due_date=reader.text(billing_raw, "payment_due_date", billing_path),
            period_start=reader.text(billing_raw, "billing_period_start", billing_path),
            period_end=reader.text(billing_raw, "billing_period_end", billing_path),
            contract_end_date=reader.text(billing_raw, "contract_end_date", billing_path),
            plan_name=reader.text(billing_raw, "plan_name", billing_path),
            payment_method=reader.text(billing_raw, "payment_method", billing_path),
        ),
        charges=Charges(
            service_charge=reader.amount(totals, "service_charge_total", totals_path),
            standing_charge=reader.amount(totals, "standing_charge_total", totals_path),
            pso_levy=reader.amount(totals, "pso_levy_total", totals_path),
            carbon_tax=reader.amount(totals, "carbon_tax_total", totals_path),
            discount_amount=reader.amount(totals, "discount_total", totals_path),
            credits=reader.amount(totals, "credit_total", totals_path),
            vat_rate=reader.amount(totals, "vat_rate", totals_path),
            vat_amount=reader.amount(totals, "vat_total", totals_path),
            total_due=reader.amount(totals, "total_due", totals_path),
            previous_bill_amount=reader.amount(totals, "previous_bill_amount", totals_path),
        ),
    )

    mprn = reader.text(account, "mprn", account_path)
    if "electric" in bill_type or mprn.present:
        entry.electricity = _multi_electricity(
            _mapping(bill.get("electricity_specific")), account, mprn, path, reader
        )

    gprn = reader.text(account, "gprn", account_path)
    if "gas" in bill_type or gprn.present:
        entry.gas = _multi_gas(_mapping(bill.get("gas_specific")), gprn, path, reader)

    bb_spec = _mapping(bill.get("broadband_specific"))
    if (
        "broadband" in bill_type
        or "internet" in bill_type
        or isinstance(bb_spec.get("service_numbers"), Mapping)
    ):
        entry.broadband = _multi_broadband(bb_spec, path, reader)

    return entry


def _multi_electricity(
    spec: Mapping[str, Any],
    account: Mapping[str, Any],
    mprn: Text,
    path: str,
    reader: _Reader,
) -> ElectricityDetails:
    spec_path = f"{path}.electricity_specific"
    account_path = f"{path}.account"

    registers: list[Register] = []
    meter_reads = spec.get("meter_reads")
    if isinstance(meter_reads, list):
        for index, item in enumerate(meter_reads):
            read = _mapping(item)
            read_path = f"{spec_path}.meter_reads[{index}]"
            registers.append(
                Register(
                    band=str(read.get("band") or ""),
                    read_type=reader.text(read, "current_read_type", read_path),
                    current_reading=reader.amount(read, "current_read", read_path),
                    previous_reading=reader.amount(read, "previous_read", read_path),
                    units_used=reader.amount(read, "units_used", read_path),
                    unit_charge=reader.amount(read, "unit_charge", read_path),
                )
            )

    unit_rates: list[UnitRate] = []
    raw_rates = spec.get("unit_rates")
    if isinstance(raw_rates, list):
        for index, item in enumerate(raw_rates):
            rate = _mapping(item)
            rate_path = f"{spec_path}.unit_rates[{index}]"
            unit_rates.append(
                UnitRate(
                    band=str(rate.get("band") or ""),
                    rate=reader.amount(rate, "rate_per_kwh", rate_path),
                )
            )

    reading_type = registers[0].read_type if registers else Text()
    return ElectricityDetails(
        mprn=mprn,
        mcc=reader.text(account, "mcc", account_path),
        dg=reader.first_text(account, ("dg", "dg_mapped_value"), account_path),
        profile=reader.text(account, "profile_class", account_path),
        meter_number=reader.text(account, "meter_number", account_path),
        multiplier=reader.amount(spec, "multiplier", spec_path),
        reading_type=reading_type,
        standing_charge_per_day=reader.amount(spec, "standing_charge_per_day", spec_path),
        registers=registers,
        unit_rates=unit_rates,
    )


def _multi_gas(spec: Mapping[str, Any], gprn: Text, path: str, reader: _Reader) -> GasDetails:
    spec_path = f"{path}.gas_specific"
    reads = _mapping(spec.get("meter_reads"))
    reads_path = f"{spec_path}.meter_reads"
    return GasDetails(
        gprn=gprn,
        read_type=reader.text(reads, "current_read_type", reads_path),
        current_reading=reader.amount(reads, "current_read", reads_path),
        previous_reading=reader.amount(reads, "previous_read", reads_path),
        units_used_m3=reader.amount(reads, "units_m3", reads_path),
        units_used_kwh=reader.amount(reads, "units_kwh", reads_path),
        unit_rate=reader.amount(spec, "unit_rate_per_kwh", spec_path),
        unit_charge=reader.amount(spec, "unit_charge_total", spec_path),
        standing_charge_per_day=reader.amount(spec, "standing_charge_per_day", spec_path),
    )


def _multi_broadband(spec: Mapping[str, Any], path: str, reader: _Reader) -> BroadbandDetails:
    spec_path = f"{path}.broadband_specific"
    numbers = _mapping(spec.get("service_numbers"))
    plan = _mapping(spec.get("plan"))
    speed = _mapping(spec.get("speed"))
    bank = _mapping(spec.get("bank_transfer"))
    return BroadbandDetails(
        landline_number=reader.text(numbers, "landline_number", f"{spec_path}.service_numbers"),
        broadband_number=reader.text(
            numbers, "broadband_service_number", f"{spec_path}.service_numbers"
        ),
        uan=reader.text(numbers, "uan", f"{spec_path}.service_numbers"),
        package_name=reader.text(plan, "name", f"{spec_path}.plan"),
        contract_end_date=reader.text(plan, "contract_end_date", f"{spec_path}.plan"),
        technology=reader.text(speed, "technology", f"{spec_path}.speed"),
        download_mbps=reader.amount(speed, "down_mbps", f"{spec_path}.speed"),
        upload_mbps=reader.amount(speed, "up_mbps", f"{spec_path}.speed"),
        data_usage=reader.text(spec, "data_usage", spec_path),
        iban=reader.text(bank, "iban", f"{spec_path}.bank_transfer"),
        bic=reader.text(bank, "bic", f"{spec_path}.bank_transfer"),
    )


# ---------------------------------------------------------------------------
# Shared post-processing
# ---------------------------------------------------------------------------


def _attach_flagged_services(document: ExtractedDocument) -> None:
    """Give every flagged service a home so it is never silently dropped.

    A service declared in the document flags but carried by no bill is
    attached, empty, to the first bill. Flags are then widened to cover
    every service a bill carries.
    """
    detected = set(document.detected_services())
    factories = {
        "electricity": ElectricityDetails,
        "gas": GasDetails,
        "broadband": BroadbandDetails,
    }
    for service in SERVICE_TYPES:
        if getattr(document.services, service) and service not in detected:
            if not document.bills:
                document.bills.append(Bill())
            setattr(document.bills[0], service, factories[service]())
            logger.debug(f"Service '{service}' flagged but not found on any bill; attached empty")

    for service in document.detected_services():
        setattr(document.services, service, True)


def collect_unmapped_confidences(raw: Any, consumed: set[str]) -> dict[str, Valued[Any]]:
    """Find confidence-annotated raw fields that no canonical field consumed.

    Args:
        raw: Raw payload tree
        consumed: Raw paths already mapped onto canonical fields

    Returns:
        Mapping of raw path to Valued wrapper for every unmapped annotation
    """
    extras: dict[str, Valued[Any]] = {}
    stack: list[tuple[str, Any]] = [("", raw)]
    while stack:
        path, node = stack.pop()
        if isinstance(node, Mapping):
            for key, value in node.items():
                key = str(key)
                if key.endswith(CONF_SUFFIX) and value is not None:
                    base = key[: -len(CONF_SUFFIX)]
                    base_path = _join(path, base)
                    if base_path not in consumed:
                        base_value = node.get(base)
                        extras[base_path] = Valued[Any](
                            value=None if is_not_found(base_value) else base_value,
                            confidence=to_confidence(value),
                        )
                elif isinstance(value, Mapping | list):
                    stack.append((_join(path, key), value))
        elif isinstance(node, list):
            for index, item in enumerate(node):
                stack.append((f"{path}[{index}]", item))
    return extras
