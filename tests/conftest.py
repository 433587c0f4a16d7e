"""Shared fixtures: realistic raw extraction payloads in both historical shapes,
and a pipeline harness with a scripted extractor and a recording billing API.

Every payload fixture returns a fresh dict, so tests may mutate it freely.
"""

import copy
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest

from services.billing.client import BillingClient
from services.extraction.base import DocumentPage, ExtractionProvider, ExtractionResult
from services.extraction.schema import ExtractedDocument
from services.intake.pipeline import IngestRequest, IntakePipeline
from services.learning.corrections import Correction
from services.learning.templates import LearningContext, TemplateLearner, TemplateSynthesizer
from services.repository.memory import InMemoryRepository
from services.shared.config import Settings
from services.validation.base import ValidationProvider
from services.validation.models import ValidationResult
from services.validation.rules_provider import RulesValidationProvider
from services.validation.service import ValidationService

HIGH = 0.999


def annotate(fields: dict[str, Any], conf: float = HIGH) -> dict[str, Any]:
    """Pair every field with a ``<name>_conf`` sibling."""
    annotated: dict[str, Any] = {}
    for name, value in fields.items():
        annotated[name] = value
        annotated[f"{name}_conf"] = conf
    return annotated


@pytest.fixture
def settings() -> Settings:
    """Create test settings with in-memory persistence and no external services."""
    return Settings(
        repository_backend="memory",
        extraction_provider="openai",
        validation_provider="rules",
        storage_enabled=False,
        queue_enabled=False,
        billing_api_key="test-billing-key",
        billing_api_url="https://billing.test/api/v2/bills",
    )


@pytest.fixture
def legacy_payload() -> dict[str, Any]:
    """Single-service electricity bill in the legacy shape.

    Itemized charges reconcile: 80.00 + 20.00 + 10.09 + 9.91 = 120.00.
    """
    return {
        "classification": {
            "document_class": "utility_bill",
            "document_subclass": "electricity",
            "supplier_name": "Electric Ireland",
            "confidence": 0.97,
        },
        "services_details": {"electricity": True, "gas": False, "broadband": False},
        "customer_details": {
            **annotate({"customer_name": "Mary Murphy", "account_number": "950123456"}),
            "billing_address": annotate(
                {
                    "line1": "15 Dromin Court",
                    "city": "Nenagh",
                    "county": "Co. Tipperary",
                    "eircode": "E45 NW99",
                }
            ),
        },
        "supplier_details": annotate(
            {
                "supplier_name": "Electric Ireland",
                "invoice_number": "INV-1001",
                "issue_date": "2025-02-01",
                "due_date": "2025-03-01",
                "billing_period_start": "2025-01-01",
                "billing_period_end": "2025-01-31",
                "payment_method": "Direct Debit",
            }
        ),
        "electricity_bill": {
            **annotate(
                {
                    "mprn": "10012345678",
                    "mcc_code": "MCC01",
                    "dg_code": "DG1",
                    "reading_type": "A",
                    "tariff_name": "Home Electric+",
                    "standing_charge": 20.00,
                    "pso_levy": 10.09,
                    "vat_rate": 9,
                    "vat_amount": 9.91,
                    "total_charges": 120.00,
                }
            ),
            "registers": [
                {
                    "time_band": "24hr",
                    **annotate(
                        {
                            "current_reading": 12500,
                            "previous_reading": 12100,
                            "units_used": 400,
                            "unit_rate": 0.20,
                            "unit_charge": 80.00,
                        }
                    ),
                }
            ],
        },
        "gas_bill": None,
        "broadband_bill": None,
        "payment_details": annotate({"total_amount_due": 120.00}),
    }


def _multi_billing(invoice: str) -> dict[str, Any]:
    return annotate(
        {
            "invoice_number": invoice,
            "bill_issue_date": "2025-02-03",
            "payment_due_date": "2025-02-24",
            "billing_period_start": "2024-12-01",
            "billing_period_end": "2025-01-31",
            "plan_name": "Dual Fuel Saver",
            "payment_method": "Direct Debit",
        }
    )


@pytest.fixture
def multi_bill_payload() -> dict[str, Any]:
    """Dual fuel (electricity + gas) document in the multi-bill shape.

    Electricity: 120.00 + 30.00 + 25.00 + 6.50 + 16.34 = 197.84.
    Gas: 160.80 + 15.00 + 8.20 + 16.56 = 200.56.
    """
    supplier = annotate({"name": "Bord Gais Energy"})
    return {
        "classification": {
            "document_class": "utility_bill",
            "document_subclass": "dual_fuel",
            "supplier_name": "Bord Gais Energy",
            "confidence": 0.96,
        },
        "services_details": {"electricity": True, "gas": True, "broadband": False},
        "bills": [
            {
                "bill_type": "electricity",
                "supplier": dict(supplier),
                "account": annotate(
                    {
                        "account_number": "7001234567",
                        "account_holder_name": "Sean Kelly",
                        "account_address": (
                            "12 Main Street, Applewood, Swords, Co. Dublin, K67 X2Y3"
                        ),
                        "mprn": "10098765432",
                        "mcc": "MCC02",
                        "dg": "DG1",
                    }
                ),
                "billing": _multi_billing("E-2001"),
                "totals": annotate(
                    {
                        "standing_charge_total": 25.00,
                        "pso_levy_total": 6.50,
                        "vat_rate": 9,
                        "vat_total": 16.34,
                        "total_due": 197.84,
                    }
                ),
                "electricity_specific": {
                    "meter_reads": [
                        {
                            "band": "Day",
                            **annotate(
                                {
                                    "current_read": 45210,
                                    "previous_read": 44810,
                                    "units_used": 400,
                                    "current_read_type": "A",
                                    "unit_charge": 120.00,
                                }
                            ),
                        },
                        {
                            "band": "Night",
                            **annotate(
                                {
                                    "current_read": 20150,
                                    "previous_read": 19950,
                                    "units_used": 200,
                                    "current_read_type": "A",
                                    "unit_charge": 30.00,
                                }
                            ),
                        },
                    ],
                    "unit_rates": [
                        {"band": "Day", **annotate({"rate_per_kwh": 0.30})},
                        {"band": "Night", **annotate({"rate_per_kwh": 0.15})},
                    ],
                    **annotate({"standing_charge_per_day": 0.4098}),
                },
            },
            {
                "bill_type": "gas",
                "supplier": dict(supplier),
                "account": annotate({"account_number": "7001234567", "gprn": "1234567"}),
                "billing": _multi_billing("G-2001"),
                "totals": annotate(
                    {
                        "standing_charge_total": 15.00,
                        "carbon_tax_total": 8.20,
                        "vat_rate": 9,
                        "vat_total": 16.56,
                        "total_due": 200.56,
                    }
                ),
                "gas_specific": {
                    "meter_reads": annotate(
                        {
                            "current_read": 5120,
                            "previous_read": 5000,
                            "units_m3": 120,
                            "units_kwh": 1340,
                            "current_read_type": "E",
                        }
                    ),
                    **annotate(
                        {
                            "unit_rate_per_kwh": 0.12,
                            "unit_charge_total": 160.80,
                            "standing_charge_per_day": 0.2466,
                        }
                    ),
                },
            },
        ],
    }


@pytest.fixture
def broadband_payload() -> dict[str, Any]:
    """Broadband-only document in the multi-bill shape.

    Charges reconcile: 45.00 + 10.35 = 55.35.
    """
    return {
        "classification": {
            "document_class": "utility_bill",
            "document_subclass": "broadband",
            "supplier_name": "Eir",
            "confidence": 0.95,
        },
        "services_details": {"electricity": False, "gas": False, "broadband": True},
        "bills": [
            {
                "bill_type": "broadband",
                "supplier": annotate({"name": "Eir"}),
                "account": annotate(
                    {
                        "account_number": "BB-99812",
                        "account_holder_name": "Aoife Walsh",
                        "account_address": "4 Castle Road, Salthill, Galway, Co. Galway, H91 E2K8",
                    }
                ),
                "billing": annotate(
                    {
                        "invoice_number": "EIR-5531",
                        "bill_issue_date": "2025-03-01",
                        "payment_due_date": "2025-03-15",
                        "billing_period_start": "2025-02-01",
                        "billing_period_end": "2025-02-28",
                        "payment_method": "Bank Transfer",
                    }
                ),
                "totals": annotate(
                    {
                        "service_charge_total": 45.00,
                        "vat_rate": 23,
                        "vat_total": 10.35,
                        "total_due": 55.35,
                        "previous_bill_amount": 55.35,
                    }
                ),
                "broadband_specific": {
                    "service_numbers": annotate(
                        {
                            "landline_number": "091 555 123",
                            "broadband_service_number": "BBN-4471",
                            "uan": "UAN-0091",
                        }
                    ),
                    "plan": annotate(
                        {"name": "Fibre 500", "contract_end_date": "2026-02-28"}
                    ),
                    "speed": annotate({"technology": "FTTH", "down_mbps": 500, "up_mbps": 100}),
                    "bank_transfer": annotate(
                        {"iban": "IE29AIBK93115212345678", "bic": "AIBKIE2D"}
                    ),
                    **annotate({"data_usage": "Unlimited"}),
                },
            }
        ],
    }


class ScriptedExtractor(ExtractionProvider):
    """Returns a fixed payload (or error) and records the hints it was given."""

    def __init__(
        self, settings: Settings, payload: dict[str, Any] | None, error: str | None = None
    ) -> None:
        super().__init__(settings)
        self.payload = payload
        self.error = error
        self.hints: list[dict[str, Any] | None] = []
        self.page_counts: list[int] = []

    @property
    def provider_name(self) -> str:
        return "scripted"

    def is_available(self) -> bool:
        return True

    async def extract(
        self, pages: list[DocumentPage], hints: dict[str, Any] | None = None
    ) -> ExtractionResult:
        self.hints.append(hints)
        self.page_counts.append(len(pages))
        if self.error is not None:
            return ExtractionResult(
                payload=None, success=False, error=self.error, provider=self.provider_name
            )
        return ExtractionResult(
            payload=copy.deepcopy(self.payload), success=True, provider=self.provider_name
        )


class FailingValidator(ValidationProvider):
    """Validation oracle that is always down."""

    @property
    def provider_name(self) -> str:
        return "failing"

    def is_available(self) -> bool:
        return True

    async def validate(self, document: ExtractedDocument) -> ValidationResult:
        raise ConnectionError("validation oracle unreachable")


class FixedValidator(ValidationProvider):
    """Validation oracle returning a fixed status."""

    def __init__(self, settings: Settings, status: str = "passed") -> None:
        super().__init__(settings)
        self.status = status

    @property
    def provider_name(self) -> str:
        return "fixed"

    def is_available(self) -> bool:
        return True

    async def validate(self, document: ExtractedDocument) -> ValidationResult:
        return ValidationResult(status=self.status, overall_confidence=1.0, provider="fixed")


class RecordingSynthesizer(TemplateSynthesizer):
    """Pattern synthesis that records the corrections it learned from."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.batches: list[list[str]] = []

    async def synthesize(
        self,
        existing: dict[str, Any] | None,
        corrections: list[Correction],
        context: LearningContext,
        supplier_name: str,
        document_type: str,
    ) -> dict[str, Any]:
        if self.fail:
            raise RuntimeError("synthesis oracle unreachable")
        paths = [c.field_path for c in corrections]
        self.batches.append(paths)
        return {"corrected_fields": paths}


@dataclass
class BillingRecorder:
    """Mock billing API endpoint."""

    status_code: int = 201
    bodies: list[dict[str, Any]] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        if self.status_code >= 400:
            return httpx.Response(self.status_code, text="billing rejected")
        return httpx.Response(self.status_code, json={"id": f"bill-{len(self.bodies)}"})


@dataclass
class PipelineHarness:
    pipeline: IntakePipeline
    repository: InMemoryRepository
    extractor: ScriptedExtractor
    billing_api: BillingRecorder
    synthesizer: RecordingSynthesizer


@pytest.fixture
def make_harness(settings: Settings) -> Callable[..., PipelineHarness]:
    """Build a pipeline over the in-memory repository.

    Validation uses the rule engine unless another provider is given.
    """

    def build(
        payload: dict[str, Any] | None,
        extraction_error: str | None = None,
        validator: ValidationProvider | None = None,
        billing_status: int = 201,
        synthesis_fails: bool = False,
    ) -> PipelineHarness:
        repository = InMemoryRepository()
        extractor = ScriptedExtractor(settings, payload, extraction_error)
        billing_api = BillingRecorder(status_code=billing_status)
        synthesizer = RecordingSynthesizer(fail=synthesis_fails)
        pipeline = IntakePipeline(
            settings=settings,
            repository=repository,
            extractor=extractor,
            validation=ValidationService(validator or RulesValidationProvider(settings), settings),
            billing=BillingClient(
                settings,
                http_client=httpx.AsyncClient(transport=httpx.MockTransport(billing_api)),
            ),
            learner=TemplateLearner(repository, synthesizer),
        )
        return PipelineHarness(pipeline, repository, extractor, billing_api, synthesizer)

    return build


@pytest.fixture
def make_request() -> Callable[..., IngestRequest]:
    """Build a one-page PNG upload request."""

    def build(autopilot: bool | None = True, **kwargs: Any) -> IngestRequest:
        return IngestRequest(
            file_name="bill.png",
            file_type="image/png",
            pages=[DocumentPage(content=b"\x89PNG bill", content_type="image/png")],
            phone_number="0871234567",
            autopilot=autopilot,
            **kwargs,
        )

    return build


@pytest.fixture
def failing_validator(settings: Settings) -> ValidationProvider:
    """Validation oracle that always raises."""
    return FailingValidator(settings)


@pytest.fixture
def passing_validator(settings: Settings) -> ValidationProvider:
    """Validation oracle that always passes."""
    return FixedValidator(settings, "passed")
