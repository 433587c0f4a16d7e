"""Persisted records for documents and webhook subscriptions."""

import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from services.validation.models import ValidationResult

DocumentStatus = Literal["pending_review", "approved"]
EventType = Literal["document.created", "document.review_needed", "document.approved"]


def utcnow() -> datetime:
    return datetime.now(UTC)


class DocumentRecord(BaseModel):
    """A bill as stored after ingestion.

    ``status`` is decided once at ingestion. A ``pending_review`` document
    only becomes ``approved`` through an explicit approval.

    Attributes:
        extracted: Raw extraction payload (edited payload once approved)
        validation: Validator verdict at ingestion
        review_reasons: Review gate reasons, empty when auto-approved
        billing_response: Billing API response body, when submission succeeded
        billing_error: Billing failure description, when submission failed
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    file_name: str
    file_type: str
    file_url: str | None = None
    phone_number: str | None = None
    status: DocumentStatus = "pending_review"
    document_type: str | None = None
    supplier_name: str | None = None
    classification: dict[str, Any] = Field(default_factory=dict)
    extracted: dict[str, Any] = Field(default_factory=dict)
    validation: ValidationResult | None = None
    overall_confidence: float = 0.0
    critical_fields_ok: bool = False
    critical_fields_low: list[tuple[str, float]] = Field(default_factory=list)
    requires_review: bool = True
    review_reasons: list[str] = Field(default_factory=list)
    approved: bool = False
    approved_at: datetime | None = None
    auto_approved: bool = False
    billing_response: Any = None
    billing_error: str | None = None
    billing_sent_at: datetime | None = None
    billing_attempted_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class WebhookSubscription(BaseModel):
    """An endpoint notified of one event type."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    url: str
    event_type: EventType
    secret: str = ""
    active: bool = True
