"""Bill intake orchestration: ingest, approve, learn.

Each operation persists its outcome and returns the events it emitted; the
caller hands those to the webhook dispatcher. Billing submission is best
effort and never undoes an approval.
"""

import asyncio
import logging
import time
import uuid
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from services.api import metrics
from services.billing.client import BillingClient, BillingResult
from services.billing.transformer import BillingTransformer, TransformError
from services.extraction.base import DocumentPage, ExtractionProvider
from services.extraction.normalize import SchemaShapeError, normalize_extraction
from services.extraction.schema import ExtractedDocument
from services.learning.corrections import Correction, CorrectionSession, FieldEdit
from services.learning.templates import (
    LearningContext,
    SupplierTemplate,
    TemplateLearner,
    TemplateLearningError,
)
from services.learning.training import TrainingExample
from services.repository.base import DocumentNotFoundError, Repository
from services.repository.models import DocumentRecord, utcnow
from services.review.confidence import aggregate_confidence
from services.review.critical import check_critical_fields
from services.review.gate import ReviewDecision, ReviewThresholds, decide_review
from services.shared.config import Settings
from services.storage.service import StorageService
from services.validation.service import ValidationService
from services.webhooks.dispatcher import PipelineEvent

logger = logging.getLogger(__name__)

DEFAULT_DOCUMENT_TYPE = "utility_bill"


class IngestionError(Exception):
    """Raised when a bill cannot be turned into an extraction."""


class DocumentAlreadyApprovedError(Exception):
    """Raised when approving a document that is already approved."""


class IngestRequest(BaseModel):
    """One uploaded bill.

    Attributes:
        pages: Page images in order (multi-page bills are one document)
        autopilot: Permit automatic approval; None uses settings.autopilot_default
        supplier_hint: Supplier whose learned template steers extraction
        document_type_hint: Document type of that template
    """

    file_name: str
    file_type: str
    pages: list[DocumentPage]
    phone_number: str | None = None
    autopilot: bool | None = None
    supplier_hint: str | None = None
    document_type_hint: str | None = None


class IngestResult(BaseModel):
    document: DocumentRecord
    decision: ReviewDecision
    billing: BillingResult | None = None
    events: list[PipelineEvent] = Field(default_factory=list)


class ApprovalResult(BaseModel):
    """Outcome of an explicit approval.

    The approval and its corrections are saved before billing and learning
    run; ``billing_error`` and ``learning_error`` report those separately.
    """

    document_id: str
    corrections: list[Correction] = Field(default_factory=list)
    billing_sent: bool = False
    billing_response: Any = None
    billing_error: str | None = None
    template: SupplierTemplate | None = None
    learning_error: str | None = None
    events: list[PipelineEvent] = Field(default_factory=list)

    @property
    def corrections_saved(self) -> int:
        return len(self.corrections)


class IntakePipeline:
    """Wires extraction, review, approval and learning together."""

    def __init__(
        self,
        settings: Settings,
        repository: Repository,
        extractor: ExtractionProvider,
        validation: ValidationService,
        billing: BillingClient,
        learner: TemplateLearner | None = None,
        storage: StorageService | None = None,
        transformer: BillingTransformer | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.extractor = extractor
        self.validation = validation
        self.billing = billing
        self.learner = learner
        self.storage = storage
        self.transformer = transformer or BillingTransformer()
        self.thresholds = ReviewThresholds.from_settings(settings)

    async def ingest(self, request: IngestRequest) -> IngestResult:
        """Extract, score, validate and gate one bill.

        Raises:
            ValueError: If the request carries no page content
            IngestionError: If extraction fails, times out or returns an unusable payload
        """
        if not request.pages or not all(page.content for page in request.pages):
            raise ValueError("Bill has no page content")

        document_id = str(uuid.uuid4())
        autopilot = (
            self.settings.autopilot_default if request.autopilot is None else request.autopilot
        )
        file_url = await self._store_pages(document_id, request)
        hints = await self._template_hints(request)

        raw = await self._extract(request.pages, hints)
        try:
            document = normalize_extraction(raw)
        except (SchemaShapeError, ValidationError) as e:
            metrics.documents_ingested_total.labels(status="failed").inc()
            raise IngestionError(f"Unusable extraction: {e}") from e

        overall = aggregate_confidence(document)
        critical_low = check_critical_fields(document, self.thresholds.critical)
        validation = await self.validation.validate(document)
        decision = decide_review(overall, critical_low, validation, autopilot, self.thresholds)

        now = utcnow()
        auto_approved = not decision.requires_review
        record = DocumentRecord(
            id=document_id,
            file_name=request.file_name,
            file_type=request.file_type,
            file_url=file_url,
            phone_number=request.phone_number,
            status="approved" if auto_approved else "pending_review",
            document_type=_document_type(document),
            supplier_name=document.classification.supplier_name,
            classification=document.classification.model_dump(mode="json"),
            extracted=raw,
            validation=validation,
            overall_confidence=overall,
            critical_fields_ok=decision.critical_fields_ok,
            critical_fields_low=decision.critical_fields_low,
            requires_review=decision.requires_review,
            review_reasons=decision.reasons,
            approved=auto_approved,
            approved_at=now if auto_approved else None,
            auto_approved=auto_approved,
            created_at=now,
            updated_at=now,
        )
        await self.repository.save_document(record)

        metrics.documents_ingested_total.labels(status=record.status).inc()
        for code in decision.reason_codes:
            metrics.review_reasons_total.labels(reason=code).inc()
        logger.info(
            f"Document {record.id} ingested: status={record.status}, "
            f"overall={overall:.3f}, validation={validation.status}"
        )

        events = [
            PipelineEvent(
                event_type="document.created",
                payload={
                    "document_id": record.id,
                    "file_name": record.file_name,
                    "document_type": record.document_type,
                    "supplier": record.supplier_name,
                    "requires_review": record.requires_review,
                    "overall_confidence": overall,
                },
            )
        ]

        billing: BillingResult | None = None
        if decision.requires_review:
            events.append(
                PipelineEvent(
                    event_type="document.review_needed",
                    payload={
                        "document_id": record.id,
                        "overall_confidence": overall,
                        "reasons": decision.reasons,
                        "validation_issues": [
                            issue.model_dump(mode="json") for issue in validation.issues
                        ],
                    },
                )
            )
        else:
            billing = await self._submit_billing(record)
            events.append(
                PipelineEvent(
                    event_type="document.approved",
                    payload={
                        "document_id": record.id,
                        "auto_approved": True,
                        "overall_confidence": overall,
                        "billing_success": billing.success,
                        "billing_error": billing.error,
                    },
                )
            )

        return IngestResult(document=record, decision=decision, billing=billing, events=events)

    async def approve(self, document_id: str, edits: list[FieldEdit]) -> ApprovalResult:
        """Apply reviewer edits, approve, learn and submit for billing.

        Raises:
            DocumentNotFoundError: If the document is unknown
            DocumentAlreadyApprovedError: If the document is already approved
            FieldPathError: If an edit names a path that cannot be set
        """
        record = await self._get(document_id)
        if record.approved:
            raise DocumentAlreadyApprovedError(f"Document {document_id} is already approved")

        session = CorrectionSession(record.id, record.extracted)
        corrections = session.apply_all(edits)
        original = record.extracted

        now = utcnow()
        record.extracted = session.edited
        record.status = "approved"
        record.approved = True
        record.approved_at = now
        record.requires_review = False
        record.updated_at = now
        await self.repository.save_document(record)

        if corrections:
            await self.repository.save_corrections(record.id, corrections)
            metrics.corrections_recorded_total.inc(len(corrections))
        await self.repository.save_training_example(
            TrainingExample(
                document_id=record.id,
                document_type=record.document_type,
                supplier_name=record.supplier_name,
                example_data=session.edited,
                notes=f"Corrections applied: {len(corrections)} fields",
                confidence_before=record.overall_confidence,
            )
        )
        logger.info(f"Document {record.id} approved with {len(corrections)} correction(s)")

        result = ApprovalResult(document_id=record.id, corrections=corrections)

        if corrections and self.learner is not None and self.settings.learn_on_approval:
            context = LearningContext(
                document_id=record.id,
                supplier_name=record.supplier_name,
                document_type=record.document_type,
                extraction=original,
            )
            try:
                result.template = await self.learner.learn(corrections, context)
            except (TemplateLearningError, ValueError) as e:
                logger.warning(f"Template learning skipped for document {record.id}: {e}")
                result.learning_error = str(e)

        billing = await self._submit_billing(record)
        result.billing_sent = billing.success
        result.billing_response = billing.response
        result.billing_error = billing.error

        result.events.append(
            PipelineEvent(
                event_type="document.approved",
                payload={
                    "document_id": record.id,
                    "corrections_count": len(corrections),
                    "auto_approved": False,
                    "billing_success": billing.success,
                    "billing_error": billing.error,
                },
            )
        )
        return result

    async def learn(
        self,
        document_id: str | None = None,
        corrections: list[Correction] | None = None,
        supplier_name: str | None = None,
        document_type: str | None = None,
    ) -> SupplierTemplate:
        """Refresh a supplier template outside the approval flow.

        With only a document id, the document's stored corrections are used.

        Raises:
            DocumentNotFoundError: If document_id is unknown
            ValueError: If there is nothing to learn from or no supplier
            TemplateLearningError: If the pattern-synthesis oracle fails
        """
        if self.learner is None:
            raise TemplateLearningError("Template learning is not configured")

        context = LearningContext(supplier_name=supplier_name, document_type=document_type)
        if document_id is not None:
            record = await self._get(document_id)
            context = LearningContext(
                document_id=record.id,
                supplier_name=supplier_name or record.supplier_name,
                document_type=document_type or record.document_type,
                extraction=record.extracted,
            )
            if corrections is None:
                corrections = await self.repository.list_corrections(record.id)

        return await self.learner.learn(corrections or [], context)

    async def _get(self, document_id: str) -> DocumentRecord:
        record = await self.repository.get_document(document_id)
        if record is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        return record

    async def _store_pages(self, document_id: str, request: IngestRequest) -> str | None:
        if self.storage is None or not self.storage.is_available():
            return None
        first_url: str | None = None
        for index, page in enumerate(request.pages):
            stored = await asyncio.to_thread(
                self.storage.store_bill,
                document_id,
                request.file_name,
                page.content,
                page.content_type,
                index,
            )
            if stored.success and stored.url:
                page.url = stored.url
                first_url = first_url or stored.url
            else:
                logger.warning(f"Storing page {index} of {document_id} failed: {stored.error}")
        return first_url

    async def _template_hints(self, request: IngestRequest) -> dict[str, Any] | None:
        if not request.supplier_hint:
            return None
        template = await self.repository.get_template(
            request.supplier_hint, request.document_type_hint or DEFAULT_DOCUMENT_TYPE
        )
        return template.template_data if template else None

    async def _extract(
        self, pages: list[DocumentPage], hints: dict[str, Any] | None
    ) -> dict[str, Any]:
        provider = self.extractor.provider_name
        start = time.time()
        try:
            result = await asyncio.wait_for(
                self.extractor.extract(pages, hints),
                timeout=self.settings.extraction_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            metrics.documents_ingested_total.labels(status="failed").inc()
            raise IngestionError(
                f"Extraction timed out after {self.settings.extraction_timeout_seconds}s"
            ) from e
        finally:
            metrics.extraction_duration_seconds.labels(provider=provider).observe(
                time.time() - start
            )

        if not result.success or result.payload is None:
            metrics.documents_ingested_total.labels(status="failed").inc()
            raise IngestionError(result.error or "Extraction returned no data")
        return result.payload

    async def _submit_billing(self, record: DocumentRecord) -> BillingResult:
        """Transform and submit; outcome is stored on the record, never raised."""
        try:
            payload = self.transformer.transform(record.extracted)
        except TransformError as e:
            metrics.billing_requests_total.labels(status="transform_error").inc()
            logger.error(f"Document {record.id} could not be transformed for billing: {e}")
            billing = BillingResult(success=False, error=f"transform error: {e}")
        else:
            billing = await self.billing.submit(payload, record.phone_number)

        now = utcnow()
        if billing.success:
            record.billing_response = billing.response
            record.billing_error = None
            record.billing_sent_at = now
        else:
            record.billing_error = billing.error
            record.billing_attempted_at = now
        record.updated_at = now
        await self.repository.save_document(record)
        return billing


def _document_type(document: ExtractedDocument) -> str | None:
    classification = document.classification
    return classification.document_subclass or classification.document_class
