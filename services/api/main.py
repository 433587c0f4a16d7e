"""FastAPI application for utility bill intake and human review.

Provides:
- Health and readiness checks for Kubernetes
- Bill ingestion (single and batch through the arq queue)
- Review queue, approval with field edits, template learning
- Prometheus metrics for monitoring

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from arq import create_pool
from arq.connections import ArqRedis
from fastapi import FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile, status
from pydantic import AnyHttpUrl, BaseModel, Field

from services.api import metrics
from services.billing.client import BillingResult
from services.extraction.base import DocumentPage
from services.intake.factory import create_intake_pipeline
from services.intake.pipeline import (
    DocumentAlreadyApprovedError,
    IngestionError,
    IngestRequest,
)
from services.learning.corrections import Correction, FieldEdit, FieldPathError
from services.learning.templates import SupplierTemplate, TemplateLearningError
from services.learning.training import TrainingStats, compute_training_stats
from services.queue.tasks import JOB_TTL_SECONDS, JobResult, WorkerSettings
from services.repository.base import DocumentNotFoundError
from services.repository.factory import create_repository
from services.repository.models import DocumentRecord, DocumentStatus, EventType, WebhookSubscription
from services.review.gate import ReviewDecision
from services.shared.config import get_settings
from services.validation.models import ValidationResult
from services.webhooks.dispatcher import WebhookDispatcher

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

repository = create_repository(settings)
pipeline = create_intake_pipeline(settings, repository)
dispatcher = WebhookDispatcher(repository, settings)

_arq_pool: ArqRedis | None = None


async def get_arq_pool() -> ArqRedis:
    """Get or create the arq connection pool (lazy initialization)."""
    global _arq_pool
    if _arq_pool is None:
        _arq_pool = await create_pool(WorkerSettings.get_redis_settings())
    return _arq_pool


@asynccontextmanager
async def lifespan(_: FastAPI):  # type: ignore[no-untyped-def]
    yield
    await pipeline.billing.aclose()
    await dispatcher.aclose()
    if _arq_pool is not None:
        await _arq_pool.close()


app = FastAPI(
    title="Utility Bill Intake",
    description="Extraction, validation and human review of Irish utility bills",
    version=settings.service_version,
    lifespan=lifespan,
)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request metrics.

    Tracks:
    - Request count by method, endpoint, and status
    - Request duration by method and endpoint
    """
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Route template keeps label cardinality bounded
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint,
    ).observe(duration)

    return response


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    repository: bool


class IngestResponse(BaseModel):
    """Bill ingestion response."""

    success: bool = True
    document_id: str
    status: DocumentStatus
    requires_review: bool
    overall_confidence: float
    critical_fields_ok: bool
    critical_fields_low: list[tuple[str, float]]
    review_reasons: list[str]
    validation: ValidationResult | None
    billing: BillingResult | None = None


class BatchDocument(BaseModel):
    job_id: str
    file_name: str


class BatchResponse(BaseModel):
    """Batch ingestion response."""

    batch_id: str
    status: str
    total_documents: int
    documents: list[BatchDocument]
    skipped: list[str] = Field(default_factory=list)


class BatchStatusResponse(BaseModel):
    batch_id: str
    status: str
    total_documents: int
    pending: int
    processing: int
    completed: int
    failed: int
    jobs: list[JobResult]


class DocumentListResponse(BaseModel):
    documents: list[DocumentRecord]
    total: int
    limit: int
    offset: int


class DocumentDetailResponse(BaseModel):
    document: DocumentRecord
    corrections: list[Correction]


class ApproveRequest(BaseModel):
    """Reviewer edits, applied in order."""

    edits: list[FieldEdit] = Field(default_factory=list)


class ApproveResponse(BaseModel):
    success: bool = True
    document_id: str
    corrections_saved: int
    corrections: list[Correction]
    billing_sent: bool
    billing_response: Any = None
    billing_error: str | None = None
    template_updated: bool
    learning_error: str | None = None


class CorrectionInput(BaseModel):
    field_path: str = Field(min_length=1)
    original_value: str
    corrected_value: str
    confidence_before: float = Field(default=0.0, ge=0, le=1)


class LearnRequest(BaseModel):
    """Template learning request.

    With only ``document_id``, the document's stored corrections are used.
    """

    document_id: str | None = None
    supplier_name: str | None = None
    document_type: str | None = None
    corrections: list[CorrectionInput] | None = None


class WebhookRequest(BaseModel):
    url: AnyHttpUrl
    event_type: EventType
    secret: str = ""


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness probe."""
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
async def readiness_check(response: Response) -> ReadinessResponse:
    """Readiness check endpoint; not ready while the repository is unreachable."""
    repository_ok = await repository.ping()
    if not repository_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(ready=repository_ok, repository=repository_ok)


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint."""
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


async def _read_image(upload: UploadFile) -> DocumentPage:
    """Validate an uploaded page and read it.

    Raises:
        HTTPException: 400 if the file is unnamed, not an image, or empty
    """
    if not upload.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No filename provided")

    if not upload.content_type or not upload.content_type.startswith("image/"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=(
                f"Invalid file type: {upload.content_type}. "
                "Only images are supported; convert PDFs to page images first."
            ),
        )

    content = await upload.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    metrics.document_upload_size_bytes.observe(len(content))
    return DocumentPage(content=content, content_type=upload.content_type)


@app.post("/api/v1/documents/ingest", response_model=IngestResponse, tags=["Documents"])
async def ingest_document(
    file: UploadFile = File(..., description="Bill image (first page)"),  # noqa: B008
    pages: list[UploadFile] | None = File(  # noqa: B008
        None, description="Further pages of the same bill, in order"
    ),
    phone: str | None = Form(None, description="Customer phone number"),  # noqa: B008
    autopilot: bool | None = Form(  # noqa: B008
        None, description="Permit automatic approval (defaults to APP_AUTOPILOT_DEFAULT)"
    ),
    supplier_hint: str | None = Form(  # noqa: B008
        None, description="Supplier whose learned template should steer extraction"
    ),
    document_type: str | None = Form(  # noqa: B008
        None, description="Document type of that template, e.g. electricity or dual_fuel"
    ),
) -> IngestResponse:
    """Ingest one bill.

    Extracts the bill with the configured vision model, scores confidence,
    validates it, and either auto-approves it (submitting it for billing)
    or queues it for human review.

    ## Usage Example

    ```bash
    curl -X POST "http://localhost:8000/api/v1/documents/ingest" \\
      -F "file=@bill.png" -F "phone=0871234567" -F "autopilot=true"
    ```

    Pass `supplier_hint` (and `document_type`, the classification the
    template was learned under) to reuse corrections from earlier approvals.

    ## Error Handling

    - Returns 400 if the file is invalid, empty, not an image, or phone is missing
    - Returns 502 if extraction fails or times out
    """
    if not phone or not phone.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Phone number is required"
        )

    document_pages = [await _read_image(file)]
    for extra in pages or []:
        document_pages.append(await _read_image(extra))

    try:
        result = await pipeline.ingest(
            IngestRequest(
                file_name=file.filename or "upload",
                file_type=file.content_type or "",
                pages=document_pages,
                phone_number=phone.strip(),
                autopilot=autopilot,
                supplier_hint=supplier_hint,
                document_type_hint=document_type,
            )
        )
    except IngestionError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    await dispatcher.dispatch(result.events)
    return _ingest_response(result.document, result.decision, result.billing)


def _ingest_response(
    record: DocumentRecord, decision: ReviewDecision, billing: BillingResult | None
) -> IngestResponse:
    return IngestResponse(
        document_id=record.id,
        status=record.status,
        requires_review=decision.requires_review,
        overall_confidence=decision.overall_confidence,
        critical_fields_ok=decision.critical_fields_ok,
        critical_fields_low=decision.critical_fields_low,
        review_reasons=decision.reasons,
        validation=record.validation,
        billing=billing,
    )


def _require_queue() -> None:
    if not settings.queue_enabled:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Batch processing not enabled. Set APP_QUEUE_ENABLED=true.",
        )


@app.post("/api/v1/documents/ingest/batch", response_model=BatchResponse, tags=["Batch"])
async def ingest_batch(
    files: list[UploadFile] = File(..., description="Bill images, one bill per file"),  # noqa: B008
    phone: str | None = Form(None),  # noqa: B008
    autopilot: bool | None = Form(None),  # noqa: B008
) -> BatchResponse:
    """Queue several bills for background ingestion.

    Non-image files are skipped and listed in ``skipped``. Poll
    ``/api/v1/batches/{batch_id}`` or ``/api/v1/jobs/{job_id}`` for progress.
    """
    _require_queue()
    if not phone or not phone.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Phone number is required"
        )

    pool = await get_arq_pool()
    batch_id = str(uuid.uuid4())
    created_at = datetime.now(UTC).isoformat()
    documents: list[BatchDocument] = []
    skipped: list[str] = []

    for upload in files:
        name = upload.filename or "upload"
        if not upload.content_type or not upload.content_type.startswith("image/"):
            skipped.append(name)
            continue
        content = await upload.read()
        if not content:
            skipped.append(name)
            continue

        job_id = str(uuid.uuid4())
        pending = JobResult(job_id=job_id, status="pending", file_name=name, created_at=created_at)
        await pool.set(f"job:{job_id}", pending.model_dump_json(), ex=JOB_TTL_SECONDS)
        await pool.enqueue_job(
            "ingest_document",
            job_id=job_id,
            file_content=content,
            file_name=name,
            content_type=upload.content_type,
            phone_number=phone.strip(),
            autopilot=autopilot,
            _job_id=job_id,
        )
        documents.append(BatchDocument(job_id=job_id, file_name=name))

    if not documents:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="No valid image files in batch"
        )

    await pool.set(
        f"batch:{batch_id}",
        json.dumps(
            {
                "batch_id": batch_id,
                "job_ids": [doc.job_id for doc in documents],
                "total_documents": len(documents),
                "created_at": created_at,
            }
        ),
        ex=JOB_TTL_SECONDS,
    )
    logger.info(f"Queued batch {batch_id} with {len(documents)} bill(s), skipped {len(skipped)}")

    return BatchResponse(
        batch_id=batch_id,
        status="pending",
        total_documents=len(documents),
        documents=documents,
        skipped=skipped,
    )


@app.get("/api/v1/jobs/{job_id}", response_model=JobResult, tags=["Batch"])
async def get_job(job_id: str) -> JobResult:
    """Status of one background ingestion job."""
    _require_queue()
    pool = await get_arq_pool()
    raw = await pool.get(f"job:{job_id}")
    if raw is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobResult.model_validate_json(raw)


@app.get("/api/v1/batches/{batch_id}", response_model=BatchStatusResponse, tags=["Batch"])
async def get_batch(batch_id: str) -> BatchStatusResponse:
    """Aggregate status of a batch: completed, processing, failed or partial."""
    _require_queue()
    pool = await get_arq_pool()
    raw = await pool.get(f"batch:{batch_id}")
    if raw is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    batch = json.loads(raw)

    jobs: list[JobResult] = []
    for job_id in batch["job_ids"]:
        job_raw = await pool.get(f"job:{job_id}")
        if job_raw is not None:
            jobs.append(JobResult.model_validate_json(job_raw))

    counts = {name: 0 for name in ("pending", "processing", "completed", "failed")}
    for job in jobs:
        counts[job.status] = counts.get(job.status, 0) + 1
    # Expired job keys count as pending
    counts["pending"] += len(batch["job_ids"]) - len(jobs)

    total = batch["total_documents"]
    if counts["completed"] == total:
        batch_status = "completed"
    elif counts["failed"] == total:
        batch_status = "failed"
    elif counts["pending"] or counts["processing"]:
        batch_status = "processing"
    else:
        batch_status = "partial"

    return BatchStatusResponse(
        batch_id=batch_id,
        status=batch_status,
        total_documents=total,
        jobs=jobs,
        **counts,
    )


@app.get("/api/v1/documents", response_model=DocumentListResponse, tags=["Review"])
async def list_documents(
    status_filter: DocumentStatus | None = Query(None, alias="status"),  # noqa: B008
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> DocumentListResponse:
    """List documents, newest first (``status=pending_review`` is the review queue)."""
    documents, total = await repository.list_documents(status_filter, limit, offset)
    return DocumentListResponse(documents=documents, total=total, limit=limit, offset=offset)


@app.get("/api/v1/documents/{document_id}", response_model=DocumentDetailResponse, tags=["Review"])
async def get_document(document_id: str) -> DocumentDetailResponse:
    """One document with its recorded corrections."""
    record = await repository.get_document(document_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    corrections = await repository.list_corrections(document_id)
    return DocumentDetailResponse(document=record, corrections=corrections)


@app.post(
    "/api/v1/documents/{document_id}/approve", response_model=ApproveResponse, tags=["Review"]
)
async def approve_document(document_id: str, body: ApproveRequest) -> ApproveResponse:
    """Approve a reviewed document with the reviewer's field edits.

    The approval is saved even when billing submission or template learning
    fails; those failures are reported in ``billing_error`` and ``learning_error``.
    """
    try:
        result = await pipeline.approve(document_id, body.edits)
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except DocumentAlreadyApprovedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except FieldPathError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    await dispatcher.dispatch(result.events)
    return ApproveResponse(
        document_id=result.document_id,
        corrections_saved=result.corrections_saved,
        corrections=result.corrections,
        billing_sent=result.billing_sent,
        billing_response=result.billing_response,
        billing_error=result.billing_error,
        template_updated=result.template is not None,
        learning_error=result.learning_error,
    )


@app.post("/api/v1/templates/learn", response_model=SupplierTemplate, tags=["Learning"])
async def learn_template(body: LearnRequest) -> SupplierTemplate:
    """Refresh a supplier template from corrections."""
    corrections = None
    if body.corrections is not None:
        corrections = [
            Correction(document_id=body.document_id or "", **item.model_dump())
            for item in body.corrections
        ]
    try:
        return await pipeline.learn(
            document_id=body.document_id,
            corrections=corrections,
            supplier_name=body.supplier_name,
            document_type=body.document_type,
        )
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except TemplateLearningError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


@app.get(
    "/api/v1/templates/{supplier_name}/{document_type}",
    response_model=SupplierTemplate,
    tags=["Learning"],
)
async def get_template(supplier_name: str, document_type: str) -> SupplierTemplate:
    template = await repository.get_template(supplier_name, document_type)
    if template is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found")
    return template


@app.get("/api/v1/training/stats", response_model=TrainingStats, tags=["Learning"])
async def training_stats() -> TrainingStats:
    """Correction and training-example statistics."""
    return compute_training_stats(
        await repository.list_corrections(), await repository.list_training_examples()
    )


@app.post("/api/v1/webhooks", response_model=WebhookSubscription, tags=["Webhooks"])
async def register_webhook(body: WebhookRequest) -> WebhookSubscription:
    """Subscribe an endpoint to one pipeline event type."""
    subscription = WebhookSubscription(
        url=str(body.url), event_type=body.event_type, secret=body.secret
    )
    await repository.save_webhook(subscription)
    logger.info(f"Webhook registered for {body.event_type}: {body.url}")
    return subscription
