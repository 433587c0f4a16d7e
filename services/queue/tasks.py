"""Async task definitions for batch bill ingestion.

Uses arq (async Redis queue) for background task processing. Each job runs
one bill through the intake pipeline and records its outcome under
``job:{job_id}`` for the status endpoints.

Run with: python -m services.queue.tasks
Or: arq services.queue.tasks.WorkerSettings

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import logging
from datetime import UTC, datetime
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel

from services.extraction.base import DocumentPage
from services.intake.factory import create_intake_pipeline
from services.intake.pipeline import IngestionError, IngestRequest, IntakePipeline
from services.repository.factory import create_repository
from services.shared.config import Settings, get_settings
from services.webhooks.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

JOB_TTL_SECONDS = 86400


class JobResult(BaseModel):
    """Result of a background ingestion job.

    Attributes:
        job_id: Unique job identifier
        status: Job status (pending, processing, completed, failed)
        file_name: Uploaded file name
        document_id: Created document (once completed)
        document_status: approved or pending_review (once completed)
        requires_review: Review gate outcome (once completed)
        overall_confidence: Overall extraction confidence (once completed)
        error: Error message (if failed)
        created_at: Job creation timestamp
        completed_at: Job completion timestamp
    """

    job_id: str
    status: Literal["pending", "processing", "completed", "failed"]
    file_name: str | None = None
    document_id: str | None = None
    document_status: str | None = None
    requires_review: bool | None = None
    overall_confidence: float | None = None
    error: str | None = None
    created_at: str
    completed_at: str | None = None


def _now() -> str:
    return datetime.now(UTC).isoformat()


async def ingest_document(
    ctx: dict[str, Any],
    job_id: str,
    file_content: bytes,
    file_name: str,
    content_type: str,
    phone_number: str | None = None,
    autopilot: bool | None = None,
) -> dict[str, Any]:
    """Run one bill through the intake pipeline.

    Args:
        ctx: arq context (contains redis connection and the pipeline)
        job_id: Unique job identifier
        file_content: Raw image bytes
        file_name: Original filename
        content_type: MIME type
        phone_number: Customer phone number
        autopilot: Permit automatic approval

    Returns:
        JobResult as dict
    """
    logger.info(f"Processing ingestion job {job_id} ({file_name})")

    pipeline: IntakePipeline = ctx["pipeline"]
    dispatcher: WebhookDispatcher = ctx["dispatcher"]
    redis = ctx["redis"]

    result = JobResult(job_id=job_id, status="processing", file_name=file_name, created_at=_now())
    await redis.set(f"job:{job_id}", result.model_dump_json(), ex=JOB_TTL_SECONDS)

    try:
        ingest = await pipeline.ingest(
            IngestRequest(
                file_name=file_name,
                file_type=content_type,
                pages=[DocumentPage(content=file_content, content_type=content_type)],
                phone_number=phone_number,
                autopilot=autopilot,
            )
        )
        await dispatcher.dispatch(ingest.events)
        result.status = "completed"
        result.document_id = ingest.document.id
        result.document_status = ingest.document.status
        result.requires_review = ingest.decision.requires_review
        result.overall_confidence = ingest.decision.overall_confidence
    except (IngestionError, ValueError) as e:
        logger.warning(f"Job {job_id} failed: {e}")
        result.status = "failed"
        result.error = str(e)
    except Exception as e:
        logger.exception(f"Job {job_id} failed with error: {e}")
        result.status = "failed"
        result.error = str(e)

    result.completed_at = _now()
    await redis.set(f"job:{job_id}", result.model_dump_json(), ex=JOB_TTL_SECONDS)
    logger.info(f"Job {job_id} completed with status: {result.status}")

    return result.model_dump()


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook: build the pipeline once for all jobs."""
    logger.info("Initializing worker services...")
    settings: Settings = get_settings()
    repository = create_repository(settings)
    ctx["settings"] = settings
    ctx["pipeline"] = create_intake_pipeline(settings, repository)
    ctx["dispatcher"] = WebhookDispatcher(repository, settings)
    logger.info("Worker services initialized")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook: close HTTP clients."""
    logger.info("Worker shutting down...")
    if "pipeline" in ctx:
        await ctx["pipeline"].billing.aclose()
    if "dispatcher" in ctx:
        await ctx["dispatcher"].aclose()


class WorkerSettings:
    """arq worker settings."""

    functions = [ingest_document]
    on_startup = startup
    on_shutdown = shutdown

    redis_settings = None
    max_jobs = 10
    job_timeout = 300

    @classmethod
    def get_redis_settings(cls) -> Any:
        """Get arq Redis settings from settings.redis_url."""
        from arq.connections import RedisSettings as ArqRedisSettings

        url = urlparse(get_settings().redis_url)
        database = int(url.path.lstrip("/") or 0)
        return ArqRedisSettings(
            host=url.hostname or "localhost",
            port=url.port or 6379,
            database=database,
            password=url.password,
        )


def main() -> None:
    """Run the ingestion worker with queue limits taken from settings."""
    from arq import run_worker

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    WorkerSettings.redis_settings = WorkerSettings.get_redis_settings()
    WorkerSettings.max_jobs = settings.queue_max_jobs
    WorkerSettings.job_timeout = settings.queue_job_timeout
    logger.info(
        f"Starting bill ingestion worker on {settings.redis_url} "
        f"(max_jobs={settings.queue_max_jobs}, job_timeout={settings.queue_job_timeout}s)"
    )
    run_worker(WorkerSettings)  # type: ignore[arg-type]


if __name__ == "__main__":
    main()
