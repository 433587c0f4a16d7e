"""Assembles an IntakePipeline from configuration."""

import logging

from services.billing.client import BillingClient
from services.extraction.factory import create_extraction_provider
from services.intake.pipeline import IntakePipeline
from services.learning.templates import OpenAITemplateSynthesizer, TemplateLearner
from services.repository.base import Repository
from services.repository.factory import create_repository
from services.shared.config import Settings
from services.storage.service import StorageService
from services.validation.service import create_validation_service

logger = logging.getLogger(__name__)


def create_intake_pipeline(
    settings: Settings, repository: Repository | None = None
) -> IntakePipeline:
    """Build the pipeline with the configured providers.

    Args:
        settings: Application settings
        repository: Shared repository; created from settings when omitted

    Returns:
        IntakePipeline ready to ingest
    """
    repository = repository or create_repository(settings)
    learner = TemplateLearner(
        store=repository,
        synthesizer=OpenAITemplateSynthesizer(settings),
        timeout_seconds=settings.learning_timeout_seconds,
    )
    pipeline = IntakePipeline(
        settings=settings,
        repository=repository,
        extractor=create_extraction_provider(settings),
        validation=create_validation_service(settings),
        billing=BillingClient(settings),
        learner=learner,
        storage=StorageService(settings),
    )
    logger.info(
        f"Intake pipeline ready: extraction={settings.extraction_provider}, "
        f"validation={settings.validation_provider}, repository={settings.repository_backend}"
    )
    return pipeline
