"""Persistence interface shared by every repository backend."""

from typing import Protocol

from services.learning.corrections import Correction
from services.learning.templates import SupplierTemplate
from services.learning.training import TrainingExample
from services.repository.models import DocumentRecord, DocumentStatus, EventType, WebhookSubscription


class DocumentNotFoundError(LookupError):
    """Raised when a document id is unknown."""


class Repository(Protocol):
    """Async key/row operations the pipeline depends on.

    Corrections are unique per (document_id, field_path); saving a correction
    for a path that already has one replaces it.
    """

    async def save_document(self, record: DocumentRecord) -> None: ...

    async def get_document(self, document_id: str) -> DocumentRecord | None: ...

    async def list_documents(
        self, status: DocumentStatus | None = None, limit: int = 100, offset: int = 0
    ) -> tuple[list[DocumentRecord], int]: ...

    async def save_corrections(self, document_id: str, corrections: list[Correction]) -> None: ...

    async def list_corrections(self, document_id: str | None = None) -> list[Correction]: ...

    async def get_template(
        self, supplier_name: str, document_type: str
    ) -> SupplierTemplate | None: ...

    async def save_template(self, template: SupplierTemplate) -> None: ...

    async def save_training_example(self, example: TrainingExample) -> None: ...

    async def list_training_examples(self) -> list[TrainingExample]: ...

    async def save_webhook(self, subscription: WebhookSubscription) -> None: ...

    async def list_webhooks(self, event_type: EventType) -> list[WebhookSubscription]: ...

    async def ping(self) -> bool: ...
