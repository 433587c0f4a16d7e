"""In-process repository backend (default; used by tests and single-node runs)."""

from services.learning.corrections import Correction
from services.learning.templates import SupplierTemplate
from services.learning.training import TrainingExample
from services.repository.models import DocumentRecord, DocumentStatus, EventType, WebhookSubscription


class InMemoryRepository:
    """Dict-backed repository. Records are copied in and out so callers never share state."""

    def __init__(self) -> None:
        self._documents: dict[str, DocumentRecord] = {}
        self._corrections: dict[tuple[str, str], Correction] = {}
        self._templates: dict[tuple[str, str], SupplierTemplate] = {}
        self._examples: list[TrainingExample] = []
        self._webhooks: dict[str, WebhookSubscription] = {}

    async def save_document(self, record: DocumentRecord) -> None:
        self._documents[record.id] = record.model_copy(deep=True)

    async def get_document(self, document_id: str) -> DocumentRecord | None:
        record = self._documents.get(document_id)
        return record.model_copy(deep=True) if record else None

    async def list_documents(
        self, status: DocumentStatus | None = None, limit: int = 100, offset: int = 0
    ) -> tuple[list[DocumentRecord], int]:
        matching = [
            record
            for record in self._documents.values()
            if status is None or record.status == status
        ]
        matching.sort(key=lambda record: record.created_at, reverse=True)
        page = matching[offset : offset + limit]
        return [record.model_copy(deep=True) for record in page], len(matching)

    async def save_corrections(self, document_id: str, corrections: list[Correction]) -> None:
        for correction in corrections:
            self._corrections[(document_id, correction.field_path)] = correction

    async def list_corrections(self, document_id: str | None = None) -> list[Correction]:
        return [
            correction
            for (doc_id, _), correction in self._corrections.items()
            if document_id is None or doc_id == document_id
        ]

    async def get_template(self, supplier_name: str, document_type: str) -> SupplierTemplate | None:
        template = self._templates.get((supplier_name, document_type))
        return template.model_copy(deep=True) if template else None

    async def save_template(self, template: SupplierTemplate) -> None:
        key = (template.supplier_name, template.document_type)
        self._templates[key] = template.model_copy(deep=True)

    async def save_training_example(self, example: TrainingExample) -> None:
        self._examples.append(example)

    async def list_training_examples(self) -> list[TrainingExample]:
        return list(self._examples)

    async def save_webhook(self, subscription: WebhookSubscription) -> None:
        self._webhooks[subscription.id] = subscription

    async def list_webhooks(self, event_type: EventType) -> list[WebhookSubscription]:
        return [
            hook for hook in self._webhooks.values() if hook.event_type == event_type and hook.active
        ]

    async def ping(self) -> bool:
        return True
