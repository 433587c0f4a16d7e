"""Redis repository backend.

Records are stored as pydantic JSON:

- ``document:{id}`` plus the ``documents:created`` sorted set (score = created_at)
  and one ``documents:status:{status}`` sorted set per status
- ``corrections:{document_id}`` hash keyed by field path (replace-on-conflict)
  plus the ``corrections:documents`` set of document ids
- ``template:{supplier}:{document_type}``
- ``training_examples`` list
- ``webhooks`` hash keyed by subscription id
"""

import logging

from redis.asyncio import Redis

from services.learning.corrections import Correction
from services.learning.templates import SupplierTemplate
from services.learning.training import TrainingExample
from services.repository.models import DocumentRecord, DocumentStatus, EventType, WebhookSubscription
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class RedisRepository:
    """Repository backed by a Redis server."""

    def __init__(self, settings: Settings, client: Redis | None = None) -> None:
        self.settings = settings
        self._redis = client

    def _client(self) -> Redis:
        if self._redis is None:
            self._redis = Redis.from_url(self.settings.redis_url, decode_responses=True)
            logger.info(f"Redis repository connected to {self.settings.redis_url}")
        return self._redis

    async def save_document(self, record: DocumentRecord) -> None:
        redis = self._client()
        score = record.created_at.timestamp()
        previous = await redis.get(f"document:{record.id}")
        if previous is not None:
            old_status = DocumentRecord.model_validate_json(previous).status
            if old_status != record.status:
                await redis.zrem(f"documents:status:{old_status}", record.id)
        await redis.set(f"document:{record.id}", record.model_dump_json())
        await redis.zadd("documents:created", {record.id: score})
        await redis.zadd(f"documents:status:{record.status}", {record.id: score})

    async def get_document(self, document_id: str) -> DocumentRecord | None:
        raw = await self._client().get(f"document:{document_id}")
        return DocumentRecord.model_validate_json(raw) if raw else None

    async def list_documents(
        self, status: DocumentStatus | None = None, limit: int = 100, offset: int = 0
    ) -> tuple[list[DocumentRecord], int]:
        redis = self._client()
        index = f"documents:status:{status}" if status else "documents:created"
        total = await redis.zcard(index)
        ids = await redis.zrevrange(index, offset, offset + limit - 1)
        records: list[DocumentRecord] = []
        for document_id in ids:
            record = await self.get_document(document_id)
            if record is not None:
                records.append(record)
        return records, total

    async def save_corrections(self, document_id: str, corrections: list[Correction]) -> None:
        if not corrections:
            return
        redis = self._client()
        await redis.hset(
            f"corrections:{document_id}",
            mapping={c.field_path: c.model_dump_json() for c in corrections},
        )
        await redis.sadd("corrections:documents", document_id)

    async def list_corrections(self, document_id: str | None = None) -> list[Correction]:
        redis = self._client()
        if document_id is not None:
            document_ids = [document_id]
        else:
            document_ids = sorted(await redis.smembers("corrections:documents"))
        corrections: list[Correction] = []
        for doc_id in document_ids:
            stored = await redis.hgetall(f"corrections:{doc_id}")
            corrections.extend(Correction.model_validate_json(raw) for raw in stored.values())
        return corrections

    async def get_template(self, supplier_name: str, document_type: str) -> SupplierTemplate | None:
        raw = await self._client().get(f"template:{supplier_name}:{document_type}")
        return SupplierTemplate.model_validate_json(raw) if raw else None

    async def save_template(self, template: SupplierTemplate) -> None:
        key = f"template:{template.supplier_name}:{template.document_type}"
        await self._client().set(key, template.model_dump_json())

    async def save_training_example(self, example: TrainingExample) -> None:
        await self._client().rpush("training_examples", example.model_dump_json())

    async def list_training_examples(self) -> list[TrainingExample]:
        stored = await self._client().lrange("training_examples", 0, -1)
        return [TrainingExample.model_validate_json(raw) for raw in stored]

    async def save_webhook(self, subscription: WebhookSubscription) -> None:
        await self._client().hset("webhooks", subscription.id, subscription.model_dump_json())

    async def list_webhooks(self, event_type: EventType) -> list[WebhookSubscription]:
        stored = await self._client().hgetall("webhooks")
        hooks = [WebhookSubscription.model_validate_json(raw) for raw in stored.values()]
        return [hook for hook in hooks if hook.event_type == event_type and hook.active]

    async def ping(self) -> bool:
        try:
            return bool(await self._client().ping())
        except Exception as e:
            logger.warning(f"Redis repository health check failed: {e}")
            return False
