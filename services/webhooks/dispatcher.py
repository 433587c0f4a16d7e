"""Webhook delivery for pipeline events.

Pipeline runs return the events they emitted; the dispatcher delivers them
to every active subscription for the event type. Delivery is best effort:
failures are logged and counted, and never reach the caller.
"""

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field

from services.api import metrics
from services.repository.base import Repository
from services.repository.models import EventType, WebhookSubscription
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class PipelineEvent(BaseModel):
    """An event emitted by a pipeline run."""

    event_type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)


class WebhookDispatcher:
    """Posts pipeline events to subscribed endpoints."""

    def __init__(
        self,
        repository: Repository,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self._client = http_client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.webhook_timeout_seconds)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def dispatch(self, events: list[PipelineEvent]) -> int:
        """Deliver events in order.

        Args:
            events: Events returned by a pipeline run

        Returns:
            Number of successful deliveries
        """
        delivered = 0
        for event in events:
            try:
                subscriptions = await self.repository.list_webhooks(event.event_type)
            except Exception as e:
                logger.error(f"Could not load webhooks for {event.event_type}: {e}")
                continue
            for subscription in subscriptions:
                if await self._deliver(subscription, event):
                    delivered += 1
        return delivered

    async def _deliver(self, subscription: WebhookSubscription, event: PipelineEvent) -> bool:
        try:
            response = await self._get_client().post(
                subscription.url,
                json=event.payload,
                headers={
                    "Content-Type": "application/json",
                    "X-Webhook-Secret": subscription.secret,
                    "X-Webhook-Event": event.event_type,
                },
            )
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Webhook delivery failed: {subscription.url} ({event.event_type}): {e}")
            return self._failed(event)
        except Exception as e:
            logger.error(f"Unexpected webhook error: {subscription.url} ({event.event_type}): {e}")
            return self._failed(event)

        metrics.webhook_deliveries_total.labels(event_type=event.event_type, status="success").inc()
        logger.debug(f"Webhook delivered: {subscription.url} ({event.event_type})")
        return True

    @staticmethod
    def _failed(event: PipelineEvent) -> bool:
        metrics.webhook_deliveries_total.labels(event_type=event.event_type, status="failed").inc()
        return False
