"""Async client for the downstream billing API.

Each submission is attempted once with a bounded timeout; failures come
back as a ``BillingResult`` with ``success=False`` and never raise, so an
outage downstream cannot undo an approval.
"""

import asyncio
import logging
from typing import Any

import httpx
from pydantic import BaseModel

from services.api import metrics
from services.billing.wire import BillingPayload
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class BillingResult(BaseModel):
    """Result of a billing API submission.

    Attributes:
        success: Whether the API accepted the bill
        response: Parsed response body on success
        error: Error description on failure
        status_code: HTTP status when a response was received
    """

    success: bool
    response: Any = None
    error: str | None = None
    status_code: int | None = None


class BillingClient:
    """Submits transformed bills with bearer authentication."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._client = http_client

    def is_available(self) -> bool:
        return bool(self.settings.billing_api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.billing_timeout_seconds)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def submit(self, payload: BillingPayload, phone_number: str | None) -> BillingResult:
        """Send one approved document to the billing API.

        Args:
            payload: Transformed bills
            phone_number: Customer phone number sent alongside the bills

        Returns:
            BillingResult (never raises)
        """
        if not self.is_available():
            metrics.billing_requests_total.labels(status="failed").inc()
            return BillingResult(
                success=False,
                error="Billing API key not configured. Set APP_BILLING_API_KEY environment variable.",
            )

        body = {"phone": phone_number or "", **payload.to_wire()}
        try:
            response = await asyncio.wait_for(
                self._get_client().post(
                    self.settings.billing_api_url,
                    json=body,
                    headers={
                        "Authorization": f"Bearer {self.settings.billing_api_key}",
                        "Content-Type": "application/json",
                    },
                ),
                timeout=self.settings.billing_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return self._failed(
                f"billing API error: timed out after {self.settings.billing_timeout_seconds}s"
            )
        except httpx.HTTPError as e:
            return self._failed(f"billing API error: {e}")

        if response.is_error:
            return self._failed(
                f"billing API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}

        metrics.billing_requests_total.labels(status="success").inc()
        logger.info(f"Billing API accepted submission ({response.status_code})")
        return BillingResult(success=True, response=data, status_code=response.status_code)

    @staticmethod
    def _failed(error: str, status_code: int | None = None) -> BillingResult:
        metrics.billing_requests_total.labels(status="failed").inc()
        logger.error(error)
        return BillingResult(success=False, error=error, status_code=status_code)
