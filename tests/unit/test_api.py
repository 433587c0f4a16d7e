"""Unit tests for the bill intake API.

Tests cover:
- Health and metrics endpoints
- Upload validation
- Ingestion, the review queue and approval
- Template learning and webhook registration
"""

from collections.abc import Callable, Iterator
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from services.api.main import app
from services.learning.corrections import Correction
from services.repository.memory import InMemoryRepository

PNG = b"\x89PNG\r\n\x1a\n fake bill"


@pytest.fixture
def client() -> TestClient:
    """Create test client."""
    return TestClient(app)


@pytest.fixture
def harness(make_harness: Callable, legacy_payload: dict[str, Any]) -> Iterator[Any]:
    """Point the API at a pipeline with a scripted extractor."""
    harness = make_harness(legacy_payload)
    dispatcher = AsyncMock()
    dispatcher.dispatch.return_value = 0
    with (
        patch("services.api.main.pipeline", harness.pipeline),
        patch("services.api.main.repository", harness.repository),
        patch("services.api.main.dispatcher", dispatcher),
    ):
        yield harness


def _upload(client: TestClient, autopilot: str = "false", **extra: Any) -> Any:
    data = {"phone": "0871234567", "autopilot": autopilot, **extra}
    return client.post(
        "/api/v1/documents/ingest",
        files={"file": ("bill.png", PNG, "image/png")},
        data=data,
    )


def test_health_check(client: TestClient) -> None:
    """Test health check endpoint."""
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "utility-bill-intake"


def test_readiness_check(client: TestClient, harness: Any) -> None:
    """Test readiness check endpoint."""
    response = client.get("/ready")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["ready"] is True


def test_readiness_repository_down(client: TestClient) -> None:
    """Readiness fails while the repository is unreachable."""
    repository = AsyncMock()
    repository.ping.return_value = False
    with patch("services.api.main.repository", repository):
        response = client.get("/ready")

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


def test_metrics_endpoint(client: TestClient) -> None:
    """Test Prometheus metrics endpoint."""
    client.get("/health")
    response = client.get("/metrics")

    assert response.status_code == status.HTTP_200_OK
    assert "http_requests_total" in response.text


class TestIngestEndpoint:
    """Test single-bill ingestion."""

    def test_ingest_requires_review(self, client: TestClient, harness: Any) -> None:
        """A bill without autopilot lands in the review queue."""
        response = _upload(client, autopilot="false")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "pending_review"
        assert data["requires_review"] is True
        assert data["critical_fields_ok"] is True
        assert data["validation"]["status"] == "passed"
        assert data["billing"] is None

    def test_ingest_auto_approves(self, client: TestClient, harness: Any) -> None:
        """A clean bill under autopilot is approved and billed."""
        response = _upload(client, autopilot="true")

        data = response.json()
        assert data["status"] == "approved"
        assert data["requires_review"] is False
        assert data["billing"]["success"] is True
        assert len(harness.billing_api.bodies) == 1

    def test_ingest_dispatches_events(self, client: TestClient, harness: Any) -> None:
        """Pipeline events are handed to the webhook dispatcher."""
        with patch("services.api.main.dispatcher") as dispatcher:
            dispatcher.dispatch = AsyncMock(return_value=0)
            _upload(client)

        events = dispatcher.dispatch.call_args.args[0]
        assert [e.event_type for e in events] == ["document.created", "document.review_needed"]

    def test_phone_required(self, client: TestClient, harness: Any) -> None:
        """Phone number is mandatory."""
        response = client.post(
            "/api/v1/documents/ingest", files={"file": ("bill.png", PNG, "image/png")}
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"] == "Phone number is required"

    def test_pdf_rejected(self, client: TestClient, harness: Any) -> None:
        """Only images are accepted."""
        response = client.post(
            "/api/v1/documents/ingest",
            files={"file": ("bill.pdf", b"%PDF-1.4", "application/pdf")},
            data={"phone": "0871234567"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "Only images are supported" in response.json()["detail"]

    def test_empty_file_rejected(self, client: TestClient, harness: Any) -> None:
        """Empty uploads are rejected."""
        response = client.post(
            "/api/v1/documents/ingest",
            files={"file": ("bill.png", b"", "image/png")},
            data={"phone": "0871234567"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_extraction_failure_is_bad_gateway(self, client: TestClient, harness: Any) -> None:
        """Extraction failures map to 502."""
        harness.extractor.error = "Extraction failed: model overloaded"

        response = _upload(client)

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert "model overloaded" in response.json()["detail"]

    def test_multi_page_upload(self, client: TestClient, harness: Any) -> None:
        """Additional pages belong to the same document."""
        response = client.post(
            "/api/v1/documents/ingest",
            files=[
                ("file", ("p1.png", PNG, "image/png")),
                ("pages", ("p2.png", PNG, "image/png")),
            ],
            data={"phone": "0871234567"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert harness.extractor.page_counts == [2]


class TestReviewEndpoints:
    """Test the review queue and approval."""

    def test_review_queue(self, client: TestClient, harness: Any) -> None:
        """Pending documents are listed by status."""
        document_id = _upload(client).json()["document_id"]

        response = client.get("/api/v1/documents", params={"status": "pending_review"})

        data = response.json()
        assert data["total"] == 1
        assert data["documents"][0]["id"] == document_id

    def test_document_detail(self, client: TestClient, harness: Any) -> None:
        """A document is returned with its corrections."""
        document_id = _upload(client).json()["document_id"]

        response = client.get(f"/api/v1/documents/{document_id}")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["document"]["supplier_name"] == "Electric Ireland"
        assert response.json()["corrections"] == []

    def test_document_not_found(self, client: TestClient, harness: Any) -> None:
        """Unknown ids are 404."""
        assert client.get("/api/v1/documents/missing").status_code == 404

    def test_approve_with_edits(self, client: TestClient, harness: Any) -> None:
        """Approval records corrections and submits billing."""
        document_id = _upload(client).json()["document_id"]

        response = client.post(
            f"/api/v1/documents/{document_id}/approve",
            json={"edits": [{"field_path": "supplier_details.due_date", "value": "2025-03-08"}]},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["corrections_saved"] == 1
        assert data["corrections"][0]["original_value"] == "2025-03-01"
        assert data["billing_sent"] is True
        assert data["template_updated"] is True

    def test_learned_template_steers_next_upload(self, client: TestClient, harness: Any) -> None:
        """A template learned on approval is found again by supplier and document type."""
        document_id = _upload(client).json()["document_id"]
        client.post(
            f"/api/v1/documents/{document_id}/approve",
            json={"edits": [{"field_path": "supplier_details.due_date", "value": "2025-03-08"}]},
        )
        template = client.get("/api/v1/templates/Electric Ireland/electricity").json()

        response = _upload(client, supplier_hint="Electric Ireland", document_type="electricity")

        assert response.status_code == status.HTTP_200_OK
        assert harness.extractor.hints[-1] == template["template_data"]

    def test_approve_twice_conflicts(self, client: TestClient, harness: Any) -> None:
        """A second approval is a conflict."""
        document_id = _upload(client).json()["document_id"]
        client.post(f"/api/v1/documents/{document_id}/approve", json={"edits": []})

        response = client.post(f"/api/v1/documents/{document_id}/approve", json={"edits": []})

        assert response.status_code == status.HTTP_409_CONFLICT

    def test_approve_bad_path(self, client: TestClient, harness: Any) -> None:
        """Malformed edit paths are a client error."""
        document_id = _upload(client).json()["document_id"]

        response = client.post(
            f"/api/v1/documents/{document_id}/approve",
            json={"edits": [{"field_path": "supplier_details..due_date", "value": "x"}]},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_approve_unknown(self, client: TestClient, harness: Any) -> None:
        """Unknown documents are 404."""
        response = client.post("/api/v1/documents/missing/approve", json={"edits": []})
        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestLearningEndpoints:
    """Test template learning, templates and statistics."""

    def test_learn_from_explicit_corrections(self, client: TestClient, harness: Any) -> None:
        """Corrections can be supplied directly with a supplier."""
        response = client.post(
            "/api/v1/templates/learn",
            json={
                "supplier_name": "Eir",
                "document_type": "broadband",
                "corrections": [
                    {
                        "field_path": "bills[0].totals.total_due",
                        "original_value": "55.00",
                        "corrected_value": "55.35",
                        "confidence_before": 0.7,
                    }
                ],
            },
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["supplier_name"] == "Eir"
        assert data["accuracy_stats"]["total_corrections"] == 1

        fetched = client.get("/api/v1/templates/Eir/broadband")
        assert fetched.status_code == status.HTTP_200_OK

    def test_learn_failure_is_bad_gateway(self, client: TestClient, harness: Any) -> None:
        """Synthesis failures map to 502."""
        harness.synthesizer.fail = True

        response = client.post(
            "/api/v1/templates/learn",
            json={
                "supplier_name": "Eir",
                "corrections": [
                    {"field_path": "a", "original_value": "1", "corrected_value": "2"}
                ],
            },
        )

        assert response.status_code == status.HTTP_502_BAD_GATEWAY

    def test_learn_without_supplier(self, client: TestClient, harness: Any) -> None:
        """A supplier is required to key the template."""
        response = client.post(
            "/api/v1/templates/learn",
            json={"corrections": [{"field_path": "a", "original_value": "1", "corrected_value": "2"}]},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_template_not_found(self, client: TestClient, harness: Any) -> None:
        """Unknown templates are 404."""
        assert client.get("/api/v1/templates/Nobody/electricity").status_code == 404

    def test_training_stats(self, client: TestClient, harness: Any) -> None:
        """Statistics summarize stored corrections."""
        repository: InMemoryRepository = harness.repository
        correction = Correction(
            document_id="d1",
            field_path="mprn",
            original_value="1",
            corrected_value="2",
            confidence_before=0.6,
        )
        with patch.object(repository, "list_corrections", AsyncMock(return_value=[correction])):
            response = client.get("/api/v1/training/stats")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["total_corrections"] == 1


def test_register_webhook(client: TestClient, harness: Any) -> None:
    """Subscriptions are stored and returned."""
    response = client.post(
        "/api/v1/webhooks",
        json={"url": "https://crm.test/hook", "event_type": "document.approved", "secret": "k"},
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["event_type"] == "document.approved"


def test_register_webhook_unknown_event(client: TestClient, harness: Any) -> None:
    """Only pipeline events can be subscribed to."""
    response = client.post(
        "/api/v1/webhooks", json={"url": "https://crm.test/hook", "event_type": "bill.paid"}
    )

    assert response.status_code == 422


def test_register_webhook_normalizes_url(client: TestClient, harness: Any) -> None:
    """The stored subscription carries the validated URL."""
    response = client.post(
        "/api/v1/webhooks",
        json={"url": "https://CRM.test/hook", "event_type": "document.created"},
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["url"] == "https://crm.test/hook"


@pytest.mark.parametrize("url", ["not a url", "ftp://crm.test/hook", "http://crm.test:abc/hook"])
def test_register_webhook_rejects_bad_url(client: TestClient, harness: Any, url: str) -> None:
    """Only absolute http(s) URLs can be subscribed."""
    response = client.post("/api/v1/webhooks", json={"url": url, "event_type": "document.approved"})

    assert response.status_code == 422
