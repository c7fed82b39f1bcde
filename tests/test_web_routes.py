"""Tests for web routes and API endpoints.

Tests the FastAPI application routes using httpx AsyncClient, covering
reclassification, corrections, review confirmation, batch pages, sender
rule listing, error-to-status mapping and the health endpoint.
"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from conftest import seed_conversation
from inbox_triage.classifier.claude_classifier import ClassifierOutput
from inbox_triage.components import TriageComponents, build_components
from inbox_triage.config_schema import AppConfig
from inbox_triage.core.errors import ClassifierUnavailable, DatabaseError
from inbox_triage.db.store import DatabaseStore
from inbox_triage.web.app import create_app

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def components(sample_config: AppConfig, fake_classifier: AsyncMock) -> TriageComponents:
    """Build real components around the fake classifier."""
    return await build_components(sample_config, classifier=fake_classifier)


@pytest.fixture
def app(components: TriageComponents) -> FastAPI:
    """Create a FastAPI app with test dependencies."""
    test_app = create_app()

    test_app.state.config = components.config
    test_app.state.store = components.store
    test_app.state.taxonomy = components.taxonomy
    test_app.state.pipeline = components.pipeline
    test_app.state.recorder = components.recorder
    test_app.state.reconciler = components.reconciler
    test_app.state.classifier = components.classifier

    return test_app


@pytest.fixture
def app_store(components: TriageComponents) -> DatabaseStore:
    return components.store


@pytest.fixture
async def client(app: FastAPI) -> AsyncClient:
    """Return an httpx AsyncClient for the test app."""
    # Override lifespan to avoid real initialization
    app.router.lifespan_context = _noop_lifespan
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@asynccontextmanager
async def _noop_lifespan(app: FastAPI):
    """No-op lifespan that preserves existing app.state."""
    yield


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealth:
    async def test_healthy(self, client: AsyncClient) -> None:
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["classifier_enabled"] is True

    async def test_degraded_without_classifier(self, app: FastAPI, client: AsyncClient) -> None:
        app.state.classifier = None
        response = await client.get("/api/health")
        assert response.json()["status"] == "degraded"

    async def test_unconfigured_routes_return_503(
        self, app: FastAPI, client: AsyncClient
    ) -> None:
        app.state.store = None
        app.state.recorder = None

        health = await client.get("/api/health")
        assert health.json()["status"] == "unconfigured"

        response = await client.get("/api/workspaces/ws-1/sender-rules")
        assert response.status_code == 503


# ---------------------------------------------------------------------------
# Reclassify
# ---------------------------------------------------------------------------


class TestReclassify:
    async def test_low_confidence_no_reply_label_is_auto_handled(
        self, client: AsyncClient, app_store: DatabaseStore, fake_classifier: AsyncMock
    ) -> None:
        fake_classifier.classify.return_value = ClassifierOutput(
            classification="supplier_invoice", confidence=0.3, requires_reply=False
        )
        await seed_conversation(app_store, "c-1", sender_email="ap@vendorx.com")

        response = await client.post("/api/conversations/c-1/reclassify")

        assert response.status_code == 200
        updated = response.json()["updated"]
        assert updated["decision_bucket"] == "auto_handled"
        assert updated["needs_review"] is False

    async def test_uncertain_complaint_is_act_now_and_reviewed(
        self, client: AsyncClient, app_store: DatabaseStore, fake_classifier: AsyncMock
    ) -> None:
        fake_classifier.classify.return_value = ClassifierOutput(
            classification="complaint_dispute", confidence=0.6, requires_reply=True
        )
        await seed_conversation(app_store, "c-1", body="This is the third time I've asked")

        response = await client.post("/api/conversations/c-1/reclassify")

        data = response.json()
        assert data["changed"] is True
        assert data["persisted"] is True
        assert data["updated"]["decision_bucket"] == "act_now"
        assert data["updated"]["needs_review"] is True

    async def test_dry_run_body(
        self, client: AsyncClient, app_store: DatabaseStore
    ) -> None:
        before = await seed_conversation(app_store, "c-1")

        response = await client.post(
            "/api/conversations/c-1/reclassify", json={"dry_run": True}
        )

        assert response.json()["dry_run"] is True
        assert response.json()["persisted"] is False
        assert await app_store.get_conversation("c-1") == before

    async def test_missing_conversation_404(self, client: AsyncClient) -> None:
        response = await client.post("/api/conversations/nope/reclassify")
        assert response.status_code == 404

    async def test_classifier_unavailable_503(
        self, client: AsyncClient, app_store: DatabaseStore, fake_classifier: AsyncMock
    ) -> None:
        fake_classifier.classify.side_effect = ClassifierUnavailable("timed out")
        await seed_conversation(app_store, "c-1")

        response = await client.post("/api/conversations/c-1/reclassify")

        assert response.status_code == 503

    async def test_malformed_sender_422(
        self, client: AsyncClient, app_store: DatabaseStore
    ) -> None:
        await seed_conversation(app_store, "c-1", sender_email="not-an-address")

        response = await client.post(
            "/api/conversations/c-1/reclassify", json={"skip_llm": True}
        )

        assert response.status_code == 422


# ---------------------------------------------------------------------------
# Corrections and review
# ---------------------------------------------------------------------------


class TestCorrections:
    async def test_correction_with_domain_rule(
        self, client: AsyncClient, app_store: DatabaseStore
    ) -> None:
        await seed_conversation(app_store, "c-1", sender_email="ap@vendorx.com")

        response = await client.post(
            "/api/conversations/c-1/corrections",
            json={"classification": "supplier_invoice", "corrected_by": "sam", "rule": "domain"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["decision_bucket"] == "auto_handled"
        assert data["rule_created"] is True
        assert data["pattern"] == "*@vendorx.com"

        rules = await client.get("/api/workspaces/ws-1/sender-rules")
        assert [rule["pattern"] for rule in rules.json()["rules"]] == ["*@vendorx.com"]

    async def test_unknown_label_422(
        self, client: AsyncClient, app_store: DatabaseStore
    ) -> None:
        await seed_conversation(app_store, "c-1")

        response = await client.post(
            "/api/conversations/c-1/corrections",
            json={"classification": "made_up", "corrected_by": "sam"},
        )

        assert response.status_code == 422

    async def test_missing_reviewer_rejected_by_validation(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/conversations/c-1/corrections",
            json={"classification": "supplier_invoice", "corrected_by": ""},
        )
        assert response.status_code == 422

    async def test_confirm_then_queue_is_empty(
        self, client: AsyncClient, app_store: DatabaseStore
    ) -> None:
        await seed_conversation(
            app_store, "c-1", classification="customer_inquiry", needs_review=True
        )

        queue = await client.get("/api/workspaces/ws-1/review-queue")
        assert [c["id"] for c in queue.json()["conversations"]] == ["c-1"]

        response = await client.post("/api/conversations/c-1/confirm", json={"reviewed_by": "sam"})
        assert response.status_code == 200
        assert response.json()["review_outcome"] == "confirmed"
        assert "draft_reply" not in response.json()

        queue = await client.get("/api/workspaces/ws-1/review-queue")
        assert queue.json()["conversations"] == []


# ---------------------------------------------------------------------------
# Batch and sender rules
# ---------------------------------------------------------------------------


class TestBatch:
    async def test_fast_batch_page(
        self, client: AsyncClient, app_store: DatabaseStore
    ) -> None:
        await app_store.insert_sender_rule("ws-1", "*@vendorx.com", "supplier_invoice", False)
        await seed_conversation(app_store, "c-1", sender_email="ap@vendorx.com", minutes=0)
        await seed_conversation(app_store, "c-2", sender_email="jo@customer.com", minutes=1)

        response = await client.post(
            "/api/workspaces/ws-1/batch", json={"mode": "fast", "limit": 10}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 2
        assert data["exhausted"] is True
        assert data["next_offset"] == 2
        assert data["results"] == [
            {
                "id": "c-1",
                "original_bucket": None,
                "new_bucket": "auto_handled",
                "rule_applied": True,
            }
        ]

    async def test_full_batch_page_is_capped(
        self, client: AsyncClient, app_store: DatabaseStore
    ) -> None:
        for i in range(12):
            await seed_conversation(app_store, f"c-{i:02d}", minutes=i)

        response = await client.post(
            "/api/workspaces/ws-1/batch", json={"mode": "full", "limit": 50, "dry_run": True}
        )

        data = response.json()
        assert data["limit"] == 10
        assert data["processed"] == 10
        assert data["exhausted"] is False

    async def test_negative_offset_rejected(self, client: AsyncClient) -> None:
        response = await client.post("/api/workspaces/ws-1/batch", json={"offset": -1})
        assert response.status_code == 422

    async def test_page_fetch_failure_503(
        self, client: AsyncClient, app_store: DatabaseStore
    ) -> None:
        app_store.list_conversations_page = AsyncMock(side_effect=DatabaseError("locked"))

        response = await client.post("/api/workspaces/ws-1/batch")

        assert response.status_code == 503


class TestSenderRules:
    async def test_deactivate_rule(self, client: AsyncClient, app_store: DatabaseStore) -> None:
        rule = await app_store.insert_sender_rule("ws-1", "*@a.com", "supplier_invoice", False)

        response = await client.delete(f"/api/sender-rules/{rule.id}")
        assert response.json() == {"status": "deactivated", "rule_id": rule.id}

        active = await client.get("/api/workspaces/ws-1/sender-rules?active_only=true")
        assert active.json()["rules"] == []

    async def test_deactivate_missing_rule_404(self, client: AsyncClient) -> None:
        response = await client.delete("/api/sender-rules/999")
        assert response.status_code == 404

    async def test_stats_include_learning(
        self, client: AsyncClient, app_store: DatabaseStore
    ) -> None:
        await seed_conversation(app_store, "c-1", decision_bucket="quick_win")

        response = await client.get("/api/workspaces/ws-1/stats")

        data = response.json()
        assert data["buckets"] == {"quick_win": 1}
        assert data["learning"]["total_corrections"] == 0
