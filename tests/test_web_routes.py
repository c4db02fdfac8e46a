"""Tests for web routes and API endpoints.

Tests the FastAPI application routes using httpx AsyncClient, covering
account ownership, sync stepping, suggestions, deletion (plain and
streamed), error mapping and the health endpoint.
"""

import json
from contextlib import asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import USER_ID, FakeMailbox, make_metadata
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from inbox_janitor.classifier.deletion_classifier import DeletionClassification
from inbox_janitor.classifier.sender_learning import SenderLearning
from inbox_janitor.config_schema import AppConfig
from inbox_janitor.core.errors import (
    ClassificationError,
    MailboxAuthError,
    MailboxFeatureDisabledError,
    MailboxQuotaError,
    RateLimitExceeded,
    SyncError,
)
from inbox_janitor.db.store import DatabaseStore, MailboxAccount
from inbox_janitor.engine.deletion import DeletionExecutor
from inbox_janitor.engine.suggest import SuggestEngine
from inbox_janitor.engine.sync import SyncEngine
from inbox_janitor.web.app import VERSION, create_app
from inbox_janitor.web.routes import error_payload

HEADERS = {"X-User-Id": USER_ID}

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class FakeFactory:
    """Mailbox factory double that hands out one FakeMailbox."""

    def __init__(self, mailbox: FakeMailbox):
        self.mailbox = mailbox
        self.tokens: dict[str, str] = {}
        self.forgotten: list[str] = []
        self.error: Exception | None = None

    def __call__(self, account: MailboxAccount) -> FakeMailbox:
        if self.error is not None:
            raise self.error
        return self.mailbox

    def store_refresh_token(self, account_id: str, refresh_token: str) -> None:
        self.tokens[account_id] = refresh_token

    def forget(self, account_id: str) -> None:
        self.forgotten.append(account_id)


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox([make_metadata(i) for i in range(12)])


@pytest.fixture
def factory(mailbox: FakeMailbox) -> FakeFactory:
    return FakeFactory(mailbox)


@pytest.fixture
def classifier() -> MagicMock:
    async def classify(account_id, inputs):
        return [DeletionClassification(item.id, "promo", 0.9, "Promo") for item in inputs]

    classifier = MagicMock()
    classifier.classify = AsyncMock(side_effect=classify)
    return classifier


@pytest.fixture
def app(
    store: DatabaseStore,
    sample_config: AppConfig,
    factory: FakeFactory,
    classifier: MagicMock,
) -> FastAPI:
    """Create a FastAPI app with test dependencies."""
    test_app = create_app()

    learning = SenderLearning(store)
    test_app.state.store = store
    test_app.state.config = sample_config
    test_app.state.mailbox_factory = factory
    test_app.state.sync_engine = SyncEngine(store, factory, sample_config)
    test_app.state.suggest_engine = SuggestEngine(store, classifier, sample_config)
    test_app.state.deletion_executor = DeletionExecutor(store, learning, factory)
    test_app.state.scheduler = None

    return test_app


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


async def _sync_and_suggest(client: AsyncClient, account: MailboxAccount) -> list[dict[str, Any]]:
    response = await client.post(f"/api/accounts/{account.id}/sync", headers=HEADERS)
    assert response.json()["status"] == "completed"
    response = await client.post(f"/api/accounts/{account.id}/suggest-deletes", headers=HEADERS)
    assert response.status_code == 200
    response = await client.get(f"/api/accounts/{account.id}/delete-candidates", headers=HEADERS)
    return response.json()["candidates"]


def _sse_events(body: str) -> list[dict[str, Any]]:
    return [
        json.loads(frame.removeprefix("data: "))
        for frame in body.split("\n\n")
        if frame.startswith("data: ")
    ]


# ---------------------------------------------------------------------------
# Health and auth
# ---------------------------------------------------------------------------


class TestHealth:
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_available"] is True
        assert data["classifier_available"] is True
        assert data["scheduler_running"] is False
        assert data["active_syncs"] == 0
        assert data["version"] == VERSION

    async def test_degraded_without_classifier(self, app: FastAPI, client: AsyncClient) -> None:
        app.state.suggest_engine = None

        response = await client.get("/api/health")

        assert response.json()["status"] == "degraded"


class TestUserScoping:
    async def test_missing_user_header(self, client: AsyncClient) -> None:
        response = await client.get("/api/accounts")

        assert response.status_code == 401

    async def test_foreign_account_is_404(self, client: AsyncClient, account: MailboxAccount) -> None:
        response = await client.get(
            f"/api/accounts/{account.id}/stats", headers={"X-User-Id": "intruder"}
        )

        assert response.status_code == 404

    async def test_unavailable_engine_is_503(
        self, app: FastAPI, client: AsyncClient, account: MailboxAccount
    ) -> None:
        app.state.suggest_engine = None

        response = await client.post(f"/api/accounts/{account.id}/suggest-deletes", headers=HEADERS)

        assert response.status_code == 503


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class TestAccounts:
    async def test_create_and_list(self, client: AsyncClient, factory: FakeFactory) -> None:
        response = await client.post(
            "/api/accounts",
            json={"email_address": "me@gmail.com", "refresh_token": "rt-1"},
            headers=HEADERS,
        )

        assert response.status_code == 201
        created = response.json()
        assert created["email_address"] == "me@gmail.com"
        assert factory.tokens == {created["id"]: "rt-1"}

        listed = (await client.get("/api/accounts", headers=HEADERS)).json()["accounts"]
        assert [a["id"] for a in listed] == [created["id"]]

        other = (await client.get("/api/accounts", headers={"X-User-Id": "other"})).json()
        assert other["accounts"] == []

    async def test_create_rejects_non_address(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/accounts", json={"email_address": "not-an-email"}, headers=HEADERS
        )

        assert response.status_code == 422

    async def test_delete_account(
        self,
        client: AsyncClient,
        account: MailboxAccount,
        store: DatabaseStore,
        factory: FakeFactory,
    ) -> None:
        response = await client.delete(f"/api/accounts/{account.id}", headers=HEADERS)

        assert response.status_code == 200
        assert await store.get_account(account.id) is None
        assert factory.forgotten == [account.id]

    async def test_auto_include_senders_round_trip(
        self, client: AsyncClient, account: MailboxAccount
    ) -> None:
        url = f"/api/accounts/{account.id}/auto-include-senders"

        response = await client.put(
            url, json={"senders": [" News@Shop.example ", "news@shop.example", ""]}, headers=HEADERS
        )

        assert response.json() == {"senders": ["news@shop.example"]}
        assert (await client.get(url, headers=HEADERS)).json() == {"senders": ["news@shop.example"]}


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


class TestSync:
    async def test_sync_step_and_snapshot(self, client: AsyncClient, account: MailboxAccount) -> None:
        before = await client.get(f"/api/accounts/{account.id}/sync", headers=HEADERS)
        assert before.json() == {"sync": None, "has_more": False}

        response = await client.post(f"/api/accounts/{account.id}/sync", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["has_more"] is False
        assert data["created"] == 12
        assert data["progress_percent"] == 100

        snapshot = (await client.get(f"/api/accounts/{account.id}/sync", headers=HEADERS)).json()
        assert snapshot["has_more"] is False
        assert snapshot["sync"]["status"] == "completed"
        assert snapshot["sync"]["processed_messages"] == 12

    async def test_sync_with_restart_body(self, client: AsyncClient, account: MailboxAccount) -> None:
        response = await client.post(
            f"/api/accounts/{account.id}/sync", json={"restart": True}, headers=HEADERS
        )

        assert response.status_code == 200

    async def test_auth_error_is_structured(
        self, client: AsyncClient, account: MailboxAccount, factory: FakeFactory
    ) -> None:
        factory.error = MailboxAuthError("token revoked", status_code=401)

        response = await client.post(f"/api/accounts/{account.id}/sync", headers=HEADERS)

        assert response.status_code == 401
        data = response.json()
        assert data["error"] == "auth_expired"
        assert data["resumable"] is True
        assert "Reconnect" in data["hint"]

    async def test_messages_listing_and_stats(
        self, client: AsyncClient, account: MailboxAccount
    ) -> None:
        await client.post(f"/api/accounts/{account.id}/sync", headers=HEADERS)

        messages = (
            await client.get(
                f"/api/accounts/{account.id}/messages",
                params={"read_status": "unread", "limit": 5},
                headers=HEADERS,
            )
        ).json()["messages"]
        assert len(messages) == 5
        assert all(m["is_unread"] for m in messages)

        stats = (await client.get(f"/api/accounts/{account.id}/stats", headers=HEADERS)).json()
        assert stats["total_emails"] == 12
        assert stats["total_senders"] == 1

    async def test_message_filter_options(
        self, client: AsyncClient, account: MailboxAccount
    ) -> None:
        await client.post(f"/api/accounts/{account.id}/sync", headers=HEADERS)
        await client.post(f"/api/accounts/{account.id}/suggest-deletes", headers=HEADERS)

        response = await client.get(
            f"/api/accounts/{account.id}/messages/filters", headers=HEADERS
        )

        assert response.status_code == 200
        assert response.json() == {"senders": ["news@shop.example"], "categories": ["promo"]}

    async def test_filter_options_of_foreign_account_is_404(
        self, client: AsyncClient, account: MailboxAccount
    ) -> None:
        response = await client.get(
            f"/api/accounts/{account.id}/messages/filters", headers={"X-User-Id": "someone-else"}
        )

        assert response.status_code == 404

    async def test_messages_limit_bounds(self, client: AsyncClient, account: MailboxAccount) -> None:
        response = await client.get(
            f"/api/accounts/{account.id}/messages", params={"limit": 0}, headers=HEADERS
        )

        assert response.status_code == 422


# ---------------------------------------------------------------------------
# Suggestions and deletion
# ---------------------------------------------------------------------------


class TestSuggestAndDelete:
    async def test_suggest_flags_candidates(self, client: AsyncClient, account: MailboxAccount) -> None:
        await client.post(f"/api/accounts/{account.id}/sync", headers=HEADERS)

        response = await client.post(f"/api/accounts/{account.id}/suggest-deletes", headers=HEADERS)

        assert response.json() == {"evaluated": 12, "candidates": 12, "updated": 12, "failed": 0}
        candidates = (
            await client.get(f"/api/accounts/{account.id}/delete-candidates", headers=HEADERS)
        ).json()
        assert candidates["total"] == 12

    async def test_classifier_outage_is_500(
        self, client: AsyncClient, account: MailboxAccount, classifier: MagicMock
    ) -> None:
        await client.post(f"/api/accounts/{account.id}/sync", headers=HEADERS)
        classifier.classify.side_effect = ClassificationError("all chunks failed", chunks_failed=1)

        response = await client.post(f"/api/accounts/{account.id}/suggest-deletes", headers=HEADERS)

        assert response.status_code == 500
        assert response.json()["error"] == "ClassificationError"

    async def test_confirm_delete_plain(
        self, client: AsyncClient, account: MailboxAccount, mailbox: FakeMailbox
    ) -> None:
        candidates = await _sync_and_suggest(client, account)
        selected = [c["id"] for c in candidates[:3]]

        response = await client.post(
            f"/api/accounts/{account.id}/confirm-delete",
            json={"message_ids": selected},
            headers=HEADERS,
        )

        data = response.json()
        assert data["type"] == "complete"
        assert data["deleted"] == 3
        assert data["skipped"] == 9
        assert data["batch_id"]
        assert len(mailbox.trashed) == 3

        remaining = (
            await client.get(f"/api/accounts/{account.id}/delete-candidates", headers=HEADERS)
        ).json()
        assert remaining["total"] == 0

    async def test_confirm_delete_streams_progress(
        self, client: AsyncClient, account: MailboxAccount
    ) -> None:
        candidates = await _sync_and_suggest(client, account)
        selected = [c["id"] for c in candidates[:2]]

        response = await client.post(
            f"/api/accounts/{account.id}/confirm-delete",
            json={"message_ids": selected, "stream": True},
            headers=HEADERS,
        )

        assert response.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(response.text)
        assert [e["type"] for e in events] == ["progress", "progress", "complete"]
        assert events[0] == {"type": "progress", "deleted": 1, "total": 2, "remaining": 1, "errors": 0}
        assert events[-1]["deleted"] == 2

    async def test_stream_reports_error_event(
        self, client: AsyncClient, account: MailboxAccount, factory: FakeFactory
    ) -> None:
        candidates = await _sync_and_suggest(client, account)
        factory.error = MailboxQuotaError("quota", status_code=429)

        response = await client.post(
            f"/api/accounts/{account.id}/confirm-delete",
            json={"message_ids": [candidates[0]["id"]], "stream": True},
            headers=HEADERS,
        )

        [event] = _sse_events(response.text)
        assert event["type"] == "error"
        assert event["error"] == "quota_exceeded"
        assert event["resumable"] is True

    async def test_manual_delete(
        self, client: AsyncClient, account: MailboxAccount, mailbox: FakeMailbox
    ) -> None:
        await client.post(f"/api/accounts/{account.id}/sync", headers=HEADERS)
        messages = (
            await client.get(f"/api/accounts/{account.id}/messages", headers=HEADERS)
        ).json()["messages"]

        response = await client.post(
            f"/api/accounts/{account.id}/messages/delete",
            json={"message_ids": [messages[0]["id"]]},
            headers=HEADERS,
        )

        assert response.json()["deleted"] == 1
        assert mailbox.trashed == [messages[0]["gmail_message_id"]]

    async def test_manual_delete_requires_ids(
        self, client: AsyncClient, account: MailboxAccount
    ) -> None:
        response = await client.post(
            f"/api/accounts/{account.id}/messages/delete",
            json={"message_ids": []},
            headers=HEADERS,
        )

        assert response.status_code == 422


class TestUserData:
    async def test_delete_user_data(
        self,
        client: AsyncClient,
        account: MailboxAccount,
        store: DatabaseStore,
        factory: FakeFactory,
    ) -> None:
        response = await client.delete("/api/user/data", headers=HEADERS)

        assert response.json() == {"deleted": True}
        assert await store.list_accounts(USER_ID) == []
        assert factory.forgotten == [account.id]


class TestErrorPayload:
    @pytest.mark.parametrize(
        ("error", "status", "kind", "resumable"),
        [
            (MailboxAuthError("x", status_code=401), 401, "auth_expired", True),
            (MailboxQuotaError("x", status_code=429), 429, "quota_exceeded", True),
            (RateLimitExceeded("x"), 429, "quota_exceeded", True),
            (SyncError("x", run_id="r"), 500, "SyncError", False),
            (RuntimeError("x"), 500, "RuntimeError", False),
        ],
    )
    def test_mapping(self, error: Exception, status: int, kind: str, resumable: bool) -> None:
        code, payload = error_payload(error)

        assert code == status
        assert payload["error"] == kind
        assert payload["resumable"] is resumable
        assert payload["hint"]

    def test_disabled_api_includes_enable_url(self) -> None:
        error = MailboxFeatureDisabledError("off", enable_url="https://console.example/enable")

        code, payload = error_payload(error)

        assert code == 403
        assert payload["enable_url"] == "https://console.example/enable"
