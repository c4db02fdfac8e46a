"""JSON API routes for InboxJanitor.

All endpoints live under /api and act for the user named by the
``X-User-Id`` header. Account-scoped routes return 404 for accounts the
user does not own.

Run-level errors are answered with a structured body so clients can
decide whether to retry now, retry later, or ask the user to act:

    {"error": "quota_exceeded", "detail": "...", "hint": "...", "resumable": true}

Deletion endpoints can stream progress as server-sent events when the
request sets ``"stream": true``.
"""

from __future__ import annotations

import dataclasses
import json
from collections.abc import AsyncIterator
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from inbox_janitor.core.errors import (
    AccountNotFoundError,
    ClassificationError,
    JanitorError,
    MailboxAuthError,
    MailboxError,
    MailboxFeatureDisabledError,
    MailboxQuotaError,
    MailboxTimeoutError,
    RateLimitExceeded,
    SyncError,
)
from inbox_janitor.core.logging import get_logger
from inbox_janitor.db.store import DatabaseStore, MailboxAccount, Message, SyncProgress
from inbox_janitor.engine.deletion import DeletionEvent, DeletionExecutor
from inbox_janitor.engine.suggest import SuggestEngine
from inbox_janitor.engine.sync import SyncEngine
from inbox_janitor.web.dependencies import (
    get_current_user,
    get_deletion_executor,
    get_mailbox_factory,
    get_owned_account,
    get_store,
    get_suggest_engine,
    get_sync_engine,
)

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class AccountCreateRequest(BaseModel):
    """Request body for connecting a Gmail account."""

    email_address: str = Field(min_length=3)
    refresh_token: str | None = None


class AutoIncludeSendersRequest(BaseModel):
    senders: list[str]


class SyncRequest(BaseModel):
    restart: bool = False


class DeleteRequest(BaseModel):
    """Request body for confirm-delete and manual delete."""

    message_ids: list[str]
    stream: bool = False


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def error_payload(error: Exception) -> tuple[int, dict[str, Any]]:
    """Map an exception to (HTTP status, structured body)."""
    payload: dict[str, Any] = {"detail": str(error), "resumable": False}

    if isinstance(error, MailboxAuthError):
        status = 401
        payload["hint"] = "Gmail authorization expired. Reconnect the account, then sync again."
        payload["resumable"] = True
    elif isinstance(error, MailboxFeatureDisabledError):
        status = 403
        payload["hint"] = "Enable the Gmail API for the Google Cloud project, then sync again."
        payload["enable_url"] = error.enable_url
        payload["resumable"] = True
    elif isinstance(error, (MailboxQuotaError, RateLimitExceeded)):
        status = 429
        payload["hint"] = "Rate limit reached. The operation continues on the next call."
        payload["resumable"] = True
    elif isinstance(error, MailboxTimeoutError):
        status = 504
        payload["hint"] = "Gmail timed out. The operation continues on the next call."
        payload["resumable"] = True
    elif isinstance(error, AccountNotFoundError):
        status = 404
        payload["hint"] = "Check the account id."
    elif isinstance(error, ClassificationError):
        status = 500
        payload["hint"] = "The classifier could not be reached. Try again later."
        payload["resumable"] = True
    elif isinstance(error, SyncError):
        status = 500
        payload["hint"] = "The sync run failed. Start a new sync."
    else:
        status = 500
        payload["hint"] = "Unexpected error. See the server log."

    if isinstance(error, MailboxError):
        payload["error"] = error.kind
    elif isinstance(error, RateLimitExceeded):
        payload["error"] = "quota_exceeded"
    else:
        payload["error"] = type(error).__name__
    return status, payload


def _error_response(error: Exception) -> JSONResponse:
    status, payload = error_payload(error)
    logger.warning("api_error", status=status, error=payload["error"], detail=payload["detail"])
    return JSONResponse(status_code=status, content=payload)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _account_to_dict(account: MailboxAccount) -> dict[str, Any]:
    return {
        "id": account.id,
        "email_address": account.email_address,
        "auto_include_senders": account.auto_include_senders,
        "created_at": _iso(account.created_at),
    }


def _message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "gmail_message_id": message.gmail_message_id,
        "gmail_thread_id": message.gmail_thread_id,
        "sender": message.sender,
        "sender_name": message.sender_name,
        "subject": message.subject,
        "snippet": message.snippet,
        "internal_date": _iso(message.internal_date),
        "labels": message.labels,
        "is_unread": message.is_unread,
        "has_user_replied": message.has_user_replied,
        "ai_category": message.ai_category,
        "ai_delete_score": message.ai_delete_score,
        "ai_delete_reason": message.ai_delete_reason,
        "is_delete_candidate": message.is_delete_candidate,
    }


def _sync_to_dict(progress: SyncProgress) -> dict[str, Any]:
    percent = 100 if progress.status == "completed" else 0
    if progress.status != "completed" and progress.total_messages > 0:
        percent = min(99, int(progress.processed_messages * 100 / progress.total_messages))
    return {
        "id": progress.id,
        "status": progress.status,
        "total_messages": progress.total_messages,
        "processed_messages": progress.processed_messages,
        "created_messages": progress.created_messages,
        "updated_messages": progress.updated_messages,
        "error_count": progress.error_count,
        "error_message": progress.error_message,
        "progress_percent": percent,
        "started_at": _iso(progress.started_at),
        "updated_at": _iso(progress.updated_at),
        "completed_at": _iso(progress.completed_at),
    }


def _sse_frame(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


async def _sse_events(events: AsyncIterator[DeletionEvent]) -> AsyncIterator[str]:
    """Render deletion events as SSE frames; a failure ends with an error event."""
    try:
        async for event in events:
            yield _sse_frame(event.to_dict())
    except JanitorError as e:
        _, payload = error_payload(e)
        logger.warning("stream_failed", error=payload["error"], detail=payload["detail"])
        yield _sse_frame({"type": "error", **payload})


async def _run_deletion(
    events: AsyncIterator[DeletionEvent],
    stream: bool,
):
    if stream:
        return StreamingResponse(
            _sse_events(events),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    summary = None
    try:
        async for event in events:
            summary = event
    except JanitorError as e:
        return _error_response(e)
    return summary.to_dict() if summary else {}


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health_check(request: Request):
    """Health check endpoint for Docker and monitoring."""
    from inbox_janitor.web.app import VERSION

    state = request.app.state
    store: DatabaseStore | None = getattr(state, "store", None)
    classifier_available = getattr(state, "suggest_engine", None) is not None
    active_syncs = len(await store.list_active_syncs()) if store else 0

    return {
        "status": "healthy" if store and classifier_available else "degraded",
        "database_available": store is not None,
        "classifier_available": classifier_available,
        "scheduler_running": getattr(state, "scheduler", None) is not None,
        "active_syncs": active_syncs,
        "version": VERSION,
    }


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@api_router.get("/accounts")
async def list_accounts(
    user_id: str = Depends(get_current_user),
    store: DatabaseStore = Depends(get_store),
):
    accounts = await store.list_accounts(user_id)
    return {"accounts": [_account_to_dict(account) for account in accounts]}


@api_router.post("/accounts", status_code=201)
async def create_account(
    body: AccountCreateRequest,
    request: Request,
    user_id: str = Depends(get_current_user),
    store: DatabaseStore = Depends(get_store),
):
    """Connect a Gmail account, optionally storing its refresh token."""
    if "@" not in body.email_address:
        raise HTTPException(status_code=422, detail="email_address must be an email address")

    account = await store.create_account(user_id, body.email_address)
    if body.refresh_token:
        factory = get_mailbox_factory(request)
        if factory is None:
            raise HTTPException(status_code=503, detail="Gmail is not configured")
        try:
            factory.store_refresh_token(account.id, body.refresh_token)
        except MailboxError as e:
            return _error_response(e)

    logger.info("account_connected", account_id=account.id)
    return _account_to_dict(account)


@api_router.delete("/accounts/{account_id}")
async def delete_account(
    request: Request,
    account: MailboxAccount = Depends(get_owned_account),
    store: DatabaseStore = Depends(get_store),
):
    """Remove an account and everything synced for it."""
    await store.delete_account(account.id)
    factory = get_mailbox_factory(request)
    if factory is not None:
        factory.forget(account.id)
    return {"deleted": True}


@api_router.get("/accounts/{account_id}/auto-include-senders")
async def get_auto_include_senders(account: MailboxAccount = Depends(get_owned_account)):
    return {"senders": account.auto_include_senders}


@api_router.put("/accounts/{account_id}/auto-include-senders")
async def put_auto_include_senders(
    body: AutoIncludeSendersRequest,
    account: MailboxAccount = Depends(get_owned_account),
    store: DatabaseStore = Depends(get_store),
):
    """Replace the senders that are classified regardless of age."""
    senders = await store.set_auto_include_senders(account.id, body.senders)
    return {"senders": senders}


@api_router.get("/accounts/{account_id}/stats")
async def account_stats(
    account: MailboxAccount = Depends(get_owned_account),
    store: DatabaseStore = Depends(get_store),
):
    return await store.get_account_stats(account.id)


@api_router.get("/accounts/{account_id}/messages")
async def list_messages(
    account: MailboxAccount = Depends(get_owned_account),
    store: DatabaseStore = Depends(get_store),
    sender: str | None = None,
    category: str | None = None,
    read_status: Literal["all", "read", "unread"] = "all",
    candidates_only: bool = False,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """Non-deleted messages, newest first, with optional filters."""
    messages = await store.list_messages(
        account.id,
        sender=sender,
        category=category,
        read_status=read_status,
        candidates_only=candidates_only,
        limit=limit,
        offset=offset,
    )
    return {"messages": [_message_to_dict(message) for message in messages]}


@api_router.get("/accounts/{account_id}/messages/filters")
async def message_filter_options(
    account: MailboxAccount = Depends(get_owned_account),
    store: DatabaseStore = Depends(get_store),
):
    """Sender and category values for the message list filters."""
    return await store.get_filter_options(account.id)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@api_router.post("/accounts/{account_id}/sync")
async def run_sync(
    body: SyncRequest | None = None,
    account: MailboxAccount = Depends(get_owned_account),
    sync_engine: SyncEngine = Depends(get_sync_engine),
):
    """Run one bounded sync step. Call again while ``has_more`` is true."""
    restart = body.restart if body else False
    try:
        result = await sync_engine.run_sync(account.user_id, account.id, restart=restart)
    except JanitorError as e:
        return _error_response(e)

    return {**dataclasses.asdict(result), "progress_percent": result.progress_percent}


@api_router.get("/accounts/{account_id}/sync")
async def get_sync(
    account: MailboxAccount = Depends(get_owned_account),
    store: DatabaseStore = Depends(get_store),
):
    """Snapshot of the latest sync run (null before the first sync)."""
    progress = await store.get_latest_sync(account.id)
    if progress is None:
        return {"sync": None, "has_more": False}
    return {"sync": _sync_to_dict(progress), "has_more": progress.is_active}


# ---------------------------------------------------------------------------
# Suggestions and deletion
# ---------------------------------------------------------------------------


@api_router.post("/accounts/{account_id}/suggest-deletes")
async def suggest_deletes(
    account: MailboxAccount = Depends(get_owned_account),
    suggest_engine: SuggestEngine = Depends(get_suggest_engine),
):
    """Run one classification pass over eligible messages."""
    try:
        result = await suggest_engine.run_classification(account.user_id, account.id)
    except JanitorError as e:
        return _error_response(e)

    return {
        "evaluated": result.evaluated,
        "candidates": result.candidates,
        "updated": result.updated,
        "failed": result.failed,
    }


@api_router.get("/accounts/{account_id}/delete-candidates")
async def delete_candidates(
    account: MailboxAccount = Depends(get_owned_account),
    store: DatabaseStore = Depends(get_store),
    limit: int | None = Query(default=None, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
):
    """Current candidates, highest delete score first."""
    candidates = await store.get_delete_candidates(account.id, limit=limit, offset=offset)
    total = await store.count_delete_candidates(account.id)
    return {
        "total": total,
        "candidates": [_message_to_dict(message) for message in candidates],
    }


@api_router.post("/accounts/{account_id}/confirm-delete")
async def confirm_delete(
    body: DeleteRequest,
    account: MailboxAccount = Depends(get_owned_account),
    executor: DeletionExecutor = Depends(get_deletion_executor),
):
    """Trash the selected candidates; every other candidate is kept."""
    events = executor.iter_confirm_delete(account.user_id, account.id, body.message_ids)
    return await _run_deletion(events, body.stream)


@api_router.post("/accounts/{account_id}/messages/delete")
async def manual_delete(
    body: DeleteRequest,
    account: MailboxAccount = Depends(get_owned_account),
    executor: DeletionExecutor = Depends(get_deletion_executor),
):
    """Trash messages picked directly by the user."""
    if not body.message_ids:
        raise HTTPException(status_code=422, detail="message_ids must not be empty")
    events = executor.iter_manual_delete(account.user_id, account.id, body.message_ids)
    return await _run_deletion(events, body.stream)


# ---------------------------------------------------------------------------
# User data
# ---------------------------------------------------------------------------


@api_router.delete("/user/data")
async def delete_user_data(
    request: Request,
    user_id: str = Depends(get_current_user),
    store: DatabaseStore = Depends(get_store),
):
    """Remove the user and all of their accounts, messages and statistics."""
    factory = get_mailbox_factory(request)
    if factory is not None:
        for account in await store.list_accounts(user_id):
            factory.forget(account.id)
    deleted = await store.delete_user_data(user_id)
    return {"deleted": deleted}
