"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan and stored
on app.state, so tests can replace any of them before sending requests.

The current user comes from the external session layer as the
``X-User-Id`` header.

Usage:
    from inbox_janitor.web.dependencies import get_store, get_owned_account

    @router.get("/accounts/{account_id}/stats")
    async def stats(account: MailboxAccount = Depends(get_owned_account)):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Depends, Header, HTTPException, Request

from inbox_janitor.db.store import DatabaseStore, MailboxAccount

if TYPE_CHECKING:
    from inbox_janitor.config_schema import AppConfig
    from inbox_janitor.engine.deletion import DeletionExecutor
    from inbox_janitor.engine.suggest import SuggestEngine
    from inbox_janitor.engine.sync import SyncEngine
    from inbox_janitor.gmail.factory import GmailMailboxFactory


def _require(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=503,
            detail=f"Service not available ({name}). Check config.yaml and the server log.",
        )
    return value


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    return _require(request, "store")


def get_config(request: Request) -> AppConfig:
    """Get the current AppConfig from app state."""
    return _require(request, "config")


def get_sync_engine(request: Request) -> SyncEngine:
    return _require(request, "sync_engine")


def get_suggest_engine(request: Request) -> SuggestEngine:
    """Get the SuggestEngine (needs an Anthropic API key)."""
    return _require(request, "suggest_engine")


def get_deletion_executor(request: Request) -> DeletionExecutor:
    return _require(request, "deletion_executor")


def get_mailbox_factory(request: Request) -> GmailMailboxFactory | None:
    return getattr(request.app.state, "mailbox_factory", None)


def get_current_user(x_user_id: str | None = Header(default=None)) -> str:
    """User id supplied by the session layer."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


async def get_owned_account(
    account_id: str,
    user_id: str = Depends(get_current_user),
    store: DatabaseStore = Depends(get_store),
) -> MailboxAccount:
    """Mailbox account from the path, 404 unless it belongs to the user."""
    account = await store.get_account(account_id, user_id=user_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Mailbox account not found")
    return account
