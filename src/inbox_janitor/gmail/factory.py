"""Per-account mailbox adapters built from stored refresh tokens.

Each mailbox account has its own encrypted token file under
``gmail.token_dir``; the Fernet key comes from JANITOR_TOKEN_KEY (or
``gmail.token_encryption_key``).
The factory caches one MessageManager per account so access tokens are
reused across sync steps and deletions.

Usage:
    from inbox_janitor.gmail.factory import GmailMailboxFactory

    factory = GmailMailboxFactory(config)
    factory.store_refresh_token(account.id, refresh_token)
    messages = factory(account)
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from inbox_janitor.auth.google_auth import GoogleAuth, token_key_from_env
from inbox_janitor.core.errors import MailboxAuthError
from inbox_janitor.gmail.client import GmailClient
from inbox_janitor.gmail.messages import MessageManager

if TYPE_CHECKING:
    from inbox_janitor.config_schema import AppConfig
    from inbox_janitor.db.store import MailboxAccount


class GmailMailboxFactory:
    """Callable that returns the MessageManager for a mailbox account."""

    def __init__(self, config: AppConfig):
        self._config = config
        self._managers: dict[str, MessageManager] = {}

    def token_path(self, account_id: str) -> Path:
        return Path(self._config.gmail.token_dir) / f"{account_id}.token"

    def _auth(self, account_id: str) -> GoogleAuth:
        gmail = self._config.gmail
        if not gmail.client_id:
            raise MailboxAuthError(
                "gmail.client_id is not configured. "
                "Set it in config.yaml before connecting mailboxes."
            )
        try:
            return GoogleAuth(
                gmail.client_id,
                gmail.client_secret,
                self.token_path(account_id),
                encryption_key=token_key_from_env(gmail.token_encryption_key),
            )
        except ValueError as e:
            raise MailboxAuthError(str(e)) from e

    def store_refresh_token(self, account_id: str, refresh_token: str) -> None:
        self._auth(account_id).store_refresh_token(refresh_token)
        self._managers.pop(account_id, None)

    def forget(self, account_id: str) -> None:
        """Drop the cached adapter and the token file of a removed account."""
        self._managers.pop(account_id, None)
        self.token_path(account_id).unlink(missing_ok=True)

    def __call__(self, account: MailboxAccount) -> MessageManager:
        manager = self._managers.get(account.id)
        if manager is not None:
            return manager

        auth = self._auth(account.id)
        if not auth.has_refresh_token():
            raise MailboxAuthError(
                f"No Gmail authorization stored for {account.email_address}. "
                "Reconnect the account to grant access."
            )

        client = GmailClient(auth, timeout=self._config.gmail.request_timeout_seconds)
        manager = MessageManager(client)
        self._managers[account.id] = manager
        return manager
