"""Gmail API client module.

Provides the REST client for the Gmail v1 API and the message operations
the engines rely on:
- Base client with retry logic and error mapping
- Message operations (list ids, metadata, thread reply status, trash)
- Per-account adapter factory backed by stored refresh tokens

Usage:
    from inbox_janitor.gmail import GmailMailboxFactory

    factory = GmailMailboxFactory(config)
    messages = factory(account)
"""

from inbox_janitor.gmail.client import GmailClient
from inbox_janitor.gmail.factory import GmailMailboxFactory
from inbox_janitor.gmail.messages import (
    MessageManager,
    MessageMetadata,
    MessagePage,
    parse_sender,
)

__all__ = [
    "GmailClient",
    "GmailMailboxFactory",
    "MessageManager",
    "MessageMetadata",
    "MessagePage",
    "parse_sender",
]
