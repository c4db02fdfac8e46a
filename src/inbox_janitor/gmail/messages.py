"""Gmail message operations used by the sync and deletion engines.

This module is the mailbox adapter: it lists message ids for a query,
fetches per-message metadata and thread reply status, and moves messages
to the trash. Errors surface as MailboxError subclasses so the engines can
tell auth, quota and disabled-API failures apart.

Usage:
    from inbox_janitor.gmail.client import GmailClient
    from inbox_janitor.gmail.messages import MessageManager

    client = GmailClient(auth)
    messages = MessageManager(client)

    page = messages.list_message_ids("after:1700000000", page_size=500)
    for message_id in page.ids:
        metadata = messages.get_message_metadata(message_id)
"""

import re
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from inbox_janitor.core.errors import MailboxError
from inbox_janitor.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_janitor.gmail.client import GmailClient

logger = get_logger(__name__)

# Gmail caps messages.list at 500 ids per page
MAX_PAGE_SIZE = 500

METADATA_HEADERS = ("From", "Subject", "Date")

_SENDER_RE = re.compile(r"^(.*?)\s*<([^<>]+)>$")

# Failures that concern the whole mailbox, not one thread
_PROPAGATED_KINDS = frozenset({"auth_expired", "feature_disabled", "quota_exceeded", "timeout"})


@dataclass
class MessagePage:
    """One page of message ids from messages.list."""

    ids: list[str] = field(default_factory=list)
    next_page_token: str | None = None
    result_size_estimate: int = 0


@dataclass
class MessageMetadata:
    """Headers and labels of one message (format=metadata)."""

    id: str
    thread_id: str | None
    from_header: str
    subject: str
    snippet: str
    internal_date_ms: int
    labels: list[str] = field(default_factory=list)


def parse_sender(from_header: str) -> tuple[str, str | None]:
    """Split a From header into (address, display name).

    Handles "Name <user@example.com>" and bare "user@example.com". The
    address is lowercased; surrounding quotes are stripped from the name.

    Example:
        >>> parse_sender('"Acme News" <News@Acme.com>')
        ('news@acme.com', 'Acme News')
    """
    value = from_header.strip()
    match = _SENDER_RE.match(value)
    if match:
        name = match.group(1).strip().strip('"').strip() or None
        return match.group(2).strip().lower(), name
    return value.lower(), None


class MessageManager:
    """Gmail message operations for one mailbox.

    Attributes:
        client: GmailClient instance for API calls
    """

    def __init__(self, client: "GmailClient"):
        self.client = client

    def time_limit(self, seconds: float) -> AbstractContextManager[None]:
        """Bound the Gmail calls made inside the block (see GmailClient.time_limit)."""
        return self.client.time_limit(seconds)

    def list_message_ids(
        self,
        query: str,
        page_size: int = MAX_PAGE_SIZE,
        page_token: str | None = None,
    ) -> MessagePage:
        """List one page of message ids matching a Gmail search query.

        Args:
            query: Gmail search query (e.g. "after:1700000000")
            page_size: Ids per page (capped at 500)
            page_token: Continuation token from a previous page

        Returns:
            MessagePage with ids in provider order and the next page token
        """
        params: dict[str, Any] = {"q": query, "maxResults": min(page_size, MAX_PAGE_SIZE)}
        if page_token:
            params["pageToken"] = page_token

        data = self.client.get("/messages", params=params)

        ids = [item["id"] for item in data.get("messages", []) if item.get("id")]
        page = MessagePage(
            ids=ids,
            next_page_token=data.get("nextPageToken") or None,
            result_size_estimate=int(data.get("resultSizeEstimate", 0) or 0),
        )
        logger.debug(
            "message_page_listed",
            count=len(ids),
            has_next=page.next_page_token is not None,
            estimate=page.result_size_estimate,
        )
        return page

    def get_message_metadata(self, message_id: str) -> MessageMetadata:
        """Fetch headers, snippet, labels and internal date of one message.

        Raises:
            MailboxNotFoundError: If the message no longer exists
        """
        params = [("format", "metadata")]
        params.extend(("metadataHeaders", header) for header in METADATA_HEADERS)
        data = self.client.get(f"/messages/{message_id}", params=params)

        headers = {
            header.get("name", "").lower(): header.get("value", "")
            for header in data.get("payload", {}).get("headers", [])
        }

        return MessageMetadata(
            id=data.get("id", message_id),
            thread_id=data.get("threadId"),
            from_header=headers.get("from", ""),
            subject=headers.get("subject", ""),
            snippet=data.get("snippet", ""),
            internal_date_ms=int(data.get("internalDate", 0) or 0),
            labels=list(data.get("labelIds", [])),
        )

    def get_thread_reply_status(self, thread_id: str, owner_address: str) -> bool:
        """Whether the mailbox owner has replied in a thread.

        A thread counts as replied when any message carries the SENT label
        or its From header contains the owner's address. A thread that
        cannot be read is treated as "not replied"; auth, quota and timeout
        errors propagate.
        """
        params = [("format", "metadata"), ("metadataHeaders", "From")]
        try:
            data = self.client.get(f"/threads/{thread_id}", params=params)
        except MailboxError as e:
            if e.kind in _PROPAGATED_KINDS:
                raise
            logger.warning("thread_reply_lookup_failed", thread_id=thread_id, error=str(e))
            return False

        owner = owner_address.lower()
        for message in data.get("messages", []):
            if "SENT" in message.get("labelIds", []):
                return True
            for header in message.get("payload", {}).get("headers", []):
                if header.get("name", "").lower() == "from" and owner in header.get("value", "").lower():
                    return True
        return False

    def trash(self, message_id: str) -> None:
        """Move a message to the Gmail trash."""
        self.client.post(f"/messages/{message_id}/trash")
        logger.debug("message_trashed", gmail_message_id=message_id)
