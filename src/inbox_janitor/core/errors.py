"""Custom exception types for InboxJanitor.

Messages follow one standard:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance) where there is something to do

Mailbox errors carry a ``kind`` so callers can tell auth problems, disabled
APIs, quota exhaustion and timeouts apart without parsing messages.
"""

from typing import Literal

MailboxErrorKind = Literal[
    "auth_expired",
    "feature_disabled",
    "quota_exceeded",
    "not_found",
    "timeout",
    "generic",
]


class JanitorError(Exception):
    """Base exception for all InboxJanitor errors."""

    pass


class ConfigValidationError(JanitorError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(JanitorError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(JanitorError):
    """Raised when an OAuth access token cannot be obtained for a mailbox."""

    pass


class MailboxError(JanitorError):
    """Raised when the Gmail API returns an error.

    Attributes:
        status_code: HTTP status code from the API (None for transport errors)
        kind: Machine-readable error kind
        retryable: Whether retrying later can succeed without user action
    """

    kind: MailboxErrorKind = "generic"
    retryable: bool = False

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MailboxAuthError(MailboxError):
    """Raised on 401 responses: the mailbox authorization expired or was revoked."""

    kind: MailboxErrorKind = "auth_expired"


class MailboxFeatureDisabledError(MailboxError):
    """Raised on 403 responses, typically when the Gmail API is not enabled.

    Attributes:
        enable_url: Google Cloud Console link to enable the API
    """

    kind: MailboxErrorKind = "feature_disabled"

    def __init__(self, message: str, status_code: int | None = 403, enable_url: str = ""):
        super().__init__(message, status_code=status_code)
        self.enable_url = enable_url


class MailboxQuotaError(MailboxError):
    """Raised when Gmail quota or rate limits are exhausted after retries."""

    kind: MailboxErrorKind = "quota_exceeded"
    retryable = True


class MailboxNotFoundError(MailboxError):
    """Raised when a message or thread no longer exists."""

    kind: MailboxErrorKind = "not_found"


class MailboxTimeoutError(MailboxError):
    """Raised when requests to Gmail keep timing out after retries."""

    kind: MailboxErrorKind = "timeout"
    retryable = True


class DeadlineExceededError(MailboxTimeoutError):
    """Raised when a request or retry would run past the caller's time limit.

    The sync engine treats this as its own budget running out, not as a
    transport failure.
    """

    pass


class RateLimitExceeded(JanitorError):
    """Raised when the local token bucket would require an excessive wait (>20 seconds)."""

    pass


class ClassificationError(JanitorError):
    """Raised when deletion classification fails for a whole run.

    Attributes:
        chunks_failed: Number of chunks that failed
    """

    def __init__(self, message: str, chunks_failed: int = 0):
        super().__init__(message)
        self.chunks_failed = chunks_failed


class DatabaseError(JanitorError):
    """Raised when SQLite operations fail."""

    pass


class SyncError(JanitorError):
    """Raised when a sync run fails terminally and is marked 'failed'.

    Attributes:
        run_id: The SyncProgress row that was failed
    """

    def __init__(self, message: str, run_id: str | None = None):
        super().__init__(message)
        self.run_id = run_id


class AccountNotFoundError(JanitorError):
    """Raised when a mailbox account does not exist or belongs to another user."""

    pass
