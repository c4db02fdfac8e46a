"""Web API for InboxJanitor.

Provides a FastAPI JSON API for:
- Mailbox account registry and auto-include senders
- Resumable sync steps and sync progress
- Deletion suggestions, confirm-delete and manual delete (SSE streaming)
- Account statistics and user data teardown
"""

from inbox_janitor.web.app import create_app

__all__ = ["create_app"]
