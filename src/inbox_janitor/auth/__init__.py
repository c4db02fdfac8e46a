"""Authentication module for the Gmail API.

Turns a stored Google refresh token into access tokens.

Usage:
    from inbox_janitor.auth import GoogleAuth

    auth = GoogleAuth(client_id, client_secret, "data/tokens/<account_id>.token", encryption_key)
    token = auth.get_access_token()
"""

from inbox_janitor.auth.google_auth import GoogleAuth

__all__ = ["GoogleAuth"]
