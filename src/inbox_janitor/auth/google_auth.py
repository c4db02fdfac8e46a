"""Google OAuth2 refresh-token authentication for the Gmail API.

Consent and refresh-token acquisition belong to the external session layer.
This module only turns a stored refresh token into short-lived access tokens.

Key features:
- Per-account token file, Fernet-encrypted at rest (mode 600)
- Access token cached in memory until shortly before expiry
- Retry with jittered backoff on transient token endpoint failures

Usage:
    from inbox_janitor.auth.google_auth import GoogleAuth

    auth = GoogleAuth(
        client_id=config.gmail.client_id,
        client_secret=config.gmail.client_secret,
        token_path="data/tokens/<account_id>.token",
        encryption_key=os.environ["JANITOR_TOKEN_KEY"],
    )

    token = auth.get_access_token()
"""

import json
import os
import random
import stat
import time
from pathlib import Path

import requests
from cryptography.fernet import Fernet, InvalidToken

from inbox_janitor.core.errors import AuthenticationError
from inbox_janitor.core.logging import get_logger

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Retry configuration for the token endpoint
TOKEN_MAX_RETRIES = 3
TOKEN_RETRY_DELAYS = [1.0, 2.0, 4.0]

# Refresh this many seconds before the reported expiry
EXPIRY_SKEW_SECONDS = 60

# Environment variable holding the Fernet key for token files
TOKEN_KEY_ENV = "JANITOR_TOKEN_KEY"


def generate_token_key() -> str:
    """New random key for TOKEN_KEY_ENV."""
    return Fernet.generate_key().decode()


def token_key_from_env(configured: str = "") -> str:
    """Token file key from the environment, falling back to the configured one."""
    return os.getenv(TOKEN_KEY_ENV) or configured


class GoogleAuth:
    """Exchanges a stored refresh token for Gmail access tokens.

    Attributes:
        client_id: Google OAuth client ID
        client_secret: Google OAuth client secret
        token_path: Path of the per-account token file

    Security notes:
        - The token file is encrypted with the Fernet key and written with
          mode 600 (owner read/write only)
        - Refresh tokens are never logged
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_path: str | Path,
        encryption_key: str,
    ):
        if not client_id or not client_id.strip():
            raise ValueError(
                "gmail.client_id is required. "
                "Create an OAuth client in Google Cloud Console: APIs & Services → Credentials"
            )
        if not encryption_key:
            raise ValueError(
                f"{TOKEN_KEY_ENV} is not set. "
                "Generate a key with `inbox-janitor token-key` and export it."
            )
        try:
            self._fernet = Fernet(encryption_key.encode())
        except ValueError as e:
            raise ValueError(
                f"{TOKEN_KEY_ENV} is not a valid Fernet key ({e}). "
                "Generate a key with `inbox-janitor token-key`."
            ) from e

        self.client_id = client_id
        self.client_secret = client_secret
        self.token_path = Path(token_path)
        self._access_token: str | None = None
        self._expires_at: float = 0.0

    def store_refresh_token(self, refresh_token: str) -> None:
        """Persist the refresh token handed over by the session layer."""
        self.token_path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps({"refresh_token": refresh_token}).encode()
        self.token_path.write_bytes(self._fernet.encrypt(payload))
        self.token_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        self._access_token = None
        logger.info("refresh_token_stored", token_path=str(self.token_path))

    def has_refresh_token(self) -> bool:
        return self._load_refresh_token() is not None

    def _load_refresh_token(self) -> str | None:
        if not self.token_path.exists():
            return None
        try:
            data = json.loads(self._fernet.decrypt(self.token_path.read_bytes()))
        except InvalidToken:
            logger.warning(
                "token_file_undecryptable",
                token_path=str(self.token_path),
                hint=f"written with a different {TOKEN_KEY_ENV}; reconnect the account",
            )
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("token_file_unreadable", token_path=str(self.token_path), error=str(e))
            return None
        return data.get("refresh_token") or None

    def get_access_token(self) -> str:
        """Get a valid access token, refreshing when the cached one is stale.

        Raises:
            AuthenticationError: If no refresh token is stored or Google rejects it
        """
        if self._access_token and time.time() < self._expires_at:
            return self._access_token

        refresh_token = self._load_refresh_token()
        if not refresh_token:
            raise AuthenticationError(
                f"No Gmail refresh token at {self.token_path}. "
                "Reconnect the Gmail account to grant access again."
            )

        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        last_error: Exception | None = None
        for attempt in range(TOKEN_MAX_RETRIES + 1):
            try:
                response = requests.post(GOOGLE_TOKEN_URL, data=payload, timeout=30)
            except requests.exceptions.RequestException as e:
                last_error = e
            else:
                if response.status_code == 200:
                    data = response.json()
                    self._access_token = data["access_token"]
                    self._expires_at = (
                        time.time() + int(data.get("expires_in", 3600)) - EXPIRY_SKEW_SECONDS
                    )
                    logger.debug("access_token_refreshed", expires_in=data.get("expires_in"))
                    return self._access_token

                if response.status_code < 500:
                    error_code = _error_code(response)
                    logger.error(
                        "token_refresh_rejected",
                        status_code=response.status_code,
                        error_code=error_code,
                    )
                    raise AuthenticationError(
                        f"Google rejected the refresh token ({error_code}). "
                        "The Gmail authorization expired or was revoked; reconnect the account."
                    )
                last_error = AuthenticationError(f"Token endpoint returned {response.status_code}")

            if attempt < TOKEN_MAX_RETRIES:
                base_delay = TOKEN_RETRY_DELAYS[attempt]
                delay = base_delay + base_delay * 0.2 * (2 * random.random() - 1)
                logger.warning(
                    "token_refresh_retry",
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(last_error),
                )
                time.sleep(delay)

        raise AuthenticationError(
            f"Could not refresh Gmail access token after {TOKEN_MAX_RETRIES} retries: {last_error}. "
            "Check network connectivity to oauth2.googleapis.com."
        )


def _error_code(response: requests.Response) -> str:
    try:
        return response.json().get("error", "unknown")
    except ValueError:
        return "unknown"
