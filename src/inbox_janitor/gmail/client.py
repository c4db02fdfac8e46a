"""Gmail REST API client with retry logic and error mapping.

This module provides the HTTP client for the Gmail v1 API, including:
- Automatic retry with exponential backoff and jitter for 5xx/429/timeouts
- Proactive rate limiting through a shared token bucket
- Mapping of error responses onto the MailboxError taxonomy (auth expired,
  feature disabled, quota exceeded, not found, timeout, generic)

Usage:
    from inbox_janitor.auth.google_auth import GoogleAuth
    from inbox_janitor.gmail.client import GmailClient

    auth = GoogleAuth(client_id, client_secret, token_path, encryption_key)
    client = GmailClient(auth)

    page = client.get("/messages", params={"q": "after:1700000000", "maxResults": 500})
"""

import random
import re
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, Protocol

import requests

from inbox_janitor.core.errors import (
    AuthenticationError,
    DeadlineExceededError,
    MailboxAuthError,
    MailboxError,
    MailboxFeatureDisabledError,
    MailboxNotFoundError,
    MailboxQuotaError,
    MailboxTimeoutError,
)
from inbox_janitor.core.logging import get_logger
from inbox_janitor.core.rate_limiter import get_bucket

logger = get_logger(__name__)

GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]

# Longer Retry-After waits surface as quota errors instead of blocking
MAX_RETRY_AFTER_SECONDS = 30.0

# Gmail allows 250 quota units/s per user; messages.get costs 5 units
GMAIL_RATE = 25.0
GMAIL_CAPACITY = 25

ENABLE_API_URL = "https://console.developers.google.com/apis/library/gmail.googleapis.com"
ENABLE_API_PROJECT_URL = (
    "https://console.developers.google.com/apis/api/gmail.googleapis.com/overview?project={project}"
)

_QUOTA_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "dailyLimitExceeded"}
_PROJECT_RE = re.compile(r"project\s+(\d+)")


class AccessTokenProvider(Protocol):
    def get_access_token(self) -> str: ...


def build_enable_url(message: str) -> str:
    """Console link to enable the Gmail API, pointing at the project when the error names it."""
    match = _PROJECT_RE.search(message)
    if match:
        return ENABLE_API_PROJECT_URL.format(project=match.group(1))
    return ENABLE_API_URL


class GmailClient:
    """Gmail API client with retry logic and error handling.

    Attributes:
        auth: Access token provider (GoogleAuth)
        base_url: Gmail API base URL for the authenticated user
        max_retries: Maximum number of retry attempts
        retry_delays: Delay times (seconds) for each retry
        timeout: Per-request timeout in seconds
        _clock: Monotonic clock used for time limits
        _deadline: Clock value no request may run past (None when unbounded)
    """

    def __init__(
        self,
        auth: AccessTokenProvider,
        base_url: str = GMAIL_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.timeout = timeout
        self.session = requests.Session()
        self._rate_bucket = get_bucket(name="gmail_api", rate=GMAIL_RATE, capacity=GMAIL_CAPACITY)
        self._clock = clock
        self._deadline: float | None = None

    @contextmanager
    def time_limit(self, seconds: float) -> Iterator[None]:
        """Bound every request made inside the block, retries and backoff included.

        A request that cannot finish in time raises DeadlineExceededError
        instead of sleeping past the limit.
        """
        previous = self._deadline
        self._deadline = self._clock() + max(0.0, seconds)
        try:
            yield
        finally:
            self._deadline = previous

    def _time_left(self) -> float | None:
        if self._deadline is None:
            return None
        return self._deadline - self._clock()

    def _request_timeout(self, endpoint: str) -> float:
        time_left = self._time_left()
        if time_left is None:
            return self.timeout
        if time_left <= 0:
            raise DeadlineExceededError(f"Time limit reached before requesting Gmail {endpoint}.")
        return min(self.timeout, time_left)

    def _fits_before_deadline(self, delay: float) -> bool:
        time_left = self._time_left()
        return time_left is None or delay < time_left

    def _get_headers(self) -> dict[str, str]:
        """Request headers with a current access token.

        Raises:
            MailboxAuthError: If no access token can be obtained
        """
        try:
            token = self.auth.get_access_token()
        except AuthenticationError as e:
            raise MailboxAuthError(str(e), status_code=401) from e

        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    def _make_url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self.base_url + endpoint

    def _error_details(self, response: requests.Response) -> tuple[str, set[str]]:
        """Extract the error message and reason codes from a Google error body."""
        try:
            error_info = response.json().get("error", {})
        except ValueError:
            return response.text or f"HTTP {response.status_code}", set()

        if not isinstance(error_info, dict):
            return str(error_info), set()

        message = error_info.get("message") or response.text or f"HTTP {response.status_code}"
        reasons = {
            detail.get("reason", "")
            for detail in error_info.get("errors", [])
            if isinstance(detail, dict)
        }
        return message, reasons

    def _is_quota_response(self, response: requests.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code == 403:
            _, reasons = self._error_details(response)
            return bool(reasons & _QUOTA_REASONS)
        return False

    def _raise_for_response(self, response: requests.Response, method: str, endpoint: str) -> None:
        """Map an error response onto the MailboxError taxonomy.

        Raises:
            MailboxError: Always (a kind-specific subclass where possible)
        """
        message, reasons = self._error_details(response)
        status = response.status_code

        logger.error(
            "gmail_api_error",
            method=method,
            endpoint=endpoint,
            status_code=status,
            reasons=sorted(reasons),
            error_message=message[:200],
        )

        if status == 401:
            raise MailboxAuthError(
                f"Gmail authorization expired (401): {message}. Reconnect the Gmail account.",
                status_code=401,
            )
        if status == 429 or reasons & _QUOTA_REASONS:
            retry_after = response.headers.get("Retry-After", "unknown")
            raise MailboxQuotaError(
                f"Gmail quota exceeded ({status}): {message}. Retry after: {retry_after} seconds.",
                status_code=status,
            )
        if (
            status == 403
            or "has not been used" in message
            or "it is disabled" in message
        ):
            enable_url = build_enable_url(message)
            raise MailboxFeatureDisabledError(
                "Gmail API is not enabled for your Google Cloud project. "
                f"Please enable it in Google Cloud Console: {enable_url}",
                status_code=status,
                enable_url=enable_url,
            )
        if status == 404:
            raise MailboxNotFoundError(
                f"Gmail resource not found (404): {endpoint}",
                status_code=404,
            )
        raise MailboxError(f"Gmail API error ({status}): {message}", status_code=status)

    def _retry_after(self, response: requests.Response) -> float | None:
        if response.status_code != 429:
            return None
        try:
            return float(response.headers.get("Retry-After", ""))
        except ValueError:
            return None

    def _should_retry(self, response: requests.Response, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        if 500 <= response.status_code < 600:
            return True
        if not self._is_quota_response(response):
            return False
        retry_after = self._retry_after(response)
        return retry_after is None or retry_after <= MAX_RETRY_AFTER_SECONDS

    def _get_retry_delay(self, response: requests.Response | None, attempt: int) -> float:
        """Delay before the next attempt, with ±20% jitter.

        Honors Retry-After on quota responses.
        """
        base_delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
        if response is not None:
            retry_after = self._retry_after(response)
            if retry_after is not None:
                base_delay = retry_after

        jitter = base_delay * 0.2 * (2 * random.random() - 1)
        return base_delay + jitter

    def _sleep_before_retry(self, delay: float, endpoint: str) -> None:
        if not self._fits_before_deadline(delay):
            raise DeadlineExceededError(
                f"Retrying Gmail {endpoint} in {delay:.1f}s would run past the time limit."
            )
        time.sleep(delay)

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an HTTP request to the Gmail API with retry logic.

        Returns:
            Parsed JSON response ({} for empty bodies)

        Raises:
            MailboxError: Kind-specific subclass for API errors
            MailboxTimeoutError: When requests keep timing out
            DeadlineExceededError: When the active time_limit would be exceeded
        """
        url = self._make_url(endpoint)
        last_response: requests.Response | None = None

        for attempt in range(self.max_retries + 1):
            self._rate_bucket.consume_sync()
            headers = self._get_headers()
            timeout = self._request_timeout(endpoint)

            try:
                response = self.session.request(
                    method=method,
                    url=url,
                    headers=headers,
                    params=params,
                    json=json,
                    timeout=timeout,
                )
            except requests.exceptions.Timeout:
                if attempt < self.max_retries:
                    delay = self._get_retry_delay(None, attempt)
                    logger.warning(
                        "gmail_request_timeout_retry",
                        method=method,
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        delay=delay,
                    )
                    self._sleep_before_retry(delay, endpoint)
                    continue
                raise MailboxTimeoutError(
                    f"Request to Gmail {endpoint} timed out after {timeout:.0f}s "
                    f"and {self.max_retries} retries.",
                ) from None
            except requests.exceptions.ConnectionError as e:
                if attempt < self.max_retries:
                    delay = self._get_retry_delay(None, attempt)
                    logger.warning(
                        "gmail_connection_error_retry",
                        method=method,
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        error=str(e),
                        delay=delay,
                    )
                    self._sleep_before_retry(delay, endpoint)
                    continue
                raise MailboxError(
                    f"Connection to Gmail failed: {e}. Check your internet connection and try again."
                ) from e

            last_response = response
            if response.status_code < 400:
                if response.status_code == 204 or not response.content:
                    return {}
                return response.json()

            if self._should_retry(response, attempt):
                delay = self._get_retry_delay(response, attempt)
                if self._is_quota_response(response) and not self._fits_before_deadline(delay):
                    self._raise_for_response(response, method, endpoint)
                logger.warning(
                    "gmail_request_retry",
                    method=method,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    attempt=attempt + 1,
                    delay=delay,
                )
                self._sleep_before_retry(delay, endpoint)
                continue

            self._raise_for_response(response, method, endpoint)

        if last_response is not None:
            self._raise_for_response(last_response, method, endpoint)
        raise MailboxError(f"Request to Gmail {endpoint} failed after {self.max_retries} retries")

    def get(
        self,
        endpoint: str,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
    ) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params)

    def post(self, endpoint: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("POST", endpoint, json=json)
