"""Rate limiting for outbound API requests.

Provides a token bucket limiter shared by name across the process. The Gmail
client consumes a token before every HTTP request so bursts of metadata
fetches during sync stay under the per-user quota instead of tripping 429s.

Standard Rate Limits by Service:
- gmail_api: 25 requests per second (Gmail allows 250 quota units/s per user;
  a messages.get costs 5 units)
- anthropic_api: 4 requests per second (concurrent classification chunks)
"""

import asyncio
import threading
import time

from inbox_janitor.core.errors import RateLimitExceeded
from inbox_janitor.core.logging import get_logger

logger = get_logger(__name__)

# Longest wait tolerated before giving up on a token
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate and each request consumes one. If no
    token is available the caller waits until one refills, unless the wait
    would exceed MAX_WAIT_SECONDS.

    Example:
        limiter = TokenBucket(rate=25.0, capacity=25)

        def list_page():
            limiter.consume_sync()
            return session.get(...)
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: int | None = None,
    ):
        """Initialize a token bucket rate limiter.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens in the bucket (defaults to capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens: float = capacity if initial_tokens is None else initial_tokens
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()
        self.sync_lock = threading.Lock()

    def _check_capacity(self, tokens: int) -> None:
        if tokens > self.capacity:
            logger.error(
                "rate_limit_capacity_exceeded",
                tokens=tokens,
                capacity=self.capacity,
            )
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

    def _wait_time(self, tokens: int) -> float:
        """Return seconds to wait for ``tokens``, or raise if the wait is excessive.

        Must be called with a lock held and after ``_refill``.
        """
        required_tokens = tokens - self.tokens
        wait_time = required_tokens / self.rate
        if wait_time > MAX_WAIT_SECONDS:
            logger.warning(
                "rate_limit_excessive_wait",
                wait_time=wait_time,
                tokens_needed=required_tokens,
            )
            raise RateLimitExceeded(f"Rate limit exceeded, would require {wait_time:.2f}s wait")
        return wait_time

    async def consume(self, tokens: int = 1) -> bool:
        """Consume tokens from the bucket, waiting asynchronously if needed.

        Raises:
            RateLimitExceeded: If tokens cannot be consumed even after waiting
        """
        self._check_capacity(tokens)

        async with self.lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True
            wait_time = self._wait_time(tokens)

        logger.debug("rate_limit_waiting", wait_time=wait_time)
        await asyncio.sleep(wait_time)

        async with self.lock:
            self._refill()
            if self.tokens < tokens:
                raise RateLimitExceeded("Failed to get enough tokens even after waiting")
            self.tokens -= tokens
            return True

    def consume_sync(self, tokens: int = 1) -> bool:
        """Consume tokens synchronously, waiting if needed.

        Thread-safe version of consume() for the blocking Gmail client.

        Raises:
            RateLimitExceeded: If tokens cannot be consumed even after waiting
        """
        self._check_capacity(tokens)

        with self.sync_lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True
            wait_time = self._wait_time(tokens)

        logger.debug("rate_limit_waiting_sync", wait_time=wait_time)
        time.sleep(wait_time)

        with self.sync_lock:
            self._refill()
            if self.tokens < tokens:
                raise RateLimitExceeded("Failed to get enough tokens even after waiting")
            self.tokens -= tokens
            return True

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now


# Process-wide buckets keyed by service name
_buckets: dict[str, TokenBucket] = {}


def get_bucket(name: str = "default", rate: float = 1.0, capacity: int = 1) -> TokenBucket:
    """Get or create a token bucket for the given name.

    Args:
        name: Bucket name/identifier
        rate: Token refill rate if creating a new bucket
        capacity: Token capacity if creating a new bucket

    Returns:
        TokenBucket instance
    """
    if name not in _buckets:
        _buckets[name] = TokenBucket(rate=rate, capacity=capacity)

    return _buckets[name]
