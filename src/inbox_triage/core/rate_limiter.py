"""Token bucket rate limiting for classifier calls.

Full AI re-analysis runs can issue many classifier requests in a short
burst (one per conversation, across the worker pool). The bucket spreads
those calls out so the batch stays under the provider's request quota
instead of failing items with rate-limit errors.

Usage:
    from inbox_triage.core.rate_limiter import TokenBucket

    bucket = TokenBucket(rate=2.0, capacity=2)
    await bucket.consume()
"""

import asyncio
import time

from inbox_triage.core.errors import RateLimitExceeded
from inbox_triage.core.logging import get_logger

logger = get_logger(__name__)

# Longest a caller will be parked waiting for a token
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate and each request consumes one. If no
    tokens are available, the request is delayed until one becomes available.

    Example:
        limiter = TokenBucket(rate=1.0, capacity=1)

        async def call_classifier():
            await limiter.consume()
            ...
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
        if rate <= 0:
            raise ValueError(f"Token bucket rate must be positive, got {rate}")
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity if initial_tokens is None else initial_tokens)
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()

    async def consume(self, tokens: int = 1) -> bool:
        """Consume tokens from the bucket, waiting if needed.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if tokens were consumed

        Raises:
            RateLimitExceeded: If the wait would exceed MAX_WAIT_SECONDS or
                tokens exceed bucket capacity
        """
        if tokens > self.capacity:
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

        # The lock is held across the sleep so waiters are served in order.
        async with self.lock:
            self._refill()
            if self.tokens < tokens:
                wait_time = (tokens - self.tokens) / self.rate
                if wait_time > MAX_WAIT_SECONDS:
                    logger.warning(
                        "rate_limit_wait_excessive",
                        wait_time=round(wait_time, 2),
                        tokens_needed=tokens - self.tokens,
                    )
                    raise RateLimitExceeded(
                        f"Rate limit exceeded, would require {wait_time:.2f}s wait"
                    )

                logger.debug("rate_limit_waiting", wait_time=round(wait_time, 3))
                await asyncio.sleep(wait_time)
                self._refill()

            self.tokens -= tokens
            return True

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.rate)
        self.last_refill = now
