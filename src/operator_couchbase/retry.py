"""
Retry policy for management API requests.

The management plane of a freshly started node answers with 5xx or refuses
connections for a while, so every request is retried with a fixed, bounded
budget rather than exponential backoff:

- 60 attempts in total
- constant 1 second delay between attempts
- retried on 408, 429 and any status >= 500, or on transport errors
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

RETRYABLE_STATUS_CODES = frozenset({408, 429})


@dataclass
class RetryPolicy:
    """
    Configuration for management request retries.

    Attributes:
        max_attempts: Total attempts including the first (default 60)
        delay_seconds: Constant wait between attempts (default 1.0)
        sleep: Awaitable used to wait between attempts; tests swap it out

    Example:
        policy = RetryPolicy(max_attempts=5, delay_seconds=0.5)
        if policy.is_retryable_status(503) and policy.should_retry(attempt):
            await policy.wait()
    """

    max_attempts: int = 60
    delay_seconds: float = 1.0
    sleep: Callable[[float], Awaitable[None]] = field(
        default=asyncio.sleep, repr=False
    )

    def is_retryable_status(self, status_code: int) -> bool:
        """
        Check whether a response status is transient.

        Args:
            status_code: HTTP status of the response

        Returns:
            True for 408, 429 and every 5xx status
        """
        return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES

    def should_retry(self, attempt: int) -> bool:
        """
        Check if another attempt is allowed.

        Args:
            attempt: Number of attempts already made (1 after the first)

        Returns:
            True if attempt < max_attempts, False otherwise
        """
        return attempt < self.max_attempts

    async def wait(self) -> None:
        """Sleep for the constant retry delay."""
        await self.sleep(self.delay_seconds)
