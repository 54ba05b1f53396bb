# src/sandboxcore/retry.py
"""
Fixed-delay retry wrapper for provider control-plane calls.

Cloud provisioning APIs are flaky, so creating and resuming sandboxes is
retried a bounded number of times. Commands executed *inside* a sandbox
are never retried here; they have their own timeout and error semantics.

Usage:
    >>> policy = RetryPolicy(max_attempts=3, delay_ms=1000)
    >>> sandbox = await policy.run(lambda: client.create(params), label="create sandbox")
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_DELAY_MS = 1000


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    label: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delay_ms: int = DEFAULT_DELAY_MS,
) -> T:
    """
    Await ``fn()`` until it succeeds or ``max_attempts`` is exhausted.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt
        label: Operation name used in log messages
        max_attempts: Total number of attempts (minimum 1)
        delay_ms: Fixed pause between attempts

    Returns:
        The first successful result

    Raises:
        The exception of the final attempt.
    """
    attempts = max(1, max_attempts)
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as e:
            last_error = e
            if attempt >= attempts:
                logger.error(f"All {attempts} attempts failed for {label}: {e}")
                break
            logger.warning(
                f"Attempt {attempt}/{attempts} failed for {label}: {e}. "
                f"Retrying in {delay_ms}ms"
            )
            await asyncio.sleep(delay_ms / 1000)

    assert last_error is not None
    raise last_error


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded, fixed-delay retry settings shared by provider adapters."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    delay_ms: int = DEFAULT_DELAY_MS

    def __post_init__(self):
        """Validate settings."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_ms < 0:
            raise ValueError("delay_ms must not be negative")

    async def run(self, fn: Callable[[], Awaitable[T]], label: str) -> T:
        """Run ``fn`` under this policy."""
        return await retry_async(
            fn, label=label, max_attempts=self.max_attempts, delay_ms=self.delay_ms
        )

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        """Build from a ``sandboxcore.config.RetryConfig``."""
        return cls(max_attempts=config.max_attempts, delay_ms=config.delay_ms)
