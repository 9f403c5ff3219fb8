"""Exponential backoff shared by the git client and the concurrency executor."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from contentsync.errors import ConfigurationError, OperationFailed


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    attempts: int = DEFAULT_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based failed attempt: ``base * 2^(attempt-1)``."""
        return self.base_delay * (2 ** (attempt - 1))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    context: str,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or ``policy.attempts`` is exhausted.

    Configuration errors are raised immediately; retrying cannot fix them.
    Exhaustion raises ``OperationFailed`` chained to the last error.
    """
    attempts = max(1, policy.attempts)
    last_error: Exception | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ConfigurationError:
            raise
        except Exception as exc:
            last_error = exc
            if attempt == attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s: attempt %d/%d failed: %s. Retrying in %.1fs...",
                context,
                attempt,
                attempts,
                exc,
                delay,
            )
            await sleep(delay)

    assert last_error is not None
    logger.error("%s: all %d attempts failed: %s", context, attempts, last_error)
    raise OperationFailed(context, last_error, attempts) from last_error
