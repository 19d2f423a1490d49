"""zkpersona.resilience — Timeouts and retries around credential agent calls.

Every call into the holder's wallet agent goes through :func:`with_timeout`:
each attempt races a timer, a declined prompt aborts immediately, and
anything else is retried with a fixed spacing before failing with an
aggregated error.

Usage:
    tx_id = await with_timeout(lambda: agent.request_transaction(tx))
    records = await with_timeout(fetch, timeout=10.0, max_retries=2, retry_delay=0.5)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import (
    AgentUnavailableError,
    ReplayRejectedError,
    RetriesExhaustedError,
    TransientError,
    UserRejectedError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 2.0

_REJECTION = re.compile(r"user (rejected|cancel+ed)", re.IGNORECASE)

# Raised as-is; retrying cannot change their outcome.
_FATAL = (UserRejectedError, AgentUnavailableError, ReplayRejectedError)


def is_user_rejection(exc: BaseException) -> bool:
    """True when an error means the holder declined the prompt."""
    return isinstance(exc, UserRejectedError) or bool(_REJECTION.search(str(exc)))


async def with_timeout(
    operation: Callable[[], Awaitable[T]],
    *,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    on_retry: Optional[Callable[[int], Any]] = None,
) -> T:
    """Run ``operation`` with a per-attempt timeout and bounded retries.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt.
        timeout: Seconds before an attempt is abandoned (counts as transient).
        max_retries: Total number of attempts.
        retry_delay: Seconds to wait between attempts.
        on_retry: Called with the upcoming attempt number before each retry.

    Returns:
        Whatever the first successful attempt returned, including empty values.

    Raises:
        UserRejectedError: the holder declined; never retried.
        AgentUnavailableError / ReplayRejectedError: propagated immediately.
        RetriesExhaustedError: every attempt failed.
    """
    if max_retries < 1:
        raise ValueError("max_retries must be >= 1")

    last_error: Optional[BaseException] = None
    for attempt in range(1, max_retries + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except _FATAL:
            raise
        except asyncio.TimeoutError:
            last_error = TransientError(f"Operation timed out after {timeout:g}s")
        except Exception as exc:
            if is_user_rejection(exc):
                raise UserRejectedError(str(exc) or "User rejected the request") from exc
            last_error = exc

        logger.warning("Wallet operation attempt %d/%d failed: %s", attempt, max_retries, last_error)
        if attempt < max_retries:
            if on_retry is not None:
                result = on_retry(attempt + 1)
                if inspect.isawaitable(result):
                    await result
            await asyncio.sleep(retry_delay)

    raise RetriesExhaustedError(max_retries, last_error) from last_error
