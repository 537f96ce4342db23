"""Bounded async retries for idempotent RPC reads.

Only reads (chain id, nonce, balance, fees, ``eth_call``) are retried
automatically. Broadcasting a signed transaction is never retried here: a
resubmission after an ambiguous failure can double-fund or double-mint if
the first attempt actually landed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

from aiohttp import ClientError

from mintfleet._http import RETRYABLE_STATUS_CODES
from mintfleet.errors import RpcFailure, _walk_exception_chain

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget plus an exponential backoff schedule.

    ``max_attempts`` counts the first try. With ``jitter`` each sleep is drawn
    uniformly from ``[0, delay]``. ``max_elapsed_s`` caps the total time spent
    sleeping and retrying; ``None`` removes the cap.
    """

    max_attempts: int = 3
    initial_delay_s: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay_s: float = 5.0
    jitter: bool = True
    max_elapsed_s: float | None = 30.0

    def __post_init__(self) -> None:
        problems = [
            (self.max_attempts < 1, "max_attempts must be >= 1"),
            (self.initial_delay_s < 0, "initial_delay_s must be >= 0"),
            (self.backoff_multiplier <= 0, "backoff_multiplier must be > 0"),
            (self.max_delay_s < 0, "max_delay_s must be >= 0"),
            (
                self.max_elapsed_s is not None and self.max_elapsed_s < 0,
                "max_elapsed_s must be >= 0 or None",
            ),
        ]
        for failed, message in problems:
            if failed:
                raise ValueError(f"RetryPolicy.{message}")


#: One attempt and no sleeping.
NO_RETRY = RetryPolicy(max_attempts=1, max_elapsed_s=None)


def _retry_after_from_error(exc: BaseException) -> float | None:
    if not isinstance(exc, RpcFailure):
        return None
    value = exc.retry_after_s
    if isinstance(value, (int, float)) and value >= 0:
        return float(value)
    return None


def _is_transport_hiccup(exc: BaseException) -> bool:
    # web3's async HTTP provider surfaces aiohttp errors, sometimes wrapped.
    transient = (TimeoutError, asyncio.TimeoutError, ConnectionError, ClientError)
    return any(isinstance(e, transient) for e in _walk_exception_chain(exc))


def should_retry_read(exc: BaseException) -> bool:
    """Return True when a read-only RPC failure is worth another attempt.

    An ``RpcFailure`` is retried when the chain adapter marked it retryable
    or its HTTP status is one of ``RETRYABLE_STATUS_CODES``. Reverts and
    estimation failures are deterministic and never retried. Raw transport
    errors that escaped wrapping are retried; cancellation never is.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, RpcFailure):
        if exc.retryable is True:
            return True
        return exc.status_code in RETRYABLE_STATUS_CODES
    return _is_transport_hiccup(exc)


def backoff_delay(policy: RetryPolicy, retry_index: int) -> float:
    """Seconds to sleep before retry number *retry_index* (1-based)."""
    exponent = max(0, retry_index - 1)
    ceiling = min(
        policy.max_delay_s, policy.initial_delay_s * policy.backoff_multiplier**exponent
    )
    if ceiling <= 0:
        return 0.0
    if policy.jitter:
        return random.uniform(0.0, ceiling)  # noqa: S311
    return ceiling


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry_read,
) -> T:
    """Await ``factory()`` until it succeeds or the policy is exhausted.

    The last exception is re-raised unchanged. A Retry-After hint on an
    ``RpcFailure`` lengthens the sleep but never beyond ``max_elapsed_s``.
    """
    deadline = (
        time.monotonic() + policy.max_elapsed_s
        if policy.max_elapsed_s is not None
        else None
    )
    attempt = 1
    while True:
        try:
            return await factory()
        except Exception as exc:
            if attempt >= policy.max_attempts or not should_retry(exc):
                raise

            delay = backoff_delay(policy, attempt)
            retry_after = _retry_after_from_error(exc)
            if retry_after is not None:
                delay = max(delay, retry_after)
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise
                delay = min(delay, remaining)

            logger.debug(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt,
                policy.max_attempts,
                type(exc).__name__,
                delay,
            )
            if delay > 0:
                await asyncio.sleep(delay)
            attempt += 1
