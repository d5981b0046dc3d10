"""Retry and polling policies for provider calls."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
    wait_fixed,
)

from driftwood.config.settings import Settings
from driftwood.core.errors import ProviderCallError, ResolutionTimeoutError
from driftwood.specs.references import MISSING

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient provider failures."""

    max_attempts: int = 4
    multiplier: float = 1.0
    max_wait: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            multiplier=settings.backoff_multiplier,
            max_wait=settings.backoff_max,
        )


@dataclass(frozen=True)
class PollPolicy:
    """Bounded polling for asynchronously assigned attributes."""

    interval: float = 5.0
    timeout: float = 300.0
    max_attempts: int = 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "PollPolicy":
        return cls(
            interval=settings.poll_interval,
            timeout=settings.poll_timeout,
            max_attempts=settings.poll_max_attempts,
        )


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderCallError) and exc.retryable


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "provider_call_retry",
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
    )


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    idempotent: bool,
) -> T:
    """Run ``call``, retrying transient failures only when it is idempotent.

    Non-idempotent calls (creates and deletes without an idempotency key)
    run exactly once so a lost response never produces a duplicate object.
    """
    attempts = policy.max_attempts if idempotent else 1
    async for attempt in AsyncRetrying(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=policy.multiplier, max=policy.max_wait),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            return await call()
    raise AssertionError("unreachable")  # pragma: no cover


async def poll_for_value(
    fetch: Callable[[], Awaitable[Any]],
    *,
    policy: PollPolicy,
    address: str,
    attribute: str,
) -> Any:
    """Call ``fetch`` until it returns something other than MISSING.

    Raises:
        ResolutionTimeoutError: If the value does not appear within the
            attempt or time limit
    """
    started = time.monotonic()
    value: Any = MISSING
    retrying = AsyncRetrying(
        retry=retry_if_result(lambda result: result is MISSING),
        stop=stop_after_attempt(policy.max_attempts) | stop_after_delay(policy.timeout),
        wait=wait_fixed(policy.interval),
    )
    try:
        async for attempt in retrying:
            with attempt:
                value = await fetch()
                logger.debug(
                    "attribute_poll",
                    address=address,
                    attribute=attribute,
                    attempt=attempt.retry_state.attempt_number,
                    found=value is not MISSING,
                )
            if not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(value)
    except RetryError:
        raise ResolutionTimeoutError(
            address,
            attribute,
            waited=time.monotonic() - started,
            attempts=retrying.statistics.get("attempt_number", policy.max_attempts),
        ) from None
    return value
