"""Retry strategies for ProductBoard API calls.

Rate limits (429) and transient transport failures are retried; every
other HTTP error is surfaced to the caller immediately.
"""
from __future__ import annotations

import logging
from typing import Callable

import httpx
from tenacity import RetryCallState, retry_if_exception, wait_exponential


def should_retry_on_rate_limit(exception: BaseException) -> bool:
    return isinstance(exception, httpx.HTTPStatusError) and exception.response.status_code == 429


def should_retry_on_timeout(exception: BaseException) -> bool:
    return isinstance(
        exception,
        (
            httpx.ConnectTimeout,
            httpx.ReadTimeout,
            httpx.WriteTimeout,
            httpx.PoolTimeout,
            httpx.ConnectError,
        ),
    )


def should_retry_on_rate_limit_or_timeout(exception: BaseException) -> bool:
    return should_retry_on_rate_limit(exception) or should_retry_on_timeout(exception)


retry_if_rate_limit_or_timeout = retry_if_exception(should_retry_on_rate_limit_or_timeout)


def wait_rate_limit_with_backoff(retry_state: RetryCallState) -> float:
    """Honor Retry-After on 429s, otherwise back off exponentially.

    Retry-After is clamped to [1s, 120s].
    """
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exception, httpx.HTTPStatusError) and exception.response.status_code == 429:
        retry_after = exception.response.headers.get("Retry-After")
        if retry_after:
            try:
                return min(max(float(retry_after), 1.0), 120.0)
            except (ValueError, TypeError):
                pass
        return wait_exponential(multiplier=1, min=2, max=30)(retry_state)
    return wait_exponential(multiplier=1, min=2, max=10)(retry_state)


def log_retry_attempt(logger: logging.Logger, max_attempts: int) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        wait_time = retry_state.next_action.sleep if retry_state.next_action else 0
        if isinstance(exception, httpx.HTTPStatusError):
            error_desc = f"HTTP {exception.response.status_code}"
        elif isinstance(exception, httpx.TimeoutException):
            error_desc = f"timeout ({type(exception).__name__})"
        elif isinstance(exception, httpx.RequestError):
            error_desc = f"connection error ({type(exception).__name__})"
        else:
            error_desc = f"{type(exception).__name__}: {exception}"
        logger.warning(
            "ProductBoard request failed (%s), retrying in %.1fs (attempt %s/%s)",
            error_desc,
            wait_time,
            retry_state.attempt_number,
            max_attempts,
        )

    return before_sleep
