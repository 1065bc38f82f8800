from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
from sqlalchemy.exc import DBAPIError

from storefront_ingest.core.config import RetryPolicy
from storefront_ingest.core.logging import log_event
from storefront_ingest.core.metrics import retry_attempts_total
from storefront_ingest.db.errors import DatabaseOperationError, map_db_error

T = TypeVar("T")


class UpstreamHTTPError(RuntimeError):
    def __init__(self, status_code: int, message: str, *, source: str) -> None:
        super().__init__(f"{source} returned HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.source = source


class MalformedResponseError(RuntimeError):
    def __init__(self, message: str, *, source: str) -> None:
        super().__init__(f"{source}: {message}")
        self.message = message
        self.source = source


class RetryExhaustedError(RuntimeError):
    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


def is_retryable(exc: BaseException) -> bool:
    """Single transient-vs-terminal classifier shared by retries and ledger decisions."""
    if isinstance(exc, RetryExhaustedError):
        return True
    if isinstance(exc, UpstreamHTTPError):
        return exc.status_code == 429 or 500 <= exc.status_code < 600
    if isinstance(exc, MalformedResponseError):
        return False
    if isinstance(exc, DatabaseOperationError):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or 500 <= status < 600
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, DBAPIError):
        return map_db_error(exc).retryable
    return False


def compute_backoff_delay(attempt: int, policy: RetryPolicy, *, rng: Callable[[], float] = random.random) -> float:
    base = min(policy.initial_delay_seconds * (policy.multiplier**attempt), policy.max_delay_seconds)
    jitter = base * policy.jitter_ratio * (2.0 * rng() - 1.0)
    return max(policy.min_delay_seconds, base + jitter)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation_name: str,
    classify: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    started = clock()
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not classify(exc):
                raise
            if attempt >= policy.max_retries:
                raise RetryExhaustedError(operation_name, attempt + 1, exc) from exc
            delay = compute_backoff_delay(attempt, policy, rng=rng)
            if clock() - started + delay > policy.max_elapsed_seconds:
                raise RetryExhaustedError(operation_name, attempt + 1, exc) from exc
            attempt += 1
            log_event(
                "retry.attempt",
                level=logging.WARNING,
                payload={
                    "operation": operation_name,
                    "attempt": attempt,
                    "max_retries": policy.max_retries,
                    "delay_seconds": round(delay, 3),
                    "error_type": type(exc).__name__,
                    "error_message": str(exc)[:512],
                },
            )
            retry_attempts_total.labels(operation=operation_name).inc()
            await sleep(delay)
