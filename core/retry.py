# core/retry.py

import asyncio
import email.utils
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import httpx

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """
    Configuration for retry behaviour.

    Attributes:
        retries: Maximum number of attempts (including the first one).
        base_delay: Initial delay before first retry (seconds).
        max_backoff: Maximum delay between retries (seconds).
        jitter: Full jitter: sleep a random value in [0, capped exponential delay].
        max_total_timeout: Optional budget for all attempts together (seconds).
        per_attempt_timeout: Optional bound for each attempt (seconds), clamped to
                             the remaining global budget.
        retry_filter: Optional custom callable deciding whether an exception is retryable.
        retry_on: Exception types that are always retried.
        on_retry: Optional hook called before each retry sleep with
                  (attempt, delay, exception).
    """
    retries: int = 3
    base_delay: float = 1.0
    max_backoff: float = 60.0
    jitter: bool = True
    max_total_timeout: Optional[float] = None
    per_attempt_timeout: Optional[float] = None
    retry_filter: Optional[Callable[[Exception], bool]] = None
    retry_on: Tuple[Type[Exception], ...] = (httpx.TimeoutException, httpx.ConnectError)
    on_retry: Optional[Callable[[int, float, Exception], None]] = None


def default_retry_filter(exc: Exception) -> bool:
    """
    Retry network errors, anything carrying ``retry_after``, and 429 / 5xx
    (except 501) whether exposed as ``status_code`` or via httpx.HTTPStatusError.
    """
    if isinstance(exc, (httpx.TimeoutException, httpx.ConnectError, httpx.NetworkError)):
        return True

    if getattr(exc, "retry_after", None) is not None:
        return True

    status = None
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        status = exc.response.status_code
    elif isinstance(getattr(exc, "status_code", None), int):
        status = exc.status_code

    if status is None:
        return False
    return status == 429 or (500 <= status < 600 and status != 501)


def _retry_after_seconds(exc: Exception) -> Optional[float]:
    raw = getattr(exc, "retry_after", None)
    if raw is None and isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        raw = exc.response.headers.get("Retry-After")
    if raw is None:
        return None

    text = str(raw).strip()
    try:
        return max(0.0, float(text))
    except ValueError:
        pass

    # HTTP-date (RFC 1123)
    try:
        parsed = email.utils.parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return max(0.0, (parsed - datetime.now(timezone.utc)).total_seconds())


def _next_delay(config: RetryConfig, attempt: int, exc: Exception) -> Tuple[float, str]:
    retry_after = _retry_after_seconds(exc)
    if retry_after is not None:
        return min(retry_after, config.max_backoff), "Retry-After"

    exponential_cap = min(config.max_backoff, config.base_delay * (2 ** attempt))
    if config.jitter:
        return random.uniform(0, exponential_cap), "exponential_full_jitter"
    return exponential_cap, "exponential"


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    config: Optional[RetryConfig] = None,
    request_id: Optional[str] = None,
    retry_exceptions: Optional[Tuple[Type[Exception], ...]] = None,
) -> Any:
    """
    Execute an async function with retries.

    Only use on idempotent operations (LLM completions, flight searches).

    Args:
        func: Async callable that takes no arguments.
        config: RetryConfig instance; if None, a default config is used.
        request_id: Optional identifier for logging correlation.
        retry_exceptions: Exception types always retried, checked before
                          config.retry_on and the retry filter.

    Raises:
        The last exception encountered once attempts or the time budget run out,
        or immediately for a non-retryable error. Cancellation is never retried.
    """
    config = config or RetryConfig()
    retry_filter = config.retry_filter or default_retry_filter
    start_time = time.monotonic()
    attempt = 0

    while True:
        attempt_timeout = config.per_attempt_timeout
        if config.max_total_timeout is not None:
            remaining = config.max_total_timeout - (time.monotonic() - start_time)
            if remaining <= 0:
                raise httpx.TimeoutException("retry_async: global max_total_timeout exceeded")
            attempt_timeout = remaining if attempt_timeout is None else min(attempt_timeout, remaining)

        try:
            if attempt_timeout is not None:
                return await asyncio.wait_for(func(), timeout=attempt_timeout)
            return await func()
        except asyncio.TimeoutError as te:
            exc = httpx.TimeoutException("per-attempt timeout exceeded")
            exc.__cause__ = te
        except Exception as e:
            exc = e

        if retry_exceptions and isinstance(exc, retry_exceptions):
            should_retry = True
        elif config.retry_on and isinstance(exc, config.retry_on):
            should_retry = True
        else:
            should_retry = retry_filter(exc)

        elapsed = time.monotonic() - start_time
        timeout_exceeded = config.max_total_timeout is not None and elapsed > config.max_total_timeout

        if not should_retry or attempt >= config.retries - 1 or timeout_exceeded:
            logger.warning(
                "Retry exhausted or non-retryable error",
                extra={
                    "event": "retry_failed",
                    "attempt": attempt + 1,
                    "max_retries": config.retries,
                    "retryable": should_retry,
                    "error_type": type(exc).__name__,
                    "error_message": str(exc),
                    "timeout_exceeded": timeout_exceeded,
                    "request_id": request_id,
                    "elapsed_seconds": round(elapsed, 3),
                },
            )
            raise exc

        delay, retry_source = _next_delay(config, attempt, exc)

        if config.on_retry:
            try:
                config.on_retry(attempt + 1, delay, exc)
            except Exception:
                logger.debug("on_retry hook failed", exc_info=True)

        logger.warning(
            "Retrying after failure",
            extra={
                "event": "retry_attempt",
                "attempt": attempt + 1,
                "delay": round(delay, 3),
                "retry_source": retry_source,
                "error_type": type(exc).__name__,
                "request_id": request_id,
                "elapsed_seconds": round(elapsed, 3),
            },
        )

        if config.max_total_timeout is not None:
            delay = min(delay, max(0.0, config.max_total_timeout - (time.monotonic() - start_time)))
        await asyncio.sleep(delay)
        attempt += 1
