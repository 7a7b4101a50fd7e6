# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/utils/retry.py

import functools
import time
from typing import Any, Callable, Optional


class RetryError(RuntimeError):
    """Every attempt failed; the last failure is kept as `last_error` (and as __cause__)."""

    def __init__(self, message: str, attempts: int, last_error: Optional[Exception]):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def retry(
    *,
    retries: int,
    delay: float,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    on_retry: Callable[[int, Exception], None] | None = None,
    sleep: Callable[[float], Any] = time.sleep,
):
    """
    Retry decorator for reconnecting to a host.

    Deployment steps themselves are never retried; this only wraps
    opening a fresh session while an activation is being awaited.

    retries: number of attempts
    delay: seconds between attempts
    retry_on: exception types to retry
    on_retry: callback(attempt, exception)
    sleep: waits between attempts; pass stop_event.wait so a stop request
           cuts the wait short (the next attempt still runs)
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            last_exc = None
            for attempt in range(1, retries + 1):
                if attempt > 1:
                    sleep(delay)
                try:
                    return fn(*args, **kwargs)
                except retry_on as exc:
                    last_exc = exc
                    if on_retry:
                        on_retry(attempt, exc)
            raise RetryError(
                f"{getattr(fn, '__name__', fn)!s} failed after {retries} attempts",
                attempts=retries,
                last_error=last_exc,
            ) from last_exc
        return wrapper
    return decorator
