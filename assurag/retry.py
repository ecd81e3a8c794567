"""Bounded exponential backoff for calls to the remote model endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from openai import (
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    RateLimitError,
)
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import config

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

# Request-shape failures (bad request, auth, not found) are never retried.
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    APIConnectionError,
    APITimeoutError,
    RateLimitError,
    InternalServerError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a transient failure is retried."""

    max_attempts: int = config.RETRY_MAX_ATTEMPTS
    min_wait: float = config.RETRY_MIN_WAIT
    max_wait: float = config.RETRY_MAX_WAIT

    def wrap(
        self,
        func: Callable[..., Awaitable[T]],
        logger: logging.Logger,
    ) -> Callable[..., Awaitable[T]]:
        """Decorate a coroutine function with this policy.

        Returns:
            The retrying coroutine function; the last error is re-raised.
        """
        decorator: Any = retry(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_exponential(
                multiplier=self.min_wait, min=self.min_wait, max=self.max_wait
            ),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return decorator(func)


NO_RETRY = RetryPolicy(max_attempts=1, min_wait=0, max_wait=0)
