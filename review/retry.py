"""Retry policy with exponential backoff for reviewer calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

# Matched by class name so the optional openai package is never imported here.
FAIL_FAST_ERRORS = frozenset(
    {
        "AuthenticationError",
        "PermissionDeniedError",
        "BadRequestError",
        "NotFoundError",
        "UnprocessableEntityError",
    }
)

RETRYABLE_ERRORS = frozenset(
    {
        "RateLimitError",
        "APITimeoutError",
        "APIConnectionError",
        "InternalServerError",
    }
)


def _status_code(exc: BaseException) -> int | None:
    for source in (exc, getattr(exc, "response", None)):
        value = getattr(source, "status_code", None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


class RetryPolicy:
    """Exponential backoff capped at ``max_delay`` seconds."""

    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 8.0,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.sleep_fn = sleep_fn or time.sleep

    def backoff_seconds(self, attempt_index: int) -> float:
        return min(self.base_delay * (2**attempt_index), self.max_delay)

    def is_retryable(self, exc: Exception) -> bool:
        name = exc.__class__.__name__
        if isinstance(exc, ValueError) or name in FAIL_FAST_ERRORS:
            return False
        if isinstance(exc, (TimeoutError, ConnectionError)) or name in RETRYABLE_ERRORS:
            return True
        status_code = _status_code(exc)
        return status_code is not None and (status_code >= 500 or status_code == 429)

    def execute(self, operation: Callable[[], T]) -> T:
        retries = 0
        while True:
            try:
                return operation()
            except Exception as exc:  # noqa: BLE001
                if retries >= self.max_retries or not self.is_retryable(exc):
                    raise
                delay = self.backoff_seconds(retries)
                retries += 1
                logger.warning(
                    "Reviewer call failed (%s); retry %d/%d in %.1fs",
                    exc.__class__.__name__,
                    retries,
                    self.max_retries,
                    delay,
                )
                self.sleep_fn(delay)
