"""
Bounded Retry

Thin wrapper over tenacity used by every engine that talks to storage.
Transient storage errors and lost compare-and-swap races are retried with
exponential backoff; exhaustion re-raises the last error.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.common.errors import ConcurrentModification, TransientStorageError
from src.common.metrics import STORAGE_RETRIES
from src.config import get_settings
from src.config.settings import ReservationSettings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE: Tuple[Type[BaseException], ...] = (TransientStorageError, ConcurrentModification)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff window (seconds)."""

    attempts: int = 5
    min_wait: float = 0.005
    max_wait: float = 0.2

    @classmethod
    def from_settings(cls, cfg: Optional[ReservationSettings] = None) -> "RetryPolicy":
        cfg = cfg or get_settings().reservation
        return cls(
            attempts=cfg.max_attempts,
            min_wait=cfg.backoff_min_ms / 1000,
            max_wait=cfg.backoff_max_ms / 1000,
        )


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        STORAGE_RETRIES.labels(operation=operation).inc()
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            "storage_retry",
            operation=operation,
            attempt=state.attempt_number,
            error=str(error),
            error_type=type(error).__name__,
        )

    return before_sleep


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = RETRYABLE,
) -> T:
    """
    Run an async operation under the retry policy.

    Args:
        operation: Zero-argument coroutine factory, re-invoked per attempt
        name: Operation label for logs and metrics
        policy: Attempt count and backoff window
        retry_on: Exception types that trigger another attempt

    Returns:
        The operation's result from the first successful attempt
    """
    result: Any = None
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(policy.attempts),
        wait=wait_exponential(multiplier=policy.min_wait, min=policy.min_wait, max=policy.max_wait),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry(name),
        reraise=True,
    ):
        with attempt:
            result = await operation()
    return result
