"""Retry executor for registry writes."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol, TypeVar

from .errors import RetryCancelledError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 5
DEFAULT_DELAY_SECONDS = 1.0


class RetryStrategy(Protocol):
    def next_delay(self, attempt: int, error: BaseException) -> float | None:
        """Seconds to wait after failed ``attempt`` (1-based), or None to stop."""


@dataclass(frozen=True)
class FixedBackoff:
    """Fixed number of attempts with a constant pause; no jitter."""

    attempts: int = DEFAULT_ATTEMPTS
    delay: float = DEFAULT_DELAY_SECONDS

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.delay < 0:
            raise ValueError("delay must be >= 0")

    def next_delay(self, attempt: int, error: BaseException) -> float | None:
        if attempt >= self.attempts:
            return None
        return self.delay


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()


class _NeverCancel(CancellationToken):
    def cancel(self) -> None:
        raise TypeError("NEVER_CANCEL cannot be cancelled; create a CancellationToken instead")


NEVER_CANCEL: CancellationToken = _NeverCancel()


class Retrier:
    """Runs an operation until it succeeds or the strategy says stop.

    Every exception counts as transient. Sleeping blocks the calling thread.
    """

    def __init__(
        self,
        strategy: RetryStrategy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.strategy = strategy or FixedBackoff()
        self._sleep = sleep

    def run(
        self,
        operation: Callable[[], T],
        *,
        cancel: CancellationToken = NEVER_CANCEL,
        label: str = "registry operation",
    ) -> T:
        errors: list[Exception] = []
        attempt = 0
        while True:
            if cancel.cancelled:
                raise _cancelled(attempt, errors)
            attempt += 1
            try:
                return operation()
            except Exception as exc:
                errors.append(exc)
                delay = self.strategy.next_delay(attempt, exc)
                if delay is None:
                    logger.debug("%s giving up attempts=%s error=%s", label, attempt, exc)
                    raise RetryExhaustedError(attempt, errors) from exc
                logger.warning("%s failed attempt=%s retry_in=%.1fs error=%s", label, attempt, delay, exc)
            if cancel.cancelled:
                raise _cancelled(attempt, errors)
            self._sleep(delay)


def _cancelled(attempts: int, errors: list[Exception]) -> RetryCancelledError:
    last = errors[-1] if errors else None
    error = RetryCancelledError(attempts, last)
    error.__cause__ = last
    return error

