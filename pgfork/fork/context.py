from __future__ import annotations

import logging
import threading
import time

from pgfork.fork.errors import CancellationError, ForkTimeoutError


class RunContext:
    """Cancellation signal, overall deadline and logger shared by one fork run."""

    def __init__(
        self,
        *,
        cancel_event: threading.Event | None = None,
        timeout_seconds: float | None = None,
        logger: logging.Logger | None = None,
    ):
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self.started_at = time.monotonic()
        self.deadline = None if timeout_seconds is None else self.started_at + timeout_seconds
        self.logger = logger or logging.getLogger("pgfork")

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, table: str | None = None) -> None:
        if self.cancel_event.is_set():
            raise CancellationError("Fork cancelled by caller", table=table)
        if self.expired:
            raise ForkTimeoutError("Overall fork deadline exceeded", table=table, retryable=False)

    def wait(self, delay: float, table: str | None = None) -> None:
        remaining = self.remaining()
        if remaining is not None and remaining < delay:
            raise ForkTimeoutError(
                f"Retry delay of {delay:.2f}s would exceed the overall deadline",
                table=table,
                retryable=False,
            )
        if self.cancel_event.wait(delay):
            raise CancellationError("Fork cancelled by caller", table=table)
