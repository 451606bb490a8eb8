from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from sqlalchemy import exc as sa_exc
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from pgfork.fork.context import RunContext
from pgfork.fork.errors import (
    CancellationError,
    ExhaustedRetriesError,
    ForkConnectionError,
    ForkError,
    ForkPermissionError,
    ForkTimeoutError,
    IntegrityViolationError,
    ResourceError,
    TransientError,
)

T = TypeVar("T")

CONNECTION_SQLSTATES = {"08000", "08001", "08003", "08004", "08006", "57P01", "57P02", "57P03"}
TIMEOUT_SQLSTATES = {"57014", "55P03"}
TRANSIENT_SQLSTATES = {"40001", "40P01", "55006", "58030"}
PERMISSION_SQLSTATES = {"42501", "28000", "28P01"}

_CONNECTION_MARKERS = (
    "connection refused",
    "connection reset",
    "could not connect",
    "server closed the connection",
    "terminating connection",
    "connection is closed",
    "broken pipe",
)
_TIMEOUT_MARKERS = ("timeout", "timed out", "database is locked")
_PERMISSION_MARKERS = (
    "permission denied",
    "authentication failed",
    "must be owner",
    "readonly database",
    "read-only transaction",
)
_INTEGRITY_MARKERS = ("unique constraint", "foreign key constraint", "violates")


def _sqlstate(error: BaseException) -> str | None:
    orig = getattr(error, "orig", None)
    for candidate in (orig, error):
        if candidate is None:
            continue
        code = getattr(candidate, "pgcode", None) or getattr(candidate, "sqlstate", None)
        if isinstance(code, str) and code:
            return code
    return None


def _classify_sqlstate(code: str, message: str) -> ForkError | None:
    if code in CONNECTION_SQLSTATES or code.startswith("08"):
        return ForkConnectionError(message)
    if code in TIMEOUT_SQLSTATES:
        return ForkTimeoutError(message)
    if code in TRANSIENT_SQLSTATES:
        return TransientError(message)
    if code.startswith("53"):
        return ResourceError(message)
    if code in PERMISSION_SQLSTATES:
        return ForkPermissionError(message)
    if code.startswith("23"):
        return IntegrityViolationError(message)
    return None


def _classify_message(message: str) -> ForkError | None:
    lowered = message.lower()
    if any(marker in lowered for marker in _PERMISSION_MARKERS):
        return ForkPermissionError(message)
    if any(marker in lowered for marker in _CONNECTION_MARKERS):
        return ForkConnectionError(message)
    if any(marker in lowered for marker in _TIMEOUT_MARKERS):
        return ForkTimeoutError(message)
    if any(marker in lowered for marker in _INTEGRITY_MARKERS):
        return IntegrityViolationError(message)
    return None


def classify_error(error: BaseException) -> ForkError:
    if isinstance(error, ForkError):
        return error

    message = str(getattr(error, "orig", None) or error).strip() or type(error).__name__
    code = _sqlstate(error)
    if code is not None:
        classified = _classify_sqlstate(code, message)
        if classified is not None:
            return classified

    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return ForkConnectionError(message)
    if isinstance(error, sa_exc.TimeoutError):
        return ForkTimeoutError(message)
    if isinstance(error, sa_exc.IntegrityError):
        return IntegrityViolationError(message)

    by_message = _classify_message(message)
    if by_message is not None:
        return by_message

    if isinstance(error, TimeoutError):
        return ForkTimeoutError(message)
    if isinstance(error, (ConnectionError, sa_exc.DisconnectionError)):
        return ForkConnectionError(message)
    if isinstance(error, PermissionError):
        return ForkPermissionError(message)
    return ForkError(message)


@dataclass(frozen=True)
class BackoffSchedule:
    initial_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0

    def delay(self, attempt: int) -> float:
        return min(self.initial_delay * self.factor ** max(attempt - 1, 0), self.max_delay)


class RetryPolicy:
    """Runs one unit of work under ``tenacity`` with classified, capped exponential backoff.

    Only errors the classifier marks ``retryable`` are tried again. Once
    ``max_attempts`` is reached the last classified error is wrapped in
    ``ExhaustedRetriesError``. Backoff waits go through the run context so a
    cancellation or the overall deadline interrupts them.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        schedule: BackoffSchedule | None = None,
        classifier: Callable[[BaseException], ForkError] = classify_error,
        logger: logging.Logger | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.schedule = schedule or BackoffSchedule()
        self._classifier = classifier
        self._logger = logger or logging.getLogger(__name__)

    def _is_retryable(self, exc: BaseException) -> bool:
        error = self._classifier(exc)
        return error.retryable and not isinstance(error, CancellationError)

    def run(
        self,
        operation: Callable[[], T],
        *,
        description: str,
        context: RunContext | None = None,
        table: str | None = None,
    ) -> T:
        attempts = 0

        def _attempt() -> T:
            nonlocal attempts
            attempts += 1
            if context is not None:
                context.check(table)
            return operation()

        def _log_retry(state: RetryCallState) -> None:
            error = self._classifier(state.outcome.exception())
            self._logger.warning(
                "Retrying %s (attempt %d/%d) in %.2fs after %s: %s",
                description,
                state.attempt_number + 1,
                self.max_attempts,
                state.next_action.sleep,
                error.code,
                error.message,
                extra={"table": table},
            )

        def _sleep(delay: float) -> None:
            if context is not None:
                context.wait(delay, table)
            else:
                time.sleep(delay)

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=lambda state: self.schedule.delay(state.attempt_number),
            retry=retry_if_exception(self._is_retryable),
            before_sleep=_log_retry,
            sleep=_sleep,
            reraise=True,
        )
        try:
            return retrying(_attempt)
        except Exception as exc:
            error = self._classifier(exc)
            if error.table is None:
                error.table = table
            if error.retryable and not isinstance(error, CancellationError):
                raise ExhaustedRetriesError(
                    f"{description} failed after {attempts} attempts: {error.message}",
                    attempts=attempts,
                    last_error=error,
                    table=table,
                ) from exc
            if error is exc:
                raise
            raise error from exc
