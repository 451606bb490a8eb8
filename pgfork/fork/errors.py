from __future__ import annotations

from dataclasses import dataclass


class ForkError(RuntimeError):
    """Base class for every classified engine failure.

    ``code`` is persisted with a failed job. ``retryable`` tells the retry policy
    whether another attempt may succeed. ``table`` names the table being worked
    on when the error was raised, if any.
    """

    code = "FORK_ERROR"
    retryable = False

    def __init__(self, message: str, *, table: str | None = None, retryable: bool | None = None):
        super().__init__(message)
        self.message = message
        self.table = table
        if retryable is not None:
            self.retryable = retryable

    def __str__(self) -> str:
        if self.table:
            return f"table {self.table}: {self.message}"
        return self.message


class PlanningError(ForkError):
    code = "PLANNING"


class ForkPermissionError(ForkError):
    code = "PERMISSION"


class ForkConnectionError(ForkError):
    code = "CONNECTION"
    retryable = True


class ForkTimeoutError(ForkError):
    code = "TIMEOUT"
    retryable = True


class TransientError(ForkError):
    code = "TRANSIENT"
    retryable = True


class ResourceError(ForkError):
    code = "RESOURCE"
    retryable = True


class IntegrityViolationError(ForkError):
    code = "INTEGRITY"


class SchemaMismatchError(ForkError):
    code = "SCHEMA_MISMATCH"


class ResumeMismatchError(ForkError):
    code = "RESUME_MISMATCH"


class CancellationError(ForkError):
    code = "CANCELLED"


class VerificationError(ForkError):
    code = "VERIFICATION"


class HookError(ForkError):
    code = "HOOK"


class ExhaustedRetriesError(ForkError):
    code = "EXHAUSTED_RETRIES"

    def __init__(self, message: str, *, attempts: int, last_error: ForkError, table: str | None = None):
        super().__init__(message, table=table or last_error.table, retryable=False)
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class FieldViolation:
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class SpecValidationError(ForkError):
    code = "VALIDATION"

    def __init__(self, violations: list[FieldViolation]):
        summary = "; ".join(str(violation) for violation in violations)
        super().__init__(f"Invalid fork specification: {summary}")
        self.violations = list(violations)
