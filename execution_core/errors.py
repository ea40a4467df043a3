"""Failure taxonomy and exception types for secure execution."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    RATE_LIMIT = "rate_limit_error"
    DEPENDENCY_CYCLE = "dependency_cycle_error"
    SECURITY_VIOLATION = "security_violation"
    SPAWN = "spawn_error"
    TIMEOUT = "timeout_error"
    PARSE = "parse_error"
    EXECUTION = "execution_error"
    SANITIZATION = "sanitization_error"


# Kinds that abort a request before any subprocess is spawned.
FATAL_BEFORE_SPAWN = frozenset(
    {ErrorKind.VALIDATION, ErrorKind.DEPENDENCY_CYCLE, ErrorKind.SECURITY_VIOLATION}
)


class ExecutionCoreError(Exception):
    """Base error for execution failures. Every subclass carries an ErrorKind."""

    kind: ErrorKind = ErrorKind.EXECUTION

    def __init__(self, message: str, *, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.stdout = stdout
        self.stderr = stderr

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"message": self.message, "type": self.kind.value}
        if self.stdout:
            payload["stdout"] = self.stdout
        if self.stderr:
            payload["stderr"] = self.stderr
        return payload


class ValidationError(ExecutionCoreError):
    """Raised when a request or data variable has an invalid shape or name."""

    kind = ErrorKind.VALIDATION


class InterpolationError(ValidationError):
    """Raised when a passed variable template references a missing value."""


class DependencyCycleError(ExecutionCoreError):
    """Raised when data variables depend on each other in a cycle."""

    kind = ErrorKind.DEPENDENCY_CYCLE

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__("Circular dependency detected: " + " -> ".join(self.cycle))


class RateLimitError(ExecutionCoreError):
    kind = ErrorKind.RATE_LIMIT


class SecurityViolation(ExecutionCoreError):
    """Raised when global code tries to reach credential-class variables."""

    kind = ErrorKind.SECURITY_VIOLATION


class SpawnError(ExecutionCoreError):
    """Raised when the interpreter process could not be started."""

    kind = ErrorKind.SPAWN


class ProcessTimeout(ExecutionCoreError):
    """Raised when a spawned process outlives its timeout."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, timeout_seconds: float, *, stdout: str = "", stderr: str = "") -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Timeout after {timeout_seconds}s", stdout=stdout, stderr=stderr)


class ParseError(ExecutionCoreError):
    """Raised when the sentinel result line is missing or malformed."""

    kind = ErrorKind.PARSE


class ExecutionError(ExecutionCoreError):
    """Raised when a spawned process exits with a nonzero status."""

    kind = ErrorKind.EXECUTION

    def __init__(
        self, message: str, *, exit_code: int | None = None, stdout: str = "", stderr: str = ""
    ) -> None:
        super().__init__(message, stdout=stdout, stderr=stderr)
        self.exit_code = exit_code

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        if self.exit_code is not None:
            payload["code"] = self.exit_code
        return payload


class SanitizationError(ExecutionCoreError):
    kind = ErrorKind.SANITIZATION


class JobNotFoundError(KeyError):
    """Raised when a job id is unknown to the scheduler."""

    def __init__(self, job_id: str) -> None:
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Job {self.job_id} not found"


def classify_error(error_msg: str) -> ErrorKind:
    """Map a free-form error message onto the failure taxonomy."""
    error_lower = error_msg.lower()

    if "timeout" in error_lower or "timed out" in error_lower:
        return ErrorKind.TIMEOUT
    elif "rate limit" in error_lower:
        return ErrorKind.RATE_LIMIT
    elif "circular dependency" in error_lower or "cycle" in error_lower:
        return ErrorKind.DEPENDENCY_CYCLE
    elif "credential" in error_lower and ("blocked" in error_lower or "not allowed" in error_lower):
        return ErrorKind.SECURITY_VIOLATION
    elif "no such file" in error_lower or "permission denied" in error_lower:
        return ErrorKind.SPAWN
    elif "parse" in error_lower or "sentinel" in error_lower:
        return ErrorKind.PARSE
    elif "invalid" in error_lower or "must be" in error_lower:
        return ErrorKind.VALIDATION
    else:
        return ErrorKind.EXECUTION
