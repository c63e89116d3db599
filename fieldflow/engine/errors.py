"""Error taxonomy for computed-field propagation."""

from __future__ import annotations


class FieldflowError(Exception):
    """Base class for all propagation errors."""

    reason_code = "fieldflow_error"


class DependencyCycleError(FieldflowError, ValueError):
    """Raised when field definitions would form a dependency cycle."""

    reason_code = "dependency_cycle"

    def __init__(self, cycle: list[tuple[str, str]]) -> None:
        self.cycle = list(cycle)
        path = " -> ".join(f"{table_id}.{field_id}" for table_id, field_id in self.cycle)
        super().__init__(f"dependency_cycle: {path}")


class FatalPlanError(FieldflowError):
    """A plan that cannot succeed without external remediation."""

    reason_code = "fatal_plan_error"

    def __init__(self, message: str, reason_code: str | None = None) -> None:
        super().__init__(message)
        if reason_code:
            self.reason_code = reason_code


class FormulaError(FatalPlanError):
    reason_code = "formula_error"


class TransientPropagationError(FieldflowError, RuntimeError):
    """Retryable failure (storage hiccup, contention, timeout)."""

    reason_code = "transient_failure"

    def __init__(self, message: str, reason_code: str = "transient_failure") -> None:
        super().__init__(message)
        self.reason_code = reason_code


class NotFoundError(FieldflowError, LookupError):
    reason_code = "not_found"


def is_fatal(exc: BaseException) -> bool:
    return isinstance(exc, (FatalPlanError, DependencyCycleError))


def describe_error(exc: BaseException) -> str:
    reason_code = getattr(exc, "reason_code", "") or type(exc).__name__
    message = str(exc)
    if message.startswith(f"{reason_code}:"):
        return message
    return f"{reason_code}: {message}" if message else reason_code
