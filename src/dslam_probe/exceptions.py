"""
Exception hierarchy for the DSLAM connectivity engine.

Only errors that cross a unit boundary are exceptions. Probe failures are
values (ProbeResult), per-device failures become synthetic results, and
batch/department failures become UnitOutcome records. What remains here is
what a caller must handle: storage faults, inventory source faults and bad
configuration.
"""

from typing import Any, Optional


class DslamProbeError(Exception):
    """Base class for engine errors."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None,
                 original_error: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        error_str = self.message
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            error_str += f" ({context_str})"
        if self.original_error:
            error_str += f" (caused by {type(self.original_error).__name__}: {self.original_error})"
        return error_str


class StoreError(DslamProbeError):
    """A storage operation failed."""

    def __init__(self, message: str, operation: Optional[str] = None,
                 original_error: Optional[Exception] = None) -> None:
        context = {"operation": operation} if operation else None
        super().__init__(message, context, original_error)


class StoreUnavailableError(StoreError):
    """The store cannot be opened or queried at all. Aborts the run."""


class InventorySourceError(DslamProbeError):
    """The inventory source failed to deliver a department."""

    def __init__(self, message: str, department: Optional[str] = None,
                 original_error: Optional[Exception] = None) -> None:
        context = {"department": department} if department else None
        super().__init__(message, context, original_error)


class ConfigurationError(DslamProbeError):
    """Configuration could not be loaded or is invalid."""
