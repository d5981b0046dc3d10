"""
Unified error handling for driftwood.

Planning-time errors (cycles, unknown references, unresolved variables) are
fatal before any provider is contacted. Apply-time errors are collected per
declaration by the executor and surface here only when a command gives up.

Exit Codes:
- 0: Success
- 1: Apply finished with failed declarations
- 2: Plan has changes (only with --detailed-exitcode)
- 10: Configuration error
- 11: Provider error (external service failure or resolution timeout)
- 12: Validation error (bad definitions, cycles, unknown references)
- 13: State conflict (state changed underneath this run)
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, Sequence, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    APPLY_FAILED = 1
    CHANGES_PRESENT = 2
    CONFIG_ERROR = 10
    PROVIDER_ERROR = 11
    VALIDATION_ERROR = 12
    STATE_CONFLICT = 13
    UNKNOWN_ERROR = 127


class DriftwoodError(Exception):
    """Base exception for driftwood errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(DriftwoodError):
    """Raised for settings and provider configuration errors."""

    exit_code = ExitCode.CONFIG_ERROR


class ValidationError(DriftwoodError):
    """Raised when declarations are malformed."""

    exit_code = ExitCode.VALIDATION_ERROR


class UnresolvedVariableError(ValidationError):
    """Raised when a variable has neither a value nor a default."""

    def __init__(self, names: Sequence[str]):
        names = sorted(names)
        super().__init__(
            f"No value for required variable(s): {', '.join(names)}",
            {"variables": names},
        )
        self.names = names


class UnknownReferenceError(ValidationError):
    """Raised when a reference names a missing declaration or attribute."""

    def __init__(self, source: str, reference: str, reason: str):
        super().__init__(
            f"{source}: unknown reference '{reference}' ({reason})",
            {"source": source, "reference": reference},
        )
        self.source = source
        self.reference = reference


class CycleError(ValidationError):
    """Raised when declarations reference each other in a loop."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Dependency cycle: {' -> '.join(self.cycle)}",
            {"cycle": self.cycle},
        )


class ProviderCallError(DriftwoodError):
    """Wraps a failed call to a provider API."""

    exit_code = ExitCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status: int | None = None,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.provider = provider
        self.status = status
        self.retryable = retryable


class ResolutionTimeoutError(DriftwoodError):
    """Raised when an asynchronously assigned attribute never appears."""

    exit_code = ExitCode.PROVIDER_ERROR

    def __init__(self, address: str, attribute: str, waited: float, attempts: int):
        super().__init__(
            f"{address}.{attribute} was not assigned after {attempts} polls ({waited:.0f}s)",
            {"address": address, "attribute": attribute},
        )
        self.address = address
        self.attribute = attribute


class StateConflictError(DriftwoodError):
    """Raised when the state changed since it was read."""

    exit_code = ExitCode.STATE_CONFLICT


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI command functions that provides unified error handling.

    Catches exceptions and converts them to exit codes with consistent
    error reporting.

    Args:
        show_traceback: If True, show full traceback for unexpected errors
        log_errors: If True, log errors to structlog

    Exit codes:
        - DriftwoodError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except DriftwoodError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=int(e.exit_code),
                    )
                from driftwood.cli.ux import error as print_error

                print_error(format_error_message(e))
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130  # Standard exit code for SIGINT
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=int(ExitCode.UNKNOWN_ERROR),
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: DriftwoodError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg
