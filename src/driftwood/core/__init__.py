"""Core modules for driftwood - centralized definitions and utilities."""

from driftwood.core.errors import (
    ConfigurationError,
    CycleError,
    DriftwoodError,
    ExitCode,
    ProviderCallError,
    ResolutionTimeoutError,
    StateConflictError,
    UnknownReferenceError,
    UnresolvedVariableError,
    ValidationError,
    format_error_message,
    main_with_error_handling,
)

__all__ = [
    "ExitCode",
    "DriftwoodError",
    "ConfigurationError",
    "ValidationError",
    "UnresolvedVariableError",
    "UnknownReferenceError",
    "CycleError",
    "ProviderCallError",
    "ResolutionTimeoutError",
    "StateConflictError",
    "main_with_error_handling",
    "format_error_message",
]
