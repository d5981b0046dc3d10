"""Configuration parsing: declarations, references and variables."""

from driftwood.specs.loader import load_configuration, parse_configuration
from driftwood.specs.models import (
    Configuration,
    Declaration,
    Lifecycle,
    OutputDeclaration,
    ProviderConfig,
    Reference,
    Variable,
)
from driftwood.specs.variables import resolve_variables, substitute_variables

__all__ = [
    "Configuration",
    "Declaration",
    "Lifecycle",
    "OutputDeclaration",
    "ProviderConfig",
    "Reference",
    "Variable",
    "load_configuration",
    "parse_configuration",
    "resolve_variables",
    "substitute_variables",
]
