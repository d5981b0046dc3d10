"""
Data models for infrastructure definitions.

These models represent a parsed configuration:
- Declarations (resources and data lookups)
- Variables and outputs
- Provider configuration blocks
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

DeclarationKind = Literal["resource", "data"]

# Resource type prefix -> provider affinity
PROVIDER_PREFIXES = {
    "gcp": "gcp",
    "k8s": "kubernetes",
    "memory": "memory",
}

VARIABLE_TYPES = ("string", "number", "bool", "list", "map", "any")


class _NoDefault:
    def __repr__(self) -> str:
        return "NO_DEFAULT"


NO_DEFAULT: Any = _NoDefault()


def infer_provider(resource_type: str) -> str:
    """Infer the provider affinity from a resource type prefix."""
    prefix = resource_type.split("_", 1)[0]
    return PROVIDER_PREFIXES.get(prefix, prefix)


def make_address(kind: DeclarationKind, resource_type: str, name: str) -> str:
    if kind == "data":
        return f"data.{resource_type}.{name}"
    return f"{resource_type}.{name}"


def split_address(address: str) -> Tuple[DeclarationKind, str, str]:
    """Split an address into (kind, type, name)."""
    parts = address.split(".")
    if len(parts) == 3 and parts[0] == "data":
        return "data", parts[1], parts[2]
    if len(parts) == 2:
        return "resource", parts[0], parts[1]
    raise ValueError(f"Invalid address: {address!r}")


@dataclass(frozen=True)
class Lifecycle:
    """Per-declaration lifecycle customisation."""

    # None defers to the replace_strategy setting
    create_before_destroy: Optional[bool] = None
    prevent_destroy: bool = False
    ignore_changes: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "create_before_destroy": self.create_before_destroy,
            "prevent_destroy": self.prevent_destroy,
            "ignore_changes": list(self.ignore_changes),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Lifecycle":
        data = data or {}
        return cls(
            create_before_destroy=data.get("create_before_destroy"),
            prevent_destroy=bool(data.get("prevent_destroy", False)),
            ignore_changes=tuple(data.get("ignore_changes") or ()),
        )


@dataclass
class Declaration:
    """A named resource or data lookup."""

    kind: DeclarationKind
    type: str
    name: str
    provider: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    @property
    def address(self) -> str:
        return make_address(self.kind, self.type, self.name)

    @property
    def is_data(self) -> bool:
        return self.kind == "data"


@dataclass(frozen=True)
class Reference:
    """Edge from one declaration to an attribute of another."""

    source: str
    target: str
    attribute: Tuple[str, ...]
    provider_boundary: bool = False


@dataclass
class Variable:
    """Typed input to a configuration."""

    name: str
    type: str = "any"
    default: Any = NO_DEFAULT
    description: Optional[str] = None
    sensitive: bool = False

    @property
    def has_default(self) -> bool:
        return self.default is not NO_DEFAULT


@dataclass
class OutputDeclaration:
    """Named value exposed after apply."""

    name: str
    value: Any
    description: Optional[str] = None
    sensitive: bool = False


@dataclass
class ProviderConfig:
    """Connection configuration for one provider, possibly with references."""

    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Configuration:
    """Complete set of definitions for one reconciliation run."""

    declarations: Dict[str, Declaration] = field(default_factory=dict)
    variables: Dict[str, Variable] = field(default_factory=dict)
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    outputs: Dict[str, OutputDeclaration] = field(default_factory=dict)
    source: Optional[Path] = None

    def get(self, address: str) -> Optional[Declaration]:
        return self.declarations.get(address)

    def provider_config(self, name: str) -> ProviderConfig:
        return self.providers.get(name) or ProviderConfig(name=name)

    @property
    def addresses(self) -> List[str]:
        return sorted(self.declarations)

    def digest(self) -> str:
        """SHA-256 over everything an apply reads from the configuration."""
        content = {
            "declarations": {
                address: {
                    "kind": decl.kind,
                    "type": decl.type,
                    "provider": decl.provider,
                    "attributes": decl.attributes,
                    "depends_on": sorted(decl.depends_on),
                    "lifecycle": decl.lifecycle.to_dict(),
                }
                for address, decl in self.declarations.items()
            },
            "providers": {name: p.attributes for name, p in self.providers.items()},
            "outputs": {
                name: {"value": o.value, "sensitive": o.sensitive}
                for name, o in self.outputs.items()
            },
        }
        encoded = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(encoded.encode()).hexdigest()
