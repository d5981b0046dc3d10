"""
Provider registration and the per-run set of adapters.

Adapter modules register a factory at import time; a run builds a
ProviderSet holding one adapter per provider its declarations and state
records use.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from driftwood.core.errors import ConfigurationError
from driftwood.providers.base import ProviderAdapter, ResourceSchema

ProviderFactory = Callable[..., ProviderAdapter]


@dataclass(frozen=True)
class ProviderEntry:
    name: str
    factory: ProviderFactory
    description: str = ""


_PROVIDERS: Dict[str, ProviderEntry] = {}


def register_provider(name: str, factory: ProviderFactory, *, description: str = "") -> None:
    if not name:
        raise ValueError("Provider name is required")
    _PROVIDERS[name] = ProviderEntry(name=name, factory=factory, description=description)


def registered_providers() -> List[str]:
    return sorted(_PROVIDERS)


def create_provider(name: str, **kwargs: Any) -> ProviderAdapter:
    entry = _PROVIDERS.get(name)
    if entry is None:
        known = ", ".join(registered_providers()) or "none"
        raise ConfigurationError(f"Provider '{name}' is not registered (known: {known})")
    return entry.factory(**kwargs)


class ProviderSet:
    """The adapters taking part in one run, keyed by provider name."""

    def __init__(self, adapters: Dict[str, ProviderAdapter]) -> None:
        self._adapters = dict(adapters)
        self._schemas: Dict[str, ResourceSchema] = {}
        for adapter in self._adapters.values():
            for schema in adapter.schemas():
                self._schemas[schema.name] = schema

    @classmethod
    def from_registry(cls, names: Iterable[str], **kwargs: Any) -> "ProviderSet":
        return cls({name: create_provider(name, **kwargs) for name in sorted(set(names))})

    def adapter(self, name: str) -> ProviderAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ConfigurationError(f"No adapter for provider '{name}'")
        return adapter

    def schema_for(self, resource_type: str) -> Optional[ResourceSchema]:
        return self._schemas.get(resource_type)

    @property
    def names(self) -> List[str]:
        return sorted(self._adapters)

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
