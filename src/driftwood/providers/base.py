"""
Provider contract: resource schemas, sessions and the adapter protocol.

A provider adapter owns a set of resource handlers, one per schema. The
planner only reads schemas; the executor calls handlers through the adapter
with an explicit ProviderSession and never touches provider clients directly.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Protocol, Tuple

from driftwood.core.errors import ConfigurationError


@dataclass(frozen=True)
class ResourceSchema:
    """Schema metadata describing a provider-managed resource or data lookup."""

    name: str
    description: str
    attributes: Dict[str, str]
    computed: Dict[str, str] = field(default_factory=dict)
    # Computed attributes the provider assigns after the creating call returns
    eventual: Tuple[str, ...] = ()
    # Computed attributes looked up on demand and never written to state
    ephemeral: Tuple[str, ...] = ()
    # Dotted attribute paths whose change forces replacement
    immutable: Tuple[str, ...] = ()
    defaults: Dict[str, Any] = field(default_factory=dict)
    required: Tuple[str, ...] = ()
    kind: Literal["resource", "data"] = "resource"
    supports_create_before_destroy: bool = False
    # Attribute two live objects cannot share. A create-before-destroy
    # replacement needs it changed, or unset so the provider generates one.
    unique_name: Optional[str] = None
    # At least one of these must be configured
    required_any: Tuple[str, ...] = ()

    def knows(self, attribute: str) -> bool:
        return attribute in self.attributes or attribute in self.computed

    def forces_replacement(self, path: Tuple[str, ...]) -> bool:
        dotted = ".".join(path)
        for immutable in self.immutable:
            if dotted == immutable or dotted.startswith(immutable + "."):
                return True
            # a whole-mapping change covers immutable paths below it
            if immutable.startswith(dotted + "."):
                return True
        return False


@dataclass(frozen=True)
class ProviderSession:
    """Resolved provider configuration handed to every adapter call."""

    provider: str
    config: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        value = self.config.get(key)
        return default if value is None else value

    def require(self, key: str) -> Any:
        value = self.config.get(key)
        if value in (None, ""):
            raise ConfigurationError(
                f"Provider '{self.provider}' needs '{key}'",
                {"provider": self.provider},
            )
        return value

    @property
    def fingerprint(self) -> str:
        payload = json.dumps(self.config, sort_keys=True, default=str)
        return hashlib.sha256(payload.encode()).hexdigest()


@dataclass
class ResourceObservation:
    """What a provider reports about one object."""

    # Keys needed to find the object again
    identity: Dict[str, Any]
    # Provider-assigned attributes
    computed: Dict[str, Any] = field(default_factory=dict)
    # Provider's current view of configurable attributes, for drift reports
    observed: Dict[str, Any] = field(default_factory=dict)


class ResourceHandler(Protocol):
    """Contract for one resource type inside a provider."""

    schema: ResourceSchema

    async def create(
        self,
        attributes: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> ResourceObservation:
        ...

    async def read(
        self, identity: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation | None:
        ...

    async def update(
        self,
        identity: Dict[str, Any],
        attributes: Dict[str, Any],
        *,
        changed: List[Tuple[str, ...]],
        session: ProviderSession,
    ) -> ResourceObservation:
        ...

    async def delete(
        self,
        identity: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> None:
        ...


class ProviderAdapter(Protocol):
    """Minimal provider interface exposed to the executor."""

    name: str

    def schemas(self) -> List[ResourceSchema]:
        ...

    def schema(self, resource_type: str) -> Optional[ResourceSchema]:
        ...

    def supports_idempotency_key(self, resource_type: str) -> bool:
        ...

    async def create(
        self,
        resource_type: str,
        attributes: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> ResourceObservation:
        ...

    async def read(
        self, resource_type: str, identity: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation | None:
        ...

    async def update(
        self,
        resource_type: str,
        identity: Dict[str, Any],
        attributes: Dict[str, Any],
        *,
        changed: List[Tuple[str, ...]],
        session: ProviderSession,
    ) -> ResourceObservation:
        ...

    async def delete(
        self,
        resource_type: str,
        identity: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> None:
        ...

    async def lookup(
        self, resource_type: str, attributes: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation:
        ...

    async def aclose(self) -> None:
        ...


class BaseProvider:
    """Dispatches adapter calls to per-type resource handlers."""

    name = "base"
    # Types whose create/delete calls carry an idempotency key
    IDEMPOTENT_TYPES: frozenset[str] = frozenset()

    def __init__(self) -> None:
        self._handlers: Dict[str, Any] = {}

    def register(self, handler: Any) -> None:
        self._handlers[handler.schema.name] = handler

    def schemas(self) -> List[ResourceSchema]:
        return [handler.schema for handler in self._handlers.values()]

    def schema(self, resource_type: str) -> Optional[ResourceSchema]:
        handler = self._handlers.get(resource_type)
        return handler.schema if handler is not None else None

    def supports_idempotency_key(self, resource_type: str) -> bool:
        return resource_type in self.IDEMPOTENT_TYPES

    def _handler(self, resource_type: str) -> Any:
        handler = self._handlers.get(resource_type)
        if handler is None:
            raise ConfigurationError(
                f"Provider '{self.name}' does not manage '{resource_type}'",
                {"provider": self.name},
            )
        return handler

    async def create(
        self,
        resource_type: str,
        attributes: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> ResourceObservation:
        return await self._handler(resource_type).create(
            attributes, session=session, idempotency_key=idempotency_key
        )

    async def read(
        self, resource_type: str, identity: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation | None:
        return await self._handler(resource_type).read(identity, session=session)

    async def update(
        self,
        resource_type: str,
        identity: Dict[str, Any],
        attributes: Dict[str, Any],
        *,
        changed: List[Tuple[str, ...]],
        session: ProviderSession,
    ) -> ResourceObservation:
        return await self._handler(resource_type).update(
            identity, attributes, changed=changed, session=session
        )

    async def delete(
        self,
        resource_type: str,
        identity: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> None:
        await self._handler(resource_type).delete(
            identity, session=session, idempotency_key=idempotency_key
        )

    async def lookup(
        self, resource_type: str, attributes: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation:
        return await self._handler(resource_type).lookup(attributes, session=session)

    async def aclose(self) -> None:  # for symmetry with providers holding clients
        return None
