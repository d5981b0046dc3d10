"""In-memory provider for local development and tests."""

from __future__ import annotations

import asyncio
import copy
import itertools
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from driftwood.core.errors import ProviderCallError
from driftwood.providers.base import (
    BaseProvider,
    ProviderSession,
    ResourceObservation,
    ResourceSchema,
)
from driftwood.providers.registry import register_provider

MEMORY_ITEM = ResourceSchema(
    name="memory_item",
    description="A named value held in process memory",
    attributes={
        "name": "Object name",
        "value": "Arbitrary payload",
        "size": "Size units",
        "labels": "Key/value labels",
    },
    computed={"id": "Provider-assigned id", "endpoint": "Assigned some time after create"},
    eventual=("endpoint",),
    immutable=("name",),
    defaults={"size": 1},
    required=("name",),
    supports_create_before_destroy=True,
)

MEMORY_LOOKUP = ResourceSchema(
    name="memory_lookup",
    description="Looks up a value and a short-lived token",
    attributes={"name": "Name to look up"},
    computed={"value": "Looked-up value", "token": "Short-lived credential"},
    ephemeral=("token",),
    required=("name",),
    kind="data",
)


class _Failure:
    def __init__(self, error: Exception, times: Optional[int]) -> None:
        self.error = error
        self.remaining = times


class MemoryHandler:
    """Handler for one schema, backed by the provider's object table."""

    def __init__(self, provider: "InMemoryProvider", schema: ResourceSchema) -> None:
        self.provider = provider
        self.schema = schema

    async def create(
        self,
        attributes: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> ResourceObservation:
        provider = self.provider
        name = attributes.get("name")
        await provider.enter("create", self.schema.name, name)
        try:
            if idempotency_key and idempotency_key in provider.request_ids:
                object_id = provider.request_ids[idempotency_key]
            else:
                object_id = f"{self.schema.name}-{next(provider.ids)}"
                provider.objects[object_id] = {
                    "type": self.schema.name,
                    "attributes": copy.deepcopy(attributes),
                    "reads": 0,
                }
                if idempotency_key:
                    provider.request_ids[idempotency_key] = object_id
            return self._observe(object_id)
        finally:
            provider.leave()

    async def read(
        self, identity: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation | None:
        provider = self.provider
        object_id = identity.get("id")
        await provider.enter("read", self.schema.name, provider.name_of(object_id))
        try:
            if object_id not in provider.objects:
                return None
            provider.objects[object_id]["reads"] += 1
            return self._observe(object_id)
        finally:
            provider.leave()

    async def update(
        self,
        identity: Dict[str, Any],
        attributes: Dict[str, Any],
        *,
        changed: List[Tuple[str, ...]],
        session: ProviderSession,
    ) -> ResourceObservation:
        provider = self.provider
        object_id = identity.get("id")
        await provider.enter("update", self.schema.name, provider.name_of(object_id))
        try:
            if object_id not in provider.objects:
                raise ProviderCallError(
                    f"{object_id} not found", provider=provider.name, status=404
                )
            provider.objects[object_id]["attributes"] = copy.deepcopy(attributes)
            return self._observe(object_id)
        finally:
            provider.leave()

    async def delete(
        self,
        identity: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> None:
        provider = self.provider
        object_id = identity.get("id")
        await provider.enter("delete", self.schema.name, provider.name_of(object_id))
        try:
            provider.objects.pop(object_id, None)
        finally:
            provider.leave()

    async def lookup(
        self, attributes: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation:
        provider = self.provider
        name = attributes.get("name")
        await provider.enter("lookup", self.schema.name, name)
        try:
            provider.lookups += 1
            return ResourceObservation(
                identity={"name": name},
                computed={"value": str(name).upper(), "token": f"token-{provider.lookups}"},
            )
        finally:
            provider.leave()

    def _observe(self, object_id: str) -> ResourceObservation:
        stored = self.provider.objects[object_id]
        attributes = stored["attributes"]
        computed: Dict[str, Any] = {"id": object_id}
        if stored["reads"] >= self.provider.eventual_after:
            computed["endpoint"] = f"{attributes.get('name')}.memory.local"
        return ResourceObservation(
            identity={"id": object_id},
            computed=computed,
            observed=copy.deepcopy(attributes),
        )


class InMemoryProvider(BaseProvider):
    """Keeps objects in a dict. Supports failure injection and call recording.

    ``eventual_after`` is the number of reads before eventual attributes are
    reported; ``delay`` makes every call yield for that many seconds so
    concurrency can be observed through ``max_in_flight``.
    """

    name = "memory"

    def __init__(
        self,
        schemas: Optional[Iterable[ResourceSchema]] = None,
        *,
        eventual_after: int = 0,
        delay: float = 0.0,
        idempotent_types: Iterable[str] = ("memory_item",),
        **_: Any,
    ) -> None:
        super().__init__()
        for schema in schemas or (MEMORY_ITEM, MEMORY_LOOKUP):
            self.register(MemoryHandler(self, schema))
        self.IDEMPOTENT_TYPES = frozenset(idempotent_types)
        self.eventual_after = eventual_after
        self.delay = delay
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.request_ids: Dict[str, str] = {}
        self.calls: List[Tuple[str, str, Any]] = []
        self.lookups = 0
        self.ids = itertools.count(1)
        self.in_flight = 0
        self.max_in_flight = 0
        self._failures: Dict[Tuple[str, Any], _Failure] = {}
        self._gates: Dict[Tuple[str, Any], asyncio.Event] = defaultdict(asyncio.Event)
        self._gated: set = set()

    def fail(
        self,
        operation: str,
        key: Any,
        error: Optional[Exception] = None,
        *,
        times: Optional[int] = None,
    ) -> None:
        """Make ``operation`` on the object named ``key`` raise.

        ``times=None`` fails forever.
        """
        self._failures[(operation, key)] = _Failure(
            error or ProviderCallError(f"{operation} {key} failed", provider=self.name),
            times,
        )

    def gate(self, operation: str, key: Any) -> asyncio.Event:
        """Hold ``operation`` on ``key`` until the returned event is set."""
        self._gated.add((operation, key))
        return self._gates[(operation, key)]

    def name_of(self, object_id: Any) -> Any:
        stored = self.objects.get(object_id)
        return stored["attributes"].get("name", object_id) if stored else object_id

    def calls_for(self, operation: str) -> List[Tuple[str, str, Any]]:
        return [call for call in self.calls if call[0] == operation]

    def find(self, name: str) -> Optional[Dict[str, Any]]:
        for stored in self.objects.values():
            if stored["attributes"].get("name") == name:
                return stored
        return None

    async def enter(self, operation: str, resource_type: str, key: Any) -> None:
        self.calls.append((operation, resource_type, key))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if (operation, key) in self._gated:
                await self._gates[(operation, key)].wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            failure = self._failures.get((operation, key))
            if failure is not None:
                if failure.remaining is not None:
                    failure.remaining -= 1
                    if failure.remaining <= 0:
                        del self._failures[(operation, key)]
                raise failure.error
        except BaseException:
            self.in_flight -= 1
            raise

    def leave(self) -> None:
        self.in_flight -= 1


register_provider(
    "memory",
    InMemoryProvider,
    description="In-process objects for development and tests",
)
