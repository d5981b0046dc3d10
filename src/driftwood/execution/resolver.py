"""Resolves references against applied state during a run."""

from __future__ import annotations

from typing import Any, Dict, Tuple

import structlog

from driftwood.core.errors import ProviderCallError, UnknownReferenceError, ValidationError
from driftwood.execution.retry import PollPolicy, RetryPolicy, call_with_retry, poll_for_value
from driftwood.providers.base import ProviderSession
from driftwood.providers.registry import ProviderSet
from driftwood.specs.models import Configuration
from driftwood.specs.references import (
    MISSING,
    ReferenceExpr,
    find_references,
    get_path,
    substitute,
)
from driftwood.state.models import StateRecord
from driftwood.state.store import StateStore

logger = structlog.get_logger()


class ReferenceResolver:
    """Turns ``${...}`` references into concrete values.

    Values come from the state store. Eventual attributes missing from a
    record are polled for; ephemeral ones (credentials) are looked up once
    per run and never persisted.
    """

    def __init__(
        self,
        store: StateStore,
        providers: ProviderSet,
        config: Configuration,
        *,
        poll: PollPolicy,
        retry: RetryPolicy,
    ) -> None:
        self._store = store
        self._providers = providers
        self._config = config
        self._poll = poll
        self._retry = retry
        self._ephemeral: Dict[Tuple[str, str], Dict[str, Any]] = {}

    async def resolve(self, value: Any, *, source: str) -> Any:
        values: Dict[str, Any] = {}
        for ref in find_references(value):
            if ref.raw not in values:
                values[ref.raw] = await self.value_of(ref, source=source)
        return substitute(value, lambda ref: values[ref.raw])

    async def session_for(self, provider: str) -> ProviderSession:
        """Resolve a provider's configuration into an explicit session."""
        attributes = self._config.provider_config(provider).attributes
        resolved = await self.resolve(attributes, source=f"provider.{provider}")
        return ProviderSession(provider=provider, config=resolved)

    async def value_of(self, ref: ReferenceExpr, *, source: str) -> Any:
        record = self._store.get(ref.target)
        if record is None:
            raise ValidationError(
                f"{source}: '{ref.target}' has not been applied",
                {"reference": ref.raw},
            )

        value = record.value(ref.attribute)
        if value is not MISSING:
            return value

        schema = self._providers.schema_for(record.type)
        head = ref.attribute[0]
        if schema is not None and head in schema.ephemeral:
            return await self._ephemeral_value(record, ref)
        if schema is not None and head in schema.eventual:
            return await self._poll_value(record, ref)
        raise UnknownReferenceError(source, ref.raw, "attribute is not present in state")

    async def _ephemeral_value(self, record: StateRecord, ref: ReferenceExpr) -> Any:
        key = (record.address, record.type)
        if key not in self._ephemeral:
            adapter = self._providers.adapter(record.provider)
            session = await self.session_for(record.provider)
            observation = await call_with_retry(
                lambda: adapter.lookup(record.type, record.attributes, session=session),
                policy=self._retry,
                idempotent=True,
            )
            self._ephemeral[key] = observation.computed
        value = get_path(self._ephemeral[key], ref.attribute)
        if value is MISSING:
            raise UnknownReferenceError(record.address, ref.raw, "lookup did not return it")
        return value

    async def _poll_value(self, record: StateRecord, ref: ReferenceExpr) -> Any:
        adapter = self._providers.adapter(record.provider)
        attribute = ".".join(ref.attribute)

        async def fetch() -> Any:
            session = await self.session_for(record.provider)
            observation = await call_with_retry(
                lambda: adapter.read(record.type, record.identity, session=session),
                policy=self._retry,
                idempotent=True,
            )
            if observation is None:
                raise ProviderCallError(
                    f"{record.address} no longer exists",
                    provider=record.provider,
                    status=404,
                )
            found = get_path(observation.computed, ref.attribute)
            if found is not MISSING:
                await self._record_computed(record.address, observation.computed)
            return found

        logger.info("attribute_wait", address=record.address, attribute=attribute)
        return await poll_for_value(
            fetch, policy=self._poll, address=record.address, attribute=attribute
        )

    async def _record_computed(self, address: str, computed: Dict[str, Any]) -> None:
        async with self._store.lock(address):
            current = self._store.get(address)
            if current is None:
                return
            current.computed.update(computed)
            await self._store.put(current)
