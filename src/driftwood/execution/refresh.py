"""Refresh: reconcile persisted state with what providers report."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

import structlog

from driftwood.execution.resolver import ReferenceResolver
from driftwood.execution.retry import PollPolicy, RetryPolicy, call_with_retry
from driftwood.planning.models import AttributeChange
from driftwood.planning.planner import diff_attributes
from driftwood.providers.registry import ProviderSet
from driftwood.specs.models import Configuration
from driftwood.state.models import utcnow
from driftwood.state.store import StateStore

logger = structlog.get_logger()


@dataclass
class RefreshReport:
    """What changed in state during a refresh."""

    # Records whose objects no longer exist
    removed: List[str] = field(default_factory=list)
    drifted: Dict[str, List[AttributeChange]] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def has_drift(self) -> bool:
        return bool(self.removed or self.drifted)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "removed": self.removed,
            "drifted": {
                address: [change.to_dict() for change in changes]
                for address, changes in self.drifted.items()
            },
            "errors": self.errors,
        }


def project(recorded: Any, observed: Any) -> Any:
    """Shape ``observed`` like ``recorded``.

    Providers report many attributes nobody configured; only the keys the
    record already has are compared. Keys the provider did not report keep
    their recorded value.
    """
    if isinstance(recorded, dict) and isinstance(observed, dict):
        return {
            key: project(value, observed[key]) if key in observed else value
            for key, value in recorded.items()
        }
    return observed


async def refresh(
    store: StateStore,
    providers: ProviderSet,
    config: Configuration,
    *,
    retry: RetryPolicy,
    poll: PollPolicy,
) -> RefreshReport:
    """Read every managed object back and update its state record.

    Data lookups are left alone; they are re-read by the next apply when
    their inputs change.
    """
    resolver = ReferenceResolver(store, providers, config, poll=poll, retry=retry)
    report = RefreshReport()

    for address in sorted(store.snapshot().records):
        record = store.get(address)
        if record is None or record.kind != "resource":
            continue
        try:
            adapter = providers.adapter(record.provider)
            session = await resolver.session_for(record.provider)
            observation = await call_with_retry(
                lambda: adapter.read(record.type, record.identity, session=session),
                policy=retry,
                idempotent=True,
            )
        except Exception as exc:
            report.errors[address] = getattr(exc, "message", None) or str(exc)
            logger.warning("refresh_failed", address=address, error=str(exc))
            continue

        async with store.lock(address):
            if observation is None:
                await store.remove(address)
                report.removed.append(address)
                logger.info("refresh_object_gone", address=address)
                continue

            observed = project(record.attributes, observation.observed)
            changes = diff_attributes(record.attributes, observed)
            schema = providers.schema_for(record.type)
            ephemeral = schema.ephemeral if schema is not None else ()
            computed = {k: v for k, v in observation.computed.items() if k not in ephemeral}
            if not changes and computed == record.computed:
                continue
            if changes:
                report.drifted[address] = changes
                logger.info(
                    "refresh_drift", address=address, attributes=[c.dotted for c in changes]
                )
            record.attributes = observed
            record.computed = computed
            record.identity = dict(observation.identity) or record.identity
            record.updated_at = utcnow()
            await store.put(record)

    return report
