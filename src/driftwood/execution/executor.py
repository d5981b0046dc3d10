"""
Executor: applies a Plan against live providers.

Actions run in phases. Destroy steps (deletes and the destroy half of
delete-before-create replacements) run first, dependents before the things
they depend on. Forward steps (create, read, update, replace) run second,
dependencies before dependents. Within a phase, independent branches run
concurrently up to the parallelism limit.

Every successful step is written to the state store before any dependent
step starts, so an interrupted run leaves state that matches reality.

A create-before-destroy replacement keeps the old object as a deposed record
until every dependent has moved to the replacement; deposed objects are
deleted in a third phase once the forward steps are done.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import structlog

from driftwood.config.settings import Settings, get_settings
from driftwood.core.errors import StateConflictError, ValidationError
from driftwood.execution.resolver import ReferenceResolver
from driftwood.execution.results import (
    TERMINAL_FAILURES,
    ApplyResult,
    NodeStatus,
    ResultCollector,
)
from driftwood.execution.retry import PollPolicy, RetryPolicy, call_with_retry
from driftwood.logging import bind_run
from driftwood.planning.models import Action, ActionType, Plan
from driftwood.planning.planner import apply_defaults, diff_attributes
from driftwood.providers.base import ProviderSession, ResourceObservation, ResourceSchema
from driftwood.providers.registry import ProviderSet
from driftwood.specs.models import Configuration, Lifecycle
from driftwood.specs.references import MISSING, find_references, get_path
from driftwood.state.models import StateRecord, utcnow
from driftwood.state.store import StateStore

logger = structlog.get_logger()

DEPOSED_SUFFIX = "#deposed"

StepRunner = Callable[[Action], Awaitable[None]]


def idempotency_key(run_id: str, address: str, operation: str) -> str:
    """Stable request id for one provider operation within a run."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{run_id}:{address}:{operation}"))


def _set_path(data: Dict[str, Any], path: tuple, value: Any) -> None:
    current = data
    for segment in path[:-1]:
        nested = current.get(segment)
        if not isinstance(nested, dict):
            return
        current = nested
    current[path[-1]] = value


class Executor:
    """Runs plans with bounded concurrency and per-declaration failure tracking."""

    def __init__(
        self,
        store: StateStore,
        providers: ProviderSet,
        *,
        settings: Optional[Settings] = None,
        parallelism: Optional[int] = None,
        partial_failure_tolerance: Optional[bool] = None,
        retry: Optional[RetryPolicy] = None,
        poll: Optional[PollPolicy] = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._providers = providers
        self._parallelism = max(1, parallelism or settings.parallelism)
        self._tolerant = (
            settings.partial_failure_tolerance
            if partial_failure_tolerance is None
            else partial_failure_tolerance
        )
        self._retry = retry or RetryPolicy.from_settings(settings)
        self._poll = poll or PollPolicy.from_settings(settings)
        self._cancelled = asyncio.Event()
        self._failed_once = False
        self._conflict: Optional[StateConflictError] = None
        self._run_id = ""
        self._retiring: Dict[str, StateRecord] = {}
        self._resolver: Optional[ReferenceResolver] = None
        self._collector: Optional[ResultCollector] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop dispatching new actions. In-flight calls run to completion."""
        if not self._cancelled.is_set():
            logger.warning("apply_cancel_requested", run_id=self._run_id)
        self._cancelled.set()

    async def apply(self, plan: Plan, config: Configuration) -> ApplyResult:
        """Apply ``plan``, returning per-declaration results and outputs.

        Raises:
            ValidationError: If the configuration changed since the plan was
                computed
            StateConflictError: If state changed since the plan was computed,
                or another run wrote the state file during this one
        """
        if plan.config_digest and plan.config_digest != config.digest():
            raise ValidationError(
                "Configuration changed since the plan was computed; plan again",
                {"planned": plan.config_digest[:12], "current": config.digest()[:12]},
            )
        self._store.verify(plan.serial, plan.lineage)
        self._run_id = uuid.uuid4().hex
        self._cancelled.clear()
        self._failed_once = False
        self._conflict = None
        self._retiring = {}
        bind_run(self._run_id, "destroy" if plan.destroy else "apply")

        self._resolver = ReferenceResolver(
            self._store, self._providers, config, poll=self._poll, retry=self._retry
        )
        collector = self._collector = ResultCollector(self._run_id)
        for action in plan.actions:
            collector.track(action.address, action.action)

        started = time.monotonic()
        logger.info("apply_started", actions=len(plan.actions), parallelism=self._parallelism)

        destroy_steps = {
            a.address: a
            for a in plan.actions
            if a.has_destroy_step and not a.address.endswith(DEPOSED_SUFFIX)
        }
        await self._run_phase(
            destroy_steps,
            {address: a.destroy_after for address, a in destroy_steps.items()},
            self._destroy_step,
            blocked=set(),
            finishes=lambda action: action.action == ActionType.DELETE,
        )

        forward_steps = {a.address: a for a in plan.actions if a.has_forward_step}
        blocked = {
            address for address in forward_steps if collector.status(address) in TERMINAL_FAILURES
        }
        await self._run_phase(
            {a: step for a, step in forward_steps.items() if a not in blocked},
            {address: a.requires for address, a in forward_steps.items()},
            self._forward_step,
            blocked=blocked,
            finishes=lambda action: True,
        )

        for action in plan.actions:
            if action.action == ActionType.DELETE and action.address.endswith(DEPOSED_SUFFIX):
                deposed = self._store.get(action.address)
                if deposed is not None:
                    self._retiring[action.address] = deposed
                else:
                    collector.mark(action.address, NodeStatus.APPLIED)
        if self._retiring:
            await self._retire_deposed(plan)

        if not self.cancelled and self._conflict is None:
            await self._resolve_outputs(plan, config)

        result = collector.finalize(time.monotonic() - started, cancelled=self.cancelled)
        logger.info(
            "apply_finished",
            applied=len(result.applied),
            failed=len(result.failed),
            skipped=len(result.skipped),
            cancelled=result.cancelled,
            duration_seconds=round(result.duration_seconds, 3),
        )
        if self._conflict is not None:
            raise self._conflict
        return result

    def _halted(self) -> bool:
        if self.cancelled or self._conflict is not None:
            return True
        return self._failed_once and not self._tolerant

    async def _run_phase(
        self,
        steps: Dict[str, Action],
        waits: Dict[str, List[str]],
        runner: StepRunner,
        *,
        blocked: Set[str],
        finishes: Callable[[Action], bool],
    ) -> None:
        """Dispatch ``steps`` as their waits complete.

        A step whose wait failed or was skipped is itself skipped. Waits on
        addresses with no step in this phase are already satisfied.
        """
        collector = self._collector
        assert collector is not None
        pending = dict(steps)
        done: Set[str] = set()
        failed: Set[str] = set(blocked)
        running: Dict[asyncio.Task, str] = {}

        def relevant(address: str) -> List[str]:
            return [w for w in waits.get(address, []) if w in steps or w in blocked]

        while pending or running:
            progressed = False
            # nearest waits first, so a skip names the direct dependency that blocked it
            for address in sorted(pending, key=lambda a: (len(waits.get(a, [])), a)):
                bad = [w for w in relevant(address) if w in failed]
                if bad:
                    action = pending.pop(address)
                    direct = [w for w in bad if w in action.dependencies]
                    blocker = (direct or bad)[0]
                    failed.add(address)
                    collector.skip(address, blocker)
                    logger.info("action_skipped", address=address, blocked_by=blocker)
                    progressed = True

            if not self._halted():
                for address in sorted(pending):
                    if len(running) >= self._parallelism:
                        break
                    if all(w in done for w in relevant(address)):
                        action = pending.pop(address)
                        task = asyncio.create_task(self._guarded(action, runner, finishes(action)))
                        running[task] = address
                        progressed = True

            if not running:
                if not progressed or self._halted():
                    break
                continue

            finished, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in finished:
                address = running.pop(task)
                if task.result():
                    done.add(address)
                else:
                    failed.add(address)

    async def _guarded(self, action: Action, runner: StepRunner, finished: bool) -> bool:
        collector = self._collector
        assert collector is not None
        collector.mark(action.address, NodeStatus.IN_PROGRESS)
        log = logger.bind(address=action.address, action=action.action.value)
        log.info("action_started")
        started = time.monotonic()
        try:
            await runner(action)
        except Exception as exc:
            self._failed_once = True
            if isinstance(exc, StateConflictError):
                # another run owns the state now; stop dispatching regardless of tolerance
                self._conflict = exc
            collector.record_error(action.address, exc, time.monotonic() - started)
            log.error("action_failed", error=str(exc), error_type=type(exc).__name__)
            return False

        elapsed = time.monotonic() - started
        collector.mark(
            action.address, NodeStatus.APPLIED if finished else NodeStatus.IN_PROGRESS, elapsed
        )
        log.info("action_completed", duration_seconds=round(elapsed, 3), finished=finished)
        return True

    def _schema(self, resource_type: str) -> ResourceSchema:
        schema = self._providers.schema_for(resource_type)
        if schema is None:
            raise ValidationError(f"No provider manages '{resource_type}'")
        return schema

    async def _session(self, provider: str) -> ProviderSession:
        assert self._resolver is not None
        return await self._resolver.session_for(provider)

    async def _destroy_step(self, action: Action) -> None:
        async with self._store.lock(action.address):
            record = self._store.get(action.address)
            if record is None:
                return
            if record.kind == "resource":
                await self._delete_object(record, operation="delete")
            await self._store.remove(action.address)

    async def _delete_object(self, record: StateRecord, *, operation: str) -> None:
        adapter = self._providers.adapter(record.provider)
        session = await self._session(record.provider)
        keyed = adapter.supports_idempotency_key(record.type)
        key = idempotency_key(self._run_id, record.address, operation) if keyed else None
        await call_with_retry(
            lambda: adapter.delete(
                record.type, record.identity, session=session, idempotency_key=key
            ),
            policy=self._retry,
            idempotent=keyed,
        )

    async def _forward_step(self, action: Action) -> None:
        assert self._resolver is not None
        schema = self._schema(action.type)
        lifecycle = Lifecycle.from_dict(action.lifecycle)
        attributes = await self._resolver.resolve(action.attributes, source=action.address)
        desired = apply_defaults(attributes, schema.defaults)
        adapter = self._providers.adapter(action.provider)
        session = await self._session(action.provider)
        keyed = adapter.supports_idempotency_key(action.type)

        async with self._store.lock(action.address):
            previous = self._store.get(action.address)

            if action.action == ActionType.READ:
                observation = await call_with_retry(
                    lambda: adapter.lookup(action.type, desired, session=session),
                    policy=self._retry,
                    idempotent=True,
                )
            elif action.action == ActionType.UPDATE and previous is not None:
                before = apply_defaults(previous.attributes, schema.defaults)
                for ignored in lifecycle.ignore_changes:
                    path = tuple(ignored.split("."))
                    kept = get_path(before, path)
                    if kept is not MISSING:
                        _set_path(desired, path, kept)
                changed = [
                    change.path
                    for change in diff_attributes(before, desired, schema=schema)
                ]
                observation = await call_with_retry(
                    lambda: adapter.update(
                        action.type, previous.identity, desired, changed=changed, session=session
                    ),
                    policy=self._retry,
                    idempotent=True,
                )
            else:
                key = idempotency_key(self._run_id, action.address, "create") if keyed else None
                observation = await call_with_retry(
                    lambda: adapter.create(
                        action.type, desired, session=session, idempotency_key=key
                    ),
                    policy=self._retry,
                    idempotent=keyed,
                )

            record = self._record(action, lifecycle, schema, desired, observation)
            if action.creates_before_destroy and previous is not None:
                # the old object stays until dependents have moved to the new one
                previous.address = previous.address + DEPOSED_SUFFIX
                previous.updated_at = utcnow()
                await self._store.put(record, previous)
                self._retiring[action.address] = previous
                logger.info("object_deposed", address=previous.address)
            else:
                await self._store.put(record)

    async def _retire_deposed(self, plan: Plan) -> None:
        """Delete the objects create-before-destroy replacements superseded.

        ``_retiring`` maps the reporting node (the replaced declaration, or a
        planned delete of a deposed record) to the deposed record. Dependents'
        old objects go first. An old object whose replacement still has a
        dependent that did not apply is kept, and the next plan deletes it.
        """
        collector = self._collector
        assert collector is not None

        def depth(address: str) -> int:
            action = plan.get(address)
            return len(action.requires) if action else 0

        for address in sorted(self._retiring, key=lambda a: (-depth(a), a)):
            deposed = self._retiring[address]
            replaced = deposed.address[: -len(DEPOSED_SUFFIX)]
            waiting = [
                a.address
                for a in plan.actions
                if replaced in a.requires and collector.status(a.address) != NodeStatus.APPLIED
            ]
            if self._halted() or waiting:
                logger.warning(
                    "deposed_object_kept",
                    address=deposed.address,
                    waiting_on=waiting[0] if waiting else None,
                )
                continue

            started = time.monotonic()
            try:
                async with self._store.lock(deposed.address):
                    await self._delete_object(deposed, operation="delete-deposed")
                    await self._store.remove(deposed.address)
            except Exception as exc:
                self._failed_once = True
                if isinstance(exc, StateConflictError):
                    self._conflict = exc
                collector.record_error(address, exc, time.monotonic() - started)
                logger.error(
                    "deposed_delete_failed",
                    address=deposed.address,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            if address == deposed.address:
                collector.mark(address, NodeStatus.APPLIED, time.monotonic() - started)
            logger.info("deposed_object_deleted", address=deposed.address)

    def _record(
        self,
        action: Action,
        lifecycle: Lifecycle,
        schema: ResourceSchema,
        desired: Dict[str, Any],
        observation: ResourceObservation,
    ) -> StateRecord:
        computed = {
            key: value
            for key, value in observation.computed.items()
            if key not in schema.ephemeral
        }
        return StateRecord(
            address=action.address,
            kind=action.kind,
            type=action.type,
            provider=action.provider,
            attributes=desired,
            identity=dict(observation.identity),
            computed=computed,
            dependencies=list(action.dependencies),
            lifecycle=lifecycle.to_dict(),
        )

    async def _resolve_outputs(self, plan: Plan, config: Configuration) -> None:
        collector = self._collector
        assert collector is not None and self._resolver is not None
        if plan.destroy:
            await self._store.set_outputs({})
            return

        persisted = dict(self._store.snapshot().outputs)
        for name in sorted(config.outputs):
            output = config.outputs[name]
            blocked = self._blocking(find_references(output.value))
            if blocked:
                collector.record_output_error(name, f"depends on {blocked}, which did not apply")
                continue
            try:
                value = await self._resolver.resolve(output.value, source=f"output.{name}")
            except Exception as exc:
                collector.record_output_error(name, getattr(exc, "message", None) or str(exc))
                logger.warning("output_unresolved", output=name, error=str(exc))
                continue
            collector.record_output(name, value, output.sensitive)
            persisted[name] = {"value": value, "sensitive": output.sensitive}

        for name in list(persisted):
            if name not in config.outputs:
                del persisted[name]
        await self._store.set_outputs(persisted)

    def _blocking(self, refs: Iterable[Any]) -> Optional[str]:
        collector = self._collector
        assert collector is not None
        for ref in refs:
            try:
                status = collector.status(ref.target)
            except KeyError:
                continue
            if status in TERMINAL_FAILURES:
                return ref.target
        return None
