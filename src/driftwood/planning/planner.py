"""Planner: diffs desired declarations against persisted state.

Pure over its inputs. Never contacts a provider.
"""

from __future__ import annotations

import copy
import heapq
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import structlog

from driftwood.config.settings import ReplaceStrategy
from driftwood.core.errors import CycleError, ValidationError
from driftwood.graph.builder import DependencyGraph
from driftwood.planning.models import (
    Action,
    ActionType,
    AttributeChange,
    Plan,
    ReplaceOrder,
)
from driftwood.providers.base import ResourceSchema
from driftwood.specs.models import Configuration, Declaration
from driftwood.specs.references import (
    MISSING,
    UNKNOWN,
    ReferenceExpr,
    contains_unknown,
    get_path,
    substitute,
)
from driftwood.state.models import State, StateRecord

logger = structlog.get_logger()

SchemaLookup = Callable[[str], Optional[ResourceSchema]]

# Targets whose computed attributes are not known until the action runs
_COMPUTED_UNKNOWN = (ActionType.CREATE, ActionType.REPLACE, ActionType.READ)


def apply_defaults(attributes: Dict[str, Any], defaults: Dict[str, Any]) -> Dict[str, Any]:
    """Fill unset attributes from schema defaults, recursing into mappings."""
    merged = dict(attributes)
    for key, default in defaults.items():
        current = merged.get(key)
        if current is None:
            merged[key] = copy.deepcopy(default)
        elif isinstance(current, dict) and isinstance(default, dict):
            merged[key] = apply_defaults(current, default)
    return merged


def diff_attributes(
    before: Dict[str, Any],
    after: Dict[str, Any],
    *,
    schema: Optional[ResourceSchema] = None,
    ignore: Tuple[str, ...] = (),
) -> List[AttributeChange]:
    """Leaf-level differences between two attribute mappings.

    Mappings are compared key by key, lists as a whole. UNKNOWN always
    counts as a change. Paths under ``ignore`` are skipped.
    """
    changes: List[AttributeChange] = []
    _diff(before, after, (), changes)
    result = []
    for change in changes:
        dotted = change.dotted
        if any(dotted == p or dotted.startswith(p + ".") for p in ignore):
            continue
        if schema is not None:
            change.forces_replacement = schema.forces_replacement(change.path)
        result.append(change)
    return result


def _diff(before: Any, after: Any, path: Tuple[str, ...], out: List[AttributeChange]) -> None:
    if isinstance(before, dict) and isinstance(after, dict):
        for key in sorted(set(before) | set(after)):
            _diff(before.get(key), after.get(key), path + (key,), out)
        return
    if contains_unknown(after) or before != after:
        out.append(AttributeChange(path=path, before=before, after=after))


def _lookup(
    state: State,
    kinds: Dict[str, ActionType],
    resolved: Dict[str, Dict[str, Any]],
) -> Callable[[ReferenceExpr], Any]:
    """Reference values as known at plan time; UNKNOWN until apply otherwise."""

    def resolve(ref: ReferenceExpr) -> Any:
        configured = get_path(resolved.get(ref.target, {}), ref.attribute)
        if configured is not MISSING:
            return configured
        if kinds.get(ref.target) in _COMPUTED_UNKNOWN:
            return UNKNOWN
        record = state.get(ref.target)
        if record is None:
            return UNKNOWN
        value = record.value(ref.attribute)
        # eventual attributes get polled for at apply time
        return UNKNOWN if value is MISSING else value

    return resolve


class Planner:
    """Builds a Plan from the graph, the state and the configuration."""

    def __init__(
        self,
        schema_for: SchemaLookup,
        *,
        replace_strategy: ReplaceStrategy = "delete_before_create",
    ) -> None:
        self._schema_for = schema_for
        self._replace_strategy = replace_strategy

    def plan(
        self,
        graph: DependencyGraph,
        state: State,
        config: Configuration,
        *,
        destroy: bool = False,
    ) -> Plan:
        state = copy.deepcopy(state)
        order = graph.topological_order()

        kinds: Dict[str, ActionType] = {}
        resolved: Dict[str, Dict[str, Any]] = {}
        forward: List[Action] = []
        no_ops: List[str] = []

        if not destroy:
            for address in order:
                decl = graph.nodes[address]
                action = self._plan_node(decl, graph, state, kinds, resolved)
                kinds[address] = action.action
                if action.action == ActionType.NO_OP:
                    no_ops.append(address)
                else:
                    forward.append(action)

        desired: Set[str] = set() if destroy else set(graph.nodes)
        orphans = sorted(address for address in state.records if address not in desired)
        deletes = [self._delete_action(state.records[address]) for address in orphans]

        destroying = {a.address: a for a in deletes}
        destroying.update({a.address: a for a in forward if a.has_destroy_step})
        ordered_destroy = self._order_destroy(destroying, state, graph)

        with_forward = {a.address for a in forward}
        for action in forward:
            if action.address in graph:
                action.requires = sorted(graph.ancestors(action.address) & with_forward)

        plan = Plan(
            actions=[
                destroying[a] for a in ordered_destroy if destroying[a].action == ActionType.DELETE
            ]
            + forward,
            no_ops=no_ops,
            serial=state.serial,
            lineage=state.lineage,
            destroy=destroy,
            outputs={} if destroy else self._plan_outputs(config, state, kinds, resolved),
            config_digest=config.digest(),
        )
        logger.debug("plan_computed", **plan.summary(), no_ops=len(no_ops))
        return plan

    def _plan_node(
        self,
        decl: Declaration,
        graph: DependencyGraph,
        state: State,
        kinds: Dict[str, ActionType],
        resolved: Dict[str, Dict[str, Any]],
    ) -> Action:
        schema = self._schema_for(decl.type)
        if schema is None:
            raise ValidationError(f"{decl.address}: unknown type '{decl.type}'")

        attributes = substitute(decl.attributes, _lookup(state, kinds, resolved))
        resolved[decl.address] = attributes
        desired = apply_defaults(attributes, schema.defaults)
        record = state.get(decl.address)

        action = Action(
            address=decl.address,
            action=ActionType.NO_OP,
            kind=decl.kind,
            type=decl.type,
            provider=decl.provider,
            attributes=copy.deepcopy(decl.attributes),
            lifecycle=decl.lifecycle.to_dict(),
            dependencies=graph.dependencies_of(decl.address),
        )

        if record is None:
            action.action = ActionType.READ if decl.is_data else ActionType.CREATE
            action.changes = diff_attributes({}, desired)
            return action

        before = apply_defaults(record.attributes, schema.defaults)
        changes = diff_attributes(
            before, desired, schema=schema, ignore=decl.lifecycle.ignore_changes
        )
        if not changes:
            return action

        action.changes = changes
        if decl.is_data:
            action.action = ActionType.READ
            for change in changes:
                change.forces_replacement = False
            return action

        if not any(change.forces_replacement for change in changes):
            action.action = ActionType.UPDATE
            return action

        action.action = ActionType.REPLACE
        action.replace_order = self._replace_order(decl, schema, changes)
        if decl.lifecycle.prevent_destroy or record.lifecycle.get("prevent_destroy"):
            raise ValidationError(
                f"{decl.address}: change forces replacement but prevent_destroy is set",
                {"attributes": ", ".join(c.dotted for c in changes if c.forces_replacement)},
            )
        return action

    def _plan_outputs(
        self,
        config: Configuration,
        state: State,
        kinds: Dict[str, ActionType],
        resolved: Dict[str, Dict[str, Any]],
    ) -> Dict[str, Dict[str, Any]]:
        """Output values as far as they are known before apply.

        Sensitive values are left out of the plan entirely.
        """
        lookup = _lookup(state, kinds, resolved)
        outputs: Dict[str, Dict[str, Any]] = {}
        for name in sorted(config.outputs):
            output = config.outputs[name]
            value = None if output.sensitive else substitute(output.value, lookup)
            outputs[name] = {"value": value, "sensitive": output.sensitive}
        return outputs

    def _replace_order(
        self, decl: Declaration, schema: ResourceSchema, changes: List[AttributeChange]
    ) -> ReplaceOrder:
        requested = decl.lifecycle.create_before_destroy
        unique = schema.unique_name
        # old and new objects would share a name that must be unique
        clash = (
            unique is not None
            and decl.attributes.get(unique) is not None
            and not any(change.path[0] == unique for change in changes)
        )
        if requested is True:
            if not schema.supports_create_before_destroy:
                raise ValidationError(
                    f"{decl.address}: '{decl.type}' cannot be created before "
                    "the old one is destroyed"
                )
            if clash:
                raise ValidationError(
                    f"{decl.address}: the replacement would reuse {unique} "
                    f"'{decl.attributes[unique]}'; change it or leave it unset"
                )
            return ReplaceOrder.CREATE_BEFORE_DESTROY
        if (
            requested is None
            and self._replace_strategy == "create_before_destroy"
            and schema.supports_create_before_destroy
            and not clash
        ):
            return ReplaceOrder.CREATE_BEFORE_DESTROY
        return ReplaceOrder.DELETE_BEFORE_CREATE

    def _delete_action(self, record: StateRecord) -> Action:
        if record.lifecycle.get("prevent_destroy"):
            raise ValidationError(f"{record.address}: prevent_destroy is set, refusing to delete")
        return Action(
            address=record.address,
            action=ActionType.DELETE,
            kind=record.kind,
            type=record.type,
            provider=record.provider,
            changes=[
                AttributeChange(path=change.path, before=change.after, after=None)
                for change in diff_attributes({}, record.attributes)
            ],
            dependencies=sorted(record.dependencies),
        )

    def _order_destroy(
        self,
        destroying: Dict[str, Action],
        state: State,
        graph: DependencyGraph,
    ) -> List[str]:
        """Reverse topological order: dependents are destroyed first."""

        def depends_on(address: str) -> Set[str]:
            deps: Set[str] = set()
            record = state.get(address)
            if record is not None:
                deps.update(record.dependencies)
            if address in graph:
                deps.update(graph.dependencies_of(address))
            return deps & set(destroying)

        blockers: Dict[str, Set[str]] = {address: set() for address in destroying}
        for address in destroying:
            for dep in depends_on(address):
                # ``address`` depends on ``dep``: destroy ``address`` first
                blockers[dep].add(address)

        for address, action in destroying.items():
            action.destroy_after = sorted(blockers[address])

        remaining = {address: len(blocked) for address, blocked in blockers.items()}
        ready = [address for address, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order: List[str] = []
        while ready:
            address = heapq.heappop(ready)
            order.append(address)
            for dep in depends_on(address):
                remaining[dep] -= 1
                if remaining[dep] == 0:
                    heapq.heappush(ready, dep)

        if len(order) != len(destroying):
            raise CycleError(sorted(set(destroying) - set(order)))
        return order
