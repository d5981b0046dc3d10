"""Dependency graph construction from declarations.

An edge A -> B means A needs B: A references an attribute of B, lists B in
depends_on, or uses a provider whose configuration references B.
"""

from __future__ import annotations

import heapq
from typing import Callable, Dict, Iterable, List, Optional, Set

import structlog

from driftwood.core.errors import CycleError, UnknownReferenceError, ValidationError
from driftwood.providers.base import ResourceSchema
from driftwood.specs.models import Configuration, Declaration, Reference
from driftwood.specs.references import ReferenceExpr, find_references

logger = structlog.get_logger()

SchemaLookup = Callable[[str], Optional[ResourceSchema]]


class DependencyGraph:
    """Directed acyclic graph of declarations."""

    def __init__(self, nodes: Dict[str, Declaration], references: Iterable[Reference]) -> None:
        self.nodes = dict(nodes)
        self.references: List[Reference] = list(references)
        self._deps: Dict[str, Set[str]] = {address: set() for address in self.nodes}
        self._rdeps: Dict[str, Set[str]] = {address: set() for address in self.nodes}
        for ref in self.references:
            self._deps[ref.source].add(ref.target)
            self._rdeps[ref.target].add(ref.source)

    def __contains__(self, address: str) -> bool:
        return address in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def dependencies_of(self, address: str) -> List[str]:
        return sorted(self._deps[address])

    def dependents_of(self, address: str) -> List[str]:
        return sorted(self._rdeps[address])

    def ancestors(self, address: str) -> Set[str]:
        """Everything ``address`` depends on, transitively."""
        return _walk(address, self._deps)

    def descendants(self, address: str) -> Set[str]:
        """Everything that depends on ``address``, transitively."""
        return _walk(address, self._rdeps)

    def crosses_provider_boundary(self, source: str, target: str) -> bool:
        return any(
            r.provider_boundary
            for r in self.references
            if r.source == source and r.target == target
        )

    def topological_order(self) -> List[str]:
        """Dependencies first; ties broken by address for stable output."""
        indegree = {address: len(deps) for address, deps in self._deps.items()}
        ready = [address for address, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        order: List[str] = []
        while ready:
            address = heapq.heappop(ready)
            order.append(address)
            for dependent in self._rdeps[address]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(self.nodes):
            remaining = sorted(set(self.nodes) - set(order))
            raise CycleError(_find_cycle(remaining, self._deps))
        return order

    def to_dot(self) -> str:
        lines = ["digraph driftwood {", "  rankdir=LR;"]
        for address in sorted(self.nodes):
            shape = "ellipse" if self.nodes[address].is_data else "box"
            lines.append(f'  "{address}" [shape={shape}];')
        seen = set()
        for ref in sorted(self.references, key=lambda r: (r.source, r.target)):
            key = (ref.source, ref.target)
            if key in seen:
                continue
            seen.add(key)
            style = " [style=dashed]" if self.crosses_provider_boundary(*key) else ""
            lines.append(f'  "{ref.source}" -> "{ref.target}"{style};')
        lines.append("}")
        return "\n".join(lines) + "\n"


def _walk(start: str, adjacency: Dict[str, Set[str]]) -> Set[str]:
    seen: Set[str] = set()
    stack = list(adjacency[start])
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(adjacency[node])
    return seen


def _find_cycle(candidates: List[str], deps: Dict[str, Set[str]]) -> List[str]:
    """Return one cycle among ``candidates`` as a closed path."""
    candidate_set = set(candidates)
    for start in candidates:
        path: List[str] = []
        on_path: Set[str] = set()
        visited: Set[str] = set()

        def visit(node: str) -> Optional[List[str]]:
            path.append(node)
            on_path.add(node)
            visited.add(node)
            for nxt in sorted(deps[node] & candidate_set):
                if nxt in on_path:
                    return path[path.index(nxt):] + [nxt]
                if nxt not in visited:
                    found = visit(nxt)
                    if found:
                        return found
            path.pop()
            on_path.discard(node)
            return None

        cycle = visit(start)
        if cycle:
            return cycle
    return candidates


def build_graph(config: Configuration, schema_for: SchemaLookup) -> DependencyGraph:
    """
    Build the dependency graph for a configuration.

    Args:
        config: Configuration with variables already substituted
        schema_for: Returns the schema for a resource type, or None if unknown

    Returns:
        DependencyGraph whose topological order has been checked

    Raises:
        ValidationError: Unknown resource type or malformed declaration
        UnknownReferenceError: Reference to a missing declaration or attribute
        CycleError: Declarations depend on each other in a loop
    """
    for decl in config.declarations.values():
        _validate_declaration(decl, schema_for)

    references: List[Reference] = []
    for decl in config.declarations.values():
        for expr in find_references(decl.attributes):
            _check_reference(decl.address, expr, config, schema_for)
            references.append(Reference(decl.address, expr.target, expr.attribute))
        for dep in decl.depends_on:
            if dep not in config.declarations:
                raise UnknownReferenceError(decl.address, dep, "depends_on names no declaration")
            references.append(Reference(decl.address, dep, ()))

    provider_refs: Dict[str, List[ReferenceExpr]] = {}
    for name, provider in config.providers.items():
        exprs = find_references(provider.attributes)
        for expr in exprs:
            _check_reference(f"provider.{name}", expr, config, schema_for)
        provider_refs[name] = exprs

    for decl in config.declarations.values():
        for expr in provider_refs.get(decl.provider, []):
            target = config.declarations[expr.target]
            references.append(
                Reference(
                    decl.address,
                    expr.target,
                    expr.attribute,
                    provider_boundary=target.provider != decl.provider,
                )
            )

    for name, output in config.outputs.items():
        for expr in find_references(output.value):
            _check_reference(f"output.{name}", expr, config, schema_for)

    for ref in references:
        if ref.source == ref.target:
            raise CycleError([ref.source, ref.source])

    graph = DependencyGraph(config.declarations, references)
    order = graph.topological_order()
    logger.debug("graph_built", nodes=len(order), edges=len(references))
    return graph


def _validate_declaration(decl: Declaration, schema_for: SchemaLookup) -> None:
    schema = schema_for(decl.type)
    if schema is None:
        raise ValidationError(
            f"{decl.address}: unknown type '{decl.type}'",
            {"provider": decl.provider},
        )
    if schema.kind != decl.kind:
        raise ValidationError(
            f"{decl.address}: '{decl.type}' is a {schema.kind}, not a {decl.kind}"
        )

    unknown = sorted(set(decl.attributes) - set(schema.attributes))
    if unknown:
        raise ValidationError(
            f"{decl.address}: unsupported attribute(s): {', '.join(unknown)}",
            {"type": decl.type},
        )
    missing = [attr for attr in schema.required if attr not in decl.attributes]
    if missing:
        raise ValidationError(
            f"{decl.address}: missing required attribute(s): {', '.join(missing)}"
        )
    if schema.required_any and not any(attr in decl.attributes for attr in schema.required_any):
        raise ValidationError(
            f"{decl.address}: one of {', '.join(schema.required_any)} is required"
        )


def _check_reference(
    source: str,
    expr: ReferenceExpr,
    config: Configuration,
    schema_for: SchemaLookup,
) -> None:
    if expr.is_variable:
        raise UnknownReferenceError(source, expr.raw, "variable was not substituted")
    target = config.declarations.get(expr.target)
    if target is None:
        raise UnknownReferenceError(source, expr.raw, "no such declaration")
    if not expr.attribute:
        raise UnknownReferenceError(source, expr.raw, "reference must name an attribute")
    head = expr.attribute[0]
    schema = schema_for(target.type)
    if head in target.attributes or (schema is not None and schema.knows(head)):
        return
    raise UnknownReferenceError(source, expr.raw, f"'{target.type}' has no attribute '{head}'")
