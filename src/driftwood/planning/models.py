"""
Plan data models.

A Plan is the ordered list of actions that converge the persisted state on
the desired declarations. No-ops are kept alongside for reporting but are
not actions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from driftwood.specs.references import UNKNOWN


class ActionType(str, Enum):
    """Kind of change planned for one declaration."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NO_OP = "no-op"


class ReplaceOrder(str, Enum):
    DELETE_BEFORE_CREATE = "delete_before_create"
    CREATE_BEFORE_DESTROY = "create_before_destroy"


def _encode(value: Any) -> Any:
    if value is UNKNOWN:
        return {"__unknown__": True}
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if value == {"__unknown__": True}:
            return UNKNOWN
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


@dataclass
class AttributeChange:
    """One changed attribute path."""

    path: Tuple[str, ...]
    before: Any
    after: Any
    forces_replacement: bool = False

    @property
    def dotted(self) -> str:
        return ".".join(self.path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": list(self.path),
            "before": _encode(self.before),
            "after": _encode(self.after),
            "forces_replacement": self.forces_replacement,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttributeChange":
        return cls(
            path=tuple(data["path"]),
            before=_decode(data.get("before")),
            after=_decode(data.get("after")),
            forces_replacement=bool(data.get("forces_replacement", False)),
        )


@dataclass
class Action:
    """A planned change for one declaration."""

    address: str
    action: ActionType
    kind: str
    type: str
    provider: str
    changes: List[AttributeChange] = field(default_factory=list)
    replace_order: Optional[ReplaceOrder] = None
    # Addresses whose forward actions must finish before this one starts
    requires: List[str] = field(default_factory=list)
    # Addresses whose destroy steps must finish before this node is destroyed
    destroy_after: List[str] = field(default_factory=list)
    # Desired attributes, references unresolved
    attributes: Dict[str, Any] = field(default_factory=dict)
    lifecycle: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)

    @property
    def has_destroy_step(self) -> bool:
        return self.action == ActionType.DELETE or (
            self.action == ActionType.REPLACE
            and self.replace_order == ReplaceOrder.DELETE_BEFORE_CREATE
        )

    @property
    def creates_before_destroy(self) -> bool:
        return (
            self.action == ActionType.REPLACE
            and self.replace_order == ReplaceOrder.CREATE_BEFORE_DESTROY
        )

    @property
    def has_forward_step(self) -> bool:
        return self.action in (
            ActionType.CREATE,
            ActionType.READ,
            ActionType.UPDATE,
            ActionType.REPLACE,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "action": self.action.value,
            "kind": self.kind,
            "type": self.type,
            "provider": self.provider,
            "changes": [change.to_dict() for change in self.changes],
            "replace_order": self.replace_order.value if self.replace_order else None,
            "requires": self.requires,
            "destroy_after": self.destroy_after,
            "attributes": self.attributes,
            "lifecycle": self.lifecycle,
            "dependencies": self.dependencies,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Action":
        order = data.get("replace_order")
        return cls(
            address=data["address"],
            action=ActionType(data["action"]),
            kind=data.get("kind", "resource"),
            type=data["type"],
            provider=data["provider"],
            changes=[AttributeChange.from_dict(c) for c in data.get("changes") or []],
            replace_order=ReplaceOrder(order) if order else None,
            requires=list(data.get("requires") or []),
            destroy_after=list(data.get("destroy_after") or []),
            attributes=dict(data.get("attributes") or {}),
            lifecycle=dict(data.get("lifecycle") or {}),
            dependencies=list(data.get("dependencies") or []),
        )


@dataclass
class Plan:
    """Ordered actions plus the state version they were computed from."""

    actions: List[Action] = field(default_factory=list)
    no_ops: List[str] = field(default_factory=list)
    serial: int = 0
    lineage: str = ""
    destroy: bool = False
    # Output name -> {"value", "sensitive"}; UNKNOWN until apply where needed
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    # Configuration.digest() of the configuration the plan was computed from
    config_digest: str = ""

    @property
    def has_changes(self) -> bool:
        return bool(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    def __iter__(self):
        return iter(self.actions)

    def get(self, address: str) -> Optional[Action]:
        for action in self.actions:
            if action.address == address:
                return action
        return None

    def summary(self) -> Dict[str, int]:
        counts = {t.value: 0 for t in ActionType if t != ActionType.NO_OP}
        for action in self.actions:
            counts[action.action.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serial": self.serial,
            "lineage": self.lineage,
            "destroy": self.destroy,
            "config_digest": self.config_digest,
            "actions": [action.to_dict() for action in self.actions],
            "no_ops": self.no_ops,
            "outputs": _encode(self.outputs),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Plan":
        return cls(
            actions=[Action.from_dict(a) for a in data.get("actions") or []],
            no_ops=list(data.get("no_ops") or []),
            serial=int(data.get("serial", 0)),
            lineage=data.get("lineage", ""),
            destroy=bool(data.get("destroy", False)),
            outputs=_decode(data.get("outputs") or {}),
            config_digest=data.get("config_digest", ""),
        )
