"""
Persisted state models.

A StateRecord holds the last-known attributes of one applied declaration.
State is the versioned collection of records plus the last resolved outputs.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from driftwood.specs.references import MISSING, get_path

STATE_VERSION = 1


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StateRecord:
    """Last-known attributes of one declaration."""

    address: str
    kind: str
    type: str
    provider: str
    # Resolved input attributes as last applied
    attributes: Dict[str, Any] = field(default_factory=dict)
    identity: Dict[str, Any] = field(default_factory=dict)
    computed: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    lifecycle: Dict[str, Any] = field(default_factory=dict)
    updated_at: str = field(default_factory=utcnow)

    def value(self, path: Tuple[str, ...]) -> Any:
        """Look ``path`` up in the applied attributes, then the computed ones."""
        found = get_path(self.attributes, path)
        if found is MISSING:
            found = get_path(self.computed, path)
        return found

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "kind": self.kind,
            "type": self.type,
            "provider": self.provider,
            "attributes": self.attributes,
            "identity": self.identity,
            "computed": self.computed,
            "dependencies": sorted(self.dependencies),
            "lifecycle": self.lifecycle,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateRecord":
        return cls(
            address=data["address"],
            kind=data.get("kind", "resource"),
            type=data["type"],
            provider=data["provider"],
            attributes=dict(data.get("attributes") or {}),
            identity=dict(data.get("identity") or {}),
            computed=dict(data.get("computed") or {}),
            dependencies=list(data.get("dependencies") or []),
            lifecycle=dict(data.get("lifecycle") or {}),
            updated_at=data.get("updated_at") or utcnow(),
        )


@dataclass
class State:
    """Versioned collection of state records."""

    version: int = STATE_VERSION
    serial: int = 0
    lineage: str = field(default_factory=lambda: str(uuid.uuid4()))
    records: Dict[str, StateRecord] = field(default_factory=dict)
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def get(self, address: str) -> StateRecord | None:
        return self.records.get(address)

    def __contains__(self, address: str) -> bool:
        return address in self.records

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "serial": self.serial,
            "lineage": self.lineage,
            "records": {
                address: self.records[address].to_dict() for address in sorted(self.records)
            },
            "outputs": self.outputs,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "State":
        return cls(
            version=int(data.get("version", STATE_VERSION)),
            serial=int(data.get("serial", 0)),
            lineage=data.get("lineage") or str(uuid.uuid4()),
            records={
                address: StateRecord.from_dict(record)
                for address, record in (data.get("records") or {}).items()
            },
            outputs=dict(data.get("outputs") or {}),
        )
