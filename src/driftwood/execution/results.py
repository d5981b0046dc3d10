"""Result types for apply runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from driftwood.planning.models import ActionType


class NodeStatus(str, Enum):
    """Per-declaration state across a run."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


TERMINAL_FAILURES = (NodeStatus.FAILED, NodeStatus.SKIPPED, NodeStatus.CANCELLED)


@dataclass
class NodeResult:
    """Outcome for one planned action."""

    address: str
    action: ActionType
    status: NodeStatus = NodeStatus.PENDING
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "action": self.action.value,
            "status": self.status.value,
            "error": self.error,
            "error_type": self.error_type,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class ApplyResult:
    """Result of applying a plan."""

    run_id: str
    nodes: Dict[str, NodeResult] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    sensitive_outputs: List[str] = field(default_factory=list)
    output_errors: Dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0
    cancelled: bool = False

    def with_status(self, status: NodeStatus) -> List[str]:
        return sorted(a for a, node in self.nodes.items() if node.status == status)

    @property
    def applied(self) -> List[str]:
        return self.with_status(NodeStatus.APPLIED)

    @property
    def failed(self) -> List[str]:
        return self.with_status(NodeStatus.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self.with_status(NodeStatus.SKIPPED)

    @property
    def success(self) -> bool:
        """Whether every action applied and every output resolved."""
        return (
            not self.cancelled
            and all(node.status == NodeStatus.APPLIED for node in self.nodes.values())
            and not self.output_errors
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "cancelled": self.cancelled,
            "duration_seconds": round(self.duration_seconds, 3),
            "nodes": [self.nodes[a].to_dict() for a in sorted(self.nodes)],
            "outputs": {
                name: ("(sensitive)" if name in self.sensitive_outputs else value)
                for name, value in self.outputs.items()
            },
            "output_errors": self.output_errors,
        }


class ResultCollector:
    """Aggregates per-declaration results during execution."""

    def __init__(self, run_id: str) -> None:
        self._result = ApplyResult(run_id=run_id)

    def track(self, address: str, action: ActionType) -> None:
        self._result.nodes[address] = NodeResult(address=address, action=action)

    def status(self, address: str) -> NodeStatus:
        return self._result.nodes[address].status

    def mark(self, address: str, status: NodeStatus, duration: float | None = None) -> None:
        node = self._result.nodes[address]
        node.status = status
        if duration is not None:
            node.duration_seconds += duration

    def record_error(self, address: str, error: BaseException, duration: float = 0.0) -> None:
        node = self._result.nodes[address]
        node.status = NodeStatus.FAILED
        node.error = getattr(error, "message", None) or str(error)
        node.error_type = type(error).__name__
        node.duration_seconds += duration

    def skip(self, address: str, because: str) -> None:
        node = self._result.nodes[address]
        node.status = NodeStatus.SKIPPED
        node.error = f"skipped: depends on {because}"

    def record_output(self, name: str, value: Any, sensitive: bool) -> None:
        self._result.outputs[name] = value
        if sensitive:
            self._result.sensitive_outputs.append(name)

    def record_output_error(self, name: str, error: str) -> None:
        self._result.output_errors[name] = error

    def finalize(self, duration: float, cancelled: bool) -> ApplyResult:
        """Return the final result with duration set."""
        self._result.duration_seconds = duration
        self._result.cancelled = cancelled
        for node in self._result.nodes.values():
            if node.status in (NodeStatus.PENDING, NodeStatus.IN_PROGRESS):
                node.status = NodeStatus.CANCELLED if cancelled else NodeStatus.SKIPPED
        return self._result
