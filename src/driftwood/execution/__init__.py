"""Apply-time machinery: executor, reference resolution, retries, refresh."""

from driftwood.execution.executor import DEPOSED_SUFFIX, Executor, idempotency_key
from driftwood.execution.refresh import RefreshReport, refresh
from driftwood.execution.resolver import ReferenceResolver
from driftwood.execution.results import ApplyResult, NodeResult, NodeStatus, ResultCollector
from driftwood.execution.retry import PollPolicy, RetryPolicy, call_with_retry, poll_for_value

__all__ = [
    "ApplyResult",
    "DEPOSED_SUFFIX",
    "Executor",
    "NodeResult",
    "NodeStatus",
    "PollPolicy",
    "ReferenceResolver",
    "RefreshReport",
    "ResultCollector",
    "RetryPolicy",
    "call_with_retry",
    "idempotency_key",
    "poll_for_value",
    "refresh",
]
