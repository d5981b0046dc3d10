"""Root test configuration."""

import logging
from typing import Any, Dict, Optional

import pytest
import structlog
from driftwood.config.settings import Settings
from driftwood.execution import ApplyResult, Executor
from driftwood.graph.builder import build_graph
from driftwood.planning.planner import Planner
from driftwood.providers.memory import InMemoryProvider
from driftwood.providers.registry import ProviderSet
from driftwood.specs.loader import parse_configuration
from driftwood.state.store import StateStore


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def fast_settings(**overrides: Any) -> Settings:
    """Settings with no waiting between retries or polls."""
    values: Dict[str, Any] = {
        "poll_interval": 0,
        "poll_max_attempts": 3,
        "backoff_multiplier": 0,
        "backoff_max": 0,
        "operation_timeout": 5,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class Harness:
    """Plans and applies configurations against an in-memory provider."""

    def __init__(self, tmp_path, **provider_kwargs: Any) -> None:
        self.provider = InMemoryProvider(**provider_kwargs)
        self.providers = ProviderSet({"memory": self.provider})
        self.state_path = tmp_path / "state.json"
        self.store = StateStore(self.state_path)
        self.store.load()
        self.settings = fast_settings()

    def plan(
        self,
        data: Dict[str, Any],
        *,
        destroy: bool = False,
        strategy: str = "delete_before_create",
    ):
        config = parse_configuration(data)
        graph = build_graph(config, self.providers.schema_for)
        planner = Planner(self.providers.schema_for, replace_strategy=strategy)
        return config, planner.plan(graph, self.store.snapshot(), config, destroy=destroy)

    def executor(self, **kwargs: Any) -> Executor:
        return Executor(self.store, self.providers, settings=self.settings, **kwargs)

    async def apply(
        self,
        data: Dict[str, Any],
        *,
        destroy: bool = False,
        executor: Optional[Executor] = None,
        **kwargs: Any,
    ) -> ApplyResult:
        config, plan = self.plan(data, destroy=destroy)
        return await (executor or self.executor(**kwargs)).apply(plan, config)


@pytest.fixture
def harness(tmp_path):
    """In-memory provider, a state file under tmp_path and fast settings."""
    return Harness(tmp_path)



@pytest.fixture
def make_harness(tmp_path):
    """Factory for harnesses whose provider takes custom arguments."""

    def _make(**provider_kwargs: Any) -> Harness:
        return Harness(tmp_path, **provider_kwargs)

    return _make
