"""
Shared load -> variables -> providers -> graph -> plan pipeline for commands.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence

import structlog

from driftwood.config.settings import Settings, get_settings
from driftwood.graph.builder import DependencyGraph, build_graph
from driftwood.planning.models import Plan
from driftwood.planning.planner import Planner
from driftwood.providers.registry import ProviderSet
from driftwood.specs.loader import load_configuration
from driftwood.specs.models import Configuration
from driftwood.specs.variables import parse_cli_vars, resolve_variables, substitute_variables
from driftwood.state.models import State
from driftwood.state.store import StateStore

logger = structlog.get_logger()


@dataclass
class Workspace:
    """Everything a command needs about one configuration and its state."""

    config: Configuration
    graph: DependencyGraph
    providers: ProviderSet
    store: StateStore
    state: State
    settings: Settings

    def plan(self, *, destroy: bool = False) -> Plan:
        planner = Planner(
            self.providers.schema_for, replace_strategy=self.settings.replace_strategy
        )
        return planner.plan(self.graph, self.state, self.config, destroy=destroy)


def provider_names(config: Configuration, state: Optional[State] = None) -> Iterable[str]:
    names = {decl.provider for decl in config.declarations.values()}
    names.update(config.providers)
    if state is not None:
        names.update(record.provider for record in state.records.values())
    return names


def open_workspace(
    config_path: str,
    *,
    var_files: Sequence[str] = (),
    cli_vars: Sequence[str] = (),
    state_path: Optional[str] = None,
    settings: Optional[Settings] = None,
    providers: Optional[ProviderSet] = None,
) -> Workspace:
    """Load a configuration and its state, then build the dependency graph.

    Raises:
        ValidationError: Malformed configuration, unresolved variable, unknown
            reference or dependency cycle
        ConfigurationError: A declaration names an unregistered provider
    """
    settings = settings or get_settings()
    raw = load_configuration(config_path)
    values = resolve_variables(
        raw.variables, var_files=var_files, cli_vars=parse_cli_vars(cli_vars)
    )
    config = substitute_variables(raw, values)

    store = StateStore(Path(state_path or settings.state_path))
    state = store.load()

    if providers is None:
        providers = ProviderSet.from_registry(provider_names(config, state), settings=settings)
    graph = build_graph(config, providers.schema_for)
    logger.debug(
        "workspace_opened",
        config=config_path,
        declarations=len(config.declarations),
        records=len(state.records),
    )
    return Workspace(
        config=config,
        graph=graph,
        providers=providers,
        store=store,
        state=state,
        settings=settings,
    )
