"""
CLI commands that inspect a configuration or its state without changing anything.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional, Sequence

from rich.markup import escape

from driftwood.cli.pipeline import Workspace, open_workspace
from driftwood.cli.ux import console, error, header, info, print_table, success, warning
from driftwood.config.settings import get_settings
from driftwood.core.errors import ValidationError, main_with_error_handling
from driftwood.execution import PollPolicy, RefreshReport, RetryPolicy, refresh
from driftwood.state.store import StateStore


@main_with_error_handling()
def validate_command(
    config_path: str,
    *,
    var: Sequence[str] = (),
    var_file: Sequence[str] = (),
) -> int:
    """Check a configuration: syntax, variables, references, types and cycles."""
    workspace = open_workspace(config_path, var_files=var_file, cli_vars=var)
    config = workspace.config
    success(
        f"Configuration is valid: {len(config.declarations)} declarations, "
        f"{len(config.outputs)} outputs"
    )
    return 0


@main_with_error_handling()
def graph_command(
    config_path: str,
    *,
    var: Sequence[str] = (),
    var_file: Sequence[str] = (),
) -> int:
    """Print the dependency graph in Graphviz DOT format."""
    workspace = open_workspace(config_path, var_files=var_file, cli_vars=var)
    print(workspace.graph.to_dot())
    return 0


def print_refresh_report(report: RefreshReport) -> None:
    console.print()
    header("Refresh")
    if not report.has_drift and not report.errors:
        success("State matches live infrastructure")
    for address in report.removed:
        warning(f"{address} no longer exists; removed from state")
    for address, changes in sorted(report.drifted.items()):
        console.print(f"  [update]~ {escape(address)}[/update]")
        for change in changes:
            console.print(
                f"      [muted]└[/muted] {escape(change.dotted)}: "
                f"{escape(json.dumps(change.before, default=str))} → "
                f"{escape(json.dumps(change.after, default=str))}"
            )
    for address, err in sorted(report.errors.items()):
        error(f"{address}: {err}")
    console.print()


async def _refresh(workspace: Workspace) -> RefreshReport:
    settings = workspace.settings
    try:
        return await refresh(
            workspace.store,
            workspace.providers,
            workspace.config,
            retry=RetryPolicy.from_settings(settings),
            poll=PollPolicy.from_settings(settings),
        )
    finally:
        await workspace.providers.aclose()


@main_with_error_handling()
def refresh_command(
    config_path: str,
    *,
    var: Sequence[str] = (),
    var_file: Sequence[str] = (),
    state_path: Optional[str] = None,
    output_format: str = "text",
) -> int:
    """
    Update state with what providers report for every managed object.

    Returns:
        Exit code (0 for success, 1 if any object could not be read)
    """
    workspace = open_workspace(
        config_path, var_files=var_file, cli_vars=var, state_path=state_path
    )
    report = asyncio.run(_refresh(workspace))

    if output_format == "json":
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        print_refresh_report(report)
    return 1 if report.errors else 0


@main_with_error_handling()
def output_command(
    name: Optional[str] = None,
    *,
    state_path: Optional[str] = None,
    output_format: str = "text",
) -> int:
    """
    Show outputs recorded by the last apply.

    With ``name``, prints just that value (sensitive values included) so it
    can be captured by scripts.
    """
    store = StateStore(Path(state_path or get_settings().state_path))
    outputs = store.load().outputs

    if name is not None:
        if name not in outputs:
            raise ValidationError(f"Output '{name}' not found in state")
        value = outputs[name].get("value")
        if output_format == "json" or not isinstance(value, str):
            print(json.dumps(value, indent=2, default=str))
        else:
            print(value)
        return 0

    if output_format == "json":
        print(json.dumps(outputs, indent=2, default=str))
        return 0

    if not outputs:
        info("No outputs recorded")
        return 0
    rows = [
        [
            output_name,
            "(sensitive)"
            if entry.get("sensitive")
            else json.dumps(entry.get("value"), default=str),
        ]
        for output_name, entry in sorted(outputs.items())
    ]
    print_table("Outputs", ["Name", "Value"], rows)
    return 0
