"""
CLI command for planning (dry-run) changes to declared infrastructure.
"""

import json
from pathlib import Path
from typing import Any, Optional, Sequence

from rich.markup import escape

from driftwood.cli.pipeline import open_workspace
from driftwood.cli.ux import console, header, print_key_value, success
from driftwood.core.errors import ExitCode, ValidationError, main_with_error_handling
from driftwood.planning.models import Action, ActionType, Plan, ReplaceOrder
from driftwood.specs.references import UNKNOWN

ACTION_SYMBOLS = {
    ActionType.CREATE: ("+", "create"),
    ActionType.READ: ("<=", "read"),
    ActionType.UPDATE: ("~", "update"),
    ActionType.DELETE: ("-", "delete"),
}


def _symbol(action: Action) -> tuple[str, str]:
    if action.action == ActionType.REPLACE:
        if action.replace_order == ReplaceOrder.CREATE_BEFORE_DESTROY:
            return "+/-", "replace"
        return "-/+", "replace"
    return ACTION_SYMBOLS[action.action]


def format_value(value: Any) -> str:
    if value is UNKNOWN:
        return "(known after apply)"
    if value is None:
        return "null"
    return json.dumps(value, sort_keys=True, default=str)


def print_plan_summary(plan: Plan, config_path: str) -> None:
    """Print the plan, one line per action with its attribute changes."""
    console.print()
    header(f"Plan: {config_path}")
    console.print()

    if not plan.has_changes:
        success("No changes. Infrastructure matches the configuration.")
        _print_outputs(plan)
        console.print()
        return

    for action in plan.actions:
        symbol, style = _symbol(action)
        label = action.action.value
        if action.action == ActionType.REPLACE:
            label = f"replace ({action.replace_order.value if action.replace_order else ''})"
        console.print(
            f"  [{style}]{symbol:>3} {escape(action.address)}[/{style}] [muted]{label}[/muted]"
        )
        for change in action.changes:
            forces = " [replace](forces replacement)[/replace]" if change.forces_replacement else ""
            if action.action in (ActionType.CREATE, ActionType.READ):
                detail = escape(format_value(change.after))
            elif action.action == ActionType.DELETE:
                detail = escape(format_value(change.before))
            else:
                before = escape(format_value(change.before))
                detail = f"{before} → {escape(format_value(change.after))}"
            console.print(f"      [muted]└[/muted] {escape(change.dotted)}: {detail}{forces}")

    counts = plan.summary()
    console.print()
    console.print(
        f"[bold]Plan:[/bold] {counts['create']} to add, {counts['update']} to change, "
        f"{counts['replace']} to replace, {counts['delete']} to destroy, "
        f"{counts['read']} to read."
    )
    _print_outputs(plan)
    console.print()


def _print_outputs(plan: Plan) -> None:
    if not plan.outputs:
        return
    print_key_value(
        {
            name: "(sensitive)" if output["sensitive"] else format_value(output["value"])
            for name, output in plan.outputs.items()
        },
        title="Outputs",
    )


def print_plan_json(plan: Plan) -> None:
    """Print plan in JSON format."""
    output = plan.to_dict()
    output["summary"] = plan.summary()
    output["has_changes"] = plan.has_changes
    print(json.dumps(output, indent=2, default=str))


def write_plan(plan: Plan, path: str) -> None:
    Path(path).write_text(json.dumps(plan.to_dict(), indent=2, default=str) + "\n")


def read_plan(path: str) -> Plan:
    try:
        data = json.loads(Path(path).read_text())
    except FileNotFoundError as exc:
        raise ValidationError(f"Plan file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Plan file is not valid JSON: {path}") from exc
    return Plan.from_dict(data)


@main_with_error_handling()
def plan_command(
    config_path: str,
    *,
    var: Sequence[str] = (),
    var_file: Sequence[str] = (),
    state_path: Optional[str] = None,
    destroy: bool = False,
    out: Optional[str] = None,
    output_format: str = "text",
    detailed_exitcode: bool = False,
) -> int:
    """
    Preview the changes an apply would make.

    Args:
        config_path: Path to a configuration file or directory
        var: ``name=value`` variable assignments
        var_file: YAML or JSON files of variable values
        state_path: State file, overriding the configured one
        destroy: Plan the removal of everything in state
        out: Save the plan here for ``apply --plan-file``
        output_format: Output format (text, json)
        detailed_exitcode: Exit 2 when the plan has changes

    Returns:
        Exit code (0 for success, 2 for changes with detailed_exitcode)
    """
    workspace = open_workspace(
        config_path, var_files=var_file, cli_vars=var, state_path=state_path
    )
    plan = workspace.plan(destroy=destroy)

    if output_format == "json":
        print_plan_json(plan)
    else:
        print_plan_summary(plan, config_path)

    if out:
        write_plan(plan, out)
        if output_format != "json":
            console.print(f"[muted]Saved plan to[/muted] [info]{escape(out)}[/info]")

    if detailed_exitcode and plan.has_changes:
        return ExitCode.CHANGES_PRESENT
    return 0
