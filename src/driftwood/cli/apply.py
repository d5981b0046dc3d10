"""
CLI commands for applying and destroying declared infrastructure.
"""

import asyncio
import json
import signal
from typing import Optional, Sequence

from rich.markup import escape

from driftwood.cli.pipeline import Workspace, open_workspace
from driftwood.cli.plan import print_plan_summary, read_plan
from driftwood.cli.ux import confirm, console, is_interactive, print_key_value, success, warning
from driftwood.core.errors import ExitCode, ValidationError, main_with_error_handling
from driftwood.execution import ApplyResult, Executor, NodeStatus
from driftwood.planning.models import Plan

STATUS_STYLES = {
    NodeStatus.APPLIED: ("✓", "success"),
    NodeStatus.FAILED: ("✗", "error"),
    NodeStatus.SKIPPED: ("-", "muted"),
    NodeStatus.CANCELLED: ("⊘", "warning"),
    NodeStatus.PENDING: ("?", "muted"),
    NodeStatus.IN_PROGRESS: ("…", "muted"),
}


def print_apply_summary(result: ApplyResult) -> None:
    """Print per-declaration outcomes and the resolved outputs."""
    console.print()
    for address in sorted(result.nodes):
        node = result.nodes[address]
        mark, style = STATUS_STYLES[node.status]
        line = f"  [{style}]{mark} {escape(address):<40}[/{style}] {node.action.value}"
        if node.error:
            line += f" [muted]({escape(node.error)})[/muted]"
        console.print(line)

    console.print()
    counts = (
        f"{len(result.applied)} applied, {len(result.failed)} failed, "
        f"{len(result.skipped)} skipped"
    )
    duration = f" in {result.duration_seconds:.1f}s" if result.duration_seconds > 0 else ""
    if result.cancelled:
        console.print(f"[bold yellow]Cancelled: {counts}{duration}[/bold yellow]")
    elif result.success:
        console.print(f"[bold green]Apply complete: {counts}{duration}[/bold green]")
    else:
        console.print(f"[bold yellow]Apply finished with errors: {counts}{duration}[/bold yellow]")

    if result.outputs:
        print_key_value(
            {
                name: "(sensitive)"
                if name in result.sensitive_outputs
                else json.dumps(value, default=str)
                for name, value in sorted(result.outputs.items())
            },
            title="Outputs",
        )
    for name, err in sorted(result.output_errors.items()):
        warning(f"output {name}: {err}")
    console.print()


def print_apply_json(result: ApplyResult) -> None:
    """Print apply result in JSON format."""
    print(json.dumps(result.to_dict(), indent=2, default=str))


async def run_plan(
    workspace: Workspace,
    plan: Plan,
    *,
    parallelism: Optional[int] = None,
    partial: Optional[bool] = None,
) -> ApplyResult:
    """Apply ``plan``; SIGINT and SIGTERM stop new actions from starting."""
    executor = Executor(
        workspace.store,
        workspace.providers,
        settings=workspace.settings,
        parallelism=parallelism,
        partial_failure_tolerance=partial,
    )
    loop = asyncio.get_running_loop()
    installed = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, executor.cancel)
        except (NotImplementedError, RuntimeError, ValueError):
            # Not the main thread, or a platform without signal support
            continue
        installed.append(signum)
    try:
        return await executor.apply(plan, workspace.config)
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)
        await workspace.providers.aclose()


def _approved(plan: Plan, auto_approve: bool) -> bool:
    if auto_approve or not plan.has_changes:
        return True
    if not is_interactive():
        raise ValidationError(
            "Refusing to apply without --auto-approve in a non-interactive session"
        )
    verb = "destroy" if plan.destroy else "apply"
    return confirm(f"Do you want to {verb} these changes?", default=False)


def _execute(
    config_path: str,
    *,
    destroy: bool,
    var: Sequence[str],
    var_file: Sequence[str],
    state_path: Optional[str],
    plan_file: Optional[str],
    parallelism: Optional[int],
    partial: Optional[bool],
    auto_approve: bool,
    output_format: str,
) -> int:
    workspace = open_workspace(
        config_path, var_files=var_file, cli_vars=var, state_path=state_path
    )
    if plan_file:
        plan = read_plan(plan_file)
        # A saved plan was reviewed when it was written
        auto_approve = True
    else:
        plan = workspace.plan(destroy=destroy)
        if output_format != "json":
            print_plan_summary(plan, config_path)

    if not _approved(plan, auto_approve):
        warning("Apply cancelled")
        return ExitCode.APPLY_FAILED

    result = asyncio.run(run_plan(workspace, plan, parallelism=parallelism, partial=partial))

    if output_format == "json":
        print_apply_json(result)
    else:
        print_apply_summary(result)
        if result.success and plan.destroy:
            success("All managed objects destroyed")

    return ExitCode.SUCCESS if result.success else ExitCode.APPLY_FAILED


@main_with_error_handling()
def apply_command(
    config_path: str,
    *,
    var: Sequence[str] = (),
    var_file: Sequence[str] = (),
    state_path: Optional[str] = None,
    plan_file: Optional[str] = None,
    parallelism: Optional[int] = None,
    partial: Optional[bool] = None,
    auto_approve: bool = False,
    output_format: str = "text",
) -> int:
    """
    Converge live infrastructure on the configuration.

    Args:
        config_path: Path to a configuration file or directory
        var: ``name=value`` variable assignments
        var_file: YAML or JSON files of variable values
        state_path: State file, overriding the configured one
        plan_file: Apply a plan saved with ``plan --out``
        parallelism: Maximum concurrent provider operations
        partial: Keep applying independent branches after a failure
        auto_approve: Skip the confirmation prompt
        output_format: Output format (text, json)

    Returns:
        Exit code (0 for success, 1 when any declaration failed)
    """
    return _execute(
        config_path,
        destroy=False,
        var=var,
        var_file=var_file,
        state_path=state_path,
        plan_file=plan_file,
        parallelism=parallelism,
        partial=partial,
        auto_approve=auto_approve,
        output_format=output_format,
    )


@main_with_error_handling()
def destroy_command(
    config_path: str,
    *,
    var: Sequence[str] = (),
    var_file: Sequence[str] = (),
    state_path: Optional[str] = None,
    parallelism: Optional[int] = None,
    partial: Optional[bool] = None,
    auto_approve: bool = False,
    output_format: str = "text",
) -> int:
    """Delete every object recorded in state, dependents first."""
    return _execute(
        config_path,
        destroy=True,
        var=var,
        var_file=var_file,
        state_path=state_path,
        plan_file=None,
        parallelism=parallelism,
        partial=partial,
        auto_approve=auto_approve,
        output_format=output_format,
    )
