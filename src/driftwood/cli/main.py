"""
driftwood command line entry point.
"""

from __future__ import annotations

import argparse
import sys
from typing import Sequence

from driftwood import __version__


def _add_variable_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Set a variable (repeatable)",
    )
    parser.add_argument(
        "--var-file",
        action="append",
        default=[],
        metavar="PATH",
        help="Load variables from a YAML or JSON file (repeatable)",
    )


def _add_state_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--state", dest="state_path", help="Path to the state file")


def _add_format_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )


def _add_execution_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--parallelism", type=int, help="Maximum concurrent provider operations"
    )
    parser.add_argument(
        "--partial",
        action="store_true",
        default=None,
        help="Keep applying independent branches after a failure",
    )
    parser.add_argument(
        "--auto-approve", action="store_true", help="Skip the confirmation prompt"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="driftwood", description="Declarative infrastructure reconciler"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)")
    subparsers = parser.add_subparsers(dest="command")

    validate_parser = subparsers.add_parser(
        "validate", help="Check a configuration without contacting providers"
    )
    validate_parser.add_argument("config", help="Configuration file or directory")
    _add_variable_args(validate_parser)

    plan_parser = subparsers.add_parser("plan", help="Preview changes (dry-run)")
    plan_parser.add_argument("config", help="Configuration file or directory")
    _add_variable_args(plan_parser)
    _add_state_arg(plan_parser)
    _add_format_arg(plan_parser)
    plan_parser.add_argument(
        "--destroy", action="store_true", help="Plan the removal of everything in state"
    )
    plan_parser.add_argument("--out", help="Save the plan for apply --plan-file")
    plan_parser.add_argument(
        "--detailed-exitcode",
        action="store_true",
        help="Exit 2 when the plan has changes",
    )

    apply_parser = subparsers.add_parser(
        "apply", help="Converge infrastructure on the configuration"
    )
    apply_parser.add_argument("config", help="Configuration file or directory")
    _add_variable_args(apply_parser)
    _add_state_arg(apply_parser)
    _add_format_arg(apply_parser)
    _add_execution_args(apply_parser)
    apply_parser.add_argument("--plan-file", help="Apply a plan saved with plan --out")

    destroy_parser = subparsers.add_parser("destroy", help="Delete everything recorded in state")
    destroy_parser.add_argument("config", help="Configuration file or directory")
    _add_variable_args(destroy_parser)
    _add_state_arg(destroy_parser)
    _add_format_arg(destroy_parser)
    _add_execution_args(destroy_parser)

    refresh_parser = subparsers.add_parser(
        "refresh", help="Update state from what providers report"
    )
    refresh_parser.add_argument("config", help="Configuration file or directory")
    _add_variable_args(refresh_parser)
    _add_state_arg(refresh_parser)
    _add_format_arg(refresh_parser)

    output_parser = subparsers.add_parser("output", help="Show outputs from the last apply")
    output_parser.add_argument("name", nargs="?", help="Print only this output's value")
    _add_state_arg(output_parser)
    _add_format_arg(output_parser)

    graph_parser = subparsers.add_parser("graph", help="Print the dependency graph as DOT")
    graph_parser.add_argument("config", help="Configuration file or directory")
    _add_variable_args(graph_parser)

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    from driftwood.config.settings import get_settings
    from driftwood.logging import configure_logging

    configure_logging(args.log_level or get_settings().log_level)

    if args.command == "validate":
        from driftwood.cli.show import validate_command

        sys.exit(validate_command(args.config, var=args.var, var_file=args.var_file))

    if args.command == "plan":
        from driftwood.cli.plan import plan_command

        sys.exit(
            plan_command(
                args.config,
                var=args.var,
                var_file=args.var_file,
                state_path=args.state_path,
                destroy=args.destroy,
                out=args.out,
                output_format=args.format,
                detailed_exitcode=args.detailed_exitcode,
            )
        )

    if args.command == "apply":
        from driftwood.cli.apply import apply_command

        sys.exit(
            apply_command(
                args.config,
                var=args.var,
                var_file=args.var_file,
                state_path=args.state_path,
                plan_file=args.plan_file,
                parallelism=args.parallelism,
                partial=args.partial,
                auto_approve=args.auto_approve,
                output_format=args.format,
            )
        )

    if args.command == "destroy":
        from driftwood.cli.apply import destroy_command

        sys.exit(
            destroy_command(
                args.config,
                var=args.var,
                var_file=args.var_file,
                state_path=args.state_path,
                parallelism=args.parallelism,
                partial=args.partial,
                auto_approve=args.auto_approve,
                output_format=args.format,
            )
        )

    if args.command == "refresh":
        from driftwood.cli.show import refresh_command

        sys.exit(
            refresh_command(
                args.config,
                var=args.var,
                var_file=args.var_file,
                state_path=args.state_path,
                output_format=args.format,
            )
        )

    if args.command == "output":
        from driftwood.cli.show import output_command

        sys.exit(
            output_command(args.name, state_path=args.state_path, output_format=args.format)
        )

    if args.command == "graph":
        from driftwood.cli.show import graph_command

        sys.exit(graph_command(args.config, var=args.var, var_file=args.var_file))

    parser.print_help()


if __name__ == "__main__":
    main()
