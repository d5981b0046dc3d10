"""
CLI commands for driftwood.
"""

from driftwood.cli.apply import apply_command, destroy_command
from driftwood.cli.plan import plan_command
from driftwood.cli.show import graph_command, output_command, refresh_command, validate_command

__all__ = [
    "apply_command",
    "destroy_command",
    "graph_command",
    "output_command",
    "plan_command",
    "refresh_command",
    "validate_command",
]
