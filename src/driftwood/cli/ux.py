"""
Terminal output for driftwood commands.

Plans and reports are rendered with rich; status lines go through gum when it
is on PATH so they match the rest of a gum-styled shell session. Prompts use
gum or questionary and are only shown on an interactive terminal (not in CI,
not when stdout is piped). NO_COLOR and FORCE_COLOR are honored.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
from typing import Iterable, Mapping

import questionary
from questionary import Style as QStyle
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

# Nord palette; action styles are shared by plan and apply output
DRIFTWOOD_THEME = Theme(
    {
        "info": "#88C0D0",
        "success": "#A3BE8C",
        "warning": "#EBCB8B",
        "error": "#BF616A bold",
        "muted": "#D8DEE9",
        "create": "#A3BE8C",
        "update": "#EBCB8B",
        "replace": "#D08770",
        "delete": "#BF616A",
        "read": "#81A1C1",
    }
)

# style -> (symbol, gum ANSI foreground)
STATUS_STYLES = {
    "success": ("✓", "10"),
    "error": ("✗", "9"),
    "warning": ("⚠", "11"),
    "info": ("ℹ", "14"),
}

CI_VARIABLES = ("CI", "GITHUB_ACTIONS", "JENKINS_URL", "GITLAB_CI", "CIRCLECI", "BUILDKITE")

console = Console(
    theme=DRIFTWOOD_THEME,
    force_terminal=os.environ.get("FORCE_COLOR") is not None,
    no_color=os.environ.get("NO_COLOR") is not None,
)

PROMPT_STYLE = QStyle([("qmark", "fg:#D08770 bold"), ("question", "bold")])


def is_interactive() -> bool:
    """True on a terminal outside CI, where prompting a person makes sense."""
    if any(os.environ.get(var) for var in CI_VARIABLES):
        return False
    return sys.stdin.isatty() and sys.stdout.isatty()


def has_gum() -> bool:
    return shutil.which("gum") is not None


def _status(style: str, message: str) -> None:
    symbol, color = STATUS_STYLES[style]
    if has_gum():
        subprocess.run(["gum", "style", "--foreground", color, f"{symbol} {message}"])
    else:
        console.print(f"[{style}]{symbol} {escape(message)}[/{style}]")


def success(message: str) -> None:
    _status("success", message)


def error(message: str) -> None:
    _status("error", message)


def warning(message: str) -> None:
    _status("warning", message)


def info(message: str) -> None:
    _status("info", message)


def header(title: str) -> None:
    console.print(Panel(f"[bold]{escape(title)}[/bold]", border_style="#88C0D0"))


def print_table(title: str, columns: list[str], rows: Iterable[list[str]]) -> None:
    """Print rows under ``columns``; cell text is escaped, not parsed as markup."""
    table = Table(title=title)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*(escape(cell) for cell in row))
    console.print(table)


def print_key_value(items: Mapping[str, str], title: str | None = None) -> None:
    if title:
        console.print(f"\n[bold]{escape(title)}[/bold]")
    for key, value in items.items():
        console.print(f"  [info]{escape(key)}[/info] = {escape(value)}")


def confirm(message: str, default: bool = False) -> bool:
    """Ask a yes/no question. Callers check ``is_interactive`` first."""
    if has_gum():
        flag = "--default=true" if default else "--default=false"
        return subprocess.run(["gum", "confirm", flag, message]).returncode == 0
    answer = questionary.confirm(message, default=default, style=PROMPT_STYLE).ask()
    return bool(answer)
