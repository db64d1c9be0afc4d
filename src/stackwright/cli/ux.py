"""
Terminal output for plans, apply reports and lock prompts.

Human output goes through rich; prompts through questionary and only in
an interactive terminal. NO_COLOR and FORCE_COLOR are honoured, and any
of the usual CI variables turns prompting off.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Iterable, Sequence

import questionary
from questionary import Style as QStyle
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

CI_ENVIRONMENT_VARIABLES = ("CI", "GITHUB_ACTIONS", "GITLAB_CI", "JENKINS_URL", "BUILDKITE", "CIRCLECI")

ACCENT = "#83a598"

# One style per plan action kind, plus status markers
STACKWRIGHT_THEME = Theme(
    {
        "info": ACCENT,
        "success": "#b8bb26",
        "warning": "#fabd2f",
        "error": "#fb4934 bold",
        "muted": "#a89984",
        "create": "#b8bb26",
        "update": "#fabd2f",
        "replace": "#fe8019",
        "delete": "#fb4934",
        "noop": "#a89984",
    }
)

PROMPT_STYLE = QStyle(
    [
        ("qmark", f"fg:{ACCENT} bold"),
        ("question", "bold"),
        ("answer", "fg:#fb4934 bold"),
    ]
)

_no_color = "NO_COLOR" in os.environ

console = Console(theme=STACKWRIGHT_THEME, force_terminal="FORCE_COLOR" in os.environ or None, no_color=_no_color)
err_console = Console(theme=STACKWRIGHT_THEME, stderr=True, no_color=_no_color)


def is_interactive() -> bool:
    """True when a person can answer prompts on this terminal."""
    if any(os.environ.get(name) for name in CI_ENVIRONMENT_VARIABLES):
        return False
    return sys.stdin.isatty() and sys.stdout.isatty()


def success(message: str) -> None:
    console.print(f"[success]✓ {message}[/success]")


def info(message: str) -> None:
    console.print(f"[info]{message}[/info]")


def warning(message: str) -> None:
    err_console.print(f"[warning]! {message}[/warning]")


def error(message: str) -> None:
    err_console.print(f"[error]✗ {message}[/error]")


def header(title: str) -> None:
    console.print()
    console.print(Panel(f"[bold]{title}[/bold]", border_style=ACCENT, expand=False))


def action_line(style: str, symbol: str, address: object, note: str = "", marker: str = " ") -> None:
    """
    Print one resource line of a plan or report.

    ``style`` is a plan action kind value; ``marker`` is a leading status glyph.
    """
    line = f"{marker} [{style}]{symbol:>3}[/{style}] [bold]{address}[/bold]"
    if note:
        line += f" [muted]{note}[/muted]"
    console.print(line)


def detail_line(text: str, muted: bool = False) -> None:
    console.print(f"        [muted]{text}[/muted]" if muted else f"        {text}")


def print_table(title: str, columns: Sequence[str], rows: Iterable[Sequence[object]]) -> None:
    table = Table(title=title, title_justify="left", header_style="bold")
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*(str(cell) for cell in row))
    console.print(table)


def print_key_value(items: dict[str, str], title: str | None = None) -> None:
    if title:
        console.print(f"\n[bold]{title}[/bold]")
    width = max((len(key) for key in items), default=0)
    for key, value in items.items():
        console.print(f"  [info]{key:<{width}}[/info]  {value}")


def text_input(message: str, default: str = "") -> str:
    """Prompt for a line of text; an aborted prompt yields ``default``."""
    return questionary.text(message, default=default, style=PROMPT_STYLE).ask() or default
