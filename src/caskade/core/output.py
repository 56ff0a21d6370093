"""Console helpers for user-facing progress messages."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape

console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)


def oh1(message: str) -> None:
    """Print a top-level heading."""
    console.print(f"[bold green]==>[/bold green] [bold]{escape(message)}[/bold]")


def ohai(message: str, detail: str | None = None) -> None:
    """Print a step heading, optionally followed by body text."""
    console.print(f"[bold blue]==>[/bold blue] [bold]{escape(message)}[/bold]")
    if detail:
        console.print(escape(detail))


def opoo(message: str) -> None:
    """Print a warning to stderr."""
    err_console.print(f"[bold yellow]Warning:[/bold yellow] {escape(message)}")


def ofail(message: str) -> None:
    """Print a non-fatal error to stderr."""
    err_console.print(f"[bold red]Error:[/bold red] {escape(message)}")


def puts(message: str) -> None:
    console.print(escape(message))
