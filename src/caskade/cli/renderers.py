"""Renderers for displaying install results in the CLI using Rich."""

from typing import Callable, Iterable

from rich import box
from rich.markup import escape
from rich.table import Table

from caskade.core.models import InstallResult, InstallStatus, Package


STATUS_LABELS = {
    InstallStatus.INSTALLED: "[green]Installed[/green]",
    InstallStatus.ALREADY_INSTALLED: "[blue]Already installed[/blue]",
    InstallStatus.SKIPPED: "[yellow]Skipped[/yellow]",
    InstallStatus.FAILED: "[red]Failed[/red]",
}


def status_to_str(status: InstallStatus) -> str:
    """Convert an InstallStatus to a colour-coded label."""
    return STATUS_LABELS[status]


def results_table(results: Iterable[InstallResult]) -> Table:
    """Create a Rich Table with one row per batch result.

    Args:
        results: The per-package outcomes of a batch operation.

    Returns:
        A Rich Table listing each package, its status and the reason for
        anything that was not installed.
    """
    table = Table(box=box.MINIMAL_HEAVY_HEAD)
    table.add_column("Package", style="bold")
    table.add_column("Status")
    table.add_column("Reason", style="dim")

    for r in results:
        table.add_row(escape(r.package), status_to_str(r.status), escape(r.reason or ""))

    return table


def dependency_table(
    packages: Iterable[Package], installed: Callable[[Package], bool]
) -> Table:
    """Create a Rich Table listing dependencies in install order.

    Args:
        packages: Dependencies, dependencies first.
        installed: Predicate telling whether a dependency is already present.

    Returns:
        A Rich Table with kind, name, version and installed columns.
    """
    t = Table(box=box.MINIMAL_HEAVY_HEAD)
    t.add_column("#", justify="right", style="dim")
    t.add_column("Kind", style="bold")
    t.add_column("Name", style="bold")
    t.add_column("Version")
    t.add_column("Installed")

    for i, pkg in enumerate(packages, start=1):
        t.add_row(
            str(i),
            pkg.kind.value,
            escape(pkg.full_name),
            pkg.version,
            "[green]yes[/green]" if installed(pkg) else "[red]no[/red]",
        )

    return t
