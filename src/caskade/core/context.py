"""Per-run record of caveats, timings and failures."""

from __future__ import annotations

from dataclasses import dataclass, field

from caskade.core.output import console, ofail, ohai, puts


@dataclass
class RunContext:
    """Messages accumulated while one command runs.

    Passed explicitly through the installers and shown once at the end.

    Usage:
        with RunContext() as ctx:
            Installer(cask, ..., context=ctx).install()
    """

    display_times: bool = False
    caveats: dict[str, str] = field(default_factory=dict)
    install_times: dict[str, float] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return bool(self.failures)

    def record_caveats(self, package: str, caveats: str) -> None:
        self.caveats[package] = caveats

    def package_installed(self, package: str, elapsed: float) -> None:
        self.install_times[package] = elapsed

    def record_failure(self, package: str, reason: str) -> None:
        self.failures[package] = reason
        ofail(f"{package}: {reason}")

    def display_messages(self) -> None:
        if self.caveats:
            ohai("Caveats")
            for package, caveats in self.caveats.items():
                console.print(f"[bold]{package}[/bold]")
                puts(caveats)

        if self.display_times and self.install_times:
            ohai("Installation times")
            for package, elapsed in self.install_times.items():
                puts(f"{package:<32} {elapsed:>8.3f} s")

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, *exc_info) -> None:
        self.display_messages()
