"""Install formula dependencies through Homebrew."""

from __future__ import annotations

import time

from caskade.core.logging import get_logger
from caskade.core.models import Package
from caskade.core.shell import CommandRunner, run_capture, run_checked

log = get_logger(__name__)


class BrewFormulaBackend:
    """FormulaBackend that shells out to ``brew``."""

    def __init__(self, brew: str = "brew", runner: CommandRunner | None = None) -> None:
        self.brew = brew
        self.runner = runner

    def _run(self, *args: str, check: bool, timeout: float | None) -> tuple[str, str, int]:
        if self.runner is not None:
            return self.runner(self.brew, *args, timeout=timeout, check=check)
        if check:
            return run_checked(self.brew, *args, timeout=timeout)
        return run_capture(self.brew, *args, timeout=timeout)

    def is_installed(self, formula: Package) -> bool:
        out, _, code = self._run("list", "--formula", "--versions", formula.full_name,
                                 check=False, timeout=30)
        installed = code == 0 and bool(out.strip())
        log.debug("formula_installed_check", package=formula.full_name, installed=installed)
        return installed

    def install(self, formula: Package, installed_as_dependency: bool = True,
                installed_on_request: bool = False, verbose: bool = False) -> None:
        """Install ``formula`` and record why in Homebrew's own tab.

        Raises:
            BrewCommandError: If ``brew install`` fails.
        """
        start = time.perf_counter()
        args = ["install", "--formula"]
        if verbose:
            args.append("--verbose")
        args.append(formula.full_name)

        log.info("formula_install_start", package=formula.full_name)
        self._run(*args, check=True, timeout=None)

        if installed_as_dependency and not installed_on_request:
            # brew marks command line installs as on request
            self._run("tab", "--no-installed-on-request", formula.full_name, check=False, timeout=30)

        log.info(
            "formula_install_complete",
            package=formula.full_name,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
