"""Formula definitions from a local Homebrew installation."""

from __future__ import annotations

import time

from caskade.core.errors import BrewCommandError, PackageNotFoundError
from caskade.core.logging import get_logger
from caskade.core.models import Package, PackageKind
from caskade.core.shell import run_json
from caskade.providers.definition import parse_formula

log = get_logger(__name__)


class BrewFormulaSource:
    """Resolve formulae through ``brew info --json=v2``.

    Only formulae are served; casks are left to the other sources.
    """

    def __init__(self, brew: str = "brew") -> None:
        self.brew = brew

    def load(self, name: str, kind: PackageKind | None = None) -> Package:
        if kind is PackageKind.CASK:
            raise PackageNotFoundError(package=name, kind=kind.value)

        start = time.perf_counter()
        log.debug("formula_info_start", package=name)

        try:
            data = run_json(self.brew, "info", "--json=v2", "--formula", name)
        except BrewCommandError as e:
            log.warning("formula_info_failed", package=name, error=str(e))
            raise PackageNotFoundError(package=name, kind="formula") from e

        f = (data.get("formulae") or [{}])[0]
        if not f:
            log.error("formula_not_found", package=name)
            raise PackageNotFoundError(package=name, kind="formula")

        pkg = parse_formula(f)
        log.info(
            "formula_info_complete",
            package=name,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return pkg
