"""Definitions read from locally checked-out taps."""

from __future__ import annotations

import time
from pathlib import Path

from caskade.core.errors import PackageNotFoundError
from caskade.core.logging import get_logger
from caskade.core.models import Package, PackageKind
from caskade.providers.definition import load_definition_file

log = get_logger(__name__)

_SUBDIRS = {PackageKind.CASK: "Casks", PackageKind.FORMULA: "Formula"}


class TapSource:
    """Load ``<taps>/<user>/<repo>/{Casks,Formula}/<name>.json``.

    A full name (``user/repo/name``) selects one tap; a bare name is looked
    up in every tap, official taps first.
    """

    def __init__(self, taps_root: Path) -> None:
        self.taps_root = Path(taps_root)

    def taps(self) -> list[str]:
        if not self.taps_root.is_dir():
            return []
        names = sorted(
            f"{user.name}/{repo.name}"
            for user in self.taps_root.iterdir() if user.is_dir()
            for repo in user.iterdir() if repo.is_dir()
        )
        return sorted(names, key=lambda n: not n.startswith("homebrew/"))

    def _candidates(self, name: str, kind: PackageKind) -> list[tuple[str, Path]]:
        parts = name.split("/")
        if len(parts) == 3:
            tap, token = "/".join(parts[:2]), parts[2]
            return [(tap, self.taps_root / tap / _SUBDIRS[kind] / f"{token}.json")]
        return [
            (tap, self.taps_root / tap / _SUBDIRS[kind] / f"{name}.json")
            for tap in self.taps()
        ]

    def load(self, name: str, kind: PackageKind | None = None) -> Package:
        start = time.perf_counter()
        kinds = [kind] if kind else [PackageKind.CASK, PackageKind.FORMULA]

        for k in kinds:
            for tap, path in self._candidates(name, k):
                if not path.is_file():
                    continue
                package = load_definition_file(path, k)
                if package.tap is None:
                    package.tap = tap
                log.info(
                    "tap_definition_loaded",
                    package=name,
                    kind=k.value,
                    tap=tap,
                    duration_ms=int((time.perf_counter() - start) * 1000),
                )
                return package

        raise PackageNotFoundError(package=name, kind=kind.value if kind else None)
