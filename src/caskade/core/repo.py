"""Package resolution across the configured definition sources."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Sequence

from caskade.core.errors import DefinitionInvalidError, PackageNotFoundError
from caskade.core.logging import get_logger
from caskade.core.models import Package, PackageKind
from caskade.providers.base import PackageSource
from caskade.providers.definition import load_definition_file

log = get_logger(__name__)


class Repository:
    """Try each source in order until one knows the package.

    An invalid definition stops the search: a broken local definition must
    not be silently shadowed by a different one.
    """

    def __init__(self, sources: Sequence[PackageSource]) -> None:
        self.sources = list(sources)

    def load(self, name: str, kind: PackageKind | None = None) -> Package:
        """Load a package by name.

        Raises:
            PackageNotFoundError: If no source knows the name.
            DefinitionInvalidError: If the first matching definition is broken.
        """
        start = time.perf_counter()
        log.debug("resolve_start", package=name, kind=kind.value if kind else "any")

        for source in self.sources:
            try:
                pkg = source.load(name, kind)
            except PackageNotFoundError:
                continue

            log.info(
                "resolve_complete",
                package=name,
                kind=pkg.kind.value,
                source=type(source).__name__,
                duration_ms=int((time.perf_counter() - start) * 1000),
            )
            return pkg

        log.info("resolve_not_found", package=name)
        raise PackageNotFoundError(package=name, kind=kind.value if kind else None)

    def load_cask(self, name: str) -> Package:
        return self.load(name, PackageKind.CASK)

    def load_installed(self, path: Path | None, fallback: Package) -> Package:
        """Load the definition saved at install time.

        Falls back to the sources and finally to ``fallback`` when the saved
        file is missing, outdated or unparsable.
        """
        if path is not None and path.is_file():
            try:
                pkg = load_definition_file(path)
                log.debug("installed_definition_loaded", package=pkg.token, path=str(path))
                return pkg
            except DefinitionInvalidError as e:
                log.warning("installed_definition_invalid", path=str(path), error=str(e))

        if fallback.loaded_from_api:
            try:
                return self.load(fallback.token, fallback.kind)
            except (PackageNotFoundError, DefinitionInvalidError) as e:
                log.warning("installed_definition_unavailable", package=fallback.token, error=str(e))

        return fallback
