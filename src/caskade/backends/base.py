"""Protocols for the collaborators the installers drive."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from caskade.core.models import Package


class DownloadBackend(Protocol):
    """Retrieves the primary download of a package."""

    def fetch(self, package: Package, verify_integrity: bool = True,
              timeout: float | None = None) -> Path:
        """Download ``package.url`` and return the local file.

        Args:
            package: The package whose url to fetch.
            verify_integrity: Compare the file against ``package.sha256``.
            timeout: Seconds to wait on the network, None for the default.

        Returns:
            Path: The downloaded file.

        Raises:
            DownloadError: On network or HTTP failure.
            ChecksumMismatchError: If the file does not match its checksum.
        """
        ...


class FormulaBackend(Protocol):
    """Installs formulae a cask depends on."""

    def is_installed(self, formula: Package) -> bool:
        """Check whether any version of ``formula`` is installed."""
        ...

    def install(self, formula: Package, installed_as_dependency: bool = True,
                installed_on_request: bool = False, verbose: bool = False) -> None:
        """Install ``formula``.

        Raises:
            BrewCommandError: If the installation fails.
        """
        ...
