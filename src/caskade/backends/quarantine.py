"""Propagate the macOS quarantine attribute from downloads to staged files."""

from __future__ import annotations

import shutil
import sys
from pathlib import Path

from caskade.core.errors import BrewError
from caskade.core.logging import get_logger
from caskade.core.output import opoo
from caskade.core.shell import CommandRunner, run_capture

log = get_logger(__name__)

QUARANTINE_ATTRIBUTE = "com.apple.quarantine"


class Quarantine:
    """Thin wrapper around ``xattr``.

    Every operation is best-effort: failures are logged and reported as
    warnings, never raised.
    """

    def __init__(self, runner: CommandRunner = run_capture, xattr: str = "xattr") -> None:
        self.runner = runner
        self.xattr = xattr

    def available(self) -> bool:
        return sys.platform == "darwin" and shutil.which(self.xattr) is not None

    def status(self, path: Path) -> str | None:
        """The quarantine attribute of ``path``, None if it has none."""
        try:
            out, _, code = self.runner(self.xattr, "-p", QUARANTINE_ATTRIBUTE, str(path), check=False)
        except BrewError as e:
            log.warning("quarantine_status_failed", path=str(path), error=str(e))
            return None
        return out if code == 0 and out else None

    def propagate(self, from_path: Path, to_path: Path) -> None:
        """Copy the quarantine attribute of ``from_path`` onto ``to_path`` recursively."""
        if not self.available():
            log.debug("quarantine_unavailable")
            return

        value = self.status(from_path)
        if value is None:
            log.debug("quarantine_absent", path=str(from_path))
            return

        try:
            self.runner(self.xattr, "-r", "-w", QUARANTINE_ATTRIBUTE, value, str(to_path), check=True)
            log.info("quarantine_propagated", source=str(from_path), target=str(to_path))
        except BrewError as e:
            log.warning("quarantine_propagate_failed", target=str(to_path), error=str(e))
            opoo(f"Failed to quarantine {to_path}: {e.message}")

    def release(self, path: Path) -> None:
        """Strip the quarantine attribute from ``path`` recursively."""
        if not self.available():
            return
        try:
            self.runner(self.xattr, "-r", "-d", QUARANTINE_ATTRIBUTE, str(path), check=False)
            log.info("quarantine_released", path=str(path))
        except BrewError as e:
            log.warning("quarantine_release_failed", path=str(path), error=str(e))
