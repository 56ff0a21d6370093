"""On-disk layout of installed casks."""

from __future__ import annotations

import os
import shutil
import stat
from datetime import datetime, timezone
from pathlib import Path

from caskade.core.logging import get_logger
from caskade.core.models import Package

log = get_logger(__name__)

BACKUP_SUFFIX = ".upgrading"


class Caskroom:
    """Path arithmetic for ``<caskroom>/<token>/...``.

    Layout::

        <token>/<version>/                       staged content
        <token>/.metadata/INSTALL_RECEIPT.json   tab
        <token>/.metadata/config.json            persisted config
        <token>/.metadata/LATEST_DOWNLOAD_SHA256
        <token>/.metadata/<version>/<timestamp>/Casks/<token>.json
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def ensure_exists(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def caskroom_path(self, cask: Package) -> Path:
        return self.root / cask.token

    def staged_path(self, cask: Package) -> Path:
        return self.caskroom_path(cask) / cask.version

    def metadata_main_container_path(self, cask: Package) -> Path:
        return self.caskroom_path(cask) / ".metadata"

    def metadata_versioned_path(self, cask: Package) -> Path:
        return self.metadata_main_container_path(cask) / cask.version

    def tab_path(self, cask: Package) -> Path:
        return self.metadata_main_container_path(cask) / "INSTALL_RECEIPT.json"

    def config_path(self, cask: Package) -> Path:
        return self.metadata_main_container_path(cask) / "config.json"

    def download_sha_path(self, cask: Package) -> Path:
        return self.metadata_main_container_path(cask) / "LATEST_DOWNLOAD_SHA256"

    def backup_path(self, cask: Package) -> Path:
        return Path(f"{self.staged_path(cask)}{BACKUP_SUFFIX}")

    def backup_metadata_path(self, cask: Package) -> Path:
        return Path(f"{self.metadata_versioned_path(cask)}{BACKUP_SUFFIX}")

    def new_metadata_subdir(self, cask: Package) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S.%f")
        subdir = self.metadata_versioned_path(cask) / stamp / "Casks"
        subdir.mkdir(parents=True, exist_ok=True)
        return subdir

    def metadata_timestamped_path(self, cask: Package) -> Path | None:
        """Most recent ``<timestamp>`` dir for the cask's version, if any."""
        versioned = self.metadata_versioned_path(cask)
        if not versioned.is_dir():
            return None
        stamps = sorted(p for p in versioned.iterdir() if p.is_dir())
        return stamps[-1] if stamps else None

    def installed_version(self, token: str) -> str | None:
        """Version recorded in metadata, ignoring in-flight backups."""
        metadata = self.root / token / ".metadata"
        if not metadata.is_dir():
            return None
        versions = [
            p for p in metadata.iterdir()
            if p.is_dir() and not p.name.endswith(BACKUP_SUFFIX)
        ]
        if not versions:
            return None
        return max(versions, key=lambda p: p.stat().st_mtime).name

    def installed_caskfile(self, token: str) -> Path | None:
        """Definition file saved when ``token`` was installed."""
        version = self.installed_version(token)
        if version is None:
            return None
        versioned = self.root / token / ".metadata" / version
        stamps = sorted(p for p in versioned.iterdir() if p.is_dir())
        if not stamps:
            return None
        for candidate in sorted((stamps[-1] / "Casks").glob(f"{token}.*")):
            return candidate
        return None

    def is_installed(self, cask: Package) -> bool:
        return self.installed_version(cask.token) is not None

    def installed_tokens(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if self.installed_version(p.name))


def rmdir_if_possible(path: Path) -> bool:
    """Remove ``path`` if it is an empty directory."""
    try:
        path.rmdir()
        return True
    except OSError:
        return False


def gain_permissions_remove(path: Path) -> None:
    """Remove a file or tree, making read-only entries writable first."""
    if path.is_symlink() or path.is_file():
        path.unlink()
        return
    if not path.exists():
        return

    def _on_error(func, failed, _exc) -> None:
        parent = os.path.dirname(failed)
        for target in (parent, failed):
            try:
                os.chmod(target, os.stat(target).st_mode | stat.S_IWUSR | stat.S_IXUSR | stat.S_IRUSR)
            except OSError:
                pass
        func(failed)

    log.debug("remove_tree", path=str(path))
    shutil.rmtree(path, onexc=_on_error)
