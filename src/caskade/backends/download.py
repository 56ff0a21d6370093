"""HTTP downloads into the local download cache."""

from __future__ import annotations

import hashlib
import shutil
import time
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests

from caskade.core.errors import ChecksumMismatchError, DownloadError, retry_on_transient
from caskade.core.logging import get_logger
from caskade.core.models import Package

log = get_logger(__name__)

HEADERS = {"User-Agent": "caskade"}
CHUNK_SIZE = 8192
DEFAULT_TIMEOUT = 60


def sha256sum(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            digest.update(block)
    return digest.hexdigest()


class HttpDownloadBackend:
    """Stream downloads to ``cache_dir`` and verify their sha256.

    A cached file is reused when its checksum still matches, or when the
    package is versioned but declares no checksum. ``latest`` packages
    without a checksum are always downloaded again. ``file://`` urls are
    copied, which is what local taps use for vendored downloads.
    """

    def __init__(self, cache_dir: Path, session: requests.Session | None = None) -> None:
        self.cache_dir = Path(cache_dir)
        self.session = session or requests.Session()

    def cached_path(self, package: Package) -> Path:
        name = Path(unquote(urlparse(package.url or "").path)).name
        suffix = "".join(Path(name).suffixes[-2:]) if name else ""
        return self.cache_dir / f"{package.token}--{package.version}{suffix}"

    def _reusable(self, package: Package, path: Path) -> bool:
        if not path.is_file():
            return False
        if package.sha256:
            return sha256sum(path) == package.sha256
        return not package.is_latest

    @retry_on_transient(max_retries=3, base_delay=1.0)
    def _download(self, url: str, dest: Path, timeout: float) -> None:
        parsed = urlparse(url)
        incomplete = dest.with_name(dest.name + ".incomplete")

        if parsed.scheme == "file":
            try:
                shutil.copyfile(unquote(parsed.path), incomplete)
            except OSError as e:
                raise DownloadError(url=url, error=str(e)) from e
            incomplete.replace(dest)
            return

        try:
            with self.session.get(url, headers=HEADERS, stream=True, timeout=timeout) as r:
                r.raise_for_status()
                with open(incomplete, "wb") as f:
                    for chunk in r.iter_content(chunk_size=CHUNK_SIZE):
                        f.write(chunk)
        except requests.RequestException as e:
            incomplete.unlink(missing_ok=True)
            raise DownloadError(url=url, error=str(e)) from e

        incomplete.replace(dest)

    def fetch(self, package: Package, verify_integrity: bool = True,
              timeout: float | None = None) -> Path:
        if not package.url:
            raise DownloadError(package=package.token, error="no url declared")
        try:
            return self._fetch(package, verify_integrity, timeout)
        except OSError as e:
            log.error("download_io_failed", package=package.token, error=str(e))
            raise DownloadError(package=package.token, url=package.url, error=str(e)) from e

    def _fetch(self, package: Package, verify_integrity: bool, timeout: float | None) -> Path:
        start = time.perf_counter()
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        dest = self.cached_path(package)

        if self._reusable(package, dest):
            log.info("download_cache_hit", package=package.token, path=str(dest))
            return dest

        log.info("download_start", package=package.token, url=package.url)
        try:
            self._download(package.url, dest, timeout or DEFAULT_TIMEOUT)
        except DownloadError as e:
            raise e.with_context(package=package.token)

        if verify_integrity and package.sha256:
            actual = sha256sum(dest)
            if actual != package.sha256:
                dest.unlink(missing_ok=True)
                log.error(
                    "checksum_mismatch",
                    package=package.token,
                    expected=package.sha256,
                    actual=actual,
                )
                raise ChecksumMismatchError(package.token, package.sha256, actual, path=str(dest))

        log.info(
            "download_complete",
            package=package.token,
            path=str(dest),
            size=dest.stat().st_size,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return dest
