"""Memoized downloads and the concurrent download queue."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from caskade.backends.base import DownloadBackend
from caskade.core.errors import FetchError, MissingChecksumError
from caskade.core.logging import get_logger
from caskade.core.models import Package

log = get_logger(__name__)


def verify_has_sha(package: Package, require_sha: bool, force: bool = False) -> None:
    """Refuse a package without a checksum when checksums are required.

    Runs before any network access.

    Raises:
        MissingChecksumError: If ``require_sha`` is set, ``force`` is not,
            and the package declares no sha256.
    """
    if not require_sha or force:
        return
    if package.sha256 is None:
        log.error("missing_checksum", package=package.token)
        raise MissingChecksumError(package.token)


class Download:
    """The primary download of one package version.

    ``fetch`` hits the backend at most once per ``(full_name, version)``; later
    calls return the same path. Thread-safe so the queue and the installer
    can share an instance.
    """

    def __init__(self, package: Package, backend: DownloadBackend) -> None:
        self.package = package
        self.backend = backend
        self._path: Path | None = None
        self._lock = threading.Lock()

    @property
    def key(self) -> tuple[str, str]:
        return (self.package.full_name, self.package.version)

    @property
    def downloaded(self) -> bool:
        return self._path is not None

    @property
    def path(self) -> Path | None:
        return self._path

    def fetch(self, verify_integrity: bool = True, timeout: float | None = None) -> Path:
        with self._lock:
            if self._path is not None:
                log.debug("download_memoized", package=self.package.token)
                return self._path

            start = time.perf_counter()
            self._path = self.backend.fetch(
                self.package, verify_integrity=verify_integrity, timeout=timeout
            )
            self.package.download = self._path
            log.info(
                "fetch_complete",
                package=self.package.token,
                version=self.package.version,
                duration_ms=int((time.perf_counter() - start) * 1000),
            )
            return self._path


class DownloadQueue:
    """Fetch many downloads with bounded concurrency.

    Usage:
        queue = DownloadQueue(concurrency=4)
        for cask in casks:
            queue.enqueue(queue.download_for(cask, backend))
        failures = queue.fetch()
    """

    def __init__(self, concurrency: int = 1, verify_integrity: bool = True,
                 timeout: float | None = None) -> None:
        self.concurrency = max(1, concurrency)
        self.verify_integrity = verify_integrity
        self.timeout = timeout
        self._pending: list[Download] = []
        self._downloads: dict[tuple[str, str], Download] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def download_for(self, package: Package, backend: DownloadBackend) -> Download:
        """The shared Download for a package version, created on first use."""
        key = (package.full_name, package.version)
        download = self._downloads.get(key)
        if download is None:
            download = self._downloads[key] = Download(package, backend)
        return download

    def enqueue(self, download: Download) -> None:
        if any(d.key == download.key for d in self._pending):
            return
        self._pending.append(download)

    def fetch(self) -> dict[str, FetchError]:
        """Run every queued download and block until all have finished.

        Returns:
            Failures keyed by package full name. Successful downloads are
            memoized on their ``Download``.
        """
        pending, self._pending = self._pending, []
        if not pending:
            return {}

        start = time.perf_counter()
        failures: dict[str, FetchError] = {}
        log.info("download_queue_start", count=len(pending), concurrency=self.concurrency)

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            futures = {
                executor.submit(d.fetch, self.verify_integrity, self.timeout): d
                for d in pending
            }
            for future in as_completed(futures):
                download = futures[future]
                try:
                    future.result()
                except FetchError as e:
                    log.warning("download_queue_failure", package=download.package.token, error=str(e))
                    failures[download.package.full_name] = e

        log.info(
            "download_queue_complete",
            count=len(pending),
            failed=len(failures),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return failures
