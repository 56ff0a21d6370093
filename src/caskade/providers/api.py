"""Definitions fetched from the remote JSON API."""

from __future__ import annotations

import json
import time
from typing import Any

import requests

from caskade.core.cache import Cache
from caskade.core.errors import DownloadError, PackageNotFoundError, retry_on_transient
from caskade.core.logging import get_logger
from caskade.core.models import Package, PackageKind
from caskade.providers.definition import parse_cask, parse_formula

log = get_logger(__name__)

HEADERS = {"User-Agent": "caskade", "Accept": "application/json"}
_ENDPOINTS = {PackageKind.CASK: "cask", PackageKind.FORMULA: "formula"}


class ApiSource:
    """Load ``<api_url>/<kind>/<name>.json``, cached on disk for ``ttl`` seconds."""

    def __init__(
        self,
        api_url: str,
        cache: Cache,
        ttl: int = 3600,
        session: requests.Session | None = None,
        timeout: float = 30,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.cache = cache
        self.ttl = ttl
        self.session = session or requests.Session()
        self.timeout = timeout

    @retry_on_transient(max_retries=3, base_delay=1.0)
    def _get(self, url: str) -> dict[str, Any] | None:
        try:
            resp = self.session.get(url, headers=HEADERS, timeout=self.timeout)
        except requests.RequestException as e:
            raise DownloadError(url=url, error=str(e)) from e
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise DownloadError(url=url, error=f"HTTP {resp.status_code}")
        return resp.json()

    def load(self, name: str, kind: PackageKind | None = None) -> Package:
        if "/" in name:
            # the API only serves official taps
            raise PackageNotFoundError(package=name, kind=kind.value if kind else None)

        for k in [kind] if kind else [PackageKind.CASK, PackageKind.FORMULA]:
            start = time.perf_counter()
            url = f"{self.api_url}/{_ENDPOINTS[k]}/{name}.json"
            data = self.cache.get_or_set(
                f"{_ENDPOINTS[k]}-{name}", self.ttl, lambda: self._get(url), allow_stale=True
            )
            if data is None:
                continue

            log.info(
                "api_definition_loaded",
                package=name,
                kind=k.value,
                duration_ms=int((time.perf_counter() - start) * 1000),
            )
            if k is PackageKind.CASK:
                return parse_cask(data, source=json.dumps(data, indent=2), loaded_from_api=True)
            return parse_formula(data)

        raise PackageNotFoundError(package=name, kind=kind.value if kind else None)
