"""A simple file-based JSON cache with expiration."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Callable

from caskade.core.errors import CacheError, TransientError
from caskade.core.logging import get_logger
from caskade.core.output import opoo

log = get_logger(__name__)


class Cache:
    """A file-based cache keyed by name, invalidated by age or token.

    The token identifies where cached values came from (for example the API
    base URL); entries written under another token are treated as stale.
    """

    def __init__(self, namespace: str, root: Path, token: str = "") -> None:
        self.cache_path = Path(root) / namespace
        self.cache_path.mkdir(parents=True, exist_ok=True)
        self.token = token
        log.debug("cache_initialized", namespace=namespace, path=str(self.cache_path))

    def _file(self, key: str) -> Path:
        return self.cache_path / f"{key.replace('/', '--')}.json"

    def get_or_set(
        self, key: str, ttl: int, loader: Callable[[], Any], allow_stale: bool = False
    ) -> Any:
        """Get a cached value or set it using the loader function.

        Args:
            key: The cache key.
            ttl: Time-to-live in seconds.
            loader: A callable that returns the value to cache.
            allow_stale: Serve an expired entry if the loader fails transiently.

        Returns:
            Cached or fresh value.
        """
        f = self._file(key)
        now = int(time.time())
        start = time.perf_counter()
        stale_data = None
        stale_ts = now

        if f.exists():
            try:
                data = json.loads(f.read_text())
                age_seconds = now - data.get("_ts", 0)
                if age_seconds < ttl and data.get("_token") == self.token:
                    log.info(
                        "cache_hit",
                        key=key,
                        namespace=self.cache_path.name,
                        age_seconds=age_seconds,
                        duration_ms=int((time.perf_counter() - start) * 1000),
                    )
                    return data.get("value")

                reason = "expired" if age_seconds >= ttl else "token_mismatch"
                log.debug("cache_invalid", key=key, namespace=self.cache_path.name, reason=reason)
                if allow_stale:
                    stale_data = data.get("value")
                    stale_ts = data.get("_ts", now)

            except json.JSONDecodeError:
                log.warning("cache_corrupted", key=key, namespace=self.cache_path.name)
            except OSError as e:
                log.error("cache_read_error", key=key, namespace=self.cache_path.name, exc_info=True)
                raise CacheError(
                    "Failed to read cache entry",
                    key=key,
                    namespace=self.cache_path.name,
                    path=str(f),
                    operation="read",
                    context={"error": str(e)},
                ) from e

        log.info("cache_miss", key=key, namespace=self.cache_path.name)

        try:
            value = loader()
        except TransientError as e:
            if stale_data is None:
                raise
            log.warning(
                "cache_fallback_stale",
                key=key,
                namespace=self.cache_path.name,
                age_seconds=now - stale_ts,
                error=str(e),
            )
            opoo("Using cached data due to a temporary error (may be outdated).")
            return stale_data

        try:
            f.write_text(json.dumps({"_ts": now, "_token": self.token, "value": value}))
            log.info(
                "cache_set",
                key=key,
                namespace=self.cache_path.name,
                duration_ms=int((time.perf_counter() - start) * 1000),
            )
        except OSError as e:
            log.error("cache_write_error", key=key, namespace=self.cache_path.name, exc_info=True)
            raise CacheError(
                "Failed to write cache entry",
                key=key,
                namespace=self.cache_path.name,
                path=str(f),
                operation="write",
                context={"error": str(e)},
            ) from e

        return value
