"""Install receipts ("tabs") recording how a cask was installed."""

from __future__ import annotations

import json
import os
import tempfile
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from caskade.core.caskroom import Caskroom
from caskade.core.logging import get_logger
from caskade.core.models import Package

log = get_logger(__name__)


def atomic_write(path: Path, data: str) -> None:
    """Write ``data`` to ``path`` through a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


@dataclass
class Tab:
    """Persisted record of a single installation."""

    path: Path
    installed_as_dependency: bool = False
    installed_on_request: bool = True
    time: float | None = None
    version: str | None = None
    tap: str | None = None
    source_path: str | None = None
    loaded_from_api: bool = False
    runtime_dependencies: list[dict[str, str]] = field(default_factory=list)

    @classmethod
    def create(cls, cask: Package, caskroom: Caskroom) -> "Tab":
        return cls(
            path=caskroom.tab_path(cask),
            time=time.time(),
            version=cask.version,
            tap=cask.tap,
            source_path=str(cask.source_path) if cask.source_path else None,
            loaded_from_api=cask.loaded_from_api,
            runtime_dependencies=[
                {"name": d.name, "kind": d.kind.value} for d in cask.depends_on
            ],
        )

    @classmethod
    def for_cask(cls, cask: Package, caskroom: Caskroom) -> "Tab | None":
        """Load the tab of an installed cask, or None when missing or unreadable."""
        path = caskroom.tab_path(cask)
        if not path.is_file():
            return None
        try:
            data: dict[str, Any] = json.loads(path.read_text())
        except json.JSONDecodeError:
            log.warning("tab_corrupted", package=cask.token, path=str(path))
            return None

        source = data.get("source") or {}
        return cls(
            path=path,
            installed_as_dependency=bool(data.get("installed_as_dependency", False)),
            installed_on_request=bool(data.get("installed_on_request", True)),
            time=data.get("time"),
            version=source.get("version"),
            tap=source.get("tap"),
            source_path=source.get("path"),
            loaded_from_api=bool(source.get("loaded_from_api", False)),
            runtime_dependencies=list(data.get("runtime_dependencies") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("path")
        return {
            "installed_as_dependency": data["installed_as_dependency"],
            "installed_on_request": data["installed_on_request"],
            "time": data["time"],
            "source": {
                "version": data["version"],
                "tap": data["tap"],
                "path": data["source_path"],
                "loaded_from_api": data["loaded_from_api"],
            },
            "runtime_dependencies": data["runtime_dependencies"],
        }

    def write(self) -> None:
        atomic_write(self.path, json.dumps(self.to_dict(), indent=2) + "\n")
        log.debug("tab_written", path=str(self.path))
