"""Data models for casks and formulae."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from caskade.core.config import OFFICIAL_TAPS

if TYPE_CHECKING:
    from caskade.install.artifacts import Artifact


class PackageKind(Enum):
    """Enumeration of package kinds."""

    FORMULA = "formula"
    CASK = "cask"


class InstallStatus(Enum):
    """Outcome of an install decision or attempt."""

    INSTALLED = "installed"
    ALREADY_INSTALLED = "already_installed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class Dependency:
    """A declared dependency on another cask or formula."""

    name: str
    kind: PackageKind = PackageKind.FORMULA


@dataclass(frozen=True)
class ContainerSpec:
    """How the primary download is packed.

    ``type`` forces an extraction strategy instead of content detection;
    ``nested`` names an inner archive to extract from the outer one.
    """

    type: str | None = None
    nested: str | None = None


@dataclass
class Package:
    """A cask or formula definition as loaded from a source."""

    token: str
    kind: PackageKind
    version: str = "latest"
    tap: str | None = None
    desc: str | None = None
    url: str | None = None
    sha256: str | None = None
    depends_on: list[Dependency] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)
    container: ContainerSpec | None = None
    conflicts_with: list[str] = field(default_factory=list)
    caveats: str = ""
    auto_updates: bool = False
    deprecated: str | None = None
    disabled: str | None = None
    arch: list[str] = field(default_factory=list)
    default_config: dict[str, Any] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)
    source: str | None = None
    source_path: Path | None = None
    loaded_from_api: bool = False
    download: Path | None = field(default=None, repr=False, compare=False)

    @property
    def name(self) -> str:
        return self.token

    @property
    def full_name(self) -> str:
        if self.tap is None or self.tap in OFFICIAL_TAPS:
            return self.token
        return f"{self.tap}/{self.token}"

    @property
    def key(self) -> tuple[str, str]:
        """Stable identity used to index packages in a graph."""
        return (self.kind.value, self.full_name)

    @property
    def is_cask(self) -> bool:
        return self.kind is PackageKind.CASK

    @property
    def is_latest(self) -> bool:
        return self.version == "latest"

    @property
    def checksumable(self) -> bool:
        return self.url is not None

    def __str__(self) -> str:
        return self.full_name


@dataclass
class InstallResult:
    """Per-package outcome reported by batch operations."""

    package: str
    status: InstallStatus
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is not InstallStatus.FAILED
