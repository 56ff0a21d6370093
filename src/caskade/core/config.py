"""Configuration for the caskade environment."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from caskade.core.logging import caskade_home

OFFICIAL_TAPS = frozenset({"homebrew/core", "homebrew/cask"})


@dataclass
class CaskadeENV:
    """Filesystem layout of a caskade installation."""
    prefix: Path
    caskroom: Path
    taps: Path
    cache: Path
    tmp: Path

    def artifact_dirs(self) -> dict[str, str]:
        """Default target directories, keyed as they appear in a package config."""
        return {
            "appdir": str(self.prefix / "Applications"),
            "binarydir": str(self.prefix / "bin"),
            "keyboard_layoutdir": str(self.prefix / "Library" / "Keyboard Layouts"),
            "mdimporterdir": str(self.prefix / "Library" / "Spotlight"),
            "qlplugindir": str(self.prefix / "Library" / "QuickLook"),
        }


def discover_env(environ: Mapping[str, str] | None = None) -> CaskadeENV:
    """Discover the caskade environment.

    ``CASKADE_PREFIX`` wins, then ``brew --prefix``, then ``~/.caskade``.
    """
    environ = os.environ if environ is None else environ

    if environ.get("CASKADE_PREFIX"):
        prefix = Path(environ["CASKADE_PREFIX"])
    else:
        try:
            output = subprocess.check_output(
                ["brew", "--prefix"], text=True, stderr=subprocess.DEVNULL
            ).strip()
            prefix = Path(output)
        except (subprocess.CalledProcessError, FileNotFoundError):
            prefix = caskade_home()

    home = Path(environ.get("CASKADE_HOME", caskade_home()))

    return CaskadeENV(
        prefix=prefix,
        caskroom=prefix / "Caskroom",
        taps=prefix / "Library" / "Taps",
        cache=home / "cache",
        tmp=home / "tmp",
    )


def _flag(environ: Mapping[str, str], key: str) -> bool:
    return environ.get(key, "").strip().lower() not in ("", "0", "false", "no", "off")


def _words(environ: Mapping[str, str], key: str) -> frozenset[str]:
    return frozenset(environ.get(key, "").split())


@dataclass(frozen=True)
class EnvConfig:
    """Operator settings read from ``CASKADE_*`` environment variables."""

    allowed_taps: frozenset[str] = field(default_factory=frozenset)
    forbidden_taps: frozenset[str] = field(default_factory=frozenset)
    forbidden_formulae: frozenset[str] = field(default_factory=frozenset)
    forbidden_casks: frozenset[str] = field(default_factory=frozenset)
    forbid_casks: bool = False
    forbidden_owner: str = "you"
    forbidden_owner_contact: str = ""
    download_concurrency: int = 1
    require_sha: bool = False
    no_quarantine: bool = False
    no_install_upgrade: bool = False
    no_emoji: bool = False
    install_badge: str = "🍺"
    api_url: str = "https://formulae.brew.sh/api"
    api_ttl: int = 3600
    fetch_timeout: float | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EnvConfig":
        environ = os.environ if environ is None else environ
        timeout = environ.get("CASKADE_FETCH_TIMEOUT")
        return cls(
            allowed_taps=_words(environ, "CASKADE_ALLOWED_TAPS"),
            forbidden_taps=_words(environ, "CASKADE_FORBIDDEN_TAPS"),
            forbidden_formulae=_words(environ, "CASKADE_FORBIDDEN_FORMULAE"),
            forbidden_casks=_words(environ, "CASKADE_FORBIDDEN_CASKS"),
            forbid_casks=_flag(environ, "CASKADE_FORBID_CASKS"),
            forbidden_owner=environ.get("CASKADE_FORBIDDEN_OWNER") or "you",
            forbidden_owner_contact=environ.get("CASKADE_FORBIDDEN_OWNER_CONTACT", ""),
            download_concurrency=max(1, int(environ.get("CASKADE_DOWNLOAD_CONCURRENCY", "1"))),
            require_sha=_flag(environ, "CASKADE_REQUIRE_SHA"),
            no_quarantine=_flag(environ, "CASKADE_NO_QUARANTINE"),
            no_install_upgrade=_flag(environ, "CASKADE_NO_INSTALL_UPGRADE"),
            no_emoji=_flag(environ, "CASKADE_NO_EMOJI"),
            install_badge=environ.get("CASKADE_INSTALL_BADGE") or "🍺",
            api_url=environ.get("CASKADE_API_URL") or "https://formulae.brew.sh/api",
            api_ttl=int(environ.get("CASKADE_API_TTL", "3600")),
            fetch_timeout=float(timeout) if timeout else None,
        )

    def tap_allowed(self, tap: str) -> bool:
        return not self.allowed_taps or tap in self.allowed_taps or tap in OFFICIAL_TAPS

    def tap_forbidden(self, tap: str) -> bool:
        return tap in self.forbidden_taps and tap not in OFFICIAL_TAPS

    @property
    def has_tap_policy(self) -> bool:
        return bool(self.allowed_taps or self.forbidden_taps)

    @property
    def has_name_policy(self) -> bool:
        return bool(self.forbid_casks or self.forbidden_formulae or self.forbidden_casks)
