"""Protocol definitions for package definition sources."""

from __future__ import annotations

from typing import Protocol

from caskade.core.models import Package, PackageKind


class PackageSource(Protocol):
    """Something that can turn a name into a parsed package definition.

    Implementations raise PackageNotFoundError when they do not know the
    name and DefinitionInvalidError when the definition cannot be parsed.
    """

    def load(self, name: str, kind: PackageKind | None = None) -> Package:
        """Load a package by token, name or full name."""
        ...
