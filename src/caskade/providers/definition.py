"""Parse JSON cask and formula definitions into Package objects."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from caskade.core.errors import BrewError, DefinitionInvalidError
from caskade.core.models import ContainerSpec, Dependency, Package, PackageKind
from caskade.install.artifacts import build_artifact


def _names(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def parse_cask(data: dict[str, Any], source: str | None = None, source_path: Path | None = None,
               loaded_from_api: bool = False) -> Package:
    """Build a cask from its JSON definition.

    Raises:
        DefinitionInvalidError: If required keys are missing or malformed.
    """
    token = data.get("token")
    if not token or not isinstance(token, str):
        raise DefinitionInvalidError(
            "Cask definition has no token", path=str(source_path) if source_path else None
        )

    try:
        depends_on = data.get("depends_on") or {}
        deps = [Dependency(n, PackageKind.CASK) for n in _names(depends_on.get("cask"))]
        deps += [Dependency(n, PackageKind.FORMULA) for n in _names(depends_on.get("formula"))]

        container = None
        if data.get("container"):
            container = ContainerSpec(
                type=data["container"].get("type"),
                nested=data["container"].get("nested"),
            )

        artifacts = []
        for entry in data.get("artifacts") or []:
            if not isinstance(entry, dict) or len(entry) != 1:
                raise DefinitionInvalidError(
                    "Each artifact must be a single-key object", package=token, error=repr(entry)
                )
            ((stanza, args),) = entry.items()
            artifacts.append(build_artifact(stanza, args))

        sha256 = data.get("sha256")
        if sha256 in ("no_check", ""):
            sha256 = None

        return Package(
            token=token,
            kind=PackageKind.CASK,
            version=str(data.get("version") or "latest"),
            tap=data.get("tap"),
            desc=data.get("desc"),
            url=data.get("url"),
            sha256=sha256,
            depends_on=deps,
            artifacts=artifacts,
            container=container,
            conflicts_with=_names((data.get("conflicts_with") or {}).get("cask")),
            caveats=data.get("caveats") or "",
            auto_updates=bool(data.get("auto_updates", False)),
            deprecated=data.get("deprecation_reason") if data.get("deprecated") else None,
            disabled=data.get("disable_reason") if data.get("disabled") else None,
            arch=_names(depends_on.get("arch")),
            default_config=dict(data.get("config") or {}),
            source=source if source is not None else json.dumps(data, indent=2),
            source_path=source_path,
            loaded_from_api=loaded_from_api,
        )
    except DefinitionInvalidError as e:
        raise e.with_context(package=token)
    except (AttributeError, TypeError, ValueError) as e:
        raise DefinitionInvalidError(package=token, error=str(e)) from e


def parse_formula(data: dict[str, Any], source_path: Path | None = None) -> Package:
    """Build a formula from ``brew info --json=v2`` style data."""
    name = data.get("name")
    if not name or not isinstance(name, str):
        raise DefinitionInvalidError("Formula definition has no name")

    versions = data.get("versions") or {}
    return Package(
        token=name,
        kind=PackageKind.FORMULA,
        version=str(versions.get("stable") or versions.get("head") or "latest"),
        tap=data.get("tap"),
        desc=data.get("desc"),
        depends_on=[Dependency(d, PackageKind.FORMULA) for d in _names(data.get("dependencies"))],
        source_path=source_path,
    )


def parse_definition(text: str, kind: PackageKind, source_path: Path | None = None,
                     loaded_from_api: bool = False) -> Package:
    """Parse definition text of the given kind."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DefinitionInvalidError(
            path=str(source_path) if source_path else None, error=str(e)
        ) from e
    if not isinstance(data, dict):
        raise DefinitionInvalidError(
            path=str(source_path) if source_path else None, error="definition must be an object"
        )
    if kind is PackageKind.CASK:
        return parse_cask(data, source=text, source_path=source_path, loaded_from_api=loaded_from_api)
    return parse_formula(data, source_path=source_path)


def load_definition_file(path: Path, kind: PackageKind = PackageKind.CASK) -> Package:
    """Load a definition from disk, e.g. the copy saved at install time."""
    try:
        text = Path(path).read_text()
    except OSError as e:
        raise DefinitionInvalidError(path=str(path), error=str(e)) from e
    try:
        return parse_definition(text, kind, source_path=Path(path))
    except BrewError as e:
        raise e.with_context(path=str(path))
