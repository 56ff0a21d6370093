"""Installable pieces of a cask.

Every artifact advertises which phases it takes part in through its
capability flags; the installer calls only those phases and never inspects
concrete types.
"""

from __future__ import annotations

import glob
import os
import shutil
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, ClassVar, Iterable

from caskade.core.caskroom import gain_permissions_remove, rmdir_if_possible
from caskade.core.errors import ArtifactInstallError, BrewError, DefinitionInvalidError
from caskade.core.logging import get_logger
from caskade.core.models import Package
from caskade.core.output import ohai, opoo, puts
from caskade.core.shell import CommandRunner

log = get_logger(__name__)


@dataclass
class PhaseContext:
    """Everything an artifact phase may need from the running installer."""

    cask: Package
    staged_path: Path
    config: dict[str, Any]
    command: CommandRunner
    verbose: bool = False
    force: bool = False
    adopt: bool = False
    skip: bool = False
    upgrade: bool = False
    reinstall: bool = False
    predecessor: Package | None = None
    successor: Package | None = None

    def target_dir(self, key: str) -> Path:
        try:
            return Path(self.config[key]).expanduser()
        except KeyError:
            raise ArtifactInstallError(
                f"No target directory configured for '{key}'",
                context={"package": self.cask.token},
            ) from None


class Artifact:
    """Base class for all artifact variants."""

    stanza: ClassVar[str] = ""
    installable: ClassVar[bool] = False
    uninstallable: ClassVar[bool] = False
    post_uninstallable: ClassVar[bool] = False
    zappable: ClassVar[bool] = False
    binary: ClassVar[bool] = False

    @property
    def phase_order(self) -> int:
        """Hooks that must run before (0) or after (2) every other artifact."""
        return 1

    def install_phase(self, ctx: PhaseContext) -> None:
        raise NotImplementedError(f"{self.stanza} has no install phase")

    def uninstall_phase(self, ctx: PhaseContext) -> None:
        raise NotImplementedError(f"{self.stanza} has no uninstall phase")

    def post_uninstall_phase(self, ctx: PhaseContext) -> None:
        raise NotImplementedError(f"{self.stanza} has no post-uninstall phase")

    def zap_phase(self, ctx: PhaseContext) -> None:
        raise NotImplementedError(f"{self.stanza} has no zap phase")

    @classmethod
    def from_spec(cls, args: list[Any]) -> "Artifact":
        raise NotImplementedError

    def __str__(self) -> str:
        return self.stanza


def _split_args(stanza: str, args: list[Any]) -> tuple[list[Any], dict[str, Any]]:
    """Split ``["a", "b", {"opt": 1}]`` into positionals and options."""
    if not isinstance(args, list):
        args = [args]
    options: dict[str, Any] = {}
    if args and isinstance(args[-1], dict):
        options = dict(args[-1])
        args = args[:-1]
    if any(not isinstance(a, str) for a in args):
        raise DefinitionInvalidError(
            f"Invalid arguments for '{stanza}' artifact", error=repr(args)
        )
    return list(args), options


# ── Symlinked ──────────────────────────────────────────────────────────


@dataclass
class Symlink(Artifact):
    """Link a staged file into an explicit location."""

    source: str
    target: str | None = None

    stanza: ClassVar[str] = "artifact"
    target_dir_key: ClassVar[str | None] = None
    installable: ClassVar[bool] = True
    uninstallable: ClassVar[bool] = True

    @classmethod
    def from_spec(cls, args: list[Any]) -> "Symlink":
        positional, options = _split_args(cls.stanza, args)
        if len(positional) != 1:
            raise DefinitionInvalidError(f"'{cls.stanza}' takes exactly one source")
        target = options.get("target")
        if cls.target_dir_key is None and not target:
            raise DefinitionInvalidError(f"'{cls.stanza}' requires a target")
        return cls(source=positional[0], target=target)

    def source_path(self, ctx: PhaseContext) -> Path:
        return ctx.staged_path / self.source

    def target_path(self, ctx: PhaseContext) -> Path:
        if self.target_dir_key is None:
            return Path(str(self.target)).expanduser()
        name = self.target or Path(self.source).name
        return ctx.target_dir(self.target_dir_key) / name

    def install_phase(self, ctx: PhaseContext) -> None:
        source = self.source_path(ctx)
        target = self.target_path(ctx)

        if not source.exists():
            raise ArtifactInstallError(
                f"It seems the {self.stanza} source '{source}' is not there.",
                artifact=self.stanza,
                path=str(source),
            )

        if target.is_symlink() or target.exists():
            if target.is_symlink() and Path(os.readlink(target)) == source:
                log.debug("symlink_present", target=str(target))
                return
            if not ctx.force:
                raise ArtifactInstallError(
                    f"It seems there is already a file at '{target}'.",
                    artifact=self.stanza,
                    path=str(target),
                )
            opoo(f"Overwriting existing {self.stanza} at '{target}'")
            gain_permissions_remove(target)

        self.prepare_source(source)
        ohai(f"Linking {self.stanza.capitalize()} '{source.name}' to '{target}'")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.symlink_to(source)

    def prepare_source(self, source: Path) -> None:
        pass

    def uninstall_phase(self, ctx: PhaseContext) -> None:
        target = self.target_path(ctx)
        if not target.is_symlink():
            log.debug("symlink_absent", target=str(target))
            return

        linked = Path(os.readlink(target))
        if linked != self.source_path(ctx) and not ctx.force:
            opoo(f"'{target}' does not point into the Caskroom; leaving it alone")
            return

        ohai(f"Unlinking {self.stanza.capitalize()} '{target}'")
        target.unlink()


@dataclass
class Binary(Symlink):
    """Executable linked into the binary directory."""

    stanza: ClassVar[str] = "binary"
    target_dir_key: ClassVar[str | None] = "binarydir"
    binary: ClassVar[bool] = True

    def prepare_source(self, source: Path) -> None:
        if source.is_file():
            mode = source.stat().st_mode
            source.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


# ── Moved ─────────────────────────────────────────────────────────────


@dataclass
class Moved(Artifact):
    """Move a staged bundle to its target location."""

    source: str
    target: str | None = None

    stanza: ClassVar[str] = "moved"
    target_dir_key: ClassVar[str | None] = None
    installable: ClassVar[bool] = True
    uninstallable: ClassVar[bool] = True

    @classmethod
    def from_spec(cls, args: list[Any]) -> "Moved":
        positional, options = _split_args(cls.stanza, args)
        if len(positional) != 1:
            raise DefinitionInvalidError(f"'{cls.stanza}' takes exactly one source")
        target = options.get("target")
        if cls.target_dir_key is None and not target:
            raise DefinitionInvalidError(f"'{cls.stanza}' requires a target")
        return cls(source=positional[0], target=target)

    def source_path(self, ctx: PhaseContext) -> Path:
        return ctx.staged_path / self.source

    def target_path(self, ctx: PhaseContext) -> Path:
        if self.target_dir_key is None:
            return Path(str(self.target)).expanduser()
        name = self.target or Path(self.source).name
        return ctx.target_dir(self.target_dir_key) / name

    def install_phase(self, ctx: PhaseContext) -> None:
        source = self.source_path(ctx)
        target = self.target_path(ctx)

        if target.exists() or target.is_symlink():
            if ctx.adopt:
                ohai(f"Adopting existing {self.stanza} at '{target}'")
                if source.exists():
                    gain_permissions_remove(source)
                return
            if not ctx.force:
                raise ArtifactInstallError(
                    f"It seems there is already a {self.stanza} at '{target}'.",
                    artifact=self.stanza,
                    path=str(target),
                )
            opoo(f"Removing existing {self.stanza} at '{target}'")
            gain_permissions_remove(target)

        if not source.exists():
            raise ArtifactInstallError(
                f"It seems the {self.stanza} source '{source}' is not there.",
                artifact=self.stanza,
                path=str(source),
            )

        ohai(f"Moving {self.stanza.capitalize()} '{source.name}' to '{target}'")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))
        self.reload(ctx, target)

    def uninstall_phase(self, ctx: PhaseContext) -> None:
        source = self.source_path(ctx)
        target = self.target_path(ctx)

        if not (target.exists() or target.is_symlink()):
            if ctx.skip or ctx.force:
                log.debug("moved_absent", target=str(target))
                return
            raise ArtifactInstallError(
                f"It seems the {self.stanza} source '{target}' is not there.",
                artifact=self.stanza,
                path=str(target),
            )

        if ctx.staged_path.is_dir() and not source.exists():
            ohai(f"Moving {self.stanza.capitalize()} '{target.name}' back to '{source}'")
            source.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(target), str(source))
        else:
            ohai(f"Removing {self.stanza.capitalize()} '{target}'")
            gain_permissions_remove(target)
        self.reload(ctx, target)

    def reload(self, ctx: PhaseContext, target: Path) -> None:
        pass


@dataclass
class App(Moved):
    stanza: ClassVar[str] = "app"
    target_dir_key: ClassVar[str | None] = "appdir"


@dataclass
class KeyboardLayout(Moved):
    stanza: ClassVar[str] = "keyboard_layout"
    target_dir_key: ClassVar[str | None] = "keyboard_layoutdir"


@dataclass
class Mdimporter(Moved):
    stanza: ClassVar[str] = "mdimporter"
    target_dir_key: ClassVar[str | None] = "mdimporterdir"

    def reload(self, ctx: PhaseContext, target: Path) -> None:
        if not target.exists():
            return
        try:
            ctx.command("/usr/bin/mdimport", "-r", str(target), check=False)
        except BrewError as e:
            log.warning("mdimport_failed", target=str(target), error=str(e))


@dataclass
class Qlplugin(Moved):
    stanza: ClassVar[str] = "qlplugin"
    target_dir_key: ClassVar[str | None] = "qlplugindir"

    def reload(self, ctx: PhaseContext, target: Path) -> None:
        try:
            ctx.command("/usr/bin/qlmanage", "-r", check=False)
        except BrewError as e:
            log.warning("qlmanage_failed", error=str(e))


# ── Install-only ──────────────────────────────────────────────────────


@dataclass
class Installer(Artifact):
    """Run a bundled installer script, or tell the user to run it."""

    manual: str | None = None
    script: str | None = None
    args: list[str] = field(default_factory=list)

    stanza: ClassVar[str] = "installer"
    installable: ClassVar[bool] = True

    @classmethod
    def from_spec(cls, args: list[Any]) -> "Installer":
        _, options = _split_args(cls.stanza, args)
        manual = options.get("manual")
        script = options.get("script")
        if isinstance(script, dict):
            script_args = list(script.get("args", []))
            script = script.get("executable")
        else:
            script_args = list(options.get("args", []))
        if bool(manual) == bool(script):
            raise DefinitionInvalidError("'installer' needs exactly one of 'manual' or 'script'")
        return cls(manual=manual, script=script, args=script_args)

    def install_phase(self, ctx: PhaseContext) -> None:
        if self.manual:
            puts(
                f"To complete the installation of Cask {ctx.cask}, you must also\n"
                f"run the installer at:\n  {ctx.staged_path / self.manual}"
            )
            return

        executable = ctx.staged_path / str(self.script)
        if not executable.exists():
            raise ArtifactInstallError(
                f"Installer script '{executable}' does not exist",
                artifact=self.stanza,
                path=str(executable),
            )
        executable.chmod(executable.stat().st_mode | stat.S_IXUSR)
        ohai(f"Running {self.stanza} script '{self.script}'")
        ctx.command(str(executable), *self.args, cwd=ctx.staged_path)


@dataclass
class Pkg(Artifact):
    """Hand a flat package to the system installer."""

    path: str
    choices: list[dict[str, Any]] = field(default_factory=list)

    stanza: ClassVar[str] = "pkg"
    installable: ClassVar[bool] = True

    @classmethod
    def from_spec(cls, args: list[Any]) -> "Pkg":
        positional, options = _split_args(cls.stanza, args)
        if len(positional) != 1:
            raise DefinitionInvalidError("'pkg' takes exactly one path")
        return cls(path=positional[0], choices=list(options.get("choices", [])))

    def install_phase(self, ctx: PhaseContext) -> None:
        pkg = ctx.staged_path / self.path
        if not pkg.exists():
            raise ArtifactInstallError(
                f"pkg source file not found: '{pkg}'",
                artifact=self.stanza,
                path=str(pkg),
            )
        ohai(f"Running installer for {ctx.cask} with sudo; the password may be necessary.")
        argv = ["sudo", "installer", "-pkg", str(pkg), "-target", "/"]
        if ctx.verbose:
            argv.append("-verboseR")
        ctx.command(*argv, cwd=ctx.staged_path)


# ── Removal directives ────────────────────────────────────────────────


def _expand(paths: Iterable[str]) -> list[Path]:
    expanded: list[Path] = []
    for raw in paths:
        pattern = os.path.expanduser(raw)
        matches = glob.glob(pattern)
        expanded.extend(Path(m) for m in (matches or [pattern]))
    return expanded


def _trash_dir(ctx: PhaseContext) -> Path:
    return Path(ctx.config.get("trashdir", "~/.Trash")).expanduser()


def _remove_paths(ctx: PhaseContext, directive: str, paths: Iterable[str]) -> None:
    for path in _expand(paths):
        if not (path.exists() or path.is_symlink()):
            continue
        if directive == "trash":
            trash = _trash_dir(ctx)
            trash.mkdir(parents=True, exist_ok=True)
            destination = trash / path.name
            if destination.exists() or destination.is_symlink():
                gain_permissions_remove(destination)
            ohai(f"Trashing '{path}'")
            shutil.move(str(path), str(destination))
        else:
            ohai(f"Removing '{path}'")
            gain_permissions_remove(path)


def _rmdir_paths(paths: Iterable[str]) -> None:
    for path in _expand(paths):
        if path.is_dir() and not path.is_symlink():
            if rmdir_if_possible(path):
                ohai(f"Removing directory '{path}'")
            else:
                log.debug("rmdir_not_empty", path=str(path))


_DIRECTIVES = ("early_script", "script", "pkgutil", "delete", "trash", "rmdir")


def _parse_directives(stanza: str, args: list[Any]) -> dict[str, Any]:
    _, options = _split_args(stanza, args)
    unknown = set(options) - set(_DIRECTIVES)
    if unknown:
        raise DefinitionInvalidError(
            f"Unknown '{stanza}' directives: {', '.join(sorted(unknown))}"
        )
    directives: dict[str, Any] = {}
    for key, value in options.items():
        if key in ("script", "early_script"):
            directives[key] = value if isinstance(value, dict) else {"executable": value}
        else:
            directives[key] = [value] if isinstance(value, str) else list(value)
    return directives


@dataclass
class Uninstall(Artifact):
    """Removal steps that only run when the cask is uninstalled."""

    directives: dict[str, Any] = field(default_factory=dict)

    stanza: ClassVar[str] = "uninstall"
    uninstallable: ClassVar[bool] = True
    post_uninstallable: ClassVar[bool] = True

    @classmethod
    def from_spec(cls, args: list[Any]) -> "Uninstall":
        return cls(directives=_parse_directives(cls.stanza, args))

    def _run_script(self, ctx: PhaseContext, key: str) -> None:
        script = self.directives.get(key)
        if not script:
            return
        executable = os.path.expanduser(script["executable"])
        if not os.path.isabs(executable):
            executable = str(ctx.staged_path / executable)
        if not Path(executable).exists():
            opoo(f"Uninstall script '{executable}' not found; skipping")
            return
        ohai(f"Running uninstall script '{Path(executable).name}'")
        ctx.command(executable, *script.get("args", []), cwd=ctx.staged_path, check=False)

    def uninstall_phase(self, ctx: PhaseContext) -> None:
        self._run_script(ctx, "early_script")
        for package_id in self.directives.get("pkgutil", []):
            ohai(f"Forgetting package receipt '{package_id}'")
            ctx.command("sudo", "pkgutil", "--forget", package_id, check=False)
        self._run_script(ctx, "script")
        _remove_paths(ctx, "delete", self.directives.get("delete", []))
        _remove_paths(ctx, "trash", self.directives.get("trash", []))

    def post_uninstall_phase(self, ctx: PhaseContext) -> None:
        _rmdir_paths(self.directives.get("rmdir", []))


@dataclass
class Zap(Artifact):
    """Extra locations removed only by ``zap``."""

    directives: dict[str, Any] = field(default_factory=dict)

    stanza: ClassVar[str] = "zap"
    zappable: ClassVar[bool] = True

    @classmethod
    def from_spec(cls, args: list[Any]) -> "Zap":
        return cls(directives=_parse_directives(cls.stanza, args))

    def zap_phase(self, ctx: PhaseContext) -> None:
        script = self.directives.get("script")
        if script:
            ctx.command(os.path.expanduser(script["executable"]), *script.get("args", []), check=False)
        _remove_paths(ctx, "delete", self.directives.get("delete", []))
        _remove_paths(ctx, "trash", self.directives.get("trash", []))
        _rmdir_paths(self.directives.get("rmdir", []))


# ── Flight blocks ─────────────────────────────────────────────────────

FlightHook = Callable[[PhaseContext], None]


@dataclass
class FlightBlock(Artifact):
    """Hook run around install (pre/postflight) or uninstall.

    The hook is either a Python callable or a list of commands run inside
    the staged path.
    """

    stage: str = "preflight"
    hook: FlightHook | None = None
    commands: list[list[str]] = field(default_factory=list)

    stanza: ClassVar[str] = "flight_block"
    STAGES: ClassVar[tuple[str, ...]] = (
        "preflight", "postflight", "uninstall_preflight", "uninstall_postflight",
    )

    def __post_init__(self) -> None:
        if self.stage not in self.STAGES:
            raise DefinitionInvalidError(f"Unknown flight block stage '{self.stage}'")

    @property
    def installable(self) -> bool:  # type: ignore[override]
        return not self.stage.startswith("uninstall_")

    @property
    def uninstallable(self) -> bool:  # type: ignore[override]
        return self.stage.startswith("uninstall_")

    @property
    def phase_order(self) -> int:
        return 0 if self.stage.endswith("preflight") else 2

    @classmethod
    def from_spec(cls, args: list[Any]) -> "FlightBlock":
        _, options = _split_args(cls.stanza, args)
        commands = options.get("commands", [])
        if not all(isinstance(c, list) for c in commands):
            raise DefinitionInvalidError("flight block commands must be argv lists")
        return cls(stage=options.get("stage", "preflight"), commands=commands)

    def _run(self, ctx: PhaseContext) -> None:
        log.debug("flight_block", stage=self.stage, package=ctx.cask.token)
        if self.hook is not None:
            self.hook(ctx)
        for argv in self.commands:
            ctx.command(*argv, cwd=ctx.staged_path if ctx.staged_path.is_dir() else None)

    def install_phase(self, ctx: PhaseContext) -> None:
        self._run(ctx)

    def uninstall_phase(self, ctx: PhaseContext) -> None:
        self._run(ctx)

    def __str__(self) -> str:
        return self.stage


ARTIFACT_TYPES: dict[str, type[Artifact]] = {
    cls.stanza: cls
    for cls in (
        App, Binary, Symlink, Moved, KeyboardLayout, Mdimporter, Qlplugin,
        Installer, Pkg, Uninstall, Zap, FlightBlock,
    )
}


def build_artifact(stanza: str, args: Any) -> Artifact:
    """Create an artifact from its definition stanza."""
    try:
        cls = ARTIFACT_TYPES[stanza]
    except KeyError:
        raise DefinitionInvalidError(f"Unknown artifact stanza '{stanza}'") from None
    return cls.from_spec(args if isinstance(args, list) else [args])
