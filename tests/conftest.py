"""
Shared test fixtures and configuration.
"""

import io
import os
import tarfile
import tempfile
from pathlib import Path
from typing import ClassVar

# caskade configures its log file under CASKADE_HOME on first import
os.environ.setdefault("CASKADE_HOME", tempfile.mkdtemp(prefix="caskade-test-home-"))

import pytest  # noqa: E402

from caskade.backends.quarantine import Quarantine  # noqa: E402
from caskade.core.caskroom import Caskroom  # noqa: E402
from caskade.core.config import EnvConfig  # noqa: E402
from caskade.core.context import RunContext  # noqa: E402
from caskade.core.errors import ArtifactInstallError, DownloadError, PackageNotFoundError  # noqa: E402
from caskade.core.models import Dependency, Package, PackageKind  # noqa: E402
from caskade.core.repo import Repository  # noqa: E402
from caskade.install.artifacts import Artifact  # noqa: E402
from caskade.install.installer import InstallServices  # noqa: E402
from caskade.providers.definition import parse_cask  # noqa: E402


def make_cask(token: str, version: str = "1.0", **data) -> Package:
    """Build a cask through the JSON definition parser."""
    return parse_cask({"token": token, "version": version, "url": f"https://example.com/{token}.tar.gz", **data})


def make_formula(name: str, deps=()) -> Package:
    return Package(
        token=name,
        kind=PackageKind.FORMULA,
        version="1.0",
        depends_on=[Dependency(d, PackageKind.FORMULA) for d in deps],
    )


def app_cask(token: str, **data) -> Package:
    return make_cask(token, artifacts=[{"app": [f"{token}.app"]}], **data)


class Exploding(Artifact):
    """Artifact whose install always fails."""

    stanza: ClassVar[str] = "exploding"
    installable: ClassVar[bool] = True

    def install_phase(self, ctx):
        raise ArtifactInstallError("boom", artifact=self.stanza)


class MemorySource:
    """PackageSource backed by a dict, counting lookups."""

    def __init__(self, *packages: Package) -> None:
        self.packages: dict[tuple[PackageKind, str], Package] = {}
        self.loads: list[str] = []
        for p in packages:
            self.add(p)

    def add(self, package: Package) -> Package:
        self.packages[(package.kind, package.token)] = package
        self.packages[(package.kind, package.full_name)] = package
        return package

    def load(self, name: str, kind: PackageKind | None = None) -> Package:
        self.loads.append(name)
        for k in [kind] if kind else [PackageKind.CASK, PackageKind.FORMULA]:
            package = self.packages.get((k, name))
            if package is not None:
                return package
        raise PackageNotFoundError(package=name, kind=kind.value if kind else None)


class FakeDownloads:
    """DownloadBackend that builds tarballs from in-memory file maps."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.files: dict[str, dict[str, bytes]] = {}
        self.calls: list[str] = []
        self.failing: set[str] = set()

    def add(self, token: str, files: dict[str, bytes], version: str | None = None) -> None:
        self.files[f"{token}-{version}" if version else token] = files

    def fetch(self, package: Package, verify_integrity: bool = True, timeout: float | None = None) -> Path:
        self.calls.append(package.token)
        if package.token in self.failing:
            raise DownloadError(package=package.token, error="connection reset")

        files = self.files.get(f"{package.token}-{package.version}") or self.files.get(package.token)
        if files is None:
            files = {f"{package.token}.app/Contents/Info.plist": package.version.encode()}

        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / f"{package.token}--{package.version}.tar.gz"
        write_tarball(path, files)
        return path

    def count(self, token: str) -> int:
        return self.calls.count(token)


class FakeFormulae:
    """FormulaBackend recording installs instead of calling brew."""

    def __init__(self) -> None:
        self.installed: set[str] = set()
        self.installs: list[tuple[str, bool, bool]] = []

    def is_installed(self, formula: Package) -> bool:
        return formula.full_name in self.installed

    def install(self, formula: Package, installed_as_dependency: bool = True,
                installed_on_request: bool = False, verbose: bool = False) -> None:
        self.installs.append((formula.full_name, installed_as_dependency, installed_on_request))
        self.installed.add(formula.full_name)


class RecordingRunner:
    """CommandRunner that records argv and succeeds."""

    def __init__(self, output: str = "") -> None:
        self.commands: list[tuple[str, ...]] = []
        self.output = output

    def __call__(self, *cmd, timeout=None, cwd=None, check=True):
        self.commands.append(tuple(str(c) for c in cmd))
        return self.output, "", 0


def write_tarball(path: Path, files: dict[str, bytes]) -> Path:
    with tarfile.open(path, "w:gz") as tf:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o644
            tf.addfile(info, io.BytesIO(content))
    return path


@pytest.fixture
def source() -> MemorySource:
    return MemorySource()


@pytest.fixture
def downloads(tmp_path: Path) -> FakeDownloads:
    return FakeDownloads(tmp_path / "downloads")


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def formulae() -> FakeFormulae:
    return FakeFormulae()


@pytest.fixture
def artifact_dirs(tmp_path: Path) -> dict[str, str]:
    return {
        "appdir": str(tmp_path / "Applications"),
        "binarydir": str(tmp_path / "bin"),
        "trashdir": str(tmp_path / "Trash"),
    }


@pytest.fixture
def make_services(tmp_path, source, downloads, runner, formulae, artifact_dirs):
    """Factory for InstallServices wired to the in-memory fakes."""
    def _make(config: EnvConfig | None = None) -> InstallServices:
        return InstallServices(
            repository=Repository([source]),
            caskroom=Caskroom(tmp_path / "Caskroom"),
            downloads=downloads,
            config=config or EnvConfig(),
            formulae=formulae,
            quarantine=Quarantine(runner=runner),
            runner=runner,
            artifact_dirs=artifact_dirs,
            context=RunContext(),
        )
    return _make


@pytest.fixture
def services(make_services) -> InstallServices:
    return make_services()
