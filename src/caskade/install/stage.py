"""Extract downloaded containers into the staged path."""

from __future__ import annotations

import bz2
import gzip
import lzma
import os
import shutil
import stat
import tarfile
import tempfile
import time
import zipfile
from pathlib import Path
from typing import ClassVar

from caskade.backends.quarantine import Quarantine
from caskade.core.errors import BrewError, StagingError
from caskade.core.logging import get_logger
from caskade.core.models import Dependency, Package, PackageKind
from caskade.core.shell import CommandRunner, run_checked

log = get_logger(__name__)


def _is_within(path: Path, base: Path) -> bool:
    try:
        path.relative_to(base)
        return True
    except ValueError:
        return False


def check_member(name: str, base: Path, linkname: str | None = None) -> None:
    """Reject archive members that would land outside ``base``.

    Raises:
        StagingError: For absolute paths, ``..`` components or links whose
            target resolves outside ``base``.
    """
    if name.startswith("/") or ".." in Path(name).parts:
        raise StagingError(f"Unsafe path in archive: {name}", path=name)
    if not _is_within((base / name).resolve(), base):
        raise StagingError(f"Unsafe path in archive: {name}", path=name)

    if linkname is not None:
        if linkname.startswith("/") or ".." in Path(linkname).parts:
            raise StagingError(f"Unsafe link in archive: {name} -> {linkname}", path=name)
        target = ((base / name).parent / linkname).resolve()
        if not _is_within(target, base):
            raise StagingError(f"Unsafe link in archive: {name} -> {linkname}", path=name)


class Container:
    """Extraction strategy for one container format."""

    type: ClassVar[str]
    dependencies: ClassVar[tuple[Dependency, ...]] = ()

    def __init__(self, path: Path, runner: CommandRunner = run_checked) -> None:
        self.path = Path(path)
        self.runner = runner

    @classmethod
    def can_extract(cls, path: Path, magic: bytes) -> bool:
        raise NotImplementedError

    @property
    def nested(self) -> bool:
        """Whether a file of this type is worth extracting again."""
        return True

    def extract(self, to: Path) -> None:
        raise NotImplementedError

    def extract_nestedly(self, to: Path) -> None:
        """Extract into ``to``; a lone archive in the result is extracted too."""
        to.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="caskade-extract-") as tmp:
            tmp_path = Path(tmp)
            self.extract(tmp_path)
            children = list(tmp_path.iterdir())

            if len(children) == 1 and children[0].is_file() and not children[0].is_symlink():
                inner = detect(children[0], self.runner)
                if inner.nested:
                    log.debug("nested_container", path=str(children[0]), type=inner.type)
                    inner.extract_nestedly(to)
                    return

            for child in children:
                dest = to / child.name
                if dest.exists() or dest.is_symlink():
                    if dest.is_dir() and not dest.is_symlink():
                        shutil.rmtree(dest)
                    else:
                        dest.unlink()
                shutil.move(str(child), str(dest))


class Tar(Container):
    type = "tar"

    @classmethod
    def can_extract(cls, path: Path, magic: bytes) -> bool:
        return tarfile.is_tarfile(path)

    def extract(self, to: Path) -> None:
        base = to.resolve()
        with tarfile.open(self.path, "r:*") as tf:
            members = tf.getmembers()
            for m in members:
                if m.isdev():
                    raise StagingError(f"Device file in archive: {m.name}", path=m.name)
                if m.issym():
                    check_member(m.name, base, m.linkname)
                elif m.islnk():
                    check_member(m.name, base)
                    check_member(m.linkname, base)
                else:
                    check_member(m.name, base)
            tf.extractall(to, members=members, filter="tar")


class Zip(Container):
    type = "zip"

    @classmethod
    def can_extract(cls, path: Path, magic: bytes) -> bool:
        return magic.startswith(b"PK\x03\x04") or zipfile.is_zipfile(path)

    def extract(self, to: Path) -> None:
        base = to.resolve()
        with zipfile.ZipFile(self.path) as zf:
            for info in zf.infolist():
                mode = info.external_attr >> 16
                dest = to / info.filename

                if stat.S_ISLNK(mode):
                    target = zf.read(info).decode()
                    check_member(info.filename, base, target)
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    os.symlink(target, dest)
                    continue

                check_member(info.filename, base)
                if info.is_dir():
                    dest.mkdir(parents=True, exist_ok=True)
                    continue

                dest.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(dest, "wb") as out:
                    shutil.copyfileobj(src, out)
                if mode & 0o777:
                    dest.chmod(mode & 0o777)


class _SingleFile(Container):
    """A compressed single file."""

    magic: ClassVar[bytes]
    suffixes: ClassVar[tuple[str, ...]]

    @classmethod
    def can_extract(cls, path: Path, magic: bytes) -> bool:
        return magic.startswith(cls.magic)

    @staticmethod
    def _open(path: Path):
        raise NotImplementedError

    def extract(self, to: Path) -> None:
        name = self.path.name
        for suffix in self.suffixes:
            if name.endswith(suffix):
                name = name[: -len(suffix)]
                break
        to.mkdir(parents=True, exist_ok=True)
        with self._open(self.path) as src, open(to / name, "wb") as out:
            shutil.copyfileobj(src, out)


class Gzip(_SingleFile):
    type = "gzip"
    magic = b"\x1f\x8b"
    suffixes = (".gz", ".gzip")

    @staticmethod
    def _open(path: Path):
        return gzip.open(path, "rb")


class Bzip2(_SingleFile):
    type = "bzip2"
    magic = b"BZh"
    suffixes = (".bz2", ".bzip2")

    @staticmethod
    def _open(path: Path):
        return bz2.open(path, "rb")


class Xz(_SingleFile):
    type = "xz"
    magic = b"\xfd7zXZ\x00"
    suffixes = (".xz",)

    @staticmethod
    def _open(path: Path):
        return lzma.open(path, "rb")


class SevenZip(Container):
    type = "seven_zip"
    dependencies = (Dependency("p7zip", PackageKind.FORMULA),)

    @classmethod
    def can_extract(cls, path: Path, magic: bytes) -> bool:
        return magic.startswith(b"7z\xbc\xaf\x27\x1c")

    def extract(self, to: Path) -> None:
        self.runner("7zr", "x", "-y", f"-o{to}", str(self.path))


class Rar(Container):
    type = "rar"
    dependencies = (Dependency("unar", PackageKind.FORMULA),)

    @classmethod
    def can_extract(cls, path: Path, magic: bytes) -> bool:
        return magic.startswith(b"Rar!\x1a\x07")

    def extract(self, to: Path) -> None:
        self.runner(
            "unar", "-force-overwrite", "-quiet", "-no-directory",
            "-output-directory", str(to), str(self.path),
        )


class Uncompressed(Container):
    type = "naked"

    @classmethod
    def can_extract(cls, path: Path, magic: bytes) -> bool:
        return True

    @property
    def nested(self) -> bool:
        return False

    def extract(self, to: Path) -> None:
        to.mkdir(parents=True, exist_ok=True)
        shutil.copy2(self.path, to / self.path.name)


# detection order matters: tarballs are also gzip/bzip2/xz streams
STRATEGIES: tuple[type[Container], ...] = (Tar, Zip, SevenZip, Rar, Gzip, Bzip2, Xz, Uncompressed)
STRATEGY_TYPES = {s.type: s for s in STRATEGIES}


def strategy_for(type_name: str) -> type[Container]:
    try:
        return STRATEGY_TYPES[type_name]
    except KeyError:
        raise StagingError(f"Unknown container type '{type_name}'") from None


def detect(path: Path, runner: CommandRunner = run_checked, type_name: str | None = None) -> Container:
    """Pick the strategy for ``path``, from its content unless ``type_name`` is given."""
    if type_name:
        return strategy_for(type_name)(path, runner)
    with open(path, "rb") as f:
        magic = f.read(262)
    for strategy in STRATEGIES:
        if strategy.can_extract(path, magic):
            return strategy(path, runner)
    raise AssertionError("unreachable")


def container_dependencies(package: Package) -> tuple[Dependency, ...]:
    """Formulae needed to extract the package's download.

    Uses the declared container type, or an already fetched download.
    Never downloads anything.
    """
    container = package.container
    if container and container.type:
        return strategy_for(container.type).dependencies
    if package.download is not None and package.download.is_file():
        return detect(package.download).dependencies
    return ()


def make_writable(path: Path) -> None:
    for root, dirs, files in os.walk(path):
        for name in dirs + files:
            p = Path(root) / name
            if p.is_symlink():
                continue
            p.chmod(p.stat().st_mode | stat.S_IRUSR | stat.S_IWUSR)


class Stager:
    """Extract a download into the staged path and quarantine it."""

    def __init__(self, quarantine: Quarantine | None = None, runner: CommandRunner = run_checked) -> None:
        self.quarantine = quarantine
        self.runner = runner

    def stage(self, package: Package, download: Path, staged_path: Path,
              quarantine: bool = True) -> None:
        """Extract ``download`` into ``staged_path``.

        Partially staged files are left behind on failure; callers purge them.

        Raises:
            StagingError: If the container cannot be extracted.
        """
        start = time.perf_counter()
        spec = package.container
        log.info("stage_start", package=package.token, path=str(staged_path))

        try:
            if spec and spec.nested:
                with tempfile.TemporaryDirectory(prefix="caskade-nested-") as tmp:
                    tmp_path = Path(tmp)
                    detect(download, self.runner, spec.type).extract(tmp_path)
                    make_writable(tmp_path)
                    inner = tmp_path / spec.nested
                    check_member(spec.nested, tmp_path.resolve())
                    if not inner.is_file():
                        raise StagingError(
                            f"Nested container '{spec.nested}' not found",
                            package=package.token,
                            path=str(inner),
                        )
                    detect(inner, self.runner).extract_nestedly(staged_path)
            else:
                container = detect(download, self.runner, spec.type if spec else None)
                log.debug("container_detected", package=package.token, type=container.type)
                container.extract_nestedly(staged_path)
        except StagingError as e:
            raise e.with_context(package=package.token)
        except BrewError as e:
            raise StagingError(package=package.token, path=str(download), error=e.message) from e
        except (OSError, tarfile.TarError, zipfile.BadZipFile, EOFError, lzma.LZMAError) as e:
            raise StagingError(package=package.token, path=str(download), error=str(e)) from e

        if self.quarantine is not None:
            if quarantine:
                self.quarantine.propagate(download, staged_path)
            else:
                self.quarantine.release(staged_path)

        log.info(
            "stage_complete",
            package=package.token,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
