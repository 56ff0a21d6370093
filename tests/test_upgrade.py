"""
Tests for upgrading and reinstalling installed casks.
"""

from pathlib import Path

import pytest

from caskade.core.errors import ArtifactInstallError, DownloadError
from caskade.core.models import InstallStatus
from caskade.core.tab import Tab
from caskade.install.installer import Installer
from caskade.install.upgrade import installed_cask, is_outdated, reinstall_cask, upgrade_cask
from conftest import Exploding, app_cask, make_cask


def _snapshot(root: Path) -> dict[str, bytes | None]:
    return {
        str(p.relative_to(root)): p.read_bytes() if p.is_file() else None
        for p in sorted(root.rglob("*"))
    }


@pytest.fixture
def installed_foo(services, source, downloads):
    downloads.add("foo", {"foo.app/Contents/Info.plist": b"v1", "LICENSE": b"old"}, version="1.0")
    downloads.add("foo", {"foo.app/Contents/Info.plist": b"v2", "LICENSE": b"new"}, version="2.0")
    cask = source.add(app_cask("foo", version="1.0"))
    Installer(cask, services).install()
    return cask


class TestOutdated:
    def test_is_outdated(self, services, installed_foo):
        assert not is_outdated(installed_foo, services)
        assert is_outdated(app_cask("foo", version="2.0"), services)

    def test_not_installed_is_not_outdated(self, services):
        assert not is_outdated(app_cask("ghost", version="2.0"), services)

    def test_installed_cask_reads_saved_definition(self, services, source, installed_foo):
        source.add(app_cask("foo", version="2.0"))
        assert installed_cask("foo", services).version == "1.0"


class TestUpgrade:
    def test_upgrade(self, services, source, installed_foo, artifact_dirs):
        new = source.add(app_cask("foo", version="2.0"))

        status = upgrade_cask(installed_cask("foo", services), new, services)

        assert status is InstallStatus.INSTALLED
        app = Path(artifact_dirs["appdir"]) / "foo.app" / "Contents" / "Info.plist"
        assert app.read_bytes() == b"v2"
        caskroom = services.caskroom
        assert caskroom.installed_version("foo") == "2.0"
        assert not caskroom.staged_path(installed_foo).exists()
        assert not caskroom.backup_path(installed_foo).exists()
        assert not caskroom.backup_metadata_path(installed_foo).exists()
        assert caskroom.staged_path(new).is_dir()

    def test_upgrade_keeps_tab_flags(self, services, source, installed_foo):
        tab = Tab.for_cask(installed_foo, services.caskroom)
        tab.installed_as_dependency = True
        tab.installed_on_request = False
        tab.write()
        new = source.add(app_cask("foo", version="2.0"))

        upgrade_cask(installed_cask("foo", services), new, services)

        tab = Tab.for_cask(new, services.caskroom)
        assert tab.installed_as_dependency is True
        assert tab.installed_on_request is False
        assert tab.version == "2.0"

    def test_failed_upgrade_restores_previous_version(self, services, source, installed_foo, artifact_dirs):
        caskroom = services.caskroom
        staged = caskroom.staged_path(installed_foo)
        metadata = caskroom.metadata_versioned_path(installed_foo)
        staged_before = _snapshot(staged)
        metadata_before = _snapshot(metadata)

        new = app_cask("foo", version="2.0")
        new.artifacts.append(Exploding())

        with pytest.raises(ArtifactInstallError) as exc:
            upgrade_cask(installed_cask("foo", services), new, services)

        assert exc.value.message == "boom"
        assert _snapshot(staged) == staged_before
        assert _snapshot(metadata) == metadata_before
        assert caskroom.installed_version("foo") == "1.0"
        assert not caskroom.staged_path(new).exists()
        assert not caskroom.backup_path(installed_foo).exists()
        app = Path(artifact_dirs["appdir"]) / "foo.app" / "Contents" / "Info.plist"
        assert app.read_bytes() == b"v1"

    def test_failed_download_leaves_installation_untouched(self, services, source, downloads, installed_foo):
        staged_before = _snapshot(services.caskroom.staged_path(installed_foo))
        downloads.failing.add("foo")
        new = source.add(app_cask("foo", version="2.0"))

        with pytest.raises(DownloadError):
            upgrade_cask(installed_cask("foo", services), new, services)

        assert _snapshot(services.caskroom.staged_path(installed_foo)) == staged_before
        assert services.caskroom.installed_version("foo") == "1.0"


class TestReinstall:
    def test_reinstall(self, services, source, downloads, installed_foo, artifact_dirs):
        status = reinstall_cask(source.load("foo"), services)

        assert status is InstallStatus.INSTALLED
        assert downloads.count("foo") == 2
        assert (Path(artifact_dirs["appdir"]) / "foo.app").is_dir()
        assert services.caskroom.installed_version("foo") == "1.0"

    def test_reinstall_keeps_dependency_flag(self, services, source, installed_foo):
        tab = Tab.for_cask(installed_foo, services.caskroom)
        tab.installed_as_dependency = True
        tab.installed_on_request = False
        tab.write()

        reinstall_cask(make_cask("foo", artifacts=[{"app": ["foo.app"]}]), services)

        tab = Tab.for_cask(installed_foo, services.caskroom)
        assert tab.installed_as_dependency is True
        assert tab.installed_on_request is False
