"""
Tests for individual artifact phases.
"""

import os
from pathlib import Path

import pytest

from caskade.core.errors import ArtifactInstallError, DefinitionInvalidError
from caskade.install.artifacts import (
    App,
    Binary,
    FlightBlock,
    Installer,
    PhaseContext,
    Pkg,
    Symlink,
    Uninstall,
    Zap,
    build_artifact,
)
from conftest import RecordingRunner, make_cask


@pytest.fixture
def staged(tmp_path) -> Path:
    path = tmp_path / "Caskroom" / "foo" / "1.0"
    (path / "Foo.app" / "Contents").mkdir(parents=True)
    (path / "Foo.app" / "Contents" / "Info.plist").write_text("plist")
    (path / "foo-cli").write_text("#!/bin/sh\n")
    return path


@pytest.fixture
def ctx(staged, artifact_dirs) -> PhaseContext:
    return PhaseContext(
        cask=make_cask("foo"),
        staged_path=staged,
        config=dict(artifact_dirs),
        command=RecordingRunner(),
    )


class TestBuildArtifact:
    def test_app(self):
        assert build_artifact("app", ["Foo.app"]) == App(source="Foo.app")

    def test_target_option(self):
        assert build_artifact("binary", ["bin/foo", {"target": "foo"}]) == Binary(source="bin/foo", target="foo")

    def test_plain_string_argument(self):
        assert build_artifact("pkg", "Foo.pkg") == Pkg(path="Foo.pkg")

    def test_unknown_stanza(self):
        with pytest.raises(DefinitionInvalidError):
            build_artifact("widget", ["x"])

    def test_symlink_requires_target(self):
        with pytest.raises(DefinitionInvalidError):
            build_artifact("artifact", ["payload"])

    def test_installer_needs_manual_or_script(self):
        with pytest.raises(DefinitionInvalidError):
            build_artifact("installer", [{}])

    def test_unknown_uninstall_directive(self):
        with pytest.raises(DefinitionInvalidError):
            build_artifact("uninstall", [{"launchctl": "com.example"}])

    def test_unknown_flight_stage(self):
        with pytest.raises(DefinitionInvalidError):
            build_artifact("flight_block", [{"stage": "midflight"}])


class TestMoved:
    def test_install_and_uninstall(self, ctx, staged, artifact_dirs):
        app = App(source="Foo.app")
        target = Path(artifact_dirs["appdir"]) / "Foo.app"

        app.install_phase(ctx)
        assert (target / "Contents" / "Info.plist").is_file()
        assert not (staged / "Foo.app").exists()

        app.uninstall_phase(ctx)
        assert not target.exists()
        assert (staged / "Foo.app" / "Contents" / "Info.plist").is_file()

    def test_existing_target_refused(self, ctx, artifact_dirs):
        target = Path(artifact_dirs["appdir"]) / "Foo.app"
        target.mkdir(parents=True)

        with pytest.raises(ArtifactInstallError) as exc:
            App(source="Foo.app").install_phase(ctx)

        assert "already a app" in exc.value.message

    def test_force_overwrites(self, ctx, artifact_dirs):
        target = Path(artifact_dirs["appdir"]) / "Foo.app"
        target.mkdir(parents=True)
        ctx.force = True

        App(source="Foo.app").install_phase(ctx)

        assert (target / "Contents" / "Info.plist").is_file()

    def test_adopt_keeps_existing(self, ctx, staged, artifact_dirs):
        target = Path(artifact_dirs["appdir"]) / "Foo.app"
        target.mkdir(parents=True)
        (target / "mine").write_text("x")
        ctx.adopt = True

        App(source="Foo.app").install_phase(ctx)

        assert (target / "mine").is_file()
        assert not (staged / "Foo.app").exists()

    def test_missing_source(self, ctx):
        with pytest.raises(ArtifactInstallError):
            App(source="Missing.app").install_phase(ctx)

    def test_missing_target_on_uninstall(self, ctx):
        with pytest.raises(ArtifactInstallError):
            App(source="Foo.app").uninstall_phase(ctx)

    def test_missing_target_tolerated_when_skipping(self, ctx):
        ctx.skip = True
        App(source="Foo.app").uninstall_phase(ctx)

    def test_missing_config_key(self, ctx):
        del ctx.config["appdir"]
        with pytest.raises(ArtifactInstallError):
            App(source="Foo.app").install_phase(ctx)


class TestSymlinked:
    def test_binary_is_linked_and_executable(self, ctx, staged, artifact_dirs):
        Binary(source="foo-cli", target="foo").install_phase(ctx)

        link = Path(artifact_dirs["binarydir"]) / "foo"
        assert link.is_symlink()
        assert Path(os.readlink(link)) == staged / "foo-cli"
        assert os.access(staged / "foo-cli", os.X_OK)

    def test_relinking_is_a_noop(self, ctx):
        binary = Binary(source="foo-cli")
        binary.install_phase(ctx)
        binary.install_phase(ctx)

    def test_foreign_file_refused(self, ctx, artifact_dirs):
        target = Path(artifact_dirs["binarydir"]) / "foo-cli"
        target.parent.mkdir(parents=True)
        target.write_text("someone else's")

        with pytest.raises(ArtifactInstallError):
            Binary(source="foo-cli").install_phase(ctx)

    def test_uninstall_leaves_foreign_links(self, ctx, tmp_path, artifact_dirs):
        target = Path(artifact_dirs["binarydir"]) / "foo-cli"
        target.parent.mkdir(parents=True)
        target.symlink_to(tmp_path / "elsewhere")

        Binary(source="foo-cli").uninstall_phase(ctx)

        assert target.is_symlink()

    def test_uninstall_unlinks(self, ctx, tmp_path):
        link = Symlink(source="foo-cli", target=str(tmp_path / "links" / "foo"))
        link.install_phase(ctx)
        link.uninstall_phase(ctx)
        assert not (tmp_path / "links" / "foo").is_symlink()


class TestInstallOnly:
    def test_installer_script(self, ctx, staged):
        (staged / "install.sh").write_text("#!/bin/sh\n")

        Installer(script="install.sh", args=["--silent"]).install_phase(ctx)

        assert ctx.command.commands == [(str(staged / "install.sh"), "--silent")]

    def test_manual_installer_runs_nothing(self, ctx):
        Installer(manual="Setup.app").install_phase(ctx)
        assert ctx.command.commands == []

    def test_pkg(self, ctx, staged):
        (staged / "Foo.pkg").write_text("xar")

        Pkg(path="Foo.pkg").install_phase(ctx)

        assert ctx.command.commands == [
            ("sudo", "installer", "-pkg", str(staged / "Foo.pkg"), "-target", "/")
        ]


class TestRemoval:
    def test_uninstall_trash_and_rmdir(self, ctx, tmp_path, artifact_dirs):
        prefs = tmp_path / "Library" / "Preferences"
        prefs.mkdir(parents=True)
        (prefs / "com.example.foo.plist").write_text("prefs")
        uninstall = build_artifact("uninstall", [{
            "trash": str(prefs / "com.example.*.plist"),
            "rmdir": str(prefs),
            "pkgutil": "com.example.foo",
        }])

        uninstall.uninstall_phase(ctx)
        uninstall.post_uninstall_phase(ctx)

        assert (Path(artifact_dirs["trashdir"]) / "com.example.foo.plist").is_file()
        assert not prefs.exists()
        assert ctx.command.commands == [("sudo", "pkgutil", "--forget", "com.example.foo")]

    def test_uninstall_script_runs_when_skipping(self, ctx, staged):
        (staged / "uninstall.sh").write_text("#!/bin/sh\n")
        ctx.skip = True

        Uninstall(directives={"script": {"executable": "uninstall.sh"}}).uninstall_phase(ctx)

        assert ctx.command.commands == [(str(staged / "uninstall.sh"),)]

    def test_missing_uninstall_script_is_skipped(self, ctx):
        Uninstall(directives={"script": {"executable": "gone.sh"}}).uninstall_phase(ctx)
        assert ctx.command.commands == []

    def test_zap_delete(self, ctx, tmp_path):
        support = tmp_path / "Application Support" / "Foo"
        support.mkdir(parents=True)

        Zap(directives={"delete": [str(support)]}).zap_phase(ctx)

        assert not support.exists()


class TestFlightBlock:
    def test_hook_receives_context(self, ctx):
        seen = []
        FlightBlock(stage="postflight", hook=seen.append).install_phase(ctx)
        assert seen == [ctx]

    def test_commands_run_in_staged_path(self, ctx):
        FlightBlock(commands=[["touch", "marker"]]).install_phase(ctx)
        assert ctx.command.commands == [("touch", "marker")]

    def test_phase_capabilities(self):
        assert FlightBlock(stage="preflight").installable
        assert FlightBlock(stage="preflight").phase_order == 0
        assert FlightBlock(stage="postflight").phase_order == 2
        assert FlightBlock(stage="uninstall_preflight").uninstallable
        assert not FlightBlock(stage="uninstall_postflight").installable
