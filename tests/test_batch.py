"""
Tests for installing several casks in one run.
"""

from pathlib import Path

from caskade.core.config import EnvConfig
from caskade.core.models import InstallStatus
from caskade.install.batch import DECLINED, DRY_RUN, BatchOptions, ask_casks, install_casks
from conftest import app_cask, make_cask


class TestAsk:
    def test_empty_list_needs_no_confirmation(self):
        assert ask_casks([], prompt=lambda q: False)

    def test_prompt_answer_is_returned(self):
        questions = []

        def prompt(question):
            questions.append(question)
            return False

        assert not ask_casks([make_cask("foo")], prompt=prompt)
        assert questions == ["Do you want to proceed with the installation?"]


class TestInstallCasks:
    def test_installs_each_cask(self, services, source, artifact_dirs):
        for token in ("foo", "bar"):
            source.add(app_cask(token))

        results = install_casks(["foo", "bar"], services)

        assert [(r.package, r.status) for r in results] == [
            ("foo", InstallStatus.INSTALLED),
            ("bar", InstallStatus.INSTALLED),
        ]
        assert (Path(artifact_dirs["appdir"]) / "bar.app").is_dir()

    def test_failures_are_isolated(self, services, source, downloads):
        source.add(app_cask("foo"))
        source.add(app_cask("broken"))
        downloads.failing.add("broken")

        results = {r.package: r for r in install_casks(["nope", "broken", "foo"], services)}

        assert results["nope"].status is InstallStatus.FAILED
        assert results["broken"].status is InstallStatus.FAILED
        assert "broken" in results["broken"].reason
        assert results["foo"].ok
        assert services.context.failures.keys() == {"nope", "broken"}

    def test_filesystem_error_in_artifact_is_isolated(self, services, source, downloads, artifact_dirs):
        Path(artifact_dirs["binarydir"]).write_text("not a directory")
        source.add(make_cask("a", artifacts=[{"binary": ["a-cli"]}]))
        downloads.add("a", {"a-cli": b"#!/bin/sh\n"})
        source.add(app_cask("b"))

        results = install_casks(["a", "b"], services)

        assert [(r.package, r.status) for r in results] == [
            ("a", InstallStatus.FAILED),
            ("b", InstallStatus.INSTALLED),
        ]
        assert results[0].reason.startswith("Failed to install binary for a")
        assert services.caskroom.installed_version("a") is None

    def test_second_run_reports_already_installed(self, services, source, downloads):
        source.add(app_cask("foo"))
        install_casks(["foo"], services)

        results = install_casks(["foo"], services)

        assert results[0].status is InstallStatus.ALREADY_INSTALLED
        assert downloads.count("foo") == 1

    def test_duplicate_names_reported_once(self, services, source, downloads):
        source.add(app_cask("foo"))

        results = install_casks(["foo", "foo"], services)

        assert len(results) == 1
        assert downloads.count("foo") == 1

    def test_dry_run_touches_nothing(self, services, source, downloads):
        source.add(app_cask("bar", depends_on={"cask": ["baz"]}))
        source.add(app_cask("baz"))

        results = install_casks(["bar"], services, BatchOptions(dry_run=True))

        assert [(r.package, r.status, r.reason) for r in results] == [
            ("bar", InstallStatus.SKIPPED, DRY_RUN)
        ]
        assert downloads.calls == []
        assert services.caskroom.installed_tokens() == []

    def test_declined_prompt(self, services, source, downloads):
        source.add(app_cask("foo"))

        results = install_casks(["foo"], services, BatchOptions(ask=True), prompt=lambda q: False)

        assert results[0].status is InstallStatus.SKIPPED
        assert results[0].reason == DECLINED
        assert downloads.calls == []

    def test_confirmed_prompt(self, services, source):
        source.add(app_cask("foo"))
        results = install_casks(["foo"], services, BatchOptions(ask=True), prompt=lambda q: True)
        assert results[0].status is InstallStatus.INSTALLED

    def test_outdated_cask_is_upgraded(self, services, source, artifact_dirs):
        source.add(app_cask("foo", version="1.0"))
        install_casks(["foo"], services)
        source.add(app_cask("foo", version="2.0"))

        results = install_casks(["foo"], services)

        assert results[0].status is InstallStatus.INSTALLED
        assert services.caskroom.installed_version("foo") == "2.0"
        plist = Path(artifact_dirs["appdir"]) / "foo.app" / "Contents" / "Info.plist"
        assert plist.read_bytes() == b"2.0"

    def test_no_install_upgrade(self, make_services, source):
        services = make_services(EnvConfig(no_install_upgrade=True))
        source.add(app_cask("foo", version="1.0"))
        install_casks(["foo"], services)
        source.add(app_cask("foo", version="2.0"))

        results = install_casks(["foo"], services)

        assert results[0].status is InstallStatus.ALREADY_INSTALLED
        assert services.caskroom.installed_version("foo") == "1.0"


class TestConcurrentDownloads:
    def test_each_cask_fetched_once(self, make_services, source, downloads):
        services = make_services(EnvConfig(download_concurrency=2))
        source.add(app_cask("foo", depends_on={"cask": ["baz"]}))
        source.add(app_cask("bar"))
        source.add(app_cask("baz"))

        results = install_casks(["foo", "bar"], services)

        assert all(r.status is InstallStatus.INSTALLED for r in results)
        assert sorted(downloads.calls) == ["bar", "baz", "foo"]

    def test_queued_failure_isolated(self, make_services, source, downloads):
        services = make_services(EnvConfig(download_concurrency=3))
        source.add(app_cask("foo"))
        source.add(app_cask("broken"))
        downloads.failing.add("broken")

        results = {r.package: r.status for r in install_casks(["foo", "broken"], services)}

        assert results == {"foo": InstallStatus.INSTALLED, "broken": InstallStatus.FAILED}
        assert downloads.count("broken") == 1

    def test_forbidden_cask_never_queued(self, make_services, source, downloads):
        services = make_services(EnvConfig(download_concurrency=2, forbidden_casks=frozenset({"qux"})))
        source.add(app_cask("foo"))
        source.add(app_cask("qux"))

        results = {r.package: r.status for r in install_casks(["qux", "foo"], services)}

        assert results == {"qux": InstallStatus.FAILED, "foo": InstallStatus.INSTALLED}
        assert "qux" not in downloads.calls
