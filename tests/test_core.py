"""
Tests for errors, configuration and the JSON cache.
"""

import json
import time
from pathlib import Path

import pytest

import caskade.core.errors as errors
from caskade.core.cache import Cache
from caskade.core.caskroom import gain_permissions_remove
from caskade.core.config import EnvConfig, discover_env
from caskade.core.errors import (
    BrewCommandError,
    BrewError,
    ConflictError,
    DownloadError,
    PackageNotFoundError,
    UserError,
    format_error_message,
    retry_on_transient,
)


class TestBrewError:
    def test_with_context_merges(self):
        e = BrewError("failed", context={"package": "foo"}).with_context(operation="install")
        assert e.context == {"package": "foo", "operation": "install"}
        assert str(e) == "failed [package=foo, operation=install]"

    def test_default_messages(self):
        assert PackageNotFoundError(package="foo", kind="cask").message == "Package cask 'foo' not found"
        assert isinstance(PackageNotFoundError(package="foo"), UserError)

    def test_format_uses_most_specific_template(self):
        message = format_error_message(ConflictError("foo", "bar"))
        assert "caskade uninstall bar" in message

    def test_format_falls_back_when_context_is_missing(self):
        assert format_error_message(DownloadError("offline")) == "❌ offline"

    def test_format_download_error(self):
        message = format_error_message(DownloadError(package="foo", error="HTTP 500"))
        assert message.startswith("⚠️ Download failed for foo: HTTP 500")


class TestRetry:
    @pytest.fixture(autouse=True)
    def no_sleep(self, monkeypatch):
        delays = []
        monkeypatch.setattr(errors.time, "sleep", delays.append)
        return delays

    def test_retries_transient_errors(self, no_sleep):
        calls = []

        @retry_on_transient(max_retries=3, base_delay=1.0)
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise BrewCommandError(command="brew", returncode=1)
            return "ok"

        assert flaky() == "ok"
        assert flaky.__name__ == "flaky"
        assert len(calls) == 3
        assert no_sleep == [1.0, 2.0]

    def test_gives_up(self, no_sleep):
        @retry_on_transient(max_retries=2, base_delay=0.5)
        def broken():
            raise DownloadError(package="foo")

        with pytest.raises(DownloadError):
            broken()
        assert no_sleep == [0.5]

    def test_user_errors_not_retried(self, no_sleep):
        calls = []

        @retry_on_transient()
        def missing():
            calls.append(1)
            raise PackageNotFoundError(package="foo")

        with pytest.raises(PackageNotFoundError):
            missing()
        assert calls == [1]


class TestEnvConfig:
    def test_defaults(self):
        config = EnvConfig.from_env({})
        assert config == EnvConfig()
        assert not config.has_name_policy
        assert not config.has_tap_policy

    def test_policy_lists(self):
        config = EnvConfig.from_env({
            "CASKADE_FORBIDDEN_CASKS": "qux  zoom",
            "CASKADE_FORBIDDEN_FORMULAE": "openssl",
            "CASKADE_ALLOWED_TAPS": "acme/tools",
            "CASKADE_FORBIDDEN_OWNER": "IT",
        })
        assert config.forbidden_casks == {"qux", "zoom"}
        assert config.forbidden_formulae == {"openssl"}
        assert config.forbidden_owner == "IT"
        assert config.has_name_policy
        assert config.tap_allowed("acme/tools")
        assert config.tap_allowed("homebrew/cask")
        assert not config.tap_allowed("other/tap")

    @pytest.mark.parametrize("value,expected", [("1", True), ("yes", True), ("0", False), ("", False), ("off", False)])
    def test_flags(self, value, expected):
        assert EnvConfig.from_env({"CASKADE_REQUIRE_SHA": value}).require_sha is expected

    def test_download_concurrency_at_least_one(self):
        assert EnvConfig.from_env({"CASKADE_DOWNLOAD_CONCURRENCY": "0"}).download_concurrency == 1
        assert EnvConfig.from_env({"CASKADE_DOWNLOAD_CONCURRENCY": "4"}).download_concurrency == 4

    def test_fetch_timeout(self):
        assert EnvConfig.from_env({"CASKADE_FETCH_TIMEOUT": "12.5"}).fetch_timeout == 12.5


class TestDiscoverEnv:
    def test_prefix_from_environment(self, tmp_path):
        env = discover_env({"CASKADE_PREFIX": str(tmp_path), "CASKADE_HOME": str(tmp_path / "home")})

        assert env.caskroom == tmp_path / "Caskroom"
        assert env.taps == tmp_path / "Library" / "Taps"
        assert env.cache == tmp_path / "home" / "cache"
        assert env.artifact_dirs()["appdir"] == str(tmp_path / "Applications")


class TestCache:
    def test_loader_called_once(self, tmp_path):
        cache = Cache("api", tmp_path)
        calls = []

        def loader():
            calls.append(1)
            return {"token": "foo"}

        assert cache.get_or_set("cask-foo", 60, loader) == {"token": "foo"}
        assert cache.get_or_set("cask-foo", 60, loader) == {"token": "foo"}
        assert len(calls) == 1

    def test_expired_entry_reloaded(self, tmp_path):
        cache = Cache("api", tmp_path)
        cache.get_or_set("k", 60, lambda: 1)
        path = tmp_path / "api" / "k.json"
        data = json.loads(path.read_text())
        data["_ts"] = int(time.time()) - 120
        path.write_text(json.dumps(data))

        assert cache.get_or_set("k", 60, lambda: 2) == 2

    def test_token_change_invalidates(self, tmp_path):
        Cache("api", tmp_path, token="https://a").get_or_set("k", 60, lambda: "a")
        assert Cache("api", tmp_path, token="https://b").get_or_set("k", 60, lambda: "b") == "b"

    def test_stale_value_served_on_transient_failure(self, tmp_path):
        cache = Cache("api", tmp_path)
        cache.get_or_set("k", 60, lambda: "old")

        def offline():
            raise DownloadError(package="k")

        assert cache.get_or_set("k", 0, offline, allow_stale=True) == "old"
        with pytest.raises(DownloadError):
            cache.get_or_set("k", 0, offline)

    def test_corrupted_entry_reloaded(self, tmp_path):
        cache = Cache("api", tmp_path)
        (tmp_path / "api" / "k.json").write_text("{not json")
        assert cache.get_or_set("k", 60, lambda: 3) == 3

    def test_keys_with_slashes(self, tmp_path):
        Cache("api", tmp_path).get_or_set("acme/tools/foo", 60, lambda: 1)
        assert Path(tmp_path / "api" / "acme--tools--foo.json").is_file()


class TestGainPermissionsRemove:
    def test_read_only_tree_removed(self, tmp_path):
        locked = tmp_path / "Foo.app" / "Contents"
        locked.mkdir(parents=True)
        (locked / "Info.plist").write_text("plist")
        locked.chmod(0o500)

        gain_permissions_remove(tmp_path / "Foo.app")

        assert not (tmp_path / "Foo.app").exists()

    def test_missing_path_is_ignored(self, tmp_path):
        gain_permissions_remove(tmp_path / "gone")
