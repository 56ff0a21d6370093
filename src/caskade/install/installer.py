"""Install, uninstall and zap a single cask.

An ``Installer`` drives one package through one operation. The steps of an
install are recorded on a ``Transaction``::

    idle -> policy-check -> fetch -> stage -> install-artifacts -> commit

Any failure once work has started moves the transaction to ``rollback``:
installed artifacts are reverted, partial stages purged and a backup taken
of a forced reinstall is restored before the error propagates.
"""

from __future__ import annotations

import json
import platform
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from caskade.analysis.graph import DependencyGraph
from caskade.analysis.policy import PolicyGatekeeper
from caskade.backends.base import DownloadBackend, FormulaBackend
from caskade.backends.download import sha256sum
from caskade.backends.quarantine import Quarantine
from caskade.core.caskroom import Caskroom, gain_permissions_remove, rmdir_if_possible
from caskade.core.config import EnvConfig
from caskade.core.context import RunContext
from caskade.core.errors import (
    ArtifactInstallError,
    BrewError,
    ConflictError,
    DisabledPackageError,
    RequirementError,
)
from caskade.core.logging import bound_operation, get_logger
from caskade.core.models import Dependency, InstallStatus, Package
from caskade.core.output import oh1, ohai, opoo, puts
from caskade.core.repo import Repository
from caskade.core.shell import CommandRunner, run_checked
from caskade.core.tab import Tab, atomic_write
from caskade.install.artifacts import Artifact, PhaseContext
from caskade.install.fetch import Download, DownloadQueue, verify_has_sha
from caskade.install.stage import Stager, container_dependencies

log = get_logger(__name__)

_ARCH_ALIASES = {
    "arm64": "arm64",
    "aarch64": "arm64",
    "arm": "arm64",
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "intel": "x86_64",
}


def current_arch() -> str:
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


class TransactionState(Enum):
    IDLE = "idle"
    POLICY_CHECK = "policy-check"
    FETCH = "fetch"
    STAGE = "stage"
    INSTALL_ARTIFACTS = "install-artifacts"
    COMMIT = "commit"
    ROLLBACK = "rollback"


_TRANSITIONS = {
    TransactionState.IDLE: {TransactionState.POLICY_CHECK},
    TransactionState.POLICY_CHECK: {TransactionState.FETCH, TransactionState.ROLLBACK},
    TransactionState.FETCH: {TransactionState.STAGE, TransactionState.ROLLBACK},
    TransactionState.STAGE: {TransactionState.INSTALL_ARTIFACTS, TransactionState.ROLLBACK},
    TransactionState.INSTALL_ARTIFACTS: {TransactionState.COMMIT, TransactionState.ROLLBACK},
    TransactionState.COMMIT: set(),
    TransactionState.ROLLBACK: set(),
}


@dataclass
class Transaction:
    """State of one install operation."""

    package: str
    operation: str = "install"
    state: TransactionState = TransactionState.IDLE
    history: list[TransactionState] = field(default_factory=list)

    def advance(self, state: TransactionState) -> None:
        if state is self.state:
            return
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid transaction transition {self.state.value} -> {state.value} for {self.package}"
            )
        log.debug("transaction_state", package=self.package, state=state.value, previous=self.state.value)
        self.history.append(self.state)
        self.state = state

    def rollback(self) -> None:
        if self.state in (TransactionState.IDLE, TransactionState.COMMIT, TransactionState.ROLLBACK):
            return
        self.advance(TransactionState.ROLLBACK)

    @property
    def finished(self) -> bool:
        return self.state in (TransactionState.COMMIT, TransactionState.ROLLBACK)


@dataclass
class InstallServices:
    """Collaborators shared by every installer of one run."""

    repository: Repository
    caskroom: Caskroom
    downloads: DownloadBackend
    config: EnvConfig = field(default_factory=EnvConfig)
    formulae: FormulaBackend | None = None
    quarantine: Quarantine | None = None
    runner: CommandRunner = run_checked
    artifact_dirs: dict[str, str] = field(default_factory=dict)
    context: RunContext = field(default_factory=RunContext)


class Installer:
    """Install, uninstall or zap one cask."""

    def __init__(
        self,
        cask: Package,
        services: InstallServices,
        *,
        force: bool = False,
        adopt: bool = False,
        skip_cask_deps: bool = False,
        binaries: bool = True,
        verbose: bool = False,
        zap: bool = False,
        require_sha: bool | None = None,
        upgrade: bool = False,
        reinstall: bool = False,
        installed_as_dependency: bool = False,
        installed_on_request: bool = True,
        quarantine: bool | None = None,
        verify_download_integrity: bool = True,
        quiet: bool = False,
        download_queue: DownloadQueue | None = None,
        timeout: float | None = None,
    ) -> None:
        self.cask = cask
        self.services = services
        self.force = force
        self.adopt = adopt
        self.skip_cask_deps = skip_cask_deps
        self.binaries = binaries
        self.verbose = verbose
        self.zap_requested = zap
        self.require_sha = services.config.require_sha if require_sha is None else require_sha
        self.upgrade = upgrade
        self.reinstall = reinstall
        self.installed_as_dependency = installed_as_dependency
        self.installed_on_request = installed_on_request
        self.quarantine = not services.config.no_quarantine if quarantine is None else quarantine
        self.verify_download_integrity = verify_download_integrity
        self.quiet = quiet
        self.download_queue = download_queue
        self.timeout = timeout if timeout is not None else services.config.fetch_timeout

        self.transaction = Transaction(cask.token)
        self._graph: DependencyGraph | None = None
        self._graph_containers: tuple[Dependency, ...] = ()
        self._download: Download | None = None

    @property
    def caskroom(self) -> Caskroom:
        return self.services.caskroom

    @property
    def context(self) -> RunContext:
        return self.services.context

    def __repr__(self) -> str:
        return f"<Installer {self.cask.full_name} state={self.transaction.state.value}>"

    def _child(self, cask: Package, **overrides: Any) -> "Installer":
        options: dict[str, Any] = dict(
            adopt=self.adopt,
            binaries=self.binaries,
            verbose=self.verbose,
            require_sha=self.require_sha,
            quarantine=self.quarantine,
            quiet=self.quiet,
            verify_download_integrity=self.verify_download_integrity,
            download_queue=self.download_queue,
            timeout=self.timeout,
        )
        options.update(overrides)
        return Installer(cask, self.services, **options)

    def _phase_context(self, **overrides: Any) -> PhaseContext:
        options: dict[str, Any] = dict(
            cask=self.cask,
            staged_path=self.caskroom.staged_path(self.cask),
            config=self.cask.config or self.default_config(),
            command=self.services.runner,
            verbose=self.verbose,
            force=self.force,
            adopt=self.adopt,
            upgrade=self.upgrade,
            reinstall=self.reinstall,
        )
        options.update(overrides)
        return PhaseContext(**options)

    # ── Decision and read-only checks ──────────────────────────────────

    def decide(self) -> InstallStatus:
        """Whether ``install`` would do any work."""
        if self.caskroom.is_installed(self.cask) and not (self.force or self.reinstall or self.upgrade):
            return InstallStatus.ALREADY_INSTALLED
        return InstallStatus.INSTALLED

    def check_deprecate_disable(self) -> None:
        if self.cask.disabled is not None:
            log.error("package_disabled", package=self.cask.token, reason=self.cask.disabled)
            raise DisabledPackageError(self.cask.token, self.cask.disabled)
        if self.cask.deprecated is not None:
            opoo(f"{self.cask.token} has been deprecated because {self.cask.deprecated}")

    def check_conflicts(self) -> None:
        for token in self.cask.conflicts_with:
            if self.caskroom.installed_version(token) is not None:
                log.error("package_conflict", package=self.cask.token, conflicting=token)
                raise ConflictError(self.cask.full_name, token)

    def check_requirements(self) -> None:
        wanted = {_ARCH_ALIASES.get(a.lower(), a.lower()) for a in self.cask.arch}
        if not wanted:
            return
        arch = current_arch()
        if arch not in wanted:
            raise RequirementError(
                f"Cask {self.cask} depends on hardware architecture being one of "
                f"[{', '.join(sorted(wanted))}], but you are running {arch}.",
                context={"package": self.cask.token, "arch": arch},
            )

    def caveats(self) -> None:
        if self.cask.caveats:
            self.context.record_caveats(self.cask.token, self.cask.caveats)

    # ── Dependencies ───────────────────────────────────────────────────

    def dependency_graph(self) -> DependencyGraph:
        # a download can reveal container formulae the definition did not declare
        containers = container_dependencies(self.cask)
        if self._graph is None or containers != self._graph_containers:
            self._graph = DependencyGraph.for_package(self.cask, self.services.repository, containers)
            self._graph_containers = containers
        return self._graph

    def dependencies(self) -> list[Package]:
        """Transitive casks and formulae this cask needs, dependencies first."""
        if not self.cask.depends_on and not container_dependencies(self.cask):
            return []
        return self.dependency_graph().dependencies()

    def dependency_installed(self, package: Package) -> bool:
        if package.is_cask:
            return self.caskroom.is_installed(package)
        if self.services.formulae is None:
            return False
        return self.services.formulae.is_installed(package)

    def missing_dependencies(self) -> list[Package]:
        return [p for p in self.dependencies() if not self.dependency_installed(p)]

    def satisfy_dependencies(self) -> None:
        """Install missing dependencies, marked as not requested by the user."""
        if self.installed_as_dependency:
            return
        if not self.dependencies():
            return

        missing = self.missing_dependencies()
        if not missing:
            puts("All dependencies satisfied.")
            return

        ohai(f"Installing dependencies: {', '.join(str(p) for p in missing)}")
        for package in missing:
            if package.is_cask:
                if self.skip_cask_deps:
                    opoo(f"`--skip-cask-deps` is set; skipping installation of {package}.")
                    continue
                self._child(
                    package,
                    force=False,
                    installed_as_dependency=True,
                    installed_on_request=False,
                ).install()
                continue

            if self.services.formulae is None:
                raise RequirementError(
                    f"Cask {self.cask} depends on formula {package}, but no formula installer is configured",
                    context={"package": self.cask.token, "formula": package.full_name},
                )
            self.services.formulae.install(
                package, installed_as_dependency=True, installed_on_request=False, verbose=self.verbose
            )

    # ── Fetch ──────────────────────────────────────────────────────────

    @property
    def download(self) -> Download:
        if self._download is None:
            if self.download_queue is not None:
                self._download = self.download_queue.download_for(self.cask, self.services.downloads)
            else:
                self._download = Download(self.cask, self.services.downloads)
        return self._download

    def check_policy(self) -> None:
        """Read-only checks that must pass before anything is downloaded."""
        self.transaction.advance(TransactionState.POLICY_CHECK)
        verify_has_sha(self.cask, self.require_sha, self.force)
        self.check_requirements()
        PolicyGatekeeper(self.services.config).check(
            self.cask, self.dependencies, skip_cask_deps=self.skip_cask_deps
        )

    def enqueue_downloads(self) -> None:
        """Run the pre-fetch checks and queue the download for batch fetching."""
        if self.download_queue is None:
            return
        self.check_policy()
        self.download_queue.enqueue(self.download)

    def fetch(self) -> Path:
        """Check policy, download the cask and install its dependencies."""
        self.check_policy()
        self.transaction.advance(TransactionState.FETCH)
        path = self.download.fetch(self.verify_download_integrity, self.timeout)
        self.cask.download = path
        self.satisfy_dependencies()
        return path

    # ── Stage ──────────────────────────────────────────────────────────

    def stage(self) -> None:
        """Extract the download into the staged path and save the definition."""
        self.transaction.advance(TransactionState.STAGE)
        self.caskroom.ensure_exists()
        try:
            path = self.download.fetch(self.verify_download_integrity, self.timeout)
            Stager(self.services.quarantine, self.services.runner).stage(
                self.cask, path, self.caskroom.staged_path(self.cask), quarantine=self.quarantine
            )
            self.save_caskfile()
        except Exception:
            self.purge_versioned_files()
            raise

    def save_caskfile(self) -> None:
        old_savedir = self.caskroom.metadata_timestamped_path(self.cask)
        if not self.cask.source:
            return

        source = self.cask.source
        try:
            data = json.loads(source)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict) and self.cask.tap and not data.get("tap"):
            # keep the tap the definition was found in
            data["tap"] = self.cask.tap
            source = json.dumps(data, indent=2)

        subdir = self.caskroom.new_metadata_subdir(self.cask)
        (subdir / f"{self.cask.token}.json").write_text(source)
        if old_savedir is not None and old_savedir != subdir.parent:
            gain_permissions_remove(old_savedir)
        log.debug("caskfile_saved", package=self.cask.token, path=str(subdir))

    # ── Configuration ──────────────────────────────────────────────────

    def default_config(self) -> dict[str, Any]:
        return {**self.services.artifact_dirs, **self.cask.default_config}

    def load_config(self) -> dict[str, Any]:
        path = self.caskroom.config_path(self.cask)
        if not path.is_file():
            return {}
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            log.warning("config_unreadable", package=self.cask.token, error=str(e))
            return {}
        return data if isinstance(data, dict) else {}

    def save_config_file(self) -> None:
        atomic_write(self.caskroom.config_path(self.cask), json.dumps(self.cask.config, indent=2))

    def save_download_sha(self) -> None:
        if not self.cask.checksumable or self.download.path is None:
            return
        atomic_write(self.caskroom.download_sha_path(self.cask), sha256sum(self.download.path))

    # ── Artifacts ──────────────────────────────────────────────────────

    def install_order(self) -> list[Artifact]:
        return sorted(self.cask.artifacts, key=lambda a: a.phase_order)

    def uninstall_order(self) -> list[Artifact]:
        return sorted(reversed(self.cask.artifacts), key=lambda a: a.phase_order)

    def install_artifacts(self, predecessor: Package | None = None) -> None:
        """Install every artifact, reverting all of them if one fails."""
        self.transaction.advance(TransactionState.INSTALL_ARTIFACTS)
        ctx = self._phase_context(predecessor=predecessor)
        installed: list[Artifact] = []
        current: Artifact | None = None

        try:
            for artifact in self.install_order():
                if not artifact.installable:
                    continue
                if artifact.binary and not self.binaries:
                    log.debug("binary_skipped", package=self.cask.token, artifact=str(artifact))
                    continue
                log.debug("artifact_install", package=self.cask.token, artifact=str(artifact))
                current = artifact
                artifact.install_phase(ctx)
                installed.append(artifact)
            current = None

            self.save_config_file()
            if self.cask.is_latest:
                self.save_download_sha()
        except Exception as e:
            log.error(
                "install_artifacts_failed",
                package=self.cask.token,
                installed=len(installed),
                error=str(e),
            )
            self.transaction.rollback()
            try:
                self._revert_artifacts(reversed(installed), ctx)
            finally:
                self.purge_versioned_files()
            if isinstance(e, BrewError):
                raise
            raise ArtifactInstallError(
                f"Failed to install {current or 'artifacts'} for {self.cask}: {e}",
                artifact=str(current) if current else None,
                context={"package": self.cask.token},
            ) from e

    def _revert_artifacts(self, artifacts, ctx: PhaseContext) -> None:
        for artifact in artifacts:
            try:
                if artifact.uninstallable:
                    artifact.uninstall_phase(ctx)
                if artifact.post_uninstallable:
                    artifact.post_uninstall_phase(ctx)
            except (BrewError, OSError) as revert_error:
                log.warning(
                    "artifact_revert_failed",
                    package=self.cask.token,
                    artifact=str(artifact),
                    error=str(revert_error),
                )

    def uninstall_artifacts(self, clear: bool = False, successor: Package | None = None) -> None:
        ctx = self._phase_context(skip=clear, successor=successor)
        artifacts = self.uninstall_order()
        log.debug("uninstall_artifacts", package=self.cask.token, count=len(artifacts))

        for artifact in artifacts:
            if artifact.uninstallable:
                artifact.uninstall_phase(ctx)
        for artifact in artifacts:
            if artifact.post_uninstallable:
                artifact.post_uninstall_phase(ctx)

    # ── Install ────────────────────────────────────────────────────────

    def summary(self) -> str:
        badge = "" if self.services.config.no_emoji else f"{self.services.config.install_badge}  "
        return f"{badge}{self.cask} was successfully {'upgraded' if self.upgrade else 'installed'}!"

    def write_tab(self) -> Tab:
        tab = Tab.create(self.cask, self.caskroom)
        tab.installed_as_dependency = self.installed_as_dependency
        tab.installed_on_request = self.installed_on_request
        tab.write()
        return tab

    def uninstall_existing(self) -> None:
        if not self.caskroom.is_installed(self.cask):
            return
        installer = self._child(self.cask, force=True, upgrade=self.upgrade, reinstall=True)
        if self.zap_requested:
            installer.zap()
        else:
            installer.uninstall(successor=self.cask)

    def install(self) -> InstallStatus:
        """Install the cask.

        Returns:
            InstallStatus: ``ALREADY_INSTALLED`` when nothing was done,
            ``INSTALLED`` otherwise.

        Raises:
            BrewError: Any failure; prior installed state is restored first.
        """
        status = self.decide()
        if status is InstallStatus.ALREADY_INSTALLED:
            opoo(f"Cask '{self.cask}' is already installed.")
            log.info("already_installed", package=self.cask.token)
            return status

        start = time.perf_counter()
        with bound_operation("install", package=self.cask.token):
            log.info("install_start", package=self.cask.token, version=self.cask.version)
            old_config = self.load_config()
            predecessor = self.cask if self.reinstall and self.caskroom.is_installed(self.cask) else None

            try:
                self.check_deprecate_disable()
                self.check_conflicts()
                self.caveats()
                self.fetch()
                if self.reinstall:
                    self.uninstall_existing()

                staged = self.caskroom.staged_path(self.cask)
                metadata = self.caskroom.metadata_versioned_path(self.cask)
                if self.force and staged.exists() and metadata.exists():
                    self.backup()

                if not self.quiet:
                    oh1(f"Installing Cask {self.cask}")
                if not self.quarantine:
                    opoo("macOS's Gatekeeper has been disabled for this Cask")

                self.stage()
                self.cask.config = {**self.default_config(), **old_config}
                self.install_artifacts(predecessor=predecessor)
                self.write_tab()
                self.purge_backed_up_versioned_files()
                self.transaction.advance(TransactionState.COMMIT)
            except Exception as e:
                log.error("install_failed", package=self.cask.token, error=str(e))
                self.transaction.rollback()
                self.restore_backup()
                raise

            puts(self.summary())
            elapsed = time.perf_counter() - start
            self.context.package_installed(self.cask.token, elapsed)
            log.info("install_complete", package=self.cask.token, duration_ms=int(elapsed * 1000))
        return InstallStatus.INSTALLED

    # ── Uninstall and zap ──────────────────────────────────────────────

    def load_installed_caskfile(self) -> None:
        """Switch to the definition that was used at install time."""
        saved = self.caskroom.installed_caskfile(self.cask.token)
        self.cask = self.services.repository.load_installed(saved, self.cask)
        self.cask.config = self.load_config() or self.default_config()

    def uninstall(self, successor: Package | None = None) -> None:
        with bound_operation("uninstall", package=self.cask.token):
            start = time.perf_counter()
            self.load_installed_caskfile()
            oh1(f"Uninstalling Cask {self.cask}")
            self.uninstall_artifacts(clear=True, successor=successor)
            if not self.reinstall and not self.upgrade:
                self.remove_tabfile()
                self.remove_download_sha()
                self.remove_config_file()
            self.purge_versioned_files()
            if self.force:
                self.purge_caskroom_path()
            log.info(
                "uninstall_complete",
                package=self.cask.token,
                duration_ms=int((time.perf_counter() - start) * 1000),
            )

    def zap(self) -> None:
        with bound_operation("zap", package=self.cask.token):
            self.load_installed_caskfile()
            self.uninstall_artifacts()
            zaps = [a for a in self.cask.artifacts if a.zappable]
            if not zaps:
                opoo(f"No zap stanza present for Cask '{self.cask}'")
            else:
                ohai("Dispatching zap stanza")
                ctx = self._phase_context()
                for stanza in zaps:
                    stanza.zap_phase(ctx)
            ohai(f"Removing all staged versions of Cask '{self.cask}'")
            self.purge_caskroom_path()
            log.info("zap_complete", package=self.cask.token)

    def _remove_metadata_file(self, path: Path) -> None:
        path.unlink(missing_ok=True)
        rmdir_if_possible(path.parent)

    def remove_tabfile(self) -> None:
        self._remove_metadata_file(self.caskroom.tab_path(self.cask))

    def remove_config_file(self) -> None:
        self._remove_metadata_file(self.caskroom.config_path(self.cask))

    def remove_download_sha(self) -> None:
        self._remove_metadata_file(self.caskroom.download_sha_path(self.cask))

    # ── Upgrade support ────────────────────────────────────────────────

    def start_upgrade(self, successor: Package) -> None:
        self.uninstall_artifacts(successor=successor)
        self.backup()

    def backup(self) -> None:
        """Move the staged path and versioned metadata aside."""
        staged = self.caskroom.staged_path(self.cask)
        metadata = self.caskroom.metadata_versioned_path(self.cask)
        log.info("backup_start", package=self.cask.token, path=str(staged))
        staged.rename(self.caskroom.backup_path(self.cask))
        metadata.rename(self.caskroom.backup_metadata_path(self.cask))

    def restore_backup(self) -> None:
        """Put a backup taken by ``backup`` back in place.

        Errors are logged and swallowed so they never hide the failure that
        triggered the restore.
        """
        backup = self.caskroom.backup_path(self.cask)
        backup_metadata = self.caskroom.backup_metadata_path(self.cask)
        if not backup.is_dir() or not backup_metadata.is_dir():
            return

        staged = self.caskroom.staged_path(self.cask)
        metadata = self.caskroom.metadata_versioned_path(self.cask)
        try:
            if staged.exists() or staged.is_symlink():
                gain_permissions_remove(staged)
            if metadata.exists():
                gain_permissions_remove(metadata)
            backup.rename(staged)
            backup_metadata.rename(metadata)
            log.info("backup_restored", package=self.cask.token)
        except OSError as e:
            log.error("backup_restore_failed", package=self.cask.token, error=str(e))
            opoo(f"Could not restore the backup of {self.cask}: {e}")

    def revert_upgrade(self, predecessor: Package) -> None:
        opoo(f"Reverting upgrade for Cask {self.cask}")
        self.restore_backup()
        # the restored backup is the staged state to reinstall from
        self.transaction = Transaction(self.cask.token, operation="revert", state=TransactionState.STAGE)
        self.install_artifacts(predecessor=predecessor)

    def finalize_upgrade(self) -> None:
        ohai(f"Purging files for version {self.cask.version} of Cask {self.cask}")
        self.purge_backed_up_versioned_files()
        puts(self.summary())

    # ── Purging ────────────────────────────────────────────────────────

    def purge_backed_up_versioned_files(self) -> None:
        backup = self.caskroom.backup_path(self.cask)
        if backup.exists() or backup.is_symlink():
            gain_permissions_remove(backup)

        backup_metadata = self.caskroom.backup_metadata_path(self.cask)
        if backup_metadata.is_dir():
            for child in backup_metadata.iterdir():
                gain_permissions_remove(child)
            rmdir_if_possible(backup_metadata)

    def purge_versioned_files(self) -> None:
        if not self.quiet:
            ohai(f"Purging files for version {self.cask.version} of Cask {self.cask}")

        staged = self.caskroom.staged_path(self.cask)
        if staged.exists() or staged.is_symlink():
            gain_permissions_remove(staged)

        metadata = self.caskroom.metadata_versioned_path(self.cask)
        if metadata.is_dir():
            for child in metadata.iterdir():
                gain_permissions_remove(child)
            rmdir_if_possible(metadata)

        if not self.upgrade:
            rmdir_if_possible(self.caskroom.metadata_main_container_path(self.cask))
            rmdir_if_possible(self.caskroom.caskroom_path(self.cask))

    def purge_caskroom_path(self) -> None:
        log.debug("purge_caskroom_path", package=self.cask.token)
        gain_permissions_remove(self.caskroom.caskroom_path(self.cask))
