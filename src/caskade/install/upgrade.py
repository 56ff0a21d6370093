"""Upgrade and reinstall installed casks."""

from __future__ import annotations

import time

from caskade.core.logging import bound_operation, get_logger
from caskade.core.models import InstallStatus, Package
from caskade.core.output import oh1
from caskade.core.tab import Tab
from caskade.install.fetch import DownloadQueue
from caskade.install.installer import Installer, InstallServices, TransactionState

log = get_logger(__name__)


def installed_cask(name: str, services: InstallServices) -> Package:
    """The definition an installed cask was installed from.

    Raises:
        PackageNotFoundError: If no source knows the cask.
    """
    current = services.repository.load_cask(name)
    saved = services.caskroom.installed_caskfile(current.token)
    return services.repository.load_installed(saved, current)


def is_outdated(cask: Package, services: InstallServices) -> bool:
    """Whether an installed version differs from the one ``cask`` declares."""
    installed = services.caskroom.installed_version(cask.token)
    return installed is not None and installed != cask.version


def upgrade_cask(
    old_cask: Package,
    new_cask: Package,
    services: InstallServices,
    *,
    binaries: bool = True,
    force: bool = False,
    skip_cask_deps: bool = False,
    verbose: bool = False,
    quarantine: bool | None = None,
    require_sha: bool | None = None,
    download_queue: DownloadQueue | None = None,
) -> InstallStatus:
    """Replace ``old_cask`` with ``new_cask``.

    The old version's artifacts are removed and its files backed up before
    the new version is staged. If anything fails the new version is purged
    and the old one restored with its artifacts reinstalled.

    Returns:
        InstallStatus: ``INSTALLED`` on success.
    """
    start = time.perf_counter()
    old_tab = Tab.for_cask(old_cask, services.caskroom)

    old_installer = Installer(
        old_cask,
        services,
        binaries=binaries,
        verbose=verbose,
        force=True,
        upgrade=True,
    )
    old_installer.load_installed_caskfile()
    old_cask = old_installer.cask

    new_cask.config = {**services.artifact_dirs, **new_cask.default_config, **old_cask.config}
    new_installer = Installer(
        new_cask,
        services,
        binaries=binaries,
        verbose=verbose,
        force=force,
        skip_cask_deps=skip_cask_deps,
        upgrade=True,
        quarantine=quarantine,
        require_sha=require_sha,
        download_queue=download_queue,
        installed_as_dependency=old_tab.installed_as_dependency if old_tab else False,
        installed_on_request=old_tab.installed_on_request if old_tab else True,
    )

    started_upgrade = False
    new_artifacts_installed = False

    with bound_operation("upgrade", package=new_cask.token):
        oh1(f"Upgrading {old_cask.token} {old_cask.version} -> {new_cask.version}")
        log.info("upgrade_start", package=new_cask.token, old=old_cask.version, new=new_cask.version)
        try:
            new_installer.fetch()

            old_installer.start_upgrade(successor=new_cask)
            started_upgrade = True

            new_installer.stage()
            new_installer.install_artifacts(predecessor=old_cask)
            new_artifacts_installed = True

            new_installer.write_tab()
            new_installer.transaction.advance(TransactionState.COMMIT)
            old_installer.finalize_upgrade()
        except Exception as e:
            log.error("upgrade_failed", package=new_cask.token, error=str(e))
            new_installer.transaction.rollback()
            if new_artifacts_installed:
                new_installer.uninstall_artifacts(successor=old_cask)
            new_installer.purge_versioned_files()
            if started_upgrade:
                old_installer.revert_upgrade(predecessor=new_cask)
            raise

    elapsed = time.perf_counter() - start
    services.context.package_installed(new_cask.token, elapsed)
    log.info("upgrade_complete", package=new_cask.token, duration_ms=int(elapsed * 1000))
    return InstallStatus.INSTALLED


def reinstall_cask(
    cask: Package,
    services: InstallServices,
    *,
    binaries: bool = True,
    verbose: bool = False,
    skip_cask_deps: bool = False,
    zap: bool = False,
    quarantine: bool | None = None,
    require_sha: bool | None = None,
) -> InstallStatus:
    """Uninstall and install ``cask`` again, keeping its persisted config."""
    tab = Tab.for_cask(cask, services.caskroom)
    return Installer(
        cask,
        services,
        binaries=binaries,
        verbose=verbose,
        skip_cask_deps=skip_cask_deps,
        zap=zap,
        quarantine=quarantine,
        require_sha=require_sha,
        force=True,
        reinstall=True,
        installed_as_dependency=tab.installed_as_dependency if tab else False,
        installed_on_request=tab.installed_on_request if tab else True,
    ).install()
