"""Install many casks in one run."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Sequence

from rich.prompt import Confirm

from caskade.core.errors import BrewError
from caskade.core.logging import bound_operation, get_logger
from caskade.core.models import InstallResult, InstallStatus, Package
from caskade.core.output import console, oh1, ohai, opoo, puts
from caskade.install.fetch import DownloadQueue
from caskade.install.installer import Installer, InstallServices
from caskade.install.upgrade import installed_cask, is_outdated, upgrade_cask

log = get_logger(__name__)

DECLINED = "installation declined"
DRY_RUN = "dry run"


@dataclass
class BatchOptions:
    """Flags shared by every cask of a batch."""

    adopt: bool = False
    binaries: bool = True
    force: bool = False
    quarantine: bool | None = None
    quiet: bool = False
    require_sha: bool | None = None
    skip_cask_deps: bool = False
    verbose: bool = False
    zap: bool = False
    dry_run: bool = False
    ask: bool = False


def _plural(word: str, count: int, plural: str | None = None) -> str:
    return f"{count} {word if count == 1 else (plural or word + 's')}"


def ask_casks(casks: Sequence[Package], prompt: Callable[[str], bool] | None = None) -> bool:
    """List ``casks`` and ask whether to go on."""
    if not casks:
        return True
    label = "Cask" if len(casks) == 1 else "Casks"
    puts(f"{label} ({len(casks)}): {', '.join(str(c) for c in casks)}\n")
    prompt = prompt or (lambda q: Confirm.ask(q, console=console))
    return prompt("Do you want to proceed with the installation?")


def dry_run_report(casks: Sequence[Package], services: InstallServices) -> list[InstallResult]:
    """Print what would be installed without touching anything."""
    to_install = [c for c in casks if not services.caskroom.is_installed(c)]
    if to_install:
        ohai(f"Would install {_plural('cask', len(to_install))}:")
        puts(" ".join(c.full_name for c in to_install))

    for cask in casks:
        missing = Installer(cask, services).missing_dependencies()
        if not missing:
            continue
        ohai(f"Would install {_plural('dependency', len(missing), 'dependencies')} for {cask.full_name}:")
        puts(" ".join(p.full_name for p in missing))

    return [InstallResult(c.full_name, InstallStatus.SKIPPED, DRY_RUN) for c in casks]


def _failed(services: InstallServices, name: str, error: BrewError) -> InstallResult:
    log.error("batch_item_failed", package=name, error=str(error))
    services.context.record_failure(name, error.message)
    return InstallResult(name, InstallStatus.FAILED, error.message)


def install_casks(
    names: Sequence[str],
    services: InstallServices,
    options: BatchOptions | None = None,
    prompt: Callable[[str], bool] | None = None,
) -> list[InstallResult]:
    """Install or upgrade every named cask.

    Failures are isolated per cask: a cask that cannot be loaded, checked,
    downloaded or installed is reported and the rest carry on.

    Args:
        names: Cask tokens or full names.
        services: Shared collaborators.
        options: Flags applied to every cask.
        prompt: Confirmation callback used with ``options.ask``.

    Returns:
        One InstallResult per requested name.
    """
    options = options or BatchOptions()
    config = services.config
    start = time.perf_counter()
    results: dict[str, InstallResult] = {}
    casks: list[Package] = []
    keys: list[str] = []

    with bound_operation("install_batch", count=len(names)):
        for name in names:
            try:
                cask = services.repository.load_cask(name)
            except BrewError as e:
                results[name] = _failed(services, name, e)
                keys.append(name)
                continue
            casks.append(cask)
            keys.append(cask.full_name)

        if not casks:
            return list(results.values())

        if options.ask and not ask_casks(casks, prompt):
            log.info("batch_declined", count=len(casks))
            for cask in casks:
                results[cask.full_name] = InstallResult(cask.full_name, InstallStatus.SKIPPED, DECLINED)
            return list(results.values())

        if options.dry_run:
            for result in dry_run_report(casks, services):
                results[result.package] = result
            return list(results.values())

        installed = [c for c in casks if services.caskroom.is_installed(c)]
        new = [c for c in casks if not services.caskroom.is_installed(c)]

        queue = None
        if config.download_concurrency > 1:
            queue = DownloadQueue(config.download_concurrency, timeout=config.fetch_timeout)

        def installer(cask: Package, **overrides) -> Installer:
            flags = dict(
                adopt=options.adopt,
                binaries=options.binaries,
                force=options.force,
                quarantine=options.quarantine,
                quiet=options.quiet,
                require_sha=options.require_sha,
                skip_cask_deps=options.skip_cask_deps,
                verbose=options.verbose,
                download_queue=queue,
            )
            flags.update(overrides)
            return Installer(cask, services, **flags)

        pending: dict[str, Installer] = {}
        if queue is not None:
            fetch_casks = new + [
                c for c in installed
                if options.force or (not config.no_install_upgrade and is_outdated(c, services))
            ]
            oh1(f"Fetching downloads for: {', '.join(c.full_name for c in fetch_casks)}")
            for cask in fetch_casks:
                inst = installer(cask)
                try:
                    inst.enqueue_downloads()
                    pending[cask.full_name] = inst
                except BrewError as e:
                    results[cask.full_name] = _failed(services, cask.full_name, e)
            for name, error in queue.fetch().items():
                results[name] = _failed(services, name, error)

        for cask in new:
            if cask.full_name in results:
                continue
            try:
                status = (pending.get(cask.full_name) or installer(cask)).install()
                results[cask.full_name] = InstallResult(cask.full_name, status)
            except BrewError as e:
                results[cask.full_name] = _failed(services, cask.full_name, e)

        for cask in installed:
            if cask.full_name in results:
                continue
            try:
                if not config.no_install_upgrade and is_outdated(cask, services):
                    status = upgrade_cask(
                        installed_cask(cask.full_name, services),
                        cask,
                        services,
                        binaries=options.binaries,
                        force=options.force,
                        skip_cask_deps=options.skip_cask_deps,
                        verbose=options.verbose,
                        quarantine=options.quarantine,
                        require_sha=options.require_sha,
                        download_queue=queue,
                    )
                elif options.force:
                    status = installer(cask).install()
                else:
                    opoo(f"Cask '{cask}' is already installed.")
                    status = InstallStatus.ALREADY_INSTALLED
                results[cask.full_name] = InstallResult(cask.full_name, status)
            except BrewError as e:
                results[cask.full_name] = _failed(services, cask.full_name, e)

    log.info(
        "batch_complete",
        count=len(results),
        failed=sum(1 for r in results.values() if not r.ok),
        duration_ms=int((time.perf_counter() - start) * 1000),
    )
    return [results[k] for k in dict.fromkeys(keys)]
