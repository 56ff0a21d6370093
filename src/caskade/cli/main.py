"""CLI entry point for caskade."""

from __future__ import annotations

import sys
from typing import Optional

import typer

from caskade.backends.brew_formula import BrewFormulaBackend
from caskade.backends.download import HttpDownloadBackend
from caskade.backends.quarantine import Quarantine
from caskade.cli.renderers import dependency_table, results_table
from caskade.core.cache import Cache
from caskade.core.caskroom import Caskroom
from caskade.core.config import EnvConfig, discover_env
from caskade.core.context import RunContext
from caskade.core.errors import (
    EXIT_SYSTEM_ERROR,
    EXIT_TRANSIENT_ERROR,
    EXIT_USER_ERROR,
    BrewError,
    SystemError,
    TransientError,
    UserError,
    format_error_message,
)
from caskade.core.logging import get_logger
from caskade.core.models import InstallResult, InstallStatus
from caskade.core.output import console, ohai
from caskade.core.repo import Repository
from caskade.install.batch import DRY_RUN, BatchOptions, install_casks
from caskade.install.fetch import DownloadQueue, verify_has_sha
from caskade.install.installer import Installer, InstallServices
from caskade.install.upgrade import installed_cask, is_outdated, reinstall_cask, upgrade_cask
from caskade.providers.api import ApiSource
from caskade.providers.brew_formula import BrewFormulaSource
from caskade.providers.tap import TapSource

log = get_logger(__name__)

app = typer.Typer(help="caskade: install casks and their dependencies.")


def build_services(context: RunContext) -> InstallServices:
    """Wire the default sources and backends for this machine."""
    env = discover_env()
    config = EnvConfig.from_env()
    repository = Repository([
        TapSource(env.taps),
        ApiSource(config.api_url, Cache("api", env.cache, token=config.api_url), ttl=config.api_ttl),
        BrewFormulaSource(),
    ])
    return InstallServices(
        repository=repository,
        caskroom=Caskroom(env.caskroom),
        downloads=HttpDownloadBackend(env.cache / "downloads"),
        config=config,
        formulae=BrewFormulaBackend(),
        quarantine=Quarantine(),
        artifact_dirs=env.artifact_dirs(),
        context=context,
    )


def handle_error(error: Exception) -> int:
    """Handle errors and return appropriate exit codes.

    Args:
        error: The exception to handle.

    Returns:
        An integer exit code.
    """
    if isinstance(error, BrewError):
        log.error(
            "cli_error",
            error_type=type(error).__name__,
            message=error.message,
            context=error.context,
            exc_info=True
        )
        console.print(f"\n{format_error_message(error)}\n", style="bold red")

        if isinstance(error, TransientError):
            return EXIT_TRANSIENT_ERROR
        elif isinstance(error, UserError):
            return EXIT_USER_ERROR
        elif isinstance(error, SystemError):
            return EXIT_SYSTEM_ERROR
        else:
            return EXIT_USER_ERROR
    else:
        log.error(
            "unexpected_error",
            error=str(error),
            exc_info=True
        )
        console.print(
            f"\n⚠️ Unexpected error occurred: {error}\n",
            style="bold red"
        )
        return EXIT_SYSTEM_ERROR


def exit_for(results: list[InstallResult]) -> None:
    """Print a results table and exit non-zero if anything failed or was declined."""
    if len(results) > 1:
        console.print(results_table(results))
    if any(not r.ok for r in results):
        sys.exit(EXIT_USER_ERROR)
    if any(r.status is InstallStatus.SKIPPED and r.reason != DRY_RUN for r in results):
        sys.exit(EXIT_USER_ERROR)


def _not_installed(name: str) -> UserError:
    return UserError(f"Cask '{name}' is not installed.", context={"package": name})


@app.command()
def install(
    names: list[str] = typer.Argument(..., help="Cask tokens or tap/token names"),
    force: bool = typer.Option(False, "--force", "-f", help="Install even if already installed"),
    adopt: bool = typer.Option(False, help="Adopt existing artifacts at the target"),
    skip_cask_deps: bool = typer.Option(False, "--skip-cask-deps", help="Do not install cask dependencies"),
    binaries: bool = typer.Option(True, "--binaries/--no-binaries", help="Link binary artifacts"),
    require_sha: Optional[bool] = typer.Option(None, "--require-sha/--no-require-sha", help="Refuse casks without a checksum"),
    quarantine: Optional[bool] = typer.Option(None, "--quarantine/--no-quarantine", help="Quarantine staged files"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Only show what would be installed"),
    ask: bool = typer.Option(False, "--ask", help="Ask before installing"),
    display_times: bool = typer.Option(False, "--display-times", help="Show install times"),
) -> None:
    """Install casks along with their dependencies."""
    try:
        with RunContext(display_times=display_times) as ctx:
            services = build_services(ctx)
            options = BatchOptions(
                adopt=adopt,
                binaries=binaries,
                force=force,
                quarantine=quarantine,
                require_sha=require_sha,
                skip_cask_deps=skip_cask_deps,
                verbose=verbose,
                dry_run=dry_run,
                ask=ask,
            )
            results = install_casks(names, services, options)
        exit_for(results)
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def uninstall(
    names: list[str] = typer.Argument(..., help="Installed casks"),
    force: bool = typer.Option(False, "--force", "-f", help="Remove every installed version"),
    zap: bool = typer.Option(False, "--zap", help="Also remove files the zap stanza names"),
    binaries: bool = typer.Option(True, "--binaries/--no-binaries"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Remove installed casks."""
    try:
        with RunContext() as ctx:
            services = build_services(ctx)
            for name in names:
                cask = services.repository.load_cask(name)
                if not force and not services.caskroom.is_installed(cask):
                    raise _not_installed(name)
                installer = Installer(cask, services, force=force, binaries=binaries, verbose=verbose)
                if zap:
                    installer.zap()
                else:
                    installer.uninstall()
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def zap(names: list[str] = typer.Argument(..., help="Installed casks")) -> None:
    """Uninstall casks and remove the files their zap stanzas name."""
    try:
        with RunContext() as ctx:
            services = build_services(ctx)
            for name in names:
                Installer(services.repository.load_cask(name), services, force=True).zap()
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def reinstall(
    names: list[str] = typer.Argument(..., help="Installed casks"),
    skip_cask_deps: bool = typer.Option(False, "--skip-cask-deps"),
    zap: bool = typer.Option(False, "--zap", help="Zap before installing again"),
    quarantine: Optional[bool] = typer.Option(None, "--quarantine/--no-quarantine"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Uninstall casks and install them again."""
    try:
        with RunContext() as ctx:
            services = build_services(ctx)
            for name in names:
                cask = services.repository.load_cask(name)
                if not services.caskroom.is_installed(cask):
                    raise _not_installed(name)
                reinstall_cask(
                    cask,
                    services,
                    skip_cask_deps=skip_cask_deps,
                    zap=zap,
                    quarantine=quarantine,
                    verbose=verbose,
                )
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def upgrade(
    names: Optional[list[str]] = typer.Argument(None, help="Casks to upgrade, all outdated casks if empty"),
    force: bool = typer.Option(False, "--force", "-f"),
    skip_cask_deps: bool = typer.Option(False, "--skip-cask-deps"),
    quarantine: Optional[bool] = typer.Option(None, "--quarantine/--no-quarantine"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Upgrade outdated casks."""
    try:
        results: list[InstallResult] = []
        with RunContext() as ctx:
            services = build_services(ctx)
            tokens = names or services.caskroom.installed_tokens()
            casks = [services.repository.load_cask(t) for t in tokens]
            outdated = [c for c in casks if is_outdated(c, services)]
            if not outdated:
                ohai("No casks to upgrade")
                return

            ohai(f"Upgrading {len(outdated)} outdated package{'s' if len(outdated) != 1 else ''}:")
            for cask in outdated:
                try:
                    status = upgrade_cask(
                        installed_cask(cask.full_name, services),
                        cask,
                        services,
                        force=force,
                        skip_cask_deps=skip_cask_deps,
                        quarantine=quarantine,
                        verbose=verbose,
                    )
                    results.append(InstallResult(cask.full_name, status))
                except BrewError as e:
                    ctx.record_failure(cask.full_name, e.message)
                    results.append(InstallResult(cask.full_name, InstallStatus.FAILED, e.message))
        exit_for(results)
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def fetch(
    names: list[str] = typer.Argument(..., help="Casks to download"),
    require_sha: bool = typer.Option(False, "--require-sha"),
) -> None:
    """Download casks into the cache without installing them."""
    try:
        with RunContext() as ctx:
            services = build_services(ctx)
            queue = DownloadQueue(services.config.download_concurrency, timeout=services.config.fetch_timeout)
            for name in names:
                cask = services.repository.load_cask(name)
                verify_has_sha(cask, require_sha or services.config.require_sha)
                queue.enqueue(queue.download_for(cask, services.downloads))
            failures = queue.fetch()
            for name, error in failures.items():
                ctx.record_failure(name, error.message)
        if failures:
            sys.exit(EXIT_TRANSIENT_ERROR)
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def deps(name: str = typer.Argument(..., help="Cask to inspect")) -> None:
    """Show a cask's dependencies in install order."""
    try:
        services = build_services(RunContext())
        installer = Installer(services.repository.load_cask(name), services)
        packages = installer.dependencies()
        if not packages:
            ohai(f"{name} has no dependencies")
            return
        console.print(dependency_table(packages, installer.dependency_installed))
    except Exception as e:
        sys.exit(handle_error(e))


if __name__ == "__main__":
    app()
