"""Operator allow/forbid policy for taps and package names."""

from __future__ import annotations

from typing import Callable, Iterable

from caskade.core.config import EnvConfig
from caskade.core.errors import PolicyViolationError
from caskade.core.logging import get_logger
from caskade.core.models import Package, PackageKind

log = get_logger(__name__)


def package_names(package: Package) -> frozenset[str]:
    """Every spelling a policy list may use for ``package``."""
    names = {package.token, package.full_name}
    if package.tap:
        names.add(f"{package.tap}/{package.token}")
    return frozenset(n.lower() for n in names)


class PolicyGatekeeper:
    """Validate packages against ``CASKADE_*`` allow/forbid settings.

    The root is always checked first so a forbidden root fails without the
    dependency graph ever being computed. ``dependencies`` is a callable so
    that an empty policy never triggers graph construction.
    """

    def __init__(self, config: EnvConfig) -> None:
        self.config = config
        self._forbidden_casks = frozenset(n.lower() for n in config.forbidden_casks)
        self._forbidden_formulae = frozenset(n.lower() for n in config.forbidden_formulae)

    @property
    def active(self) -> bool:
        return self.config.has_tap_policy or self.config.has_name_policy

    def _contact(self) -> str:
        contact = self.config.forbidden_owner_contact
        return f"\n{contact}" if contact else ""

    def _violation(self, root: Package, message: str, package: Package, variable: str) -> PolicyViolationError:
        log.warning(
            "policy_violation",
            package=root.token,
            offending=package.full_name,
            variable=variable,
        )
        return PolicyViolationError(
            f"{root.full_name}: {message}{self._contact()}",
            package=package.full_name,
            variable=variable,
            owner=self.config.forbidden_owner,
            contact=self.config.forbidden_owner_contact or None,
        )

    def _tap_reasons(self, tap: str) -> list[tuple[str, str]]:
        reasons = []
        if not self.config.tap_allowed(tap):
            reasons.append(("has not allowed this tap in `CASKADE_ALLOWED_TAPS`", "CASKADE_ALLOWED_TAPS"))
        if self.config.tap_forbidden(tap):
            reasons.append(("has forbidden this tap in `CASKADE_FORBIDDEN_TAPS`", "CASKADE_FORBIDDEN_TAPS"))
        return reasons

    def check_tap(self, root: Package, package: Package) -> None:
        if not self.config.has_tap_policy or not package.tap:
            return
        reasons = self._tap_reasons(package.tap)
        if not reasons:
            return

        owner = self.config.forbidden_owner
        if package is root:
            lead = f"The installation of {root.full_name} has the tap {package.tap}\nbut {owner} "
        else:
            lead = (
                f"The installation of {root.full_name} has a dependency {package.full_name}\n"
                f"from the {package.tap} tap but {owner} "
            )
        message = lead + " and\n".join(text for text, _ in reasons) + "."
        raise self._violation(root, message, package, reasons[-1][1])

    def forbidden_variable(self, package: Package) -> str | None:
        """The setting that forbids ``package`` by name, if any."""
        names = package_names(package)
        if package.kind is PackageKind.CASK:
            if self.config.forbid_casks:
                return "CASKADE_FORBID_CASKS"
            if names & self._forbidden_casks:
                return "CASKADE_FORBIDDEN_CASKS"
        elif names & self._forbidden_formulae:
            return "CASKADE_FORBIDDEN_FORMULAE"
        return None

    def check_name(self, root: Package, package: Package) -> None:
        if not self.config.has_name_policy:
            return
        variable = self.forbidden_variable(package)
        if variable is None:
            return

        owner = self.config.forbidden_owner
        if package is root:
            message = f"forbidden for installation by {owner} in `{variable}`."
        else:
            message = (
                f"has a dependency {package.full_name} but the\n{package.full_name} "
                f"{package.kind.value} was forbidden for installation by {owner} in `{variable}`."
            )
        raise self._violation(root, message, package, variable)

    def check(
        self,
        root: Package,
        dependencies: Callable[[], Iterable[Package]],
        skip_cask_deps: bool = False,
    ) -> None:
        """Run the tap and name checks over ``root`` and its dependencies.

        Args:
            root: The package being installed.
            dependencies: Returns the root's transitive dependencies; only
                called when a policy is configured.
            skip_cask_deps: Check the root only.

        Raises:
            PolicyViolationError: On the first offending package.
        """
        if not self.active:
            log.debug("policy_check_skipped", package=root.token)
            return

        self.check_tap(root, root)
        self.check_name(root, root)
        if skip_cask_deps:
            return

        for dep in dependencies():
            self.check_tap(root, dep)
            self.check_name(root, dep)

        log.debug("policy_check_passed", package=root.token)
