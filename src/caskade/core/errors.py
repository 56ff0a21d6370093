"""Exceptions raised by the caskade install machinery."""

from __future__ import annotations

import functools
import time
from typing import Any, Callable, Iterable, Self, TypeVar

from caskade.core.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

# Exit Codes
EXIT_SUCCESS = 0
EXIT_USER_ERROR = 1
EXIT_SYSTEM_ERROR = 2
EXIT_TRANSIENT_ERROR = 3


class BrewError(Exception):
    """Base exception class with context propagation.

    All caskade exceptions inherit from this class. Context is a dictionary
    that accumulates relevant information as the exception propagates up
    the call stack.

    Example:
        raise BrewError("An error occurred", context={"package": "foo"})

        # Or with context propagation
        try:
            ...
        except BrewError as e:
            raise e.with_context(operation="install")
    """
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def with_context(self, **new_context: Any) -> Self:
        """Merge extra context into the exception and return it.

        Args:
            **new_context: Additional context to add to the exception.

        Returns:
            The same exception instance with merged context.
        """
        self.context.update(new_context)
        return self

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class TransientError(BrewError):
    """Errors that may go away if the operation is retried.

    Operations raising this exception should be idempotent.
    """
    pass


class UserError(BrewError):
    """Errors caused by user input or operator policy.

    These should not be retried without a change from the user.
    """
    pass


class SystemError(BrewError):
    """Errors due to the local system (file system, permissions, tools)."""
    pass


## Lookup ##

class PackageNotFoundError(UserError):
    """Requested package was not found by any source."""
    def __init__(
        self,
        message: str | None = None,
        package: str | None = None,
        kind: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if package:
            ctx["package"] = package
        if kind:
            ctx["kind"] = kind

        if message is None:
            kind_str = f" {kind}" if kind else ""
            message = f"Package{kind_str} '{package or 'unknown'}' not found"

        super().__init__(message, context=ctx)


class DefinitionInvalidError(UserError):
    """A package definition was found but could not be parsed."""
    def __init__(
        self,
        message: str | None = None,
        package: str | None = None,
        path: str | None = None,
        error: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if package:
            ctx["package"] = package
        if path:
            ctx["path"] = path
        if error:
            ctx["error"] = error

        if message is None:
            message = f"Definition for '{package or 'unknown'}' is invalid"

        super().__init__(message, context=ctx)


## Read-only checks ##

class PolicyViolationError(UserError):
    """Installation forbidden by the operator's allow/forbid configuration.

    Raised before any download or filesystem change takes place.
    """
    def __init__(
        self,
        message: str,
        package: str | None = None,
        variable: str | None = None,
        owner: str | None = None,
        contact: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if package:
            ctx["package"] = package
        if variable:
            ctx["variable"] = variable
        if owner:
            ctx["owner"] = owner
        if contact:
            ctx["contact"] = contact

        super().__init__(message, context=ctx)


class DependencyCycleError(UserError):
    """The dependency declarations of a package contain a cycle."""
    def __init__(
        self,
        package: str,
        cycle: Iterable[str] = (),
        message: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        self.cycle = list(cycle)
        ctx = context or {}
        ctx["package"] = package
        if self.cycle:
            ctx["cycle"] = ", ".join(self.cycle)

        if message is None:
            message = (
                f"'{package}' includes cyclic dependencies on: {', '.join(self.cycle)}"
            )

        super().__init__(message, context=ctx)


class SelfReferencingDependencyError(DependencyCycleError):
    """A package lists itself as a dependency."""
    def __init__(self, package: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            package,
            cycle=[package],
            message=f"'{package}' depends on itself",
            context=context,
        )


class ConflictError(UserError):
    """Another installed package conflicts with the one being installed."""
    def __init__(
        self,
        package: str,
        conflicting: str,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        ctx["package"] = package
        ctx["conflicting"] = conflicting
        super().__init__(
            f"'{package}' conflicts with '{conflicting}', which is installed",
            context=ctx,
        )


class DisabledPackageError(UserError):
    """The package definition has been disabled upstream."""
    def __init__(self, package: str, reason: str, context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        ctx["package"] = package
        ctx["reason"] = reason
        super().__init__(f"'{package}' has been disabled because {reason}", context=ctx)


class RequirementError(UserError):
    """The current machine does not satisfy a package requirement."""
    pass


## Fetch ##

class FetchError(BrewError):
    """Base class for failures while retrieving a package artifact."""
    pass


class MissingChecksumError(FetchError, UserError):
    """`require_sha` is set but the package declares no checksum."""
    def __init__(self, package: str, context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        ctx["package"] = package
        super().__init__(
            f"'{package}' does not have a sha256 checksum defined and was not installed.\n"
            "This means you have the --require-sha option set, perhaps in CASKADE_REQUIRE_SHA.",
            context=ctx,
        )


class DownloadError(FetchError, TransientError):
    """Network or HTTP failure while downloading an artifact."""
    def __init__(
        self,
        message: str | None = None,
        package: str | None = None,
        url: str | None = None,
        error: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if package:
            ctx["package"] = package
        if url:
            ctx["url"] = url
        if error:
            ctx["error"] = error

        if message is None:
            message = f"Download failed for '{package or 'unknown'}'"

        super().__init__(message, context=ctx)


class ChecksumMismatchError(FetchError, UserError):
    """Downloaded file does not match its declared checksum."""
    def __init__(
        self,
        package: str,
        expected: str,
        actual: str,
        path: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        ctx.update(package=package, expected=expected, actual=actual)
        if path:
            ctx["path"] = path
        super().__init__(f"Checksum mismatch for '{package}'", context=ctx)


## Mutation ##

class StagingError(SystemError):
    """Extraction of a downloaded container failed."""
    def __init__(
        self,
        message: str | None = None,
        package: str | None = None,
        path: str | None = None,
        error: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if package:
            ctx["package"] = package
        if path:
            ctx["path"] = path
        if error:
            ctx["error"] = error

        if message is None:
            message = f"Could not stage '{package or 'unknown'}'"

        super().__init__(message, context=ctx)


class ArtifactInstallError(SystemError):
    """An artifact could not be installed or removed."""
    def __init__(
        self,
        message: str,
        artifact: str | None = None,
        path: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if artifact:
            ctx["artifact"] = artifact
        if path:
            ctx["path"] = path
        super().__init__(message, context=ctx)


## Commands and cache ##

class BrewCommandError(TransientError):
    """An external command returned a non-zero exit code."""
    def __init__(
        self,
        message: str | None = None,
        command: str | None = None,
        returncode: int | None = None,
        error: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if command:
            ctx["command"] = command
        if returncode is not None:
            ctx["returncode"] = returncode
        if error:
            ctx["error"] = error

        if message is None:
            message = f"Command failed with exit code {returncode or 'unknown'}"

        super().__init__(message, context=ctx)


class BrewTimeoutError(TransientError):
    """An external command timed out."""
    def __init__(
        self,
        message: str | None = None,
        command: str | None = None,
        timeout: float | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if command:
            ctx["command"] = command
        if timeout is not None:
            ctx["timeout"] = timeout

        if message is None:
            message = f"Command timed out after {timeout or 'unknown'}s"

        super().__init__(message, context=ctx)


class CacheError(SystemError):
    """Errors related to cache access or corruption.

    Typically indicates:
        - File system permission issues
        - Disk space exhaustion
        - Corrupted cache files
    """
    def __init__(
        self,
        message: str | None = None,
        key: str | None = None,
        namespace: str | None = None,
        path: str | None = None,
        operation: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if key:
            ctx["key"] = key
        if namespace:
            ctx["namespace"] = namespace
        if path:
            ctx["path"] = path
        if operation:
            ctx["operation"] = operation

        if message is None:
            op_str = f"{operation} " if operation else ""
            message = f"Cache {op_str}operation failed"

        super().__init__(message, context=ctx)


def retry_on_transient(
    max_retries: int = 3,
    base_delay: float = 1.0,
    backoff: float = 2.0
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Retry a function on transient errors with exponential backoff.

    Args:
        max_retries: Maximum number of attempts before giving up.
        base_delay: Initial delay between retries in seconds.
        backoff: Multiplier for delay to implement exponential backoff.

    Returns:
        A decorator that applies the retry logic to the decorated function.

    Example:
        @retry_on_transient(max_retries=5, base_delay=2.0)
        def fetch_data():
            ...

    Note:
        - Only retries on TransientError exceptions.
        - Delays: 1s, 2s, 4s with default settings.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        def _delay_for(attempt: int, e: TransientError) -> float | None:
            if attempt == max_retries:
                log.error(
                    "retry_exhausted",
                    function=func.__name__,
                    attempts=max_retries,
                    error=str(e),
                    context=e.context,
                )
                return None

            delay = base_delay * (backoff ** (attempt - 1))
            log.warning(
                "retry_attempt",
                function=func.__name__,
                attempt=attempt,
                max_attempts=max_retries,
                delay_seconds=delay,
                error=str(e),
                context=e.context,
            )
            return delay

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(1, max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except TransientError as e:
                    delay = _delay_for(attempt, e)
                    if delay is None:
                        raise
                    time.sleep(delay)
            raise AssertionError("unreachable")

        return wrapper

    return decorator


# CLI Error Message Templates

ERROR_TEMPLATES = {
    PackageNotFoundError: (
        "❌ No cask or formula found for '{package}'\n"
        "   Check the spelling, or the taps configured under CASKADE_PREFIX"
    ),
    DefinitionInvalidError: (
        "❌ Definition for '{package}' is invalid: {error}"
    ),
    PolicyViolationError: (
        "❌ {message}"
    ),
    DependencyCycleError: (
        "❌ {message}"
    ),
    ConflictError: (
        "❌ {message}\n"
        "   To remove it, run: caskade uninstall {conflicting}"
    ),
    DisabledPackageError: (
        "❌ {message}"
    ),
    MissingChecksumError: (
        "❌ {message}"
    ),
    ChecksumMismatchError: (
        "❌ Checksum mismatch for {package}\n"
        "   Expected: {expected}\n"
        "   Actual:   {actual}\n"
        "   The download may be corrupt or the definition outdated"
    ),
    DownloadError: (
        "⚠️ Download failed for {package}: {error}\n"
        "   This may be a network issue - try again in a moment"
    ),
    StagingError: (
        "⚠️ Could not extract {package}: {error}"
    ),
    ArtifactInstallError: (
        "⚠️ {message}\n"
        "   Any partially installed files have been removed"
    ),
    BrewTimeoutError: (
        "⚠️ Command timed out after {timeout}s: {command}"
    ),
    BrewCommandError: (
        "⚠️ Command failed: {command}\n"
        "   Exit Code: {returncode}\n"
        "   Error: {error}"
    ),
    CacheError: (
        "⚠️ Cache error: {error}\n"
        "   Location: {path}"
    ),
    TransientError: (
        "⚠️ Temporary failure: {message}\n"
        "   This may resolve itself - try again in a moment"
    ),
    UserError: (
        "❌ {message}"
    ),
    SystemError: (
        "⚠️ System error: {message}\n"
        "   Please check your system configuration and try again"
    ),
    BrewError: (
        "❌ {message}"
    ),
}


def format_error_message(error: BrewError) -> str:
    """Format an error message for CLI display based on the error type.

    Args:
        error: The BrewError instance to format.

    Returns:
        A formatted string message for CLI display.
    """
    template = next(
        (ERROR_TEMPLATES[cls] for cls in type(error).__mro__ if cls in ERROR_TEMPLATES),
        ERROR_TEMPLATES[BrewError],
    )
    try:
        return template.format(message=error.message, **error.context)
    except KeyError:
        return f"❌ {error.message}"
