"""Shell command execution with timeout and JSON parsing."""

from __future__ import annotations

import json
import os
import subprocess
import time
from pathlib import Path
from typing import Any, Optional, Protocol

from caskade.core.errors import BrewCommandError, BrewTimeoutError, retry_on_transient
from caskade.core.logging import get_logger

log = get_logger(__name__)

ENV_OVERRIDES = {
    "LANG": "C",
    "HOMEBREW_NO_COLOR": "1",
}


class CommandRunner(Protocol):
    """Callable used by artifacts and stagers to run external tools."""

    def __call__(
        self,
        *cmd: str,
        timeout: Optional[float] = ...,
        cwd: Optional[Path] = ...,
        check: bool = ...,
    ) -> tuple[str, str, int]:
        ...


def run_capture(
    *cmd: str,
    timeout: Optional[float] = 30,
    cwd: Optional[Path] = None,
    check: bool = False,
) -> tuple[str, str, int]:
    """Run a command with an optional timeout.

    Args:
        *cmd: Command and its arguments to run.
        timeout: Timeout in seconds, None to wait forever.
        cwd: Working directory.
        check: Raise BrewCommandError on a non-zero exit code.

    Returns:
        A tuple of (stdout, stderr, returncode).

    Raises:
        BrewTimeoutError: If the command times out.
        BrewCommandError: If ``check`` is set and the command fails, or the
            executable does not exist.
    """
    start = time.perf_counter()
    command = " ".join(cmd)
    log.debug("command_start", command=command, timeout=timeout)

    try:
        process = subprocess.run(
            list(cmd),
            capture_output=True,
            timeout=timeout,
            cwd=cwd,
            env={**os.environ, **ENV_OVERRIDES},
        )
    except subprocess.TimeoutExpired as e:
        duration_ms = int((time.perf_counter() - start) * 1000)
        log.error("command_timeout", command=command, timeout=timeout, duration_ms=duration_ms)
        raise BrewTimeoutError(
            f"Command timed out after {timeout}s",
            context={"command": command, "timeout": timeout, "duration_ms": duration_ms},
        ) from e
    except FileNotFoundError as e:
        log.error("command_missing", command=command)
        raise BrewCommandError(
            f"Executable not found: {cmd[0]}",
            context={"command": command, "returncode": 127, "error": str(e)},
        ) from e

    duration_ms = int((time.perf_counter() - start) * 1000)
    out = process.stdout.decode(errors="replace").strip()
    err = process.stderr.decode(errors="replace").strip()
    log.info(
        "command_complete",
        command=command,
        returncode=process.returncode,
        duration_ms=duration_ms,
    )

    if check and process.returncode != 0:
        log.error("command_failed", command=command, error=err or out, returncode=process.returncode)
        raise BrewCommandError(
            command=command,
            returncode=process.returncode,
            error=err or out,
        )

    return out, err, process.returncode


@retry_on_transient(max_retries=3, base_delay=1.0)
def run_json(*cmd: str, timeout: Optional[float] = 30) -> Any:
    """Run a command and parse its JSON output.

    Automatically retries on transient errors.

    Raises:
        BrewCommandError: If the command fails or JSON parsing fails.
        BrewTimeoutError: If the command times out (retried automatically).
    """
    start = time.perf_counter()
    out, err, code = run_capture(*cmd, timeout=timeout)
    duration_ms = int((time.perf_counter() - start) * 1000)

    if code != 0:
        log.error("command_failed", command=" ".join(cmd), error=err or out, returncode=code)
        raise BrewCommandError(
            f"Command failed with exit code {code}",
            context={
                "command": " ".join(cmd),
                "returncode": code,
                "error": err or out,
                "duration_ms": duration_ms,
            },
        )

    try:
        result = json.loads(out)
        log.debug("json_parsed", command=" ".join(cmd), duration_ms=duration_ms)
        return result
    except json.JSONDecodeError as e:
        log.error("json_parse_failed", command=" ".join(cmd), error=str(e), exc_info=True)
        raise BrewCommandError(
            "Failed to parse JSON output",
            context={
                "command": " ".join(cmd),
                "error": str(e),
                "output_preview": out[:200] if out else "",
            },
        ) from e


def run_checked(
    *cmd: str,
    timeout: Optional[float] = 600,
    cwd: Optional[Path] = None,
    check: bool = True,
) -> tuple[str, str, int]:
    """Default CommandRunner: like run_capture but fails on non-zero exit."""
    return run_capture(*cmd, timeout=timeout, cwd=cwd, check=check)
