"""Bounded subprocess execution shared by the command-line backends."""

from __future__ import annotations

import logging
import subprocess

from converge.errors import OperationTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300


def with_sudo(cmd: list[str], use_sudo: bool) -> list[str]:
    return ["sudo", *cmd] if use_sudo else list(cmd)


def run(cmd: list[str], timeout: float = DEFAULT_TIMEOUT) -> subprocess.CompletedProcess:
    """Run ``cmd`` capturing text output.

    Never raises on a non-zero exit; callers inspect ``returncode``. A command
    that outlives ``timeout`` raises ``OperationTimeoutError``.
    """
    pretty = " ".join(str(c) for c in cmd)
    logger.debug("Running: %s", pretty)
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise OperationTimeoutError(f"Command timed out after {timeout}s: {pretty}")
    if result.returncode != 0:
        logger.debug("  exited %s: %s", result.returncode, (result.stderr or "").strip())
    return result


def failure_text(result: subprocess.CompletedProcess) -> str:
    """Best human-readable explanation of a failed command."""
    text = (result.stderr or "").strip() or (result.stdout or "").strip()
    return text or f"exit status {result.returncode}"
