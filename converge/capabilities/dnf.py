"""Direct package backend: ``dnf`` and ``rpm`` invoked as subprocesses."""

from __future__ import annotations

import logging
import shutil

from converge.capabilities import _process
from converge.capabilities.base import CommandResult
from converge.models.state import LATEST

logger = logging.getLogger(__name__)


class DnfPackageManager:
    """Install and remove packages by running ``dnf`` directly.

    Mutations are prefixed with ``sudo`` when ``use_sudo`` is set; queries never
    are. Every call is bounded by ``timeout`` seconds.
    """

    name = "dnf"

    def __init__(self, use_sudo: bool = False, timeout: float = _process.DEFAULT_TIMEOUT):
        self.use_sudo = use_sudo
        self.timeout = timeout

    def is_available(self) -> bool:
        return shutil.which("dnf") is not None and shutil.which("rpm") is not None

    def list_installed(self) -> dict[str, str]:
        result = _process.run(
            ["rpm", "-qa", "--queryformat", "%{NAME}\t%{VERSION}\n"],
            timeout=self.timeout,
        )
        if result.returncode != 0:
            raise RuntimeError(f"rpm query failed: {_process.failure_text(result)}")

        installed: dict[str, str] = {}
        for line in result.stdout.splitlines():
            name, _, version = line.partition("\t")
            name = name.strip()
            if name and name != "gpg-pubkey":
                installed[name] = version.strip()
        return installed

    def install(self, name: str, version: str) -> CommandResult:
        spec = name if version in ("", LATEST) else f"{name}-{version}"
        return self._dnf(["install", "-y", spec])

    def remove(self, name: str) -> CommandResult:
        return self._dnf(["remove", "-y", name])

    def check_conflicts(self, name: str) -> list[str]:
        """Installed packages that ``name`` declares a conflict with."""
        result = _process.run(
            ["dnf", "repoquery", "--quiet", "--conflicts", name],
            timeout=self.timeout,
        )
        if result.returncode != 0:
            logger.warning("Conflict check for %s failed: %s", name, _process.failure_text(result))
            return []

        declared = set()
        for line in result.stdout.splitlines():
            token = line.strip().split(" ", 1)[0]
            if token:
                declared.add(token)
        if not declared:
            return []

        installed = self.list_installed()
        return sorted(n for n in declared if n in installed)

    def _dnf(self, args: list[str]) -> CommandResult:
        cmd = _process.with_sudo(["dnf", *args], self.use_sudo)
        result = _process.run(cmd, timeout=self.timeout)
        if result.returncode != 0:
            return CommandResult.failed(
                f"dnf {' '.join(args)} failed: {_process.failure_text(result)}"
            )
        return CommandResult.ok()
