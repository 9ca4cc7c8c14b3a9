"""Service backend: ``systemctl`` for user and system units."""

from __future__ import annotations

import logging
import shutil

from converge.capabilities import _process
from converge.capabilities.base import CommandResult
from converge.models.state import ServiceScope, ServiceStatus

logger = logging.getLogger(__name__)


class SystemdServiceManager:
    """Query and change unit state through ``systemctl``.

    User-scope calls run ``systemctl --user`` as the invoking user. System-scope
    mutations are prefixed with ``sudo`` when ``use_sudo`` is set.
    """

    name = "systemd"

    def __init__(self, use_sudo: bool = False, timeout: float = _process.DEFAULT_TIMEOUT):
        self.use_sudo = use_sudo
        self.timeout = timeout

    def is_available(self) -> bool:
        return shutil.which("systemctl") is not None

    def status(self, name: str, scope: ServiceScope) -> ServiceStatus:
        enabled = _process.run(self._cmd(scope, "is-enabled", name), timeout=self.timeout)
        active = _process.run(self._cmd(scope, "is-active", name), timeout=self.timeout)
        return ServiceStatus(enabled=enabled.returncode == 0, running=active.returncode == 0)

    def enable(self, name: str, scope: ServiceScope) -> CommandResult:
        return self._change(scope, "enable", name)

    def disable(self, name: str, scope: ServiceScope) -> CommandResult:
        return self._change(scope, "disable", name)

    def start(self, name: str, scope: ServiceScope) -> CommandResult:
        return self._change(scope, "start", name)

    def stop(self, name: str, scope: ServiceScope) -> CommandResult:
        return self._change(scope, "stop", name)

    def _cmd(self, scope: ServiceScope, verb: str, name: str) -> list[str]:
        if scope == ServiceScope.USER:
            return ["systemctl", "--user", verb, name]
        return ["systemctl", verb, name]

    def _change(self, scope: ServiceScope, verb: str, name: str) -> CommandResult:
        cmd = self._cmd(scope, verb, name)
        if scope == ServiceScope.SYSTEM:
            cmd = _process.with_sudo(cmd, self.use_sudo)
        result = _process.run(cmd, timeout=self.timeout)
        if result.returncode != 0:
            return CommandResult.failed(
                f"systemctl {verb} {name} failed: {_process.failure_text(result)}"
            )
        logger.info("%s %s service %s", verb, scope.value, name)
        return CommandResult.ok()
