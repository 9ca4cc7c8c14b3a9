"""In-memory package and service backends for engine tests."""

from converge.capabilities.base import CommandResult
from converge.capabilities.filesystem import LocalFileSystemManager
from converge.capabilities.selection import Backends
from converge.models.state import LATEST, ServiceScope, ServiceStatus


class FakePackageManager:
    name = "fake-packages"

    def __init__(self, installed=None, available=True, fail_on=(), raise_on=None, conflicts=None):
        self.installed = dict(installed or {})
        self.available = available
        self.fail_on = set(fail_on)
        self.raise_on = dict(raise_on or {})  # name -> exception raised by install/remove
        self.conflicts = dict(conflicts or {})
        self.latest = {}
        self.installs_as = {}  # name -> version actually installed, whatever was asked
        self.calls = []

    def is_available(self):
        return self.available

    def list_installed(self):
        return dict(self.installed)

    def install(self, name, version):
        self.calls.append(("install", name, version))
        if name in self.raise_on:
            raise self.raise_on[name]
        if name in self.fail_on:
            return CommandResult.failed(f"cannot install {name}")
        if name in self.installs_as:
            self.installed[name] = self.installs_as[name]
        else:
            self.installed[name] = self.latest.get(name, "1.0") if version == LATEST else version
        return CommandResult.ok()

    def remove(self, name):
        self.calls.append(("remove", name))
        if name in self.raise_on:
            raise self.raise_on[name]
        if name in self.fail_on:
            return CommandResult.failed(f"cannot remove {name}")
        self.installed.pop(name, None)
        return CommandResult.ok()

    def check_conflicts(self, name):
        return list(self.conflicts.get(name, []))


class FakeServiceManager:
    name = "fake-services"

    def __init__(self, units=None, available=True, fail_on=()):
        # (name, scope) -> ServiceStatus
        self.units = dict(units or {})
        self.available = available
        self.fail_on = set(fail_on)  # (verb, name)
        self.calls = []

    def is_available(self):
        return self.available

    def status(self, name, scope):
        return self.units.get((name, scope), ServiceStatus(enabled=False, running=False))

    def _set(self, verb, name, scope, **changes):
        self.calls.append((verb, name, scope))
        if (verb, name) in self.fail_on:
            return CommandResult.failed(f"cannot {verb} {name}")
        current = self.status(name, scope)
        self.units[(name, scope)] = ServiceStatus(
            enabled=changes.get("enabled", current.enabled),
            running=changes.get("running", current.running),
        )
        return CommandResult.ok()

    def enable(self, name, scope):
        return self._set("enable", name, scope, enabled=True)

    def disable(self, name, scope):
        return self._set("disable", name, scope, enabled=False)

    def start(self, name, scope):
        return self._set("start", name, scope, running=True)

    def stop(self, name, scope):
        return self._set("stop", name, scope, running=False)


def make_backends(packages=None, services=None, tolerate_missing=False, files=None):
    return Backends(
        packages=packages if packages is not None else FakePackageManager(),
        services=services if services is not None else FakeServiceManager(),
        files=files if files is not None else LocalFileSystemManager(),
        tolerate_missing=tolerate_missing,
    )


USER = ServiceScope.USER
SYSTEM = ServiceScope.SYSTEM
