"""Broker package backend: PackageKit over the D-Bus system bus.

Each call creates one PackageKit transaction object, subscribes to its
signals, invokes a single method on it and then blocks until the
``Finished`` signal arrives or the timeout runs out. From the caller's point
of view every method is an ordinary synchronous, time-bounded call.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from jeepney import DBusAddress, DBusErrorResponse, HeaderFields, MatchRule, Properties
from jeepney import message_bus, new_method_call
from jeepney.io.blocking import Proxy, open_dbus_connection
from jeepney.wrappers import unwrap_msg

from converge.capabilities import _process
from converge.capabilities.base import CommandResult
from converge.errors import BackendUnavailableError, OperationTimeoutError
from converge.models.state import LATEST

logger = logging.getLogger(__name__)

BUS_NAME = "org.freedesktop.PackageKit"
OBJECT_PATH = "/org/freedesktop/PackageKit"
TRANSACTION_INTERFACE = "org.freedesktop.PackageKit.Transaction"

# PkBitfield filter values
FILTER_NONE = 0
FILTER_INSTALLED = 1 << 2
FILTER_NOT_INSTALLED = 1 << 3
FILTER_NEWEST = 1 << 16

# PkTransactionFlag values
FLAG_NONE = 0
FLAG_SIMULATE = 1 << 2

EXIT_SUCCESS = 1
INFO_REMOVING = 13


def split_package_id(package_id: str) -> tuple[str, str]:
    """``"git;2.41.0-1.fc39;x86_64;fedora"`` -> ``("git", "2.41.0")``.

    The epoch and release are dropped so versions compare like ``rpm %{VERSION}``.
    """
    parts = package_id.split(";")
    name = parts[0]
    evr = parts[1] if len(parts) > 1 else ""
    if ":" in evr:
        evr = evr.split(":", 1)[1]
    version = evr.rsplit("-", 1)[0] if "-" in evr else evr
    return name, version


@dataclass
class JobOutcome:
    """Signals collected from one PackageKit transaction."""

    exit_code: int = 0
    packages: list[tuple[int, str]] = field(default_factory=list)  # (info, package id)
    error: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == EXIT_SUCCESS and not self.error


class PackageKitManager:
    """Package backend brokered by the PackageKit daemon."""

    name = "packagekit"

    def __init__(self, timeout: float = _process.DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._daemon = DBusAddress(OBJECT_PATH, bus_name=BUS_NAME, interface=BUS_NAME)

    def is_available(self) -> bool:
        try:
            with open_dbus_connection(bus="SYSTEM") as conn:
                reply = conn.send_and_get_reply(
                    Properties(self._daemon).get("VersionMajor"), timeout=5
                )
                unwrap_msg(reply)
            return True
        except (OSError, TimeoutError, DBusErrorResponse) as e:
            logger.debug("PackageKit not reachable: %s", e)
            return False

    def list_installed(self) -> dict[str, str]:
        outcome = self._job("GetPackages", "t", (FILTER_INSTALLED,))
        if not outcome.success:
            raise RuntimeError(f"PackageKit GetPackages failed: {outcome.error or outcome.exit_code}")
        installed: dict[str, str] = {}
        for _info, package_id in outcome.packages:
            name, version = split_package_id(package_id)
            installed[name] = version
        return installed

    def install(self, name: str, version: str) -> CommandResult:
        package_id = self._resolve_available(name, version)
        if package_id is None:
            wanted = name if version == LATEST else f"{name} {version}"
            return CommandResult.failed(f"No installable package found for {wanted}")
        outcome = self._job("InstallPackages", "tas", (FLAG_NONE, [package_id]))
        if not outcome.success:
            return CommandResult.failed(f"PackageKit install of {name} failed: {outcome.error}")
        return CommandResult.ok()

    def remove(self, name: str) -> CommandResult:
        ids = self._resolve(name, FILTER_INSTALLED)
        if not ids:
            return CommandResult.failed(f"Package {name} is not installed")
        outcome = self._job("RemovePackages", "tasbb", (FLAG_NONE, ids, False, False))
        if not outcome.success:
            return CommandResult.failed(f"PackageKit removal of {name} failed: {outcome.error}")
        return CommandResult.ok()

    def check_conflicts(self, name: str) -> list[str]:
        """Simulate the install and report installed packages it would remove."""
        package_id = self._resolve_available(name, LATEST)
        if package_id is None:
            return []
        outcome = self._job("InstallPackages", "tas", (FLAG_SIMULATE, [package_id]))
        if not outcome.success:
            logger.warning("Conflict simulation for %s failed: %s", name, outcome.error)
            return []
        return sorted(
            {split_package_id(pid)[0] for info, pid in outcome.packages if info == INFO_REMOVING}
        )

    # --- Internals ---

    def _resolve(self, name: str, filters: int) -> list[str]:
        outcome = self._job("Resolve", "tas", (filters, [name]))
        if not outcome.success:
            logger.debug("Resolve %s failed: %s", name, outcome.error)
            return []
        return [pid for _info, pid in outcome.packages if split_package_id(pid)[0] == name]

    def _resolve_available(self, name: str, version: str) -> str | None:
        if version == LATEST:
            ids = self._resolve(name, FILTER_NOT_INSTALLED | FILTER_NEWEST)
            return ids[0] if ids else None
        for package_id in self._resolve(name, FILTER_NONE):
            if split_package_id(package_id)[1] == version:
                return package_id
        return None

    def _job(self, method: str, signature: str, body: tuple) -> JobOutcome:
        """Run one PackageKit transaction method and wait for ``Finished``."""
        deadline = time.monotonic() + self.timeout
        try:
            outcome = self._wait_for_job(method, signature, body, deadline)
        except TimeoutError:
            raise OperationTimeoutError(
                f"PackageKit {method} did not finish within {self.timeout}s"
            )
        except (OSError, DBusErrorResponse) as e:
            raise BackendUnavailableError("Package", f"PackageKit {method} failed: {e}") from e
        logger.debug("PackageKit %s finished with exit %s", method, outcome.exit_code)
        return outcome

    def _wait_for_job(self, method: str, signature: str, body: tuple, deadline: float) -> JobOutcome:
        outcome = JobOutcome()
        with open_dbus_connection(bus="SYSTEM") as conn:
            reply = conn.send_and_get_reply(
                new_method_call(self._daemon, "CreateTransaction"),
                timeout=self._remaining(deadline, method),
            )
            (tx_path,) = unwrap_msg(reply)
            tx = DBusAddress(tx_path, bus_name=BUS_NAME, interface=TRANSACTION_INTERFACE)

            rule = MatchRule(type="signal", interface=TRANSACTION_INTERFACE, path=tx_path)
            Proxy(message_bus, conn).AddMatch(rule)

            with conn.filter(rule, bufsize=10_000) as queue:
                unwrap_msg(
                    conn.send_and_get_reply(
                        new_method_call(tx, method, signature, body),
                        timeout=self._remaining(deadline, method),
                    )
                )
                while True:
                    msg = conn.recv_until_filtered(
                        queue, timeout=self._remaining(deadline, method)
                    )
                    member = msg.header.fields.get(HeaderFields.member)
                    if member == "Package":
                        info, package_id, _summary = msg.body
                        outcome.packages.append((info, package_id))
                    elif member == "ErrorCode":
                        code, details = msg.body
                        outcome.error = f"{details} (code {code})"
                    elif member == "Finished":
                        outcome.exit_code = msg.body[0]
                        break
        return outcome

    def _remaining(self, deadline: float, method: str) -> float:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise OperationTimeoutError(f"PackageKit {method} did not finish within {self.timeout}s")
        return remaining
