"""Pick concrete backends from configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from converge.capabilities import _process
from converge.capabilities.base import FileSystemManager, PackageManager, ServiceManager
from converge.capabilities.dnf import DnfPackageManager
from converge.capabilities.filesystem import LocalFileSystemManager
from converge.capabilities.packagekit import PackageKitManager
from converge.capabilities.systemd import SystemdServiceManager

logger = logging.getLogger(__name__)

PACKAGE_BACKENDS = ("auto", "direct", "broker")


@dataclass
class Backends:
    """The three capabilities a transaction runs against."""

    packages: PackageManager
    services: ServiceManager
    files: FileSystemManager = field(default_factory=LocalFileSystemManager)
    tolerate_missing: bool = False
    """Skip operations whose backend is unavailable instead of failing validation."""


@dataclass
class BackendSelection:
    package_backend: str = "auto"
    use_sudo: bool = False
    operation_timeout: float = _process.DEFAULT_TIMEOUT
    tolerate_missing: bool = False

    def __post_init__(self):
        if self.package_backend not in PACKAGE_BACKENDS:
            raise ValueError(
                f"Unknown package backend '{self.package_backend}' "
                f"(expected one of: {', '.join(PACKAGE_BACKENDS)})"
            )

    def resolve(self) -> Backends:
        return Backends(
            packages=self._package_manager(),
            services=SystemdServiceManager(use_sudo=self.use_sudo, timeout=self.operation_timeout),
            files=LocalFileSystemManager(),
            tolerate_missing=self.tolerate_missing,
        )

    def _package_manager(self) -> PackageManager:
        direct = DnfPackageManager(use_sudo=self.use_sudo, timeout=self.operation_timeout)
        if self.package_backend == "direct":
            return direct
        broker = PackageKitManager(timeout=self.operation_timeout)
        if self.package_backend == "broker":
            return broker

        if broker.is_available():
            logger.debug("Using PackageKit package backend")
            return broker
        if not direct.is_available():
            logger.debug("Neither PackageKit nor dnf found; package operations will be unavailable")
        return direct
