"""Operations, diffs and per-operation results.

An operation is one idempotent-intent change to the live system. Each variant
knows its phase; ``StateDiff`` keeps the three phases apart so the ordering
contract (packages, then files, then services) holds by construction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import ClassVar, Union

from converge.models.state import ResolutionMode, ServiceScope


class Phase(Enum):
    PACKAGES = "packages"
    FILES = "files"
    SERVICES = "services"


# --- Package operations ---


@dataclass(frozen=True)
class InstallPackage:
    name: str
    version: str
    phase: ClassVar[Phase] = Phase.PACKAGES

    def describe(self) -> str:
        return f"install package {self.name} ({self.version})"


@dataclass(frozen=True)
class RemovePackage:
    name: str
    phase: ClassVar[Phase] = Phase.PACKAGES

    def describe(self) -> str:
        return f"remove package {self.name}"


# --- File operations ---


@dataclass(frozen=True)
class CreateSymlink:
    source: Path
    target: Path
    resolution: ResolutionMode = ResolutionMode.AUTO
    phase: ClassVar[Phase] = Phase.FILES

    def describe(self) -> str:
        verb = "copy" if self.resolution == ResolutionMode.REPLACE else "link"
        return f"{verb} {self.target} -> {self.source} ({self.resolution.value})"


@dataclass(frozen=True)
class RemoveSymlink:
    target: Path
    phase: ClassVar[Phase] = Phase.FILES

    def describe(self) -> str:
        return f"remove symlink {self.target}"


@dataclass(frozen=True)
class BackupAndReplace:
    source: Path
    target: Path
    backup_path: Path
    resolution: ResolutionMode = ResolutionMode.AUTO
    phase: ClassVar[Phase] = Phase.FILES

    def describe(self) -> str:
        return f"back up {self.target} to {self.backup_path} and replace ({self.resolution.value})"


# --- Service operations ---


@dataclass(frozen=True)
class EnableService:
    name: str
    scope: ServiceScope
    phase: ClassVar[Phase] = Phase.SERVICES

    def describe(self) -> str:
        return f"enable {self.scope.value} service {self.name}"


@dataclass(frozen=True)
class DisableService:
    name: str
    scope: ServiceScope
    phase: ClassVar[Phase] = Phase.SERVICES

    def describe(self) -> str:
        return f"disable {self.scope.value} service {self.name}"


@dataclass(frozen=True)
class StartService:
    name: str
    scope: ServiceScope
    phase: ClassVar[Phase] = Phase.SERVICES

    def describe(self) -> str:
        return f"start {self.scope.value} service {self.name}"


@dataclass(frozen=True)
class StopService:
    name: str
    scope: ServiceScope
    phase: ClassVar[Phase] = Phase.SERVICES

    def describe(self) -> str:
        return f"stop {self.scope.value} service {self.name}"


PackageOperation = Union[InstallPackage, RemovePackage]
FileOperation = Union[CreateSymlink, RemoveSymlink, BackupAndReplace]
ServiceOperation = Union[EnableService, DisableService, StartService, StopService]
Operation = Union[PackageOperation, FileOperation, ServiceOperation]

PACKAGE_OPERATIONS = (InstallPackage, RemovePackage)
FILE_OPERATIONS = (CreateSymlink, RemoveSymlink, BackupAndReplace)
SERVICE_OPERATIONS = (EnableService, DisableService, StartService, StopService)


@dataclass
class StateDiff:
    """Ordered, minimal list of operations converging actual to declared state."""

    packages: list[PackageOperation] = field(default_factory=list)
    files: list[FileOperation] = field(default_factory=list)
    services: list[ServiceOperation] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def operations(self) -> list[Operation]:
        """All operations flattened in execution order."""
        return [*self.packages, *self.files, *self.services]

    @property
    def is_empty(self) -> bool:
        return not (self.packages or self.files or self.services)

    @property
    def total_changes(self) -> int:
        return len(self.packages) + len(self.files) + len(self.services)

    def __iter__(self):
        return iter(self.operations)

    def __len__(self) -> int:
        return self.total_changes

    def summary(self) -> str:
        if self.is_empty:
            return "System is already in sync with configuration"
        return (
            f"{self.total_changes} change(s): {len(self.packages)} package, "
            f"{len(self.files)} file, {len(self.services)} service"
        )


# --- Results ---


@dataclass
class RollbackData:
    """What an operation needs to undo itself, captured just before it ran."""

    backup_path: Path | None = None
    prior_version: str | None = None
    prior_entry_kind: str | None = None  # "absent" | "symlink" | "regular"
    prior_link_target: str | None = None
    prior_enabled: bool | None = None
    prior_running: bool | None = None


@dataclass
class OperationResult:
    """Outcome of one attempted operation."""

    operation: Operation
    success: bool
    error: str | None = None
    rollback: RollbackData = field(default_factory=RollbackData)
    rolled_back: bool = False

    def to_dict(self) -> dict:
        op = self.operation
        data = {
            "operation": type(op).__name__,
            "description": op.describe(),
            "success": self.success,
            "error": self.error,
            "rolled_back": self.rolled_back,
        }
        if self.rollback.backup_path is not None:
            data["backup_path"] = str(self.rollback.backup_path)
        if self.rollback.prior_version is not None:
            data["prior_version"] = self.rollback.prior_version
        return data
