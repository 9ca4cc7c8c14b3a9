"""Capability contracts."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from converge.models.state import FileEntry, ResolutionMode, ServiceScope, ServiceStatus


@dataclass
class CommandResult:
    """Outcome of a mutating backend call that did not raise."""

    success: bool
    message: str = ""

    @classmethod
    def ok(cls, message: str = "") -> CommandResult:
        return cls(success=True, message=message)

    @classmethod
    def failed(cls, message: str) -> CommandResult:
        return cls(success=False, message=message)


@runtime_checkable
class PackageManager(Protocol):
    name: str

    def is_available(self) -> bool: ...

    def list_installed(self) -> dict[str, str]: ...

    def install(self, name: str, version: str) -> CommandResult: ...

    def remove(self, name: str) -> CommandResult: ...

    def check_conflicts(self, name: str) -> list[str]: ...


@runtime_checkable
class ServiceManager(Protocol):
    name: str

    def is_available(self) -> bool: ...

    def status(self, name: str, scope: ServiceScope) -> ServiceStatus: ...

    def enable(self, name: str, scope: ServiceScope) -> CommandResult: ...

    def disable(self, name: str, scope: ServiceScope) -> CommandResult: ...

    def start(self, name: str, scope: ServiceScope) -> CommandResult: ...

    def stop(self, name: str, scope: ServiceScope) -> CommandResult: ...


@runtime_checkable
class FileSystemManager(Protocol):
    def entry_kind(self, path: Path) -> FileEntry: ...

    def create_symlink(
        self, source: Path, target: Path, resolution: ResolutionMode, staged: Path | None = None
    ) -> None: ...

    def remove_symlink(self, target: Path) -> None: ...

    def backup_and_replace(
        self,
        source: Path,
        target: Path,
        backup_path: Path,
        resolution: ResolutionMode,
        staged: Path | None = None,
    ) -> None: ...

    def restore_backup(self, backup_path: Path, target: Path) -> None: ...

    def restore_symlink(self, target: Path, link_text: str) -> None: ...

    def remove_entry(self, target: Path) -> None: ...

    def is_writable(self, path: Path) -> bool: ...
