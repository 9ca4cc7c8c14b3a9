"""Declared-vs-actual comparison.

``StateDiffEngine.compute`` is pure: everything it needs about the live system
is already in the ``ActualState`` it is handed, so the same inputs always give
the same diff and a converged system always gives an empty one.
"""

from __future__ import annotations

import os
from pathlib import Path

from converge.models.operations import (
    BackupAndReplace,
    CreateSymlink,
    DisableService,
    EnableService,
    FileOperation,
    InstallPackage,
    RemovePackage,
    StartService,
    StateDiff,
    StopService,
)
from converge.models.state import (
    ActualState,
    DeclaredState,
    FileEntry,
    FileSpec,
    ResolutionMode,
)
from converge.utils.paths import backup_path_for


class StateDiffEngine:
    """Compute the minimal ordered operations converging actual to declared.

    Args:
        backup_root: Directory under which backups for this run are placed.
        transaction_id: Id of the transaction the diff is computed for; it
            namespaces backup paths so runs never collide.
        home: Destinations under ``home`` are backed up relative to it.
    """

    def __init__(self, backup_root: Path, transaction_id: str, home: Path | None = None):
        self.backup_root = backup_root
        self.transaction_id = transaction_id
        self.home = home if home is not None else Path.home()

    def compute(self, declared: DeclaredState, actual: ActualState) -> StateDiff:
        diff = StateDiff()
        self._diff_packages(declared, actual, diff)
        self._diff_files(declared, actual, diff)
        self._diff_services(declared, actual, diff)
        return diff

    # --- Packages ---

    def _diff_packages(self, declared: DeclaredState, actual: ActualState, diff: StateDiff) -> None:
        for spec in declared.packages.values():
            installed = actual.installed_version(spec.name)
            if spec.absent:
                if installed is not None:
                    diff.packages.append(RemovePackage(spec.name))
                continue
            if installed is None:
                diff.packages.append(InstallPackage(spec.name, spec.version))
            elif not spec.wants_latest and installed != spec.version:
                diff.packages.append(InstallPackage(spec.name, spec.version))

    # --- Files ---

    def _diff_files(self, declared: DeclaredState, actual: ActualState, diff: StateDiff) -> None:
        for spec in declared.files.values():
            source = actual.source_entry(spec.source)
            if not source.exists:
                diff.notes.append(
                    f"{spec.file_id}: source {spec.source} does not exist, skipped"
                )
                continue
            op = self._file_operation(spec, source, actual.entry(spec.destination))
            if op is not None:
                diff.files.append(op)

    def _file_operation(self, spec: FileSpec, source: FileEntry, entry: FileEntry) -> FileOperation | None:
        create = CreateSymlink(spec.source, spec.destination, spec.resolution)

        if not entry.exists:
            return create

        if spec.resolution == ResolutionMode.REPLACE:
            if entry.is_symlink:
                return create
            if entry.is_dir == source.is_dir and entry.content_hash == source.content_hash:
                return None
            return self._backup_and_replace(spec)

        if entry.is_symlink:
            return None if link_satisfies(spec, source, entry) else create

        # A real file or directory sits where a link belongs, even if identical
        return self._backup_and_replace(spec)

    def _backup_and_replace(self, spec: FileSpec) -> BackupAndReplace:
        return BackupAndReplace(
            source=spec.source,
            target=spec.destination,
            backup_path=backup_path_for(
                self.backup_root, self.transaction_id, spec.destination, self.home
            ),
            resolution=spec.resolution,
        )

    # --- Services ---

    def _diff_services(self, declared: DeclaredState, actual: ActualState, diff: StateDiff) -> None:
        for spec in declared.services.values():
            status = actual.service_status(spec.name, spec.scope)

            if spec.enabled and not status.enabled:
                diff.services.append(EnableService(spec.name, spec.scope))
            elif not spec.enabled and status.enabled:
                diff.services.append(DisableService(spec.name, spec.scope))

            if spec.running is None:
                continue
            if spec.running and not status.running:
                diff.services.append(StartService(spec.name, spec.scope))
            elif not spec.running and status.running:
                diff.services.append(StopService(spec.name, spec.scope))


def link_satisfies(spec: FileSpec, source: FileEntry, entry: FileEntry) -> bool:
    """Whether an existing symlink already honours the file's resolution mode."""
    if entry.resolved is None or entry.resolved != source.resolved:
        return False

    text = entry.link_target or ""
    mode = spec.resolution
    if mode == ResolutionMode.RELATIVE:
        return not os.path.isabs(text)
    if mode == ResolutionMode.ABSOLUTE:
        return text == os.path.abspath(spec.source)
    if mode == ResolutionMode.FOLLOW:
        return text == str(source.resolved)
    return True
