"""Local filesystem backend for managed files.

Links are always created next to their final location under a temporary name
and renamed into place, so a destination is never observed half-written.
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from pathlib import Path

from converge.errors import ResourceError
from converge.models.state import FileEntry, ResolutionMode
from converge.utils.paths import content_hash, link_text_for

logger = logging.getLogger(__name__)


def _temp_sibling(target: Path) -> Path:
    return target.parent / f".{target.name}.converge-{uuid.uuid4().hex[:8]}"


def _is_real_dir(path: Path) -> bool:
    return path.is_dir() and not path.is_symlink()


class LocalFileSystemManager:
    """Inspect and mutate managed destinations on the local filesystem."""

    def entry_kind(self, path: Path) -> FileEntry:
        """Describe what is at ``path``.

        Raises:
            ResourceError: The entry exists but cannot be read.
        """
        try:
            if path.is_symlink():
                return FileEntry.symlink(os.readlink(path), Path(os.path.realpath(path)))
            if path.exists():
                return FileEntry.regular(
                    content_hash(path), Path(os.path.realpath(path)), is_dir=path.is_dir()
                )
        except OSError as e:
            raise ResourceError(f"Cannot inspect {path}: {e}") from e
        return FileEntry.absent()

    def create_symlink(
        self,
        source: Path,
        target: Path,
        resolution: ResolutionMode,
        staged: Path | None = None,
    ) -> None:
        """Point ``target`` at ``source``; in replace mode copy it instead.

        An existing symlink at ``target`` is replaced atomically. ``staged`` is
        the pre-made copy to install for replace mode.
        """
        target.parent.mkdir(parents=True, exist_ok=True)

        if resolution == ResolutionMode.REPLACE:
            self._install_copy(staged or source, target)
            return

        link_text = link_text_for(source, target, resolution)
        self.restore_symlink(target, link_text)
        logger.info("Linked %s -> %s", target, link_text)

    def remove_symlink(self, target: Path) -> None:
        if not target.is_symlink():
            if target.exists():
                raise IsADirectoryError(f"Refusing to remove non-symlink: {target}")
            return
        target.unlink()
        logger.info("Removed symlink %s", target)

    def backup_and_replace(
        self,
        source: Path,
        target: Path,
        backup_path: Path,
        resolution: ResolutionMode,
        staged: Path | None = None,
    ) -> None:
        """Copy ``target`` to ``backup_path`` then install the managed entry."""
        if os.path.lexists(backup_path):
            raise FileExistsError(f"Backup path already exists: {backup_path}")

        backup_path.parent.mkdir(parents=True, exist_ok=True)
        if _is_real_dir(target):
            shutil.copytree(target, backup_path, symlinks=True)
            shutil.rmtree(target)
        else:
            shutil.copy2(target, backup_path, follow_symlinks=False)
        logger.info("Backed up %s to %s", target, backup_path)

        try:
            self.create_symlink(source, target, resolution, staged=staged)
        except Exception:
            logger.error("Installing %s failed, restoring it from %s", target, backup_path)
            self.restore_backup(backup_path, target)
            raise

    # --- Rollback helpers ---

    def restore_backup(self, backup_path: Path, target: Path) -> None:
        """Put a backed-up entry back at ``target``. The backup itself is kept."""
        if not os.path.lexists(backup_path):
            raise FileNotFoundError(f"Backup not found: {backup_path}")
        self._install_copy(backup_path, target)
        logger.info("Restored %s from %s", target, backup_path)

    def restore_symlink(self, target: Path, link_text: str) -> None:
        if _is_real_dir(target):
            raise IsADirectoryError(f"Cannot replace directory with a symlink: {target}")
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = _temp_sibling(target)
        os.symlink(link_text, tmp)
        try:
            os.replace(tmp, target)
        except OSError:
            tmp.unlink()
            raise

    def remove_entry(self, target: Path) -> None:
        if _is_real_dir(target):
            shutil.rmtree(target)
        elif os.path.lexists(target):
            target.unlink()

    def is_writable(self, path: Path) -> bool:
        """Whether an entry at ``path`` could be created or renamed into place."""
        candidate = path.parent
        while not candidate.exists():
            if candidate.parent == candidate:
                return False
            candidate = candidate.parent
        return candidate.is_dir() and os.access(candidate, os.W_OK | os.X_OK)

    def _install_copy(self, origin: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = _temp_sibling(target)
        if _is_real_dir(origin):
            shutil.copytree(origin, tmp, symlinks=True)
            # A directory can only be renamed over a missing path or empty dir
            self.remove_entry(target)
        else:
            shutil.copy2(origin, tmp, follow_symlinks=False)
            if _is_real_dir(target):
                shutil.rmtree(target)
        try:
            os.replace(tmp, target)
        except OSError:
            self.remove_entry(tmp)
            raise
