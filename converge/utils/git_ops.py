"""Git operations — inspect the dotfiles repository."""

from __future__ import annotations

import logging
from pathlib import Path

from git import InvalidGitRepositoryError, NoSuchPathError, Repo

logger = logging.getLogger(__name__)


def repo_revision(repo_path: Path) -> str:
    """Return the HEAD commit sha of ``repo_path``, or "" when it is not a repo."""
    try:
        repo = Repo(repo_path, search_parent_directories=False)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return ""
    try:
        return repo.head.commit.hexsha
    except ValueError:
        # Freshly initialised repo without commits
        return ""


def repo_metadata(repo_path: Path) -> dict:
    """Revision, branch and dirty flag, for transaction metadata."""
    revision = repo_revision(repo_path)
    if not revision:
        return {}
    repo = Repo(repo_path)
    return {
        "revision": revision,
        "branch": str(repo.active_branch) if not repo.head.is_detached else "detached",
        "dirty": repo.is_dirty(untracked_files=False),
    }
