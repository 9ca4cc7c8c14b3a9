"""Path arithmetic: link texts, backup locations and content hashes."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

from converge.models.state import ResolutionMode

_CHUNK = 64 * 1024


def expand(path: str | Path) -> Path:
    """Expand ``~`` and environment variables, without resolving symlinks."""
    return Path(os.path.expandvars(os.path.expanduser(str(path))))


def share_top_level(a: Path, b: Path) -> bool:
    """True when two absolute paths live under the same top-level directory.

    ``/home/u/.dotfiles/x`` and ``/home/u/.config/x`` share ``/home``;
    ``/etc/x`` and ``/home/u/x`` do not.
    """
    a_parts = Path(os.path.abspath(a)).parts
    b_parts = Path(os.path.abspath(b)).parts
    if len(a_parts) < 2 or len(b_parts) < 2:
        return False
    return a_parts[1] == b_parts[1]


def link_text_for(source: Path, destination: Path, mode: ResolutionMode) -> str:
    """Return the text a symlink at ``destination`` should hold for ``source``.

    Not meaningful for ``REPLACE`` (no link is created); the absolute source
    path is returned so callers can still display something.
    """
    source = Path(os.path.abspath(source))
    destination = Path(os.path.abspath(destination))

    if mode == ResolutionMode.FOLLOW:
        return os.path.realpath(source)
    if mode == ResolutionMode.RELATIVE or (
        mode == ResolutionMode.AUTO and share_top_level(source, destination)
    ):
        # The kernel walks relative link text from the real parent directory
        return os.path.relpath(source, os.path.realpath(destination.parent))
    return str(source)


def resolve_link_text(link_text: str, link_path: Path) -> Path:
    """Resolve raw link text as the kernel would, relative to the link's directory."""
    target = Path(link_text)
    if not target.is_absolute():
        target = Path(os.path.abspath(link_path)).parent / target
    return Path(os.path.realpath(target))


def backup_path_for(backup_root: Path, transaction_id: str, destination: Path, home: Path) -> Path:
    """Backup location: ``<root>/<txn id>/<destination relative to home or />``."""
    destination = Path(os.path.abspath(destination))
    try:
        relative = destination.relative_to(home)
    except ValueError:
        relative = destination.relative_to(destination.anchor)
    return backup_root / transaction_id / relative


# --- Hashing ---


def hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def hash_tree(root: Path) -> str:
    """Hash a directory by relative path, entry type and content.

    Symlinks inside the tree contribute their link text, not their target.
    """
    digest = hashlib.sha256()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        rel_dir = os.path.relpath(dirpath, root)
        digest.update(f"d:{rel_dir}\0".encode())
        for name in sorted(filenames + [d for d in dirnames if os.path.islink(os.path.join(dirpath, d))]):
            full = os.path.join(dirpath, name)
            rel = os.path.join(rel_dir, name)
            if os.path.islink(full):
                digest.update(f"l:{rel}\0{os.readlink(full)}\0".encode())
            else:
                digest.update(f"f:{rel}\0{hash_file(Path(full))}\0".encode())
    return digest.hexdigest()


def content_hash(path: Path) -> str:
    return hash_tree(path) if path.is_dir() else hash_file(path)
