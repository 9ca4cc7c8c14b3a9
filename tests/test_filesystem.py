"""Tests for the local filesystem backend."""

import os
import tempfile
from pathlib import Path

import pytest

from converge.capabilities.filesystem import LocalFileSystemManager
from converge.errors import ResourceError
from converge.models.state import EntryType, ResolutionMode


def _root(tmp):
    return Path(os.path.realpath(tmp))


def test_entry_kind():
    with tempfile.TemporaryDirectory() as tmp:
        root = _root(tmp)
        fs = LocalFileSystemManager()
        f = root / "f"
        f.write_text("x")
        link = root / "link"
        link.symlink_to("f")

        assert fs.entry_kind(root / "missing").kind == EntryType.ABSENT
        assert fs.entry_kind(f).kind == EntryType.REGULAR
        entry = fs.entry_kind(link)
        assert entry.kind == EntryType.SYMLINK
        assert entry.link_target == "f"
        assert entry.resolved == f
        assert fs.entry_kind(root).is_dir


def test_create_symlink_creates_parents():
    with tempfile.TemporaryDirectory() as tmp:
        root = _root(tmp)
        source = root / "repo" / "sway" / "config"
        source.parent.mkdir(parents=True)
        source.write_text("bar")
        target = root / "home" / ".config" / "sway" / "config"

        LocalFileSystemManager().create_symlink(source, target, ResolutionMode.RELATIVE)
        assert target.is_symlink()
        assert os.readlink(target) == "../../../repo/sway/config"
        assert target.read_text() == "bar"


def test_create_symlink_replaces_existing_link():
    with tempfile.TemporaryDirectory() as tmp:
        root = _root(tmp)
        source = root / "source"
        source.write_text("")
        target = root / "target"
        target.symlink_to("elsewhere")

        LocalFileSystemManager().create_symlink(source, target, ResolutionMode.ABSOLUTE)
        assert os.readlink(target) == str(source)
        assert sorted(p.name for p in root.iterdir()) == ["source", "target"]


def test_create_symlink_replace_mode_copies():
    with tempfile.TemporaryDirectory() as tmp:
        root = _root(tmp)
        source = root / "source"
        source.write_text("content")
        target = root / "target"
        target.symlink_to(source)

        LocalFileSystemManager().create_symlink(source, target, ResolutionMode.REPLACE)
        assert not target.is_symlink()
        assert target.read_text() == "content"


def test_remove_symlink_is_idempotent_and_refuses_files():
    with tempfile.TemporaryDirectory() as tmp:
        root = _root(tmp)
        fs = LocalFileSystemManager()
        link = root / "link"
        link.symlink_to("x")
        fs.remove_symlink(link)
        assert not os.path.lexists(link)
        fs.remove_symlink(link)

        regular = root / "regular"
        regular.write_text("")
        with pytest.raises(IsADirectoryError):
            fs.remove_symlink(regular)
        assert regular.exists()


def test_backup_and_replace_file():
    with tempfile.TemporaryDirectory() as tmp:
        root = _root(tmp)
        source = root / "source"
        source.write_text("managed")
        target = root / "target"
        target.write_text("mine")
        backup = root / "backups" / "t1" / "target"

        LocalFileSystemManager().backup_and_replace(source, target, backup, ResolutionMode.AUTO)
        assert backup.read_text() == "mine"
        assert target.is_symlink()
        assert target.read_text() == "managed"


def test_backup_and_replace_directory_then_restore():
    with tempfile.TemporaryDirectory() as tmp:
        root = _root(tmp)
        fs = LocalFileSystemManager()
        source = root / "repo" / "nvim"
        source.mkdir(parents=True)
        (source / "init.lua").write_text("managed")
        target = root / "home" / "nvim"
        (target / "lua").mkdir(parents=True)
        (target / "lua" / "mine.lua").write_text("mine")
        backup = root / "backups" / "nvim"

        fs.backup_and_replace(source, target, backup, ResolutionMode.AUTO)
        assert target.is_symlink()
        assert (backup / "lua" / "mine.lua").read_text() == "mine"

        fs.restore_backup(backup, target)
        assert not target.is_symlink()
        assert (target / "lua" / "mine.lua").read_text() == "mine"
        assert backup.exists()


def test_backup_and_replace_restores_directory_when_linking_fails(monkeypatch):
    with tempfile.TemporaryDirectory() as tmp:
        root = _root(tmp)
        fs = LocalFileSystemManager()
        source = root / "repo" / "nvim"
        source.mkdir(parents=True)
        target = root / "home" / "nvim"
        target.mkdir(parents=True)
        (target / "init.lua").write_text("mine")
        backup = root / "backups" / "nvim"
        before = fs.entry_kind(target)

        def refuse(*args, **kwargs):
            raise PermissionError("read-only filesystem")

        monkeypatch.setattr(os, "symlink", refuse)
        with pytest.raises(PermissionError):
            fs.backup_and_replace(source, target, backup, ResolutionMode.AUTO)

        assert fs.entry_kind(target) == before
        assert (target / "init.lua").read_text() == "mine"
        assert (backup / "init.lua").read_text() == "mine"


def test_entry_kind_wraps_unreadable_entries(monkeypatch):
    from converge.capabilities import filesystem

    with tempfile.TemporaryDirectory() as tmp:
        root = _root(tmp)
        secret = root / "secret"
        secret.write_text("x")

        def denied(path):
            raise PermissionError(f"Permission denied: {path}")

        monkeypatch.setattr(filesystem, "content_hash", denied)
        with pytest.raises(ResourceError, match="Cannot inspect"):
            LocalFileSystemManager().entry_kind(secret)


def test_backup_and_replace_refuses_existing_backup():
    with tempfile.TemporaryDirectory() as tmp:
        root = _root(tmp)
        (root / "source").write_text("")
        (root / "target").write_text("mine")
        (root / "backup").write_text("old")

        with pytest.raises(FileExistsError):
            LocalFileSystemManager().backup_and_replace(
                root / "source", root / "target", root / "backup", ResolutionMode.AUTO
            )
        assert (root / "target").read_text() == "mine"
        assert (root / "backup").read_text() == "old"


def test_restore_symlink_and_remove_entry():
    with tempfile.TemporaryDirectory() as tmp:
        root = _root(tmp)
        fs = LocalFileSystemManager()
        target = root / "a" / "b"
        fs.restore_symlink(target, "../previous")
        assert os.readlink(target) == "../previous"

        fs.remove_entry(target)
        assert not os.path.lexists(target)
        fs.remove_entry(target)


def test_is_writable_walks_to_existing_ancestor():
    with tempfile.TemporaryDirectory() as tmp:
        root = _root(tmp)
        fs = LocalFileSystemManager()
        assert fs.is_writable(root / "not" / "yet" / "there")

        blocker = root / "file"
        blocker.write_text("")
        # A regular file cannot become a parent directory
        assert not fs.is_writable(blocker / "child")
