"""Tests for link text, backup path and hashing helpers."""

import os
import tempfile
from pathlib import Path

from converge.models.state import ResolutionMode
from converge.utils.paths import (
    backup_path_for,
    content_hash,
    hash_tree,
    link_text_for,
    resolve_link_text,
    share_top_level,
)


def test_share_top_level():
    assert share_top_level(Path("/home/u/.dotfiles/a"), Path("/home/u/.config/a"))
    assert not share_top_level(Path("/etc/a"), Path("/home/u/a"))


def test_link_text_relative():
    text = link_text_for(
        Path("/home/u/.dotfiles/sway/config"),
        Path("/home/u/.config/sway/config"),
        ResolutionMode.RELATIVE,
    )
    assert text == "../../.dotfiles/sway/config"


def test_link_text_relative_under_symlinked_parent():
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(os.path.realpath(tmp))
        source = root / "home" / ".dotfiles" / "app.conf"
        source.parent.mkdir(parents=True)
        source.write_text("x")
        (root / "data" / "config").mkdir(parents=True)
        (root / "home" / ".config").symlink_to(root / "data" / "config")

        destination = root / "home" / ".config" / "app.conf"
        text = link_text_for(source, destination, ResolutionMode.RELATIVE)
        destination.symlink_to(text)

        assert not os.path.isabs(text)
        assert destination.read_text() == "x"
        assert resolve_link_text(text, destination) == source


def test_link_text_absolute():
    text = link_text_for(Path("/home/u/.dotfiles/vimrc"), Path("/home/u/.vimrc"), ResolutionMode.ABSOLUTE)
    assert text == "/home/u/.dotfiles/vimrc"


def test_link_text_auto_picks_relative_under_shared_root():
    text = link_text_for(Path("/home/u/.dotfiles/vimrc"), Path("/home/u/.vimrc"), ResolutionMode.AUTO)
    assert text == ".dotfiles/vimrc"


def test_link_text_auto_picks_absolute_across_roots():
    text = link_text_for(Path("/srv/dotfiles/motd"), Path("/etc/motd"), ResolutionMode.AUTO)
    assert text == "/srv/dotfiles/motd"


def test_link_text_follow_resolves_source_symlinks():
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(os.path.realpath(tmp))
        real = root / "real" / "vimrc"
        real.parent.mkdir()
        real.write_text("set nu\n")
        alias = root / "alias"
        alias.symlink_to(root / "real")

        text = link_text_for(alias / "vimrc", root / "home" / ".vimrc", ResolutionMode.FOLLOW)
        assert text == str(real)


def test_backup_path_relative_to_home():
    home = Path("/home/u")
    path = backup_path_for(Path("/backups"), "abc123", home / ".config/sway/config", home)
    assert path == Path("/backups/abc123/.config/sway/config")


def test_backup_path_outside_home_uses_root():
    path = backup_path_for(Path("/backups"), "abc123", Path("/etc/motd"), Path("/home/u"))
    assert path == Path("/backups/abc123/etc/motd")


def test_hash_tree_tracks_content_and_names():
    with tempfile.TemporaryDirectory() as tmp:
        a = Path(tmp) / "a"
        b = Path(tmp) / "b"
        for d in (a, b):
            (d / "sub").mkdir(parents=True)
            (d / "sub" / "f.txt").write_text("same")
        assert hash_tree(a) == hash_tree(b)

        (b / "sub" / "f.txt").write_text("different")
        assert hash_tree(a) != hash_tree(b)

        (b / "sub" / "f.txt").write_text("same")
        (b / "extra").write_text("")
        assert hash_tree(a) != hash_tree(b)


def test_content_hash_of_file():
    with tempfile.TemporaryDirectory() as tmp:
        f = Path(tmp) / "f"
        f.write_text("hello")
        assert content_hash(f) == "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
