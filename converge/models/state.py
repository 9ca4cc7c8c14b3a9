"""Declared and actual system state.

``DeclaredState`` is what the user asked for; it is built once by the config
layer and only ever read afterwards. ``ActualState`` is what the capability
backends report right now and is thrown away after each diff.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

LATEST = "latest"
"""Version requirement that is satisfied by any installed version."""


class ResolutionMode(Enum):
    """How a managed file is linked (or copied) into place."""

    AUTO = "auto"  # Relative when source and destination share a root, else absolute
    RELATIVE = "relative"
    ABSOLUTE = "absolute"
    FOLLOW = "follow"  # Link to the fully resolved source path
    REPLACE = "replace"  # Copy instead of linking

    @classmethod
    def parse(cls, value: str | ResolutionMode) -> ResolutionMode:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(m.value for m in cls)
            raise ValueError(f"Invalid resolution mode '{value}' (expected one of: {choices})")


class ServiceScope(Enum):
    USER = "user"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: str | ServiceScope) -> ServiceScope:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Invalid service scope '{value}' (expected 'user' or 'system')")


# --- Declared state ---


@dataclass(frozen=True)
class PackageSpec:
    """A declared package.

    ``absent`` is the only way a package is ever scheduled for removal.
    """

    name: str
    version: str = LATEST
    absent: bool = False

    @property
    def wants_latest(self) -> bool:
        return self.version == LATEST


@dataclass(frozen=True)
class ServiceSpec:
    """A declared service. ``running=None`` leaves the running state unmanaged."""

    name: str
    enabled: bool = True
    running: bool | None = None
    scope: ServiceScope = ServiceScope.USER


@dataclass(frozen=True)
class FileSpec:
    """A managed file: repository ``source`` linked into ``destination``."""

    file_id: str
    source: Path
    destination: Path
    resolution: ResolutionMode = ResolutionMode.AUTO


@dataclass(frozen=True)
class DeclaredState:
    """Read-only declaration of packages, services and files.

    Mapping order is declaration order and is what makes diffs deterministic.
    """

    packages: Mapping[str, PackageSpec] = field(default_factory=dict)
    services: Mapping[str, ServiceSpec] = field(default_factory=dict)
    files: Mapping[str, FileSpec] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "packages", MappingProxyType(dict(self.packages)))
        object.__setattr__(self, "services", MappingProxyType(dict(self.services)))
        object.__setattr__(self, "files", MappingProxyType(dict(self.files)))

    @property
    def is_empty(self) -> bool:
        return not (self.packages or self.services or self.files)


# --- Actual state ---


class EntryType(Enum):
    ABSENT = "absent"
    SYMLINK = "symlink"
    REGULAR = "regular"


@dataclass(frozen=True)
class FileEntry:
    """What currently lives at a path.

    For symlinks ``link_target`` is the raw link text and ``resolved`` the fully
    resolved path it leads to. For regular files and directories
    ``content_hash`` is a sha256 over the content (a tree hash for directories).
    """

    kind: EntryType
    link_target: str | None = None
    resolved: Path | None = None
    content_hash: str | None = None
    is_dir: bool = False

    @classmethod
    def absent(cls) -> FileEntry:
        return cls(kind=EntryType.ABSENT)

    @classmethod
    def symlink(cls, link_target: str, resolved: Path) -> FileEntry:
        return cls(kind=EntryType.SYMLINK, link_target=link_target, resolved=resolved)

    @classmethod
    def regular(cls, content_hash: str, resolved: Path, is_dir: bool = False) -> FileEntry:
        return cls(
            kind=EntryType.REGULAR,
            content_hash=content_hash,
            resolved=resolved,
            is_dir=is_dir,
        )

    @property
    def exists(self) -> bool:
        return self.kind != EntryType.ABSENT

    @property
    def is_symlink(self) -> bool:
        return self.kind == EntryType.SYMLINK

    def describe(self) -> str:
        if self.kind == EntryType.SYMLINK:
            return f"symlink -> {self.link_target}"
        if self.kind == EntryType.REGULAR:
            kind = "directory" if self.is_dir else "file"
            return f"{kind} ({(self.content_hash or '')[:12]})"
        return "absent"


@dataclass(frozen=True)
class ServiceStatus:
    enabled: bool
    running: bool


@dataclass
class ActualState:
    """Live state as reported by the capability backends.

    ``packages`` / ``services`` are ``None`` when the corresponding backend is
    unavailable; the diff engine then treats every declared item as unmet and
    leaves the skip-or-fail decision to transaction validation.
    """

    packages: dict[str, str] | None = field(default_factory=dict)
    services: dict[tuple[str, ServiceScope], ServiceStatus] | None = field(
        default_factory=dict
    )
    files: dict[Path, FileEntry] = field(default_factory=dict)
    sources: dict[Path, FileEntry] = field(default_factory=dict)

    def installed_version(self, name: str) -> str | None:
        if self.packages is None:
            return None
        return self.packages.get(name)

    def service_status(self, name: str, scope: ServiceScope) -> ServiceStatus:
        if self.services is None:
            return ServiceStatus(enabled=False, running=False)
        return self.services.get((name, scope), ServiceStatus(enabled=False, running=False))

    def entry(self, path: Path) -> FileEntry:
        return self.files.get(path, FileEntry.absent())

    def source_entry(self, path: Path) -> FileEntry:
        return self.sources.get(path, FileEntry.absent())
