"""Build a ``DeclaredState`` from the ``packages``/``services``/``files`` sections.

Accepted shapes::

    packages:
      git: latest              # or a list: [git, htop]
      neovim: "0.9.5"
      nano: {absent: true}
    services:
      syncthing: {}            # enabled user service, running state unmanaged
      sshd: {enabled: true, running: true, scope: system}
    files:
      sway:
        source: sway/config                # relative to general.repo_path
        destination: .config/sway/config   # relative to $HOME
        resolution: replace                # default: general.symlink_resolution
        profile: laptop                    # only declared for this profile
"""

from __future__ import annotations

from pathlib import Path

from converge.config.settings import Settings
from converge.errors import ConfigError
from converge.models.state import (
    LATEST,
    DeclaredState,
    FileSpec,
    PackageSpec,
    ResolutionMode,
    ServiceScope,
    ServiceSpec,
)
from converge.utils.paths import expand


def load_declared_state(
    data: dict,
    settings: Settings,
    profile: str | None = None,
    home: Path | None = None,
    default_scope: ServiceScope = ServiceScope.USER,
) -> DeclaredState:
    home = home if home is not None else Path.home()
    profile = profile or settings.current_profile
    return DeclaredState(
        packages=_packages(data.get("packages")),
        services=_services(data.get("services"), default_scope),
        files=_files(data.get("files"), settings, profile, home),
    )


def _packages(section) -> dict[str, PackageSpec]:
    if section is None:
        return {}
    if isinstance(section, list):
        section = {name: LATEST for name in section}
    if not isinstance(section, dict):
        raise ConfigError("'packages' must be a mapping or a list of names")

    specs: dict[str, PackageSpec] = {}
    for name, value in section.items():
        name = str(name).strip()
        if not name:
            raise ConfigError("Package names must not be empty")
        if value is None:
            specs[name] = PackageSpec(name)
        elif isinstance(value, (str, int, float)) and not isinstance(value, bool):
            specs[name] = PackageSpec(name, version=str(value))
        elif isinstance(value, dict):
            specs[name] = PackageSpec(
                name,
                version=str(value.get("version", LATEST)),
                absent=bool(value.get("absent", False)),
            )
        else:
            raise ConfigError(f"Package '{name}': expected a version string or a mapping")
    return specs


def _services(section, default_scope: ServiceScope = ServiceScope.USER) -> dict[str, ServiceSpec]:
    if section is None:
        return {}
    if isinstance(section, list):
        section = {name: {} for name in section}
    if not isinstance(section, dict):
        raise ConfigError("'services' must be a mapping or a list of names")

    specs: dict[str, ServiceSpec] = {}
    for name, value in section.items():
        name = str(name).strip()
        value = value or {}
        if not isinstance(value, dict):
            raise ConfigError(f"Service '{name}': expected a mapping")
        running = value.get("running")
        if running is not None and not isinstance(running, bool):
            raise ConfigError(f"Service '{name}': 'running' must be true, false or omitted")
        try:
            scope = ServiceScope.parse(value.get("scope", default_scope))
        except ValueError as e:
            raise ConfigError(f"Service '{name}': {e}")
        specs[name] = ServiceSpec(
            name=name,
            enabled=bool(value.get("enabled", True)),
            running=running,
            scope=scope,
        )
    return specs


def _files(section, settings: Settings, profile: str, home: Path) -> dict[str, FileSpec]:
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError("'files' must be a mapping of id -> {source, destination}")

    specs: dict[str, FileSpec] = {}
    for file_id, value in section.items():
        file_id = str(file_id)
        if not isinstance(value, dict):
            raise ConfigError(f"File '{file_id}': expected a mapping")
        wanted = value.get("profile")
        if wanted is not None and str(wanted) != profile:
            continue
        for key in ("source", "destination"):
            if not value.get(key):
                raise ConfigError(f"File '{file_id}': missing '{key}'")
        try:
            resolution = ResolutionMode.parse(value.get("resolution", settings.symlink_resolution))
        except ValueError as e:
            raise ConfigError(f"File '{file_id}': {e}")

        specs[file_id] = FileSpec(
            file_id=file_id,
            source=_anchor(value["source"], settings.repo_path),
            destination=_anchor(value["destination"], home),
            resolution=resolution,
        )
    return specs


def _anchor(raw, base: Path) -> Path:
    path = expand(raw)
    return path if path.is_absolute() else base / path
