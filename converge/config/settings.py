"""Runtime settings loaded from the ``general`` section of the config file."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from converge.capabilities.selection import PACKAGE_BACKENDS, BackendSelection
from converge.errors import ConfigError
from converge.models.state import ResolutionMode
from converge.utils.paths import expand

CONFIG_ENV = "CONVERGE_CONFIG"


def _state_home() -> Path:
    return expand(os.environ.get("XDG_STATE_HOME", "~/.local/state")) / "converge"


def default_config_path() -> Path:
    override = os.environ.get(CONFIG_ENV)
    if override:
        return expand(override)
    config_home = expand(os.environ.get("XDG_CONFIG_HOME", "~/.config"))
    return config_home / "converge" / "config.yaml"


@dataclass
class Settings:
    repo_path: Path = field(default_factory=lambda: expand("~/.dotfiles"))
    backup_dir: Path = field(default_factory=lambda: expand("~/.dotfiles-backup"))
    state_dir: Path = field(default_factory=_state_home)
    lock_path: Path | None = None
    """Defaults to ``<state_dir>/converge.lock``."""
    current_profile: str = "default"
    symlink_resolution: ResolutionMode = ResolutionMode.AUTO
    package_backend: str = "auto"
    use_sudo: bool = False
    operation_timeout: float = 300
    tolerate_missing_backends: bool = False

    def __post_init__(self):
        if self.lock_path is None:
            self.lock_path = self.state_dir / "converge.lock"

    @property
    def staging_root(self) -> Path:
        return self.state_dir / "staging"

    @classmethod
    def from_dict(cls, general: dict | None) -> Settings:
        general = dict(general or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(general) - known)
        if unknown:
            raise ConfigError(f"Unknown key(s) in 'general': {', '.join(unknown)}")

        kwargs: dict = {}
        for key in ("repo_path", "backup_dir", "state_dir", "lock_path"):
            if general.get(key):
                kwargs[key] = expand(general[key])
        if "current_profile" in general:
            kwargs["current_profile"] = str(general["current_profile"])
        if "symlink_resolution" in general:
            try:
                kwargs["symlink_resolution"] = ResolutionMode.parse(general["symlink_resolution"])
            except ValueError as e:
                raise ConfigError(str(e))
        if "package_backend" in general:
            backend = str(general["package_backend"]).lower()
            if backend not in PACKAGE_BACKENDS:
                raise ConfigError(
                    f"Invalid package_backend '{backend}' (expected one of: {', '.join(PACKAGE_BACKENDS)})"
                )
            kwargs["package_backend"] = backend
        for key in ("use_sudo", "tolerate_missing_backends"):
            if key in general:
                if not isinstance(general[key], bool):
                    raise ConfigError(f"'{key}' must be true or false")
                kwargs[key] = general[key]
        if "operation_timeout" in general:
            timeout = general["operation_timeout"]
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
                raise ConfigError("'operation_timeout' must be a positive number of seconds")
            kwargs["operation_timeout"] = timeout
        return cls(**kwargs)

    def backend_selection(self) -> BackendSelection:
        return BackendSelection(
            package_backend=self.package_backend,
            use_sudo=self.use_sudo,
            operation_timeout=self.operation_timeout,
            tolerate_missing=self.tolerate_missing_backends,
        )


def read_config(path: str | Path | None = None) -> dict:
    """Parse the YAML config file into a dict. A missing default file is empty."""
    explicit = path is not None or CONFIG_ENV in os.environ
    path = expand(path) if path is not None else default_config_path()
    if not path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        return {}

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def load_settings(path: str | Path | None = None) -> tuple[Settings, dict]:
    """Return the settings and the raw config dict they came from."""
    data = read_config(path)
    general = data.get("general")
    if general is not None and not isinstance(general, dict):
        raise ConfigError("'general' must be a mapping")
    return Settings.from_dict(general), data
