"""Global, repository and assembly configuration."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError

SYSTEM_CONFIG_PATH = Path("/etc/wright/wright.toml")
LOCAL_CONFIG_PATH = Path("wright.toml")
REPOS_CONFIG_PATH = Path("/etc/wright/repos.toml")
SYSTEM_ASSEMBLY_PATH = Path("/etc/wright/assembly.toml")
LOCAL_ASSEMBLY_PATH = Path("assembly.toml")

DEFAULT_ARCH = "x86_64"
DEFAULT_PLANS_DIR = Path("/var/lib/wright/plans")
DEFAULT_COMPONENTS_DIR = Path("/var/lib/wright/components")
DEFAULT_CACHE_DIR = Path("/var/lib/wright/cache")
DEFAULT_DB_PATH = Path("/var/lib/wright/db/packages.db")
DEFAULT_LOG_DIR = Path("/var/log/wright")
DEFAULT_EXECUTORS_DIR = Path("/etc/wright/executors")
DEFAULT_ASSEMBLIES_DIR = Path("/etc/wright/assemblies")
DEFAULT_BUILD_DIR = Path("/tmp/wright-build")
DEFAULT_DOCKYARD = "strict"
DEFAULT_CFLAGS = "-O2 -pipe -march=x86-64"
DEFAULT_CXXFLAGS = "-O2 -pipe -march=x86-64"
DEFAULT_DOWNLOAD_TIMEOUT = 300
DEFAULT_RETRY_COUNT = 3

_MISSING = object()


# ---------------------------------------------------------------------------
# Value readers
# ---------------------------------------------------------------------------

def _fetch(data: dict[str, Any], key: str, default: Any, required: bool) -> Any:
    if key in data:
        return data[key]
    if required:
        raise ConfigError(f"missing field '{key}'")
    return default


def _string(data: dict[str, Any], key: str, default: Any = _MISSING, *, optional: bool = False) -> Any:
    value = _fetch(data, key, default, default is _MISSING and not optional)
    if value is None and optional:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"field '{key}' must be a string")
    return value


def _path(data: dict[str, Any], key: str, default: Any = _MISSING, *, optional: bool = False) -> Path | None:
    value = _string(data, key, default, optional=optional)
    return None if value is None else Path(value)


def _boolean(data: dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"field '{key}' must be a boolean")
    return value


def _integer(
    data: dict[str, Any], key: str, default: int | None, *, unsigned: bool = True
) -> int | None:
    value = data.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"field '{key}' must be an integer")
    if unsigned and value < 0:
        raise ConfigError(f"field '{key}' must not be negative")
    return value


def _string_list(data: dict[str, Any], key: str) -> list[str]:
    value = data.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"field '{key}' must be a list of strings")
    return list(value)


def _table(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a table")
    return value


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"failed to read {path}: {exc}") from exc
    try:
        return tomllib.loads(content)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid TOML in {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# XDG helpers
# ---------------------------------------------------------------------------

def _is_root() -> bool:
    getuid = getattr(os, "getuid", None)
    return getuid is not None and getuid() == 0


def _xdg_dir(env_var: str, home_suffix: str) -> Path | None:
    base = os.environ.get(env_var)
    if base is not None:
        return Path(base) / "wright"
    home = os.environ.get("HOME")
    if home is not None:
        return Path(home) / home_suffix / "wright"
    return None


def xdg_config_path() -> Path | None:
    """Per-user config file location, or None when running as root."""
    if _is_root():
        return None
    directory = _xdg_dir("XDG_CONFIG_HOME", ".config")
    return None if directory is None else directory / "wright.toml"


# ---------------------------------------------------------------------------
# Global configuration
# ---------------------------------------------------------------------------

@dataclass
class GeneralConfig:
    arch: str = DEFAULT_ARCH
    plans_dir: Path = DEFAULT_PLANS_DIR
    components_dir: Path = DEFAULT_COMPONENTS_DIR
    cache_dir: Path = DEFAULT_CACHE_DIR
    db_path: Path = DEFAULT_DB_PATH
    log_dir: Path = DEFAULT_LOG_DIR
    executors_dir: Path = DEFAULT_EXECUTORS_DIR
    assemblies_dir: Path = DEFAULT_ASSEMBLIES_DIR

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GeneralConfig:
        return cls(
            arch=_string(data, "arch", DEFAULT_ARCH),
            plans_dir=_path(data, "plans_dir", str(DEFAULT_PLANS_DIR)),
            components_dir=_path(data, "components_dir", str(DEFAULT_COMPONENTS_DIR)),
            cache_dir=_path(data, "cache_dir", str(DEFAULT_CACHE_DIR)),
            db_path=_path(data, "db_path", str(DEFAULT_DB_PATH)),
            log_dir=_path(data, "log_dir", str(DEFAULT_LOG_DIR)),
            executors_dir=_path(data, "executors_dir", str(DEFAULT_EXECUTORS_DIR)),
            assemblies_dir=_path(data, "assemblies_dir", str(DEFAULT_ASSEMBLIES_DIR)),
        )


def default_general() -> GeneralConfig:
    """General settings used when no [general] table is given.

    Non-root users get cache and log directories under their XDG locations.
    """
    general = GeneralConfig()
    if not _is_root():
        general.cache_dir = _xdg_dir("XDG_CACHE_HOME", ".cache") or DEFAULT_CACHE_DIR
        general.log_dir = _xdg_dir("XDG_STATE_HOME", ".local/state") or DEFAULT_LOG_DIR
    return general


@dataclass
class BuildConfig:
    build_dir: Path = DEFAULT_BUILD_DIR
    default_dockyard: str = DEFAULT_DOCKYARD
    cflags: str = DEFAULT_CFLAGS
    cxxflags: str = DEFAULT_CXXFLAGS
    strip: bool = True
    ccache: bool = False
    memory_limit: int | None = None
    cpu_time_limit: int | None = None
    timeout: int | None = None
    # Maximum concurrent dockyards; 0 means one per usable CPU.
    dockyards: int = 0
    # Static per-dockyard compiler thread budget; None lets the scheduler divide CPUs.
    nproc_per_dockyard: int | None = None
    # Hard cap on CPUs used in total; None means available CPUs minus 4 (at least 1).
    max_cpus: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BuildConfig:
        return cls(
            build_dir=_path(data, "build_dir", str(DEFAULT_BUILD_DIR)),
            default_dockyard=_string(data, "default_dockyard", DEFAULT_DOCKYARD),
            cflags=_string(data, "cflags", DEFAULT_CFLAGS),
            cxxflags=_string(data, "cxxflags", DEFAULT_CXXFLAGS),
            strip=_boolean(data, "strip", True),
            ccache=_boolean(data, "ccache", False),
            memory_limit=_integer(data, "memory_limit", None),
            cpu_time_limit=_integer(data, "cpu_time_limit", None),
            timeout=_integer(data, "timeout", None),
            dockyards=_integer(data, "dockyards", 0),
            nproc_per_dockyard=_integer(data, "nproc_per_dockyard", None),
            max_cpus=_integer(data, "max_cpus", None),
        )


@dataclass
class NetworkConfig:
    download_timeout: int = DEFAULT_DOWNLOAD_TIMEOUT
    retry_count: int = DEFAULT_RETRY_COUNT

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NetworkConfig:
        return cls(
            download_timeout=_integer(data, "download_timeout", DEFAULT_DOWNLOAD_TIMEOUT),
            retry_count=_integer(data, "retry_count", DEFAULT_RETRY_COUNT),
        )


def merge_toml(base: Any, overlay: Any) -> Any:
    """Merge two TOML values: tables merge key by key, anything else is replaced by *overlay*."""
    if isinstance(base, dict) and isinstance(overlay, dict):
        merged = dict(base)
        for key, value in overlay.items():
            merged[key] = merge_toml(merged[key], value) if key in merged else value
        return merged
    return overlay


@dataclass
class GlobalConfig:
    general: GeneralConfig = field(default_factory=default_general)
    build: BuildConfig = field(default_factory=BuildConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GlobalConfig:
        general = (
            GeneralConfig.from_dict(_table(data, "general"))
            if "general" in data
            else default_general()
        )
        return cls(
            general=general,
            build=BuildConfig.from_dict(_table(data, "build")),
            network=NetworkConfig.from_dict(_table(data, "network")),
        )

    @classmethod
    def load(cls, path: str | os.PathLike[str] | None = None) -> GlobalConfig:
        """Load configuration.

        An explicit *path* is read alone. Otherwise the system file, the
        per-user XDG file and ./wright.toml are merged in that order, later
        files overriding earlier ones; missing files are skipped.
        """
        if path is not None:
            config_path = Path(path)
            if not config_path.exists():
                return cls()
            return cls.from_dict(_read_toml(config_path))

        layers = [SYSTEM_CONFIG_PATH]
        user_path = xdg_config_path()
        if user_path is not None:
            layers.append(user_path)
        layers.append(LOCAL_CONFIG_PATH)

        merged: dict[str, Any] | None = None
        for layer in layers:
            if layer.exists():
                value = _read_toml(layer)
                merged = value if merged is None else merge_toml(merged, value)

        return cls() if merged is None else cls.from_dict(merged)


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

@dataclass
class SourceConfig:
    name: str
    kind: str
    path: Path | None = None
    url: str | None = None
    priority: int = 0
    gpg_key: Path | None = None
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceConfig:
        if not isinstance(data, dict):
            raise ConfigError("each source must be a table")
        return cls(
            name=_string(data, "name"),
            kind=_string(data, "type"),
            path=_path(data, "path", None, optional=True),
            url=_string(data, "url", None, optional=True),
            priority=_integer(data, "priority", 0, unsigned=False),
            gpg_key=_path(data, "gpg_key", None, optional=True),
            enabled=_boolean(data, "enabled", True),
        )


@dataclass
class RepoConfig:
    source: list[SourceConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RepoConfig:
        sources = data.get("source", [])
        if not isinstance(sources, list):
            raise ConfigError("'source' must be an array of tables")
        return cls(source=[SourceConfig.from_dict(entry) for entry in sources])

    @classmethod
    def load(cls, path: str | os.PathLike[str] | None = None) -> RepoConfig:
        config_path = Path(path) if path is not None else REPOS_CONFIG_PATH
        if not config_path.exists():
            return cls()
        return cls.from_dict(_read_toml(config_path))


# ---------------------------------------------------------------------------
# Assemblies
# ---------------------------------------------------------------------------

@dataclass
class Assembly:
    description: str | None = None
    plans: list[str] = field(default_factory=list)
    includes: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Assembly:
        if not isinstance(data, dict):
            raise ConfigError("each assembly must be a table")
        return cls(
            description=_string(data, "description", None, optional=True),
            plans=_string_list(data, "plans"),
            includes=_string_list(data, "includes"),
        )


@dataclass
class AssembliesConfig:
    assemblies: dict[str, Assembly] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AssembliesConfig:
        table = _table(data, "assemblies")
        return cls(assemblies={name: Assembly.from_dict(v) for name, v in table.items()})

    @classmethod
    def load_all(cls, directory: str | os.PathLike[str]) -> AssembliesConfig:
        """Merge every *.toml file in *directory*; later files win on name clashes."""
        directory = Path(directory)
        config = cls()
        if not directory.exists():
            return config
        try:
            entries = sorted(directory.iterdir())
        except OSError as exc:
            raise ConfigError(f"failed to read {directory}: {exc}") from exc
        for entry in entries:
            if entry.suffix == ".toml":
                part = cls.from_dict(_read_toml(entry))
                config.assemblies.update(part.assemblies)
        return config

    @classmethod
    def load(
        cls, path: str | os.PathLike[str] | None, plans_dir: str | os.PathLike[str]
    ) -> AssembliesConfig:
        """Load one assembly file: *path*, else ./assembly.toml, else the plans
        directory's, else the system one."""
        if path is not None:
            config_path = Path(path)
        elif LOCAL_ASSEMBLY_PATH.exists():
            config_path = LOCAL_ASSEMBLY_PATH
        elif (Path(plans_dir) / "assembly.toml").exists():
            config_path = Path(plans_dir) / "assembly.toml"
        else:
            config_path = SYSTEM_ASSEMBLY_PATH

        if not config_path.exists():
            return cls()
        return cls.from_dict(_read_toml(config_path))