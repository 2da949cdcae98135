"""Configuration loader for milouctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/milouctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``MILOUCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MILOUCTL_SERVICE_ACCOUNT__USER=milou
    export MILOUCTL_DETECTION__FRESH_THRESHOLD=4

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

Runtime switches that travel across a privilege drop (``MILOUCTL_VERBOSE``,
``MILOUCTL_ORIGINAL_ARGS`` and friends) share the prefix but are reserved and
never interpreted as configuration keys.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load milouctl configuration. Install with "
        "`pip install milouctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "MILOUCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    f"{ENV_PREFIX}VERBOSE",
    f"{ENV_PREFIX}DRY_RUN",
    f"{ENV_PREFIX}FORCE",
    f"{ENV_PREFIX}NON_INTERACTIVE",
    f"{ENV_PREFIX}FRESH_INSTALL",
    f"{ENV_PREFIX}UPDATE_CHECK",
    f"{ENV_PREFIX}USER_SWITCH",
    f"{ENV_PREFIX}ORIGINAL_COMMAND",
    f"{ENV_PREFIX}ORIGINAL_ARGS",
    f"{ENV_PREFIX}TOKEN_FILE",
}

# Number of fresh-server indicators that classifies a host as a fresh install.
# The value is inherited from the original installer, which never documented
# why three was chosen; keep it overridable through ``detection.fresh_threshold``.
FRESH_INDICATOR_THRESHOLD = 3

DEFAULT_CRITICAL_KEYS: tuple[str, ...] = (
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "DB_USER",
    "DB_PASSWORD",
    "REDIS_PASSWORD",
    "RABBITMQ_USER",
    "RABBITMQ_PASSWORD",
    "SESSION_SECRET",
    "ENCRYPTION_KEY",
    "JWT_SECRET",
    "ADMIN_PASSWORD",
)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ServiceAccountConfig:
    """Dedicated low-privilege account the CLI prefers to run as."""

    user: str = "milou"
    group: str = "milou"
    docker_group: str = "docker"
    home: Path | None = None
    shell: str = "/bin/bash"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "user": self.user,
            "group": self.group,
            "docker_group": self.docker_group,
            "home": str(self.home) if self.home is not None else None,
            "shell": self.shell,
        }


@dataclass(frozen=True)
class DockerConfig:
    """Container engine integration values."""

    docker_bin: str = "docker"
    container_prefix: str = "milou-"
    compose_file: Path = Path("static/docker-compose.yml")
    registry: str = "ghcr.io"
    min_version: str = "20.10.0"
    probe_timeout: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "container_prefix": self.container_prefix,
            "compose_file": str(self.compose_file),
            "registry": self.registry,
            "min_version": self.min_version,
            "probe_timeout": self.probe_timeout,
        }


@dataclass(frozen=True)
class DetectionConfig:
    """Tunables for installation state detection and CLI synchronisation."""

    fresh_threshold: int = FRESH_INDICATOR_THRESHOLD
    freshness_sample_size: int = 50

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "fresh_threshold": self.fresh_threshold,
            "freshness_sample_size": self.freshness_sample_size,
        }


@dataclass(frozen=True)
class GuardConfig:
    """Backup and rollback settings for the persisted configuration."""

    backups_dir: Path
    critical_keys: tuple[str, ...] = DEFAULT_CRITICAL_KEYS

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "backups_dir": str(self.backups_dir),
            "critical_keys": list(self.critical_keys),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for milouctl."""

    config_file: Path
    env_file: Path
    logs_dir: Path
    sudo_bin: str
    service_account: ServiceAccountConfig
    docker: DockerConfig
    detection: DetectionConfig
    guard: GuardConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "env_file": str(self.env_file),
            "logs_dir": str(self.logs_dir),
            "sudo_bin": self.sudo_bin,
            "service_account": self.service_account.to_dict(),
            "docker": self.docker.to_dict(),
            "detection": self.detection.to_dict(),
            "guard": self.guard.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/milouctl/config.yml",
    "env_file": "~/.milou/.env",
    "logs_dir": "~/.milou/logs",
    "sudo_bin": "sudo",
    "service_account": {
        "user": "milou",
        "group": "milou",
        "docker_group": "docker",
        "home": None,
        "shell": "/bin/bash",
    },
    "docker": {
        "docker_bin": "docker",
        "container_prefix": "milou-",
        "compose_file": "static/docker-compose.yml",
        "registry": "ghcr.io",
        "min_version": "20.10.0",
        "probe_timeout": 5.0,
    },
    "detection": {
        "fresh_threshold": FRESH_INDICATOR_THRESHOLD,
        "freshness_sample_size": 50,
    },
    "guard": {
        "backups_dir": None,  # derived from env_file when absent
        "critical_keys": list(DEFAULT_CRITICAL_KEYS),
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "service_account": {"user", "group", "docker_group", "home", "shell"},
    "docker": {
        "docker_bin",
        "container_prefix",
        "compose_file",
        "registry",
        "min_version",
        "probe_timeout",
    },
    "detection": {"fresh_threshold", "freshness_sample_size"},
    "guard": {"backups_dir", "critical_keys"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    try:
        if not path.exists():
            return {}
        text = path.read_text(encoding="utf-8")
    except PermissionError as exc:
        raise ConfigError(f"Config file {path} is not readable: {exc}") from exc
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    detection = _as_dict(raw.get("detection"), "detection")
    threshold = detection.get("fresh_threshold")
    if threshold is not None:
        value = _expect_int(threshold, "detection.fresh_threshold", default=3)
        if not 1 <= value <= 5:
            raise ConfigError("detection.fresh_threshold must be between 1 and 5.")
    sample = detection.get("freshness_sample_size")
    if sample is not None:
        if _expect_int(sample, "detection.freshness_sample_size", default=50) <= 0:
            raise ConfigError("detection.freshness_sample_size must be greater than zero.")

    docker = _as_dict(raw.get("docker"), "docker")
    timeout = docker.get("probe_timeout")
    if timeout is not None:
        _expect_positive_float(timeout, "docker.probe_timeout", default=5.0)

    guard = _as_dict(raw.get("guard"), "guard")
    keys = guard.get("critical_keys")
    if keys is not None:
        for index, item in enumerate(_as_sequence(keys, "guard.critical_keys")):
            if not isinstance(item, str) or not item.strip():
                raise ConfigError(
                    f"guard.critical_keys[{index}] must be a non-empty string."
                )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    env_file = _to_path(raw.get("env_file"))
    logs_dir = _to_path(raw.get("logs_dir"))

    account_mapping = _as_dict(raw.get("service_account"), "service_account")
    user = str(account_mapping.get("user") or "").strip()
    if not user:
        raise ConfigError("service_account.user must be a non-empty string.")
    group = str(account_mapping.get("group") or user).strip()
    home_value = account_mapping.get("home")
    service_account = ServiceAccountConfig(
        user=user,
        group=group,
        docker_group=str(account_mapping.get("docker_group", "docker")),
        home=_to_path(home_value) if home_value else None,
        shell=str(account_mapping.get("shell", "/bin/bash")),
    )

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    docker = DockerConfig(
        docker_bin=str(docker_mapping.get("docker_bin", "docker")),
        container_prefix=str(docker_mapping.get("container_prefix", "milou-")),
        compose_file=_to_path(docker_mapping.get("compose_file", "static/docker-compose.yml")),
        registry=str(docker_mapping.get("registry", "ghcr.io")),
        min_version=str(docker_mapping.get("min_version", "20.10.0")),
        probe_timeout=_expect_positive_float(
            docker_mapping.get("probe_timeout"), "docker.probe_timeout", default=5.0
        ),
    )

    detection_mapping = _as_dict(raw.get("detection"), "detection")
    detection = DetectionConfig(
        fresh_threshold=_expect_int(
            detection_mapping.get("fresh_threshold"),
            "detection.fresh_threshold",
            default=FRESH_INDICATOR_THRESHOLD,
        ),
        freshness_sample_size=_expect_int(
            detection_mapping.get("freshness_sample_size"),
            "detection.freshness_sample_size",
            default=50,
        ),
    )

    guard_mapping = _as_dict(raw.get("guard"), "guard")
    backups_value = guard_mapping.get("backups_dir")
    backups_dir = _to_path(backups_value) if backups_value else env_file.parent / "backups"
    keys_value = guard_mapping.get("critical_keys")
    if keys_value is None:
        critical_keys = DEFAULT_CRITICAL_KEYS
    else:
        critical_keys = tuple(
            str(item).strip() for item in _as_sequence(keys_value, "guard.critical_keys")
        )
    guard = GuardConfig(backups_dir=backups_dir, critical_keys=critical_keys)

    return AppConfig(
        config_file=config_file,
        env_file=env_file,
        logs_dir=logs_dir,
        sudo_bin=str(raw.get("sudo_bin", "sudo")),
        service_account=service_account,
        docker=docker,
        detection=detection,
        guard=guard,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DEFAULT_CRITICAL_KEYS",
    "DetectionConfig",
    "DockerConfig",
    "FRESH_INDICATOR_THRESHOLD",
    "GuardConfig",
    "ServiceAccountConfig",
    "load_config",
]
