"""Configuration model and loader for pgbox.

An embedded server is described by an immutable :class:`PostgresConfig`.
Callers usually build one directly, but the CLI (and anyone who prefers
files) can use :func:`load_config`, which merges several sources:

1. Built-in defaults.
2. A YAML file (explicit path, or ``PGBOX_CONFIG_FILE``). A missing file is
   not an error.
3. Environment variables prefixed with ``PGBOX_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export PGBOX_PORT=6543
    export PGBOX_START_PARAMETERS__SHARED_BUFFERS=128MB

Values are coerced via PyYAML's ``safe_load`` so that numbers are parsed
naturally.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import cast

import yaml
from packaging.version import InvalidVersion, Version

from .errors import ConfigError

ENV_PREFIX = "PGBOX_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_REPOSITORY_URL = "https://repo1.maven.org/maven2/"

_RELEASE_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")


class PostgresVersion(Enum):
    """PostgreSQL releases with published embedded binaries."""

    V18 = "18.0.0"
    V17 = "17.5.0"
    V16 = "16.9.0"
    V15 = "15.13.0"
    V14 = "14.18.0"
    V13 = "13.21.0"

    @property
    def major(self) -> int:
        """Return the major version number."""
        return Version(self.value).major


DEFAULT_VERSION = PostgresVersion.V16


def resolve_version(value: PostgresVersion | str) -> str:
    """Return the exact upstream release string for *value*.

    Accepts an enum member, an enum name (``"V16"``/``"v16"``), a bare major
    version (``"16"``) or an explicit ``X.Y.Z`` release.
    """
    if isinstance(value, PostgresVersion):
        return value.value
    if not isinstance(value, str):
        raise ConfigError(f"Expected version to be a string. Got {type(value).__name__}.")
    text = value.strip()
    if not text:
        raise ConfigError("Version identifier must be a non-empty string.")
    upper = text.upper()
    if upper in PostgresVersion.__members__:
        return PostgresVersion[upper].value
    if text.isdigit():
        for member in PostgresVersion:
            if member.major == int(text):
                return member.value
        raise ConfigError(f"No known release for PostgreSQL major version {text}.")
    if not _RELEASE_PATTERN.match(text):
        raise ConfigError(f"Version {value!r} must be a release in X.Y.Z form.")
    try:
        Version(text)
    except InvalidVersion as exc:
        raise ConfigError(f"Invalid PostgreSQL version {value!r}.") from exc
    return text


@dataclass(frozen=True)
class PostgresConfig:
    """Settings for one embedded PostgreSQL instance.

    Path fields other than ``base_path`` are resolved against ``base_path``
    unless they are already absolute. ``base_path`` itself is validated
    lazily, right before the first filesystem operation.
    """

    version: str = DEFAULT_VERSION.value
    port: int = 5432
    database: str = "postgres"
    username: str = "postgres"
    password: str = "postgres"
    base_path: str = ""
    cache_path: str = "cache"
    runtime_path: str = "runtime"
    data_path: str = "data"
    binaries_path: str = "binaries"
    locale: str | None = None
    start_parameters: Mapping[str, str] = field(default_factory=dict)
    binary_repository_url: str = DEFAULT_REPOSITORY_URL
    start_timeout: float = 30.0
    poll_interval: float = 0.1

    def __post_init__(self) -> None:
        """Normalise and validate field values."""
        object.__setattr__(self, "version", resolve_version(cast(str, self.version)))
        for name in ("base_path", "cache_path", "runtime_path", "data_path", "binaries_path"):
            value = getattr(self, name)
            if isinstance(value, os.PathLike):
                object.__setattr__(self, name, os.fspath(value))
            elif not isinstance(value, str):
                raise ConfigError(f"Expected {name} to be a path string. Got {value!r}.")

        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ConfigError(f"Expected port to be an integer. Got {self.port!r}.")
        if not 1 <= self.port <= 65535:
            raise ConfigError(f"port must be between 1 and 65535. Got {self.port}.")

        for name in ("database", "username"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"{name} must be a non-empty string.")

        parameters = _as_dict(self.start_parameters, "start_parameters")
        normalised = {key: str(parameters[key]) for key in sorted(parameters)}
        object.__setattr__(self, "start_parameters", MappingProxyType(normalised))

        url = self.binary_repository_url.strip() or DEFAULT_REPOSITORY_URL
        if not url.endswith("/"):
            url = f"{url}/"
        object.__setattr__(self, "binary_repository_url", url)

        object.__setattr__(
            self,
            "start_timeout",
            _expect_positive_float(self.start_timeout, "start_timeout", default=30.0),
        )
        object.__setattr__(
            self,
            "poll_interval",
            _expect_positive_float(self.poll_interval, "poll_interval", default=0.1),
        )

    @property
    def postgres_version(self) -> PostgresVersion | None:
        """Return the enum member for the configured release, if it is one."""
        for member in PostgresVersion:
            if member.value == self.version:
                return member
        return None

    def with_overrides(self, **changes: object) -> PostgresConfig:
        """Return a copy with *changes* applied (and re-validated)."""
        return replace(self, **changes)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "version": self.version,
            "port": self.port,
            "database": self.database,
            "username": self.username,
            "password": self.password,
            "base_path": self.base_path,
            "cache_path": self.cache_path,
            "runtime_path": self.runtime_path,
            "data_path": self.data_path,
            "binaries_path": self.binaries_path,
            "locale": self.locale,
            "start_parameters": dict(self.start_parameters),
            "binary_repository_url": self.binary_repository_url,
            "start_timeout": self.start_timeout,
            "poll_interval": self.poll_interval,
        }


DEFAULTS: dict[str, object] = {
    "version": DEFAULT_VERSION.value,
    "port": 5432,
    "database": "postgres",
    "username": "postgres",
    "password": "postgres",
    "base_path": "",
    "cache_path": "cache",
    "runtime_path": "runtime",
    "data_path": "data",
    "binaries_path": "binaries",
    "locale": None,
    "start_parameters": {},
    "binary_repository_url": DEFAULT_REPOSITORY_URL,
    "start_timeout": 30.0,
    "poll_interval": 0.1,
}

ALLOWED_KEYS = set(DEFAULTS.keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> PostgresConfig:
    """Load and merge configuration sources into a :class:`PostgresConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(config_file, resolved_env)
    if config_path is not None:
        file_values = _load_yaml_file(config_path)
        if file_values:
            _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, {key: value for key, value in overrides.items() if value is not None})

    _validate_structure(merged)
    return _build_config(merged)


def _determine_config_path(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path | None:
    if cli_override:
        return Path(cli_override).expanduser()
    if env.get(CONFIG_ENV_VAR):
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return None


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    parameters = _as_dict(raw.get("start_parameters"), "start_parameters")
    for key, value in parameters.items():
        if isinstance(value, (Mapping, list, tuple)):
            raise ConfigError(f"start_parameters.{key} must be a scalar value.")


def _build_config(raw: Mapping[str, object]) -> PostgresConfig:
    locale_value = raw.get("locale")
    locale = str(locale_value).strip() if locale_value not in (None, "") else None
    return PostgresConfig(
        version=_expect_str(raw.get("version"), "version"),
        port=_expect_int(raw.get("port"), "port", default=5432),
        database=_expect_str(raw.get("database"), "database"),
        username=_expect_str(raw.get("username"), "username"),
        password=_expect_str(raw.get("password"), "password"),
        base_path=_path_text(raw.get("base_path"), "base_path"),
        cache_path=_path_text(raw.get("cache_path"), "cache_path"),
        runtime_path=_path_text(raw.get("runtime_path"), "runtime_path"),
        data_path=_path_text(raw.get("data_path"), "data_path"),
        binaries_path=_path_text(raw.get("binaries_path"), "binaries_path"),
        locale=locale,
        start_parameters={
            key: _scalar_text(value)
            for key, value in _as_dict(raw.get("start_parameters"), "start_parameters").items()
        },
        binary_repository_url=_expect_str(
            raw.get("binary_repository_url"), "binary_repository_url"
        ),
        start_timeout=_expect_positive_float(
            raw.get("start_timeout"), "start_timeout", default=30.0
        ),
        poll_interval=_expect_positive_float(
            raw.get("poll_interval"), "poll_interval", default=0.1
        ),
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
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _scalar_text(value: object) -> str:
    if isinstance(value, bool):
        return "on" if value else "off"
    return str(value)


def _path_text(value: object, label: str) -> str:
    if value is None:
        return ""
    if isinstance(value, Path):
        return str(value.expanduser())
    if isinstance(value, str):
        return str(Path(value).expanduser()) if value else ""
    raise ConfigError(f"Cannot convert {label} value {value!r} to a path.")


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
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
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
    "CONFIG_ENV_VAR",
    "DEFAULT_REPOSITORY_URL",
    "DEFAULT_VERSION",
    "PostgresConfig",
    "PostgresVersion",
    "load_config",
    "resolve_version",
]
