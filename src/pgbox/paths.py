"""Filesystem layout helpers for an embedded PostgreSQL instance."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .config import PostgresConfig
from .errors import ConfigError

MARKER_FILE_NAME = "postmaster.pid"
VERSION_FILE_NAME = "PG_VERSION"


def resolve(base: str | os.PathLike[str], sub_path: str | os.PathLike[str]) -> Path:
    """Return *sub_path* as an absolute location beneath *base*.

    Absolute sub-paths are returned unchanged.
    """
    candidate = Path(sub_path)
    if candidate.is_absolute():
        return candidate
    return Path(base) / candidate


@dataclass(frozen=True, slots=True)
class PathLayout:
    """Concrete locations derived from a :class:`PostgresConfig`."""

    base: Path
    cache: Path
    runtime: Path
    data: Path
    binaries: Path

    @classmethod
    def from_config(cls, config: PostgresConfig) -> PathLayout:
        """Validate path settings and resolve them against the base path."""
        _validate(config)
        base = Path(config.base_path)
        return cls(
            base=base,
            cache=resolve(base, config.cache_path),
            runtime=resolve(base, config.runtime_path),
            data=resolve(base, config.data_path),
            binaries=resolve(base, config.binaries_path),
        )

    @property
    def marker_file(self) -> Path:
        """Return the PID file the server writes while it is running."""
        return self.data / MARKER_FILE_NAME

    @property
    def version_file(self) -> Path:
        """Return the file ``initdb`` writes into a fresh data directory."""
        return self.data / VERSION_FILE_NAME

    @property
    def logs_dir(self) -> Path:
        """Return the directory holding the structured operations log."""
        return self.runtime / "logs"

    @property
    def server_log(self) -> Path:
        """Return the file receiving ``pg_ctl`` and server output."""
        return self.runtime / "postgres.log"

    def version_dir(self, version: str) -> Path:
        """Return the version-scoped directory under the binaries root."""
        return self.binaries / version

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "base": str(self.base),
            "cache": str(self.cache),
            "runtime": str(self.runtime),
            "data": str(self.data),
            "binaries": str(self.binaries),
        }


def ensure_directories(config: PostgresConfig) -> PathLayout:
    """Create the base, runtime, cache and binaries directories if absent."""
    layout = PathLayout.from_config(config)
    for directory in (layout.base, layout.runtime, layout.cache, layout.binaries):
        directory.mkdir(parents=True, exist_ok=True)
    return layout


def _validate(config: PostgresConfig) -> None:
    base = config.base_path
    if not base or not Path(base).is_absolute():
        raise ConfigError("Base path must be specified and absolute in the configuration.")
    if not config.data_path:
        raise ConfigError("Data path must be specified in the configuration.")
    if not config.binaries_path:
        raise ConfigError("Binaries path must be specified in the configuration.")


__all__ = [
    "MARKER_FILE_NAME",
    "PathLayout",
    "VERSION_FILE_NAME",
    "ensure_directories",
    "resolve",
]
