"""pgbox package bootstrap.

Run a throwaway PostgreSQL server from Python without a system-wide install.
The public surface is re-exported here so callers only need ``import pgbox``.
"""
from __future__ import annotations

from .config import PostgresConfig, PostgresVersion, load_config
from .errors import (
    BinaryNotFoundError,
    ConfigError,
    DownloadFailedError,
    ExtractionFailedError,
    InitFailedError,
    PgBoxError,
    ProcessError,
    ProvisionError,
    StartFailedError,
    StopFailedError,
    SupervisorFailedError,
    UnsupportedPlatformError,
)
from .instance import EmbeddedPostgres, InstanceStatus, ServerStatus
from .provisioner import BinaryProvisioner, ProvisionResult
from .supervisor import ProcessSupervisor, SupervisorCommand, SupervisorState

__all__ = [
    "BinaryNotFoundError",
    "BinaryProvisioner",
    "ConfigError",
    "DownloadFailedError",
    "EmbeddedPostgres",
    "ExtractionFailedError",
    "InitFailedError",
    "InstanceStatus",
    "PgBoxError",
    "PostgresConfig",
    "PostgresVersion",
    "ProcessError",
    "ProcessSupervisor",
    "ProvisionError",
    "ProvisionResult",
    "ServerStatus",
    "StartFailedError",
    "StopFailedError",
    "SupervisorCommand",
    "SupervisorFailedError",
    "SupervisorState",
    "UnsupportedPlatformError",
    "__version__",
    "get_version",
    "load_config",
]

# NOTE: The version is duplicated in ``pyproject.toml``.
__version__ = "0.1.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
