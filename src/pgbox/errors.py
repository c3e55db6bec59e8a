"""Exception hierarchy shared across pgbox modules."""
from __future__ import annotations

from pathlib import Path


class PgBoxError(RuntimeError):
    """Base class for all pgbox failures."""


class ConfigError(PgBoxError):
    """Raised when configuration values are malformed.

    Always raised synchronously, before any filesystem or process work.
    """


class ProvisionError(PgBoxError):
    """Raised when PostgreSQL binaries cannot be made available."""


class UnsupportedPlatformError(ProvisionError):
    """Raised when no binary archive exists for the host platform."""


class DownloadFailedError(ProvisionError):
    """Raised when fetching the binary archive fails."""

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class ExtractionFailedError(ProvisionError):
    """Raised when unpacking an archive layer fails.

    ``output`` carries the diagnostic text of the underlying tool.
    """

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class BinaryNotFoundError(ProvisionError):
    """Raised when a required executable is missing after extraction."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


class ProcessError(PgBoxError):
    """Raised when invoking a PostgreSQL executable fails."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class InitFailedError(ProcessError):
    """Raised when ``initdb`` cannot create the data directory."""


class StartFailedError(ProcessError):
    """Raised when the server does not come up."""


class StopFailedError(ProcessError):
    """Raised when ``pg_ctl stop`` reports a failure."""


class SupervisorFailedError(ProcessError):
    """Raised when a command is sent to a supervisor in the failed state."""


__all__ = [
    "BinaryNotFoundError",
    "ConfigError",
    "DownloadFailedError",
    "ExtractionFailedError",
    "InitFailedError",
    "PgBoxError",
    "ProcessError",
    "ProvisionError",
    "StartFailedError",
    "StopFailedError",
    "SupervisorFailedError",
    "UnsupportedPlatformError",
]
