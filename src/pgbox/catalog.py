"""Catalog of published PostgreSQL binary archives.

Archives are the ``embedded-postgres-binaries`` jars published to Maven
Central. Each jar wraps a single ``.txz`` tree containing ``bin``, ``lib``
and ``share``. Everything here is string formatting; no I/O happens.
"""
from __future__ import annotations

import platform
import sys
from dataclasses import dataclass

from .errors import UnsupportedPlatformError

ARTIFACT_PREFIX = "embedded-postgres-binaries"
GROUP_PATH = "io/zonky/test/postgres"

_MACHINE_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64v8",
    "arm64": "arm64v8",
    "i386": "i386",
    "i686": "i386",
    "x86": "i386",
    "armv7l": "arm32v7",
    "ppc64le": "ppc64le",
}


@dataclass(frozen=True, slots=True)
class Platform:
    """Operating system and CPU architecture, in catalog naming."""

    os: str
    arch: str

    def __str__(self) -> str:
        return f"{self.os}-{self.arch}"


@dataclass(frozen=True, slots=True)
class PlatformEntry:
    """Per-platform layout of an extracted binary tree."""

    platform: Platform
    inner_archive: str
    initdb: str = "bin/initdb"
    pg_ctl: str = "bin/pg_ctl"


def _entry(os_name: str, arch: str, inner_arch: str) -> PlatformEntry:
    suffix = ".exe" if os_name == "windows" else ""
    return PlatformEntry(
        platform=Platform(os_name, arch),
        inner_archive=f"postgres-{os_name}-{inner_arch}.txz",
        initdb=f"bin/initdb{suffix}",
        pg_ctl=f"bin/pg_ctl{suffix}",
    )


PLATFORMS: dict[Platform, PlatformEntry] = {
    entry.platform: entry
    for entry in (
        _entry("linux", "amd64", "x86_64"),
        _entry("linux", "arm64v8", "arm_64"),
        _entry("linux", "arm32v7", "arm_32"),
        _entry("linux", "i386", "x86_32"),
        _entry("linux", "ppc64le", "ppc64le"),
        _entry("darwin", "amd64", "x86_64"),
        _entry("darwin", "arm64v8", "arm_64"),
        _entry("windows", "amd64", "x86_64"),
    )
}


def current_platform() -> Platform:
    """Return the host platform in catalog naming."""
    if sys.platform.startswith("linux"):
        os_name = "linux"
    elif sys.platform == "darwin":
        os_name = "darwin"
    elif sys.platform in {"win32", "cygwin"}:
        os_name = "windows"
    else:
        os_name = sys.platform
    machine = platform.machine().lower()
    return Platform(os_name, _MACHINE_ALIASES.get(machine, machine))


def lookup(target: Platform) -> PlatformEntry:
    """Return the catalog entry for *target*."""
    try:
        return PLATFORMS[target]
    except KeyError:
        supported = ", ".join(sorted(str(item) for item in PLATFORMS))
        raise UnsupportedPlatformError(
            f"No PostgreSQL binaries are published for {target}. Supported: {supported}."
        ) from None


def archive_file_name(os_name: str, arch: str, version: str) -> str:
    """Return the archive file name for the given platform and release."""
    _check_segment(os_name, "os")
    _check_segment(arch, "arch")
    _check_segment(version, "version")
    return f"{ARTIFACT_PREFIX}-{os_name}-{arch}-{version}.jar"


def archive_url(repository: str, os_name: str, arch: str, version: str) -> str:
    """Return the download URL for the archive below *repository*."""
    base = repository if repository.endswith("/") else f"{repository}/"
    file_name = archive_file_name(os_name, arch, version)
    return f"{base}{GROUP_PATH}/{ARTIFACT_PREFIX}-{os_name}-{arch}/{version}/{file_name}"


def _check_segment(value: str, label: str) -> None:
    if not value or any(char in value for char in "/\\ ") or value in {".", ".."}:
        raise ValueError(f"Invalid {label} segment for archive name: {value!r}")


__all__ = [
    "PLATFORMS",
    "Platform",
    "PlatformEntry",
    "archive_file_name",
    "archive_url",
    "current_platform",
    "lookup",
]
