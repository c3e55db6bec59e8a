"""Archive helpers used while provisioning binaries."""
from __future__ import annotations

import hashlib
import os
import shutil
import stat
import subprocess
import zipfile
from pathlib import Path
from typing import Protocol

from .errors import ExtractionFailedError


class Unpacker(Protocol):
    """Unpack the container at ``archive_path`` into ``destination``."""

    def unpack(self, archive_path: Path, destination: Path) -> None:
        """Raise :class:`ExtractionFailedError` on failure."""


class ZipUnpacker:
    """Unpack zip containers (the outer ``.jar``) with :mod:`zipfile`."""

    def unpack(self, archive_path: Path, destination: Path) -> None:
        """Extract every member of *archive_path* below *destination*."""
        destination.mkdir(parents=True, exist_ok=True)
        root = destination.resolve()
        try:
            with zipfile.ZipFile(archive_path) as bundle:
                for member in bundle.infolist():
                    target = (destination / member.filename).resolve()
                    if root != target and root not in target.parents:
                        raise ExtractionFailedError(
                            f"Refusing to extract {member.filename!r} outside {destination}.",
                            output=member.filename,
                        )
                    extracted = Path(bundle.extract(member, destination))
                    mode = (member.external_attr >> 16) & 0o777
                    if mode and not member.is_dir():
                        extracted.chmod(mode)
        except (zipfile.BadZipFile, OSError) as exc:
            raise ExtractionFailedError(
                f"Failed to unzip {archive_path}: {exc}",
                output=str(exc),
            ) from exc


class TarUnpacker:
    """Unpack compressed tarballs (the inner ``.txz``) with the system ``tar``."""

    def __init__(self, tar_bin: str = "tar") -> None:
        """Initialise with the ``tar`` executable to invoke."""
        self.tar_bin = tar_bin

    def unpack(self, archive_path: Path, destination: Path) -> None:
        """Extract *archive_path* into *destination*."""
        tar_bin = shutil.which(self.tar_bin)
        if tar_bin is None:
            raise ExtractionFailedError(
                f"The '{self.tar_bin}' command is required to extract PostgreSQL binaries."
            )
        destination.mkdir(parents=True, exist_ok=True)
        result = self._run(
            [tar_bin, "-xf", str(archive_path), "-C", str(destination)],
        )
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "tar command failed").strip()
            raise ExtractionFailedError(
                f"Failed to extract PostgreSQL binaries from {archive_path}: {message}",
                output=message,
            )

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess[str]:
        """Execute tar (isolated for testing)."""
        return subprocess.run(  # noqa: S603 - controlled command execution
            cmd,
            capture_output=True,
            text=True,
            check=False,
        )


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_path(archive_path: Path) -> Path:
    """Return the ``<archive>.sha256`` sidecar location."""
    return archive_path.with_name(f"{archive_path.name}.sha256")


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    target = checksum_path(archive_path)
    temp = target.with_name(f"{target.name}.tmp")
    temp.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    os.replace(temp, target)
    return target


def read_checksum_file(archive_path: Path) -> str | None:
    """Return the recorded checksum for *archive_path*, if any."""
    target = checksum_path(archive_path)
    try:
        content = target.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    digest, _, _ = content.partition(" ")
    return digest or None


def is_executable(path: Path) -> bool:
    """Return True when *path* is a regular file with an execute bit set."""
    try:
        mode = path.stat().st_mode
    except OSError:
        return False
    if not stat.S_ISREG(mode):
        return False
    if os.name == "nt":
        return True
    return bool(mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))


__all__ = [
    "TarUnpacker",
    "Unpacker",
    "ZipUnpacker",
    "checksum_path",
    "compute_checksum",
    "is_executable",
    "read_checksum_file",
    "write_checksum_file",
]
