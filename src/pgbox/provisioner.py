"""Download and unpack PostgreSQL binaries on demand."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .archive import (
    TarUnpacker,
    Unpacker,
    ZipUnpacker,
    checksum_path,
    compute_checksum,
    read_checksum_file,
    write_checksum_file,
)
from .catalog import (
    Platform,
    PlatformEntry,
    archive_file_name,
    archive_url,
    current_platform,
    lookup,
)
from .config import PostgresConfig
from .errors import BinaryNotFoundError, ExtractionFailedError
from .fetch import Fetcher, HttpFetcher
from .paths import PathLayout, ensure_directories

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProvisionResult:
    """Outcome of :meth:`BinaryProvisioner.ensure_binaries`."""

    version: str
    platform: Platform
    archive: Path
    install_dir: Path
    initdb: Path
    pg_ctl: Path
    downloaded: bool
    unpacked: bool
    extracted: bool

    @property
    def changed(self) -> bool:
        """Return True when any step touched the filesystem."""
        return self.downloaded or self.unpacked or self.extracted

    @property
    def bin_dir(self) -> Path:
        """Return the directory holding the PostgreSQL executables."""
        return self.pg_ctl.parent


class BinaryProvisioner:
    """Make the PostgreSQL executables for one configuration available.

    Every step checks the filesystem first, so calling
    :meth:`ensure_binaries` repeatedly only does work that is still missing.
    """

    def __init__(
        self,
        config: PostgresConfig,
        *,
        fetcher: Fetcher | None = None,
        outer_unpacker: Unpacker | None = None,
        inner_unpacker: Unpacker | None = None,
        platform: Platform | None = None,
    ) -> None:
        """Initialise with the configuration and injectable collaborators."""
        self.config = config
        self.platform = platform or current_platform()
        self.fetcher = fetcher
        self.outer_unpacker = outer_unpacker or ZipUnpacker()
        self.inner_unpacker = inner_unpacker or TarUnpacker()

    @property
    def entry(self) -> PlatformEntry:
        """Return the catalog entry for the target platform."""
        return lookup(self.platform)

    @property
    def archive_name(self) -> str:
        """Return the archive file name for the configured release."""
        return archive_file_name(self.platform.os, self.platform.arch, self.config.version)

    @property
    def archive_url(self) -> str:
        """Return the archive download URL for the configured release."""
        return archive_url(
            self.config.binary_repository_url,
            self.platform.os,
            self.platform.arch,
            self.config.version,
        )

    def install_dir(self, layout: PathLayout) -> Path:
        """Return ``binaries/<version>/<os>`` for *layout*."""
        return layout.version_dir(self.config.version) / self.platform.os

    def executables(self, layout: PathLayout) -> tuple[Path, Path]:
        """Return the resolved ``initdb`` and ``pg_ctl`` paths."""
        entry = self.entry
        install_dir = self.install_dir(layout)
        return install_dir / entry.initdb, install_dir / entry.pg_ctl

    def ensure_binaries(self) -> ProvisionResult:
        """Download, unpack and validate the binaries as needed."""
        entry = self.entry
        layout = ensure_directories(self.config)
        archive = layout.binaries / self.archive_name
        install_dir = self.install_dir(layout)
        initdb, pg_ctl = self.executables(layout)

        downloaded = False
        unpacked = False
        extracted = False

        if not (initdb.exists() and pg_ctl.exists()):
            downloaded = self._ensure_archive(archive, layout)

            install_dir.mkdir(parents=True, exist_ok=True)
            leftover = self._find_inner_archive(install_dir, entry)
            if leftover is not None:
                extracted = self._extract_leftover(leftover, install_dir)

            if not extracted:
                LOGGER.info("Unpacking %s to %s", archive, install_dir)
                self.outer_unpacker.unpack(archive, install_dir)
                unpacked = True
                inner = self._find_inner_archive(install_dir, entry)
                if inner is None:
                    raise ExtractionFailedError(
                        f"Archive {archive.name} does not contain {entry.inner_archive}.",
                        output=", ".join(sorted(path.name for path in install_dir.iterdir())),
                    )
                LOGGER.info("Extracting PostgreSQL binaries from %s", inner)
                try:
                    self.inner_unpacker.unpack(inner, install_dir)
                except ExtractionFailedError:
                    inner.unlink(missing_ok=True)
                    raise
                extracted = True

        for binary in (initdb, pg_ctl):
            if not binary.exists():
                raise BinaryNotFoundError(
                    f"`{binary.name}` binary not found at expected path: {binary}",
                    path=binary,
                )

        return ProvisionResult(
            version=self.config.version,
            platform=self.platform,
            archive=archive,
            install_dir=install_dir,
            initdb=initdb,
            pg_ctl=pg_ctl,
            downloaded=downloaded,
            unpacked=unpacked,
            extracted=extracted,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_archive(self, archive: Path, layout: PathLayout) -> bool:
        """Fetch *archive* unless a completed download is already cached."""
        if _archive_is_complete(archive):
            return False
        if archive.exists():
            LOGGER.warning("Discarding incomplete or corrupt archive %s", archive)
            archive.unlink()
        checksum_path(archive).unlink(missing_ok=True)

        fetcher = self.fetcher or HttpFetcher(staging_dir=layout.cache)
        fetcher.fetch(self.archive_url, archive)
        write_checksum_file(archive, compute_checksum(archive))
        return True

    def _extract_leftover(self, inner: Path, install_dir: Path) -> bool:
        """Re-extract an inner archive left by an earlier, incomplete run.

        An unreadable leftover (for example from an interrupted unzip) is
        deleted so the caller unpacks the outer archive again.
        """
        LOGGER.info("Re-extracting PostgreSQL binaries from %s", inner)
        try:
            self.inner_unpacker.unpack(inner, install_dir)
        except ExtractionFailedError as exc:
            LOGGER.warning("Discarding unreadable %s: %s", inner, exc)
            inner.unlink(missing_ok=True)
            return False
        return True

    def _find_inner_archive(self, install_dir: Path, entry: PlatformEntry) -> Path | None:
        candidate = install_dir / entry.inner_archive
        if candidate.is_file():
            return candidate
        matches = sorted(install_dir.glob("*.txz"))
        return matches[0] if matches else None


def _archive_is_complete(archive: Path) -> bool:
    """Return True when *archive* has a matching completion checksum."""
    if not archive.is_file():
        return False
    recorded = read_checksum_file(archive)
    if recorded is None:
        return False
    return recorded == compute_checksum(archive)


__all__ = ["BinaryProvisioner", "ProvisionResult"]
