"""Download helpers for binary archives."""
from __future__ import annotations

import errno
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import BinaryIO, Protocol

import httpx

from .errors import DownloadFailedError

LOGGER = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


class Fetcher(Protocol):
    """Fetch ``url`` into ``destination``.

    Implementations must write atomically: on failure no file may be left at
    ``destination``.
    """

    def fetch(self, url: str, destination: Path) -> None:
        """Raise :class:`DownloadFailedError` on failure."""


class HttpFetcher:
    """Stream archives over HTTP(S) with :mod:`httpx`."""

    def __init__(
        self,
        *,
        client: httpx.Client | None = None,
        timeout: float = 60.0,
        staging_dir: Path | None = None,
    ) -> None:
        """Initialise the fetcher; *client* is injectable for testing."""
        self._client = client
        self.timeout = timeout
        self.staging_dir = staging_dir

    def fetch(self, url: str, destination: Path) -> None:
        """Download *url* to a staging file, then move it to *destination*."""
        staging_root = self.staging_dir or destination.parent
        staging_root.mkdir(parents=True, exist_ok=True)
        destination.parent.mkdir(parents=True, exist_ok=True)
        handle, raw_temp = tempfile.mkstemp(
            prefix=f"{destination.name}.", suffix=".part", dir=str(staging_root)
        )
        temp_path = Path(raw_temp)
        LOGGER.info("Downloading PostgreSQL binaries from %s", url)
        try:
            with os.fdopen(handle, "wb") as sink:
                self._stream(url, sink)
            _publish(temp_path, destination)
        except OSError as exc:
            raise DownloadFailedError(f"Failed to store {url}: {exc}", url=url) from exc
        finally:
            if temp_path.exists():
                temp_path.unlink()

    def _stream(self, url: str, sink: BinaryIO) -> None:
        client = self._client or httpx.Client(follow_redirects=True, timeout=self.timeout)
        try:
            with client.stream("GET", url) as response:
                if response.status_code >= 300:
                    raise DownloadFailedError(
                        f"Download of {url} failed with HTTP {response.status_code}.",
                        url=url,
                    )
                expected = response.headers.get("content-length")
                received = 0
                for chunk in response.iter_bytes(_CHUNK_SIZE):
                    received += len(chunk)
                    sink.write(chunk)
                if expected is not None and expected.isdigit() and int(expected) != received:
                    raise DownloadFailedError(
                        f"Download of {url} was truncated ({received} of {expected} bytes).",
                        url=url,
                    )
        except httpx.HTTPError as exc:
            raise DownloadFailedError(f"Download of {url} failed: {exc}", url=url) from exc
        finally:
            if self._client is None:
                client.close()


def _publish(source: Path, destination: Path) -> None:
    """Atomically move *source* to *destination*, copying across devices."""
    try:
        os.replace(source, destination)
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
        sibling = destination.with_name(f"{destination.name}.part")
        try:
            shutil.copyfile(source, sibling)
            os.replace(sibling, destination)
        finally:
            if sibling.exists():
                sibling.unlink()


__all__ = ["Fetcher", "HttpFetcher"]
