"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import io
import os
import stat
import tarfile
import textwrap
import zipfile
from collections.abc import Iterator
from pathlib import Path

import pytest

from pgbox.catalog import Platform
from pgbox.config import PostgresConfig
from pgbox.errors import ExtractionFailedError

LINUX_AMD64 = Platform("linux", "amd64")

FAKE_PG_CTL = textwrap.dedent(
    """\
    #!/bin/sh
    echo "pg_ctl $*" >> "$(dirname "$0")/calls.log"
    cmd="$1"
    shift
    data=""
    while [ $# -gt 0 ]; do
      case "$1" in
        -D) data="$2"; shift 2 ;;
        *) shift ;;
      esac
    done
    case "$cmd" in
      start)
        echo "$$" > "$data/postmaster.pid"
        echo "server started"
        ;;
      stop)
        rm -f "$data/postmaster.pid"
        echo "server stopped"
        ;;
      status)
        if [ -f "$data/postmaster.pid" ]; then
          echo "pg_ctl: server is running"
          exit 0
        fi
        echo "pg_ctl: no server running"
        exit 3
        ;;
    esac
    """
)

FAKE_INITDB = textwrap.dedent(
    """\
    #!/bin/sh
    echo "initdb $*" >> "$(dirname "$0")/calls.log"
    data=""
    while [ $# -gt 0 ]; do
      case "$1" in
        -D) data="$2"; shift 2 ;;
        *) shift ;;
      esac
    done
    mkdir -p "$data"
    echo "16" > "$data/PG_VERSION"
    """
)

posix_only = pytest.mark.skipif(os.name == "nt", reason="fake binaries are POSIX shell scripts")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def _write_script(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def install_fake_binaries(install_dir: Path) -> tuple[Path, Path]:
    """Create fake ``initdb``/``pg_ctl`` scripts plus ``lib`` under *install_dir*."""
    initdb = _write_script(install_dir / "bin" / "initdb", FAKE_INITDB)
    pg_ctl = _write_script(install_dir / "bin" / "pg_ctl", FAKE_PG_CTL)
    (install_dir / "lib").mkdir(parents=True, exist_ok=True)
    return initdb, pg_ctl


def read_calls(bin_dir: Path) -> list[str]:
    """Return the invocations recorded by the fake scripts."""
    log = bin_dir / "calls.log"
    if not log.exists():
        return []
    return log.read_text(encoding="utf-8").splitlines()


def build_inner_archive(path: Path) -> Path:
    """Write a ``.txz`` tree with fake executables to *path*."""
    with tarfile.open(path, "w:xz") as bundle:
        for name, content in (("bin/initdb", FAKE_INITDB), ("bin/pg_ctl", FAKE_PG_CTL)):
            payload = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            info.mode = 0o755
            bundle.addfile(info, io.BytesIO(payload))
        lib = tarfile.TarInfo("lib")
        lib.type = tarfile.DIRTYPE
        lib.mode = 0o755
        bundle.addfile(lib)
    return path


def build_jar(path: Path, inner_name: str = "postgres-linux-x86_64.txz") -> Path:
    """Write a jar wrapping a fake inner archive to *path*."""
    inner = build_inner_archive(path.parent / f"{path.name}.inner.txz")
    with zipfile.ZipFile(path, "w") as bundle:
        bundle.writestr("META-INF/MANIFEST.MF", "Manifest-Version: 1.0\n")
        bundle.write(inner, inner_name)
    inner.unlink()
    return path


class FakeFetcher:
    """Fetcher that copies a prepared archive and counts calls."""

    def __init__(self, source: Path | None = None, *, error: Exception | None = None) -> None:
        self.source = source
        self.error = error
        self.calls: list[tuple[str, Path]] = []

    def fetch(self, url: str, destination: Path) -> None:
        self.calls.append((url, destination))
        if self.error is not None:
            raise self.error
        assert self.source is not None
        destination.write_bytes(self.source.read_bytes())


class TarfileUnpacker:
    """Inner unpacker using :mod:`tarfile` so tests do not depend on ``xz``."""

    def __init__(self) -> None:
        self.calls = 0

    def unpack(self, archive_path: Path, destination: Path) -> None:
        self.calls += 1
        try:
            with tarfile.open(archive_path) as bundle:
                bundle.extractall(destination, filter="tar")
        except tarfile.TarError as exc:
            raise ExtractionFailedError(str(exc), output=str(exc)) from exc


@pytest.fixture
def base_dir(tmp_path: Path) -> Path:
    """Return an absolute base directory for an instance."""
    return tmp_path / "pgbox"


@pytest.fixture
def config(base_dir: Path) -> PostgresConfig:
    """Return a configuration rooted at ``base_dir`` with fast polling."""
    return PostgresConfig(
        base_path=str(base_dir),
        port=54329,
        start_parameters={"shared_buffers": "128MB"},
        start_timeout=5.0,
        poll_interval=0.01,
    )


@pytest.fixture
def jar_source(tmp_path: Path) -> Path:
    """Return a prepared binaries jar outside the instance tree."""
    source_dir = tmp_path / "upstream"
    source_dir.mkdir()
    return build_jar(source_dir / "binaries.jar")


@pytest.fixture
def cleanup() -> Iterator[list[object]]:
    """Collect objects with ``close()`` and close them after the test."""
    items: list[object] = []
    yield items
    for item in reversed(items):
        item.close()  # type: ignore[attr-defined]
