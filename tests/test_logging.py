"""Tests for the structured operations log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from pgbox.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("init", args={"username": "postgres"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.operations_log

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("start") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    # Later operations must not raise even though the logger is disabled.
    with logger.operation("stop") as op:
        op.success("done", changed=0)


def test_operation_record_shape(tmp_path: Path) -> None:
    """Records carry command, args, target, ordered steps and the result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "binaries ensure",
        args={"version": "16.9.0"},
        target={"kind": "binaries", "path": tmp_path / "binaries"},
    ) as op:
        op.add_step("archive.download", detail=tmp_path / "a.jar")
        op.add_step("archive.extract", status="skipped")
        op.success("PostgreSQL binaries available.", changed=1)

    (record,) = _records(logger)
    assert record["command"] == "binaries ensure"
    assert record["args"] == {"version": "16.9.0"}
    assert record["target"] == {"kind": "binaries", "path": str(tmp_path / "binaries")}
    assert record["steps"] == [
        {"name": "archive.download", "status": "success", "detail": str(tmp_path / "a.jar")},
        {"name": "archive.extract", "status": "skipped"},
    ]
    assert record["result"] == {
        "status": "success",
        "message": "PostgreSQL binaries available.",
        "changed": 1,
    }
    assert isinstance(record["duration_ms"], int)
    assert str(record["timestamp"]).endswith("Z")


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("dispose", args={"path": Path("data")}) as op:
        op.warning(
            "warned",
            warnings=("marker-present",),
            errors=("err",),
            changed=0,
            context={"path": Path("/var/lib"), "obj": Custom()},
        )

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "warning"
    assert result["warnings"] == ["marker-present"]
    assert result["errors"] == ["err"]
    assert result["context"] == {"path": "/var/lib", "obj": "<custom>"}
    assert record["args"] == {"path": "data"}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("stop") as op:
        op.error("boom", errors=None, context={"value": {1, 2}})

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["errors"] == ["boom"]
    assert result["context"] == {"value": "{1, 2}"}


def test_escaping_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """An exception leaving the block is logged as an error and propagates."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError, match="pg_ctl exploded"):
        with logger.operation("start") as op:
            op.add_step("supervisor.start", status="running")
            raise RuntimeError("pg_ctl exploded")

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["errors"] == ["pg_ctl exploded"]
    assert result["context"] == {"type": "RuntimeError"}
