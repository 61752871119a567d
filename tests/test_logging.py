"""Tests for the structured operation log."""
from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from genesys.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_operation_is_appended_as_json(tmp_path: Path) -> None:
    """Each operation becomes one JSON line with steps and result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("execute", args={"apply": True}, target={"provider": "mock"}) as op:
        op.add_step("plan.computed", detail={"plan_id": "abc123", "actions": 2})
        op.success("Applied plan.", changed=2)

    (record,) = _records(logger)
    assert record["command"] == "execute"
    assert record["args"] == {"apply": True}
    assert record["target"] == {"provider": "mock"}
    assert record["steps"] == [
        {"name": "plan.computed", "status": "success", "detail": {"plan_id": "abc123", "actions": 2}}
    ]
    assert record["result"] == {"status": "success", "message": "Applied plan.", "changed": 2}
    assert "genesys_version" in record["context"]  # type: ignore[operator]


def test_exceptions_are_recorded_and_reraised(tmp_path: Path) -> None:
    """An exception inside a scope is logged as an error and propagates."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("state.import"):
            raise ValueError("bad input")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["errors"] == ["ValueError: bad input"]  # type: ignore[index]


def test_error_keeps_explicit_result(tmp_path: Path) -> None:
    """A result set before the exception is not overwritten."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError):
        with logger.operation("execute") as op:
            op.error("Provider failure.", rc=2)
            raise RuntimeError("boom")

    (record,) = _records(logger)
    assert record["result"] == {
        "status": "error",
        "message": "Provider failure.",
        "changed": 0,
        "errors": ["Provider failure."],
        "rc": 2,
    }


def test_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings are recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("delete", args={"path": Path("deploy.toml")}) as op:
        op.warning(
            "Role kept.",
            warnings=("Refusing to delete role shared",),
            changed=1,
            context={"path": Path("/tmp/state.json"), "obj": Custom(), "ids": ("a", "b")},
        )

    (record,) = _records(logger)
    assert record["args"] == {"path": "deploy.toml"}
    result = record["result"]
    assert result["status"] == "warning"  # type: ignore[index]
    assert result["warnings"] == ["Refusing to delete role shared"]  # type: ignore[index]
    assert result["context"] == {"path": "/tmp/state.json", "obj": "<custom>", "ids": ["a", "b"]}  # type: ignore[index]


def test_module_loggers_reach_the_human_log(tmp_path: Path) -> None:
    """Records from package loggers are written to genesys.log."""
    StructuredLogger(tmp_path / "logs")
    logging.getLogger("genesys.engine").warning("hello from the engine")

    content = (tmp_path / "logs" / "genesys.log").read_text(encoding="utf-8")
    assert "WARNING genesys.engine: hello from the engine" in content


def test_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when the log directory cannot be created."""
    log_dir = tmp_path / "logs"
    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger.enabled is False

    with logger.operation("discover") as op:
        op.success("done")
    assert not logger.operations_log_path.exists()


def test_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so later writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.operations_log_path
    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("discover") as op:
        op.success("done")
    assert logger.enabled is False

    with logger.operation("discover") as op:
        op.success("done again")
