"""Structured operation logging for genesys commands.

Every CLI command runs inside :meth:`StructuredLogger.operation`. When the
scope closes, one JSON object describing the command, its steps and its
result is appended to ``operations.jsonl``. A human-readable log
(``genesys.log``) in the same directory receives the records emitted by
module loggers throughout the package.

Logging must never break a command: if the directory or a file cannot be
written the logger disables itself and carries on silently.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from . import __version__

PACKAGE_LOGGER = "genesys"
_HUMAN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_file_handler: logging.Handler | None = None


def _sanitise(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class OperationScope:
    """Collects steps and the final result for one logged operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an empty scope for *command*."""
        self.op_id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _now_iso()
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._start = time.perf_counter()

    def add_step(
        self,
        name: str,
        *,
        status: str = "success",
        detail: Mapping[str, object] | None = None,
    ) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = _sanitise(dict(detail))
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            errors=list(errors or [message]),
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
        }
        if warnings:
            result["warnings"] = warnings
        if errors:
            result["errors"] = errors
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitise(dict(context))
        self.result = result

    def duration_ms(self) -> int:
        return int((time.perf_counter() - self._start) * 1000)

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to ``operations.jsonl``."""
        return {
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "started_at": self.started_at,
            "duration_ms": self.duration_ms(),
            "steps": self.steps,
            "result": self.result or {"status": "success", "message": "", "changed": 0},
            "context": {"genesys_version": __version__},
        }


class StructuredLogger:
    """Append-only JSONL operation log plus a human log file."""

    def __init__(self, logs_dir: Path, *, level: int = logging.INFO) -> None:
        """Prepare *logs_dir*; disable logging when it is unusable."""
        self._logs_dir = Path(logs_dir)
        self._operations_log_path = self._logs_dir / "operations.jsonl"
        self._human_log_path = self._logs_dir / "genesys.log"
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._install_file_handler(level)

    @property
    def operations_log_path(self) -> Path:
        return self._operations_log_path

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _install_file_handler(self, level: int) -> None:
        global _file_handler
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        if _file_handler is not None:
            package_logger.removeHandler(_file_handler)
            _file_handler.close()
            _file_handler = None
        try:
            handler = logging.FileHandler(self._human_log_path, encoding="utf-8")
        except OSError:
            return
        handler.setFormatter(logging.Formatter(_HUMAN_FORMAT))
        handler.setLevel(level)
        package_logger.addHandler(handler)
        if package_logger.level == logging.NOTSET or package_logger.level > level:
            package_logger.setLevel(level)
        _file_handler = handler

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"{type(exc).__name__}: {exc}")
            raise
        finally:
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        line = json.dumps(scope.to_record(), sort_keys=True)
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
