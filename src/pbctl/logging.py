"""Structured operation logging for pbctl.

Every command runs inside :meth:`StructuredLogger.operation`. The scope
collects the steps it performed and writes a single JSON record to
``operations.jsonl`` when it closes, plus one human-readable line to
``pbctl.log``. Logging is best effort: if the directory cannot be created or a
write fails, the logger disables itself and commands continue unaffected.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from . import __version__

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "pbctl.log"


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Mutable record describing one command invocation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        self.command = command
        self.op_id = uuid.uuid4().hex
        self.args = dict(args or {})
        self.target = dict(target) if target else None
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.lock_wait_ms: int | None = None
        self._started = time.monotonic()
        self.started_at = datetime.now(UTC)

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Append a step outcome to the operation."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._finish("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation completed with warnings."""
        self._finish(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._finish(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
        }
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON-safe record written to ``operations.jsonl``."""
        record: dict[str, object] = {
            "op_id": self.op_id,
            "timestamp": self.started_at.isoformat(),
            "command": self.command,
            "args": _sanitize(self.args),
            "steps": self.steps,
            "result": self.result or {"status": "unknown"},
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "context": {"pbctl_version": __version__, "pid": os.getpid()},
        }
        if self.target is not None:
            record["target"] = _sanitize(self.target)
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Write operation records beneath *logs_dir*."""

    def __init__(self, logs_dir: Path) -> None:
        self.logs_dir = Path(logs_dir)
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG
        self._human_log_path = self.logs_dir / HUMAN_LOG
        self._enabled = True
        self._human = logging.getLogger(f"pbctl.operations.{id(self)}")
        self._human.setLevel(logging.INFO)
        self._human.propagate = False
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        try:
            handler = RotatingFileHandler(
                self._human_log_path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
            )
        except OSError:
            self._enabled = False
            return
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        self._human.addHandler(handler)

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
                scope.error(f"{command} aborted: {exc!r}")
            raise
        finally:
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False
            return
        result: Any = record["result"]
        level = {
            "success": logging.INFO,
            "warning": logging.WARNING,
            "error": logging.ERROR,
        }.get(str(result.get("status")), logging.INFO)
        self._human.log(level, "%s: %s", scope.command, result.get("message", ""))


__all__ = ["OperationScope", "StructuredLogger"]
