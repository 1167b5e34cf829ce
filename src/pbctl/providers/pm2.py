"""pm2 provider for supervising PocketBase processes."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


class Pm2Error(RuntimeError):
    """Raised when pm2 operations fail."""


@dataclass(slots=True)
class ProcessStatus:
    """Runtime state pm2 reports for one process."""

    name: str
    status: str
    pid: int | None = None
    memory: int | None = None
    cpu: float | None = None
    restarts: int | None = None
    uptime_ms: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "status": self.status,
            "pid": self.pid,
            "memory": self.memory,
            "cpu": self.cpu,
            "restarts": self.restarts,
            "uptime_ms": self.uptime_ms,
        }


@dataclass(slots=True)
class Pm2Provider:
    """Drive pm2 for pbctl instances."""

    pm2_bin: str = "pm2"
    process_prefix: str = "pb-"

    def process_name(self, instance: str) -> str:
        """Return the pm2 process name for *instance*."""
        return f"{self.process_prefix}{instance}"

    def reload(self, ecosystem_file: Path) -> subprocess.CompletedProcess[str]:
        """Reload every process described by *ecosystem_file*."""
        return self._pm2("reload", str(ecosystem_file))

    def start(self, instance: str) -> subprocess.CompletedProcess[str]:
        """Start the process for *instance*."""
        return self._pm2("start", self.process_name(instance))

    def start_ecosystem(
        self, ecosystem_file: Path, instance: str
    ) -> subprocess.CompletedProcess[str]:
        """Start *instance* from *ecosystem_file* when pm2 does not know it yet."""
        return self._pm2("start", str(ecosystem_file), "--only", self.process_name(instance))

    def stop(self, instance: str) -> subprocess.CompletedProcess[str]:
        """Stop the process for *instance*."""
        return self._pm2("stop", self.process_name(instance))

    def restart(self, instance: str) -> subprocess.CompletedProcess[str]:
        """Restart the process for *instance*."""
        return self._pm2("restart", self.process_name(instance))

    def delete(self, instance: str) -> subprocess.CompletedProcess[str]:
        """Remove the process for *instance* from pm2's process list."""
        return self._pm2("delete", self.process_name(instance))

    def save(self) -> subprocess.CompletedProcess[str]:
        """Persist pm2's process list so it survives reboots."""
        return self._pm2("save")

    def logs(self, instance: str, *, lines: int = 50) -> str:
        """Return the last *lines* of log output for *instance*."""
        result = self._pm2(
            "logs",
            self.process_name(instance),
            "--lines",
            str(lines),
            "--nostream",
        )
        return result.stdout or ""

    def statuses(self) -> dict[str, ProcessStatus]:
        """Return pm2 process state keyed by process name."""
        result = self._pm2("jlist")
        try:
            payload = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise Pm2Error(f"{self.pm2_bin} jlist returned invalid JSON: {exc}") from exc
        if not isinstance(payload, list):
            raise Pm2Error(f"{self.pm2_bin} jlist returned an unexpected payload.")

        statuses: dict[str, ProcessStatus] = {}
        for entry in payload:
            if not isinstance(entry, dict) or "name" not in entry:
                continue
            env = entry.get("pm2_env") or {}
            monit = entry.get("monit") or {}
            uptime = env.get("pm_uptime")
            statuses[str(entry["name"])] = ProcessStatus(
                name=str(entry["name"]),
                status=str(env.get("status", "unknown")),
                pid=entry.get("pid") or None,
                memory=monit.get("memory"),
                cpu=monit.get("cpu"),
                restarts=env.get("restart_time"),
                uptime_ms=int(uptime) if isinstance(uptime, (int, float)) else None,
            )
        return statuses

    # ------------------------------------------------------------------
    def _pm2(self, *args: str) -> subprocess.CompletedProcess[str]:
        return self._run_command(
            [self.pm2_bin, *args],
            error_prefix=f"{self.pm2_bin} {args[0]}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise Pm2Error(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise Pm2Error(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["Pm2Error", "Pm2Provider", "ProcessStatus"]
