"""Host statistics reported by ``pbctl diagnostics``."""
from __future__ import annotations

import os
import platform
import socket
from pathlib import Path
from typing import Any

PROC_ROOT = Path("/proc")


def _read_uptime(proc_root: Path) -> float | None:
    try:
        raw = (proc_root / "uptime").read_text(encoding="utf-8").split()
    except OSError:
        return None
    try:
        return float(raw[0])
    except (IndexError, ValueError):
        return None


def _read_meminfo(proc_root: Path) -> dict[str, int]:
    """Return ``MemTotal`` and ``MemAvailable`` in bytes when available."""
    values: dict[str, int] = {}
    try:
        lines = (proc_root / "meminfo").read_text(encoding="utf-8").splitlines()
    except OSError:
        return values
    for line in lines:
        key, _, rest = line.partition(":")
        if key not in {"MemTotal", "MemAvailable", "MemFree"}:
            continue
        parts = rest.split()
        if not parts or not parts[0].isdigit():
            continue
        # /proc/meminfo reports kB
        values[key] = int(parts[0]) * 1024
    return values


def _load_average() -> list[float] | None:
    try:
        return [round(value, 2) for value in os.getloadavg()]
    except OSError:
        return None


def host_stats(proc_root: Path = PROC_ROOT) -> dict[str, Any]:
    """Return a snapshot of basic host statistics."""
    memory = _read_meminfo(proc_root)
    total = memory.get("MemTotal")
    available = memory.get("MemAvailable", memory.get("MemFree"))
    used = total - available if total is not None and available is not None else None
    return {
        "hostname": socket.gethostname(),
        "platform": platform.system(),
        "release": platform.release(),
        "machine": platform.machine(),
        "python": platform.python_version(),
        "uptime_seconds": _read_uptime(proc_root),
        "cpu_count": os.cpu_count(),
        "load_average": _load_average(),
        "memory": {
            "total_bytes": total,
            "available_bytes": available,
            "used_bytes": used,
        },
    }


__all__ = ["host_stats"]
