"""Port suggestion helpers for pbctl."""
from __future__ import annotations

from collections.abc import Mapping

from .instances import PORT_MAX, PORT_MIN, InstanceRecord, InstanceValidationError

DEFAULT_BASE_PORT = 8090


def used_ports(records: Mapping[str, InstanceRecord]) -> set[int]:
    """Return every port already assigned in *records*."""
    return {record.port for record in records.values()}


def suggest_port(
    records: Mapping[str, InstanceRecord],
    *,
    base_port: int = DEFAULT_BASE_PORT,
) -> int:
    """Return the first free port at or above *base_port*."""
    if not PORT_MIN < base_port < PORT_MAX:
        raise InstanceValidationError(
            f"Base port {base_port} is out of range ({PORT_MIN + 1}-{PORT_MAX - 1})."
        )
    used = used_ports(records)
    candidate = base_port
    while candidate in used:
        candidate += 1
        if candidate >= PORT_MAX:
            raise InstanceValidationError("No free port left above the configured base.")
    return candidate


__all__ = ["DEFAULT_BASE_PORT", "suggest_port", "used_ports"]
