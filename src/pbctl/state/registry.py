"""Helpers for interacting with the pbctl state registry.

The registry directory (``/var/lib/pbctl/registry`` by default) stores YAML
artifacts: ``instances.yml`` (the source of truth for managed instances),
``settings.yml`` (operator settings such as the default certificate email and
the bridge secret) and ``binary.yml`` (metadata about the installed
PocketBase executable). Every write goes through a temporary file followed by
an atomic rename so readers never observe a partially written document.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage pbctl state. Install with `pip install pbctl`."
    ) from exc

from ..instances import InstanceRecord, InstanceValidationError

INSTANCES_FILE = "instances.yml"
SETTINGS_FILE = "settings.yml"
BINARY_FILE = "binary.yml"

DEFAULT_SETTINGS: dict[str, Any] = {
    "default_certificate_email": None,
    "default_pocketbase_version": None,
    "bridge": {"enabled": False, "secret": None},
}


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object], *, mode: int = 0o640) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, mode)
        except OSError as exc:
            raise StateRegistryError(f"Failed to write registry file {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    # Instances ------------------------------------------------------------
    def load(self) -> dict[str, InstanceRecord]:
        """Return every instance record, creating an empty document if absent."""
        if not self.path_for(INSTANCES_FILE).exists():
            self.save({})
            return {}
        raw = self.read(INSTANCES_FILE, default={"instances": {}})
        if not isinstance(raw, Mapping):
            raise StateRegistryError(
                f"{self.path_for(INSTANCES_FILE)} must contain a mapping at the top level."
            )
        entries = raw.get("instances") or {}
        if not isinstance(entries, Mapping):
            raise StateRegistryError("The 'instances' key must map names to records.")

        records: dict[str, InstanceRecord] = {}
        for name, entry in entries.items():
            if not isinstance(entry, Mapping):
                raise StateRegistryError(f"Registry entry '{name}' must be a mapping.")
            try:
                records[str(name)] = InstanceRecord.from_mapping(str(name), entry)
            except InstanceValidationError as exc:
                raise StateRegistryError(str(exc)) from exc
        return records

    def save(self, records: Mapping[str, InstanceRecord]) -> None:
        """Persist *records* as the complete instance document."""
        document = {
            "instances": {name: record.to_mapping() for name, record in records.items()}
        }
        self.write(INSTANCES_FILE, document)

    # Settings -------------------------------------------------------------
    def read_settings(self) -> dict[str, Any]:
        """Return operator settings merged over their defaults."""
        raw = self.read(SETTINGS_FILE, default={})
        if not isinstance(raw, Mapping):
            raise StateRegistryError(
                f"{self.path_for(SETTINGS_FILE)} must contain a mapping at the top level."
            )
        settings = deepcopy(DEFAULT_SETTINGS)
        for key, value in raw.items():
            if key != "bridge":
                settings[str(key)] = value
            elif isinstance(value, Mapping):
                settings["bridge"].update(dict(value))
            elif value is not None:
                raise StateRegistryError(
                    f"The 'bridge' key in {self.path_for(SETTINGS_FILE)} must be a mapping."
                )
        return settings

    def update_settings(self, updates: Mapping[str, Any]) -> dict[str, Any]:
        """Apply *updates* to ``settings.yml`` and return the merged result."""
        settings = self.read_settings()
        for key, value in updates.items():
            if key == "bridge" and isinstance(value, Mapping):
                settings["bridge"].update(dict(value))
            else:
                settings[key] = value
        # The bridge secret lives here; keep the file private.
        self.write(SETTINGS_FILE, settings, mode=0o600)
        return settings

    # Binary metadata ------------------------------------------------------
    def read_binary(self) -> dict[str, Any] | None:
        """Return metadata about the installed executable, if recorded."""
        raw = self.read(BINARY_FILE, default=None)
        return dict(raw) if isinstance(raw, Mapping) else None

    def write_binary(self, entry: Mapping[str, object]) -> None:
        """Record metadata about the installed executable."""
        self.write(BINARY_FILE, entry)


__all__ = ["StateRegistry", "StateRegistryError"]
