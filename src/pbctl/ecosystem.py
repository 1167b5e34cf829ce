"""Build the pm2 ecosystem descriptor from the instance registry.

The descriptor is derived data: it is regenerated in full from the registry on
every call and never edited in place. Serialisation is deterministic so an
unchanged registry always produces a byte-identical file.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .instances import InstanceRecord


@dataclass(slots=True)
class EcosystemBuilder:
    """Render ``ecosystem.config.json`` for pm2."""

    path: Path
    executable: Path
    process_prefix: str = "pb-"
    max_memory_restart: str = "200M"

    def entry_for(self, record: InstanceRecord) -> dict[str, Any]:
        """Return the pm2 app entry for *record*."""
        data_dir = str(record.data_dir)
        return {
            "name": f"{self.process_prefix}{record.name}",
            "script": str(self.executable),
            "args": [
                "serve",
                "--http",
                f"127.0.0.1:{record.port}",
                "--dir",
                data_dir,
                "--migrationsDir",
                str(record.data_dir / "pb_migrations"),
            ],
            "cwd": str(self.executable.parent),
            "interpreter": "none",
            "autorestart": True,
            "watch": False,
            "max_memory_restart": self.max_memory_restart,
            "env": {"NODE_ENV": "production"},
        }

    def build(self, records: Mapping[str, InstanceRecord]) -> dict[str, Any]:
        """Return the descriptor for every record, in registry order."""
        return {"apps": [self.entry_for(record) for record in records.values()]}

    def render(self, records: Mapping[str, InstanceRecord]) -> str:
        """Return the serialised descriptor."""
        return json.dumps(self.build(records), indent=2) + "\n"

    def write(self, records: Mapping[str, InstanceRecord]) -> bool:
        """Atomically write the descriptor; return ``False`` when unchanged."""
        content = self.render(records)
        if self.path.exists() and self.path.read_text(encoding="utf-8") == content:
            return False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.path)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


__all__ = ["EcosystemBuilder"]
