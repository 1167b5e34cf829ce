"""Template rendering helpers backed by Jinja2.

Built-in templates ship inside this package. Operators may shadow any of them
by placing a file with the same relative name under ``templates_dir``.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, PackageLoader, StrictUndefined


class TemplateEngine:
    """Render named templates to strings or files."""

    def __init__(self, environment: Environment) -> None:
        self.environment = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine that prefers templates found in *override_dir*."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("pbctl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        return cls(environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        return self.environment.get_template(name).render(**context)

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return ``False`` when nothing changed."""
        content = self.render_to_string(name, context)
        if destination.exists() and destination.read_text(encoding="utf-8") == content:
            return False
        write_atomic(destination, content, mode=mode)
        return True


def write_atomic(destination: Path, content: str, *, mode: int = 0o644) -> None:
    """Write *content* to a temporary sibling of *destination* and rename it into place."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(
        dir=str(destination.parent), prefix=f".{destination.name}."
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = ["TemplateEngine", "write_atomic"]
