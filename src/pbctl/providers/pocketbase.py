"""Wrapper around the PocketBase executable's own administrative commands."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


class PocketBaseError(RuntimeError):
    """Raised when a PocketBase subcommand fails."""


@dataclass(slots=True)
class PocketBaseProvider:
    """Run PocketBase subcommands against an instance's data directory."""

    executable: Path

    def upsert_superuser(
        self,
        data_dir: Path,
        email: str,
        password: str,
    ) -> subprocess.CompletedProcess[str]:
        """Create the superuser *email* or reset its password."""
        # The password must never reach logs or error messages.
        return self._run(
            ["superuser", "upsert", email, password, "--dir", str(data_dir)],
            redacted=["superuser", "upsert", email, "***", "--dir", str(data_dir)],
        )

    def version(self) -> str | None:
        """Return the version reported by ``pocketbase --version``."""
        try:
            result = self._run(["--version"], redacted=["--version"])
        except PocketBaseError:
            return None
        output = (result.stdout or "").strip()
        return output.split()[-1].lstrip("v") if output else None

    # ------------------------------------------------------------------
    def _run(
        self,
        args: Sequence[str],
        *,
        redacted: Sequence[str],
    ) -> subprocess.CompletedProcess[str]:
        command = [str(self.executable), *args]
        shown = " ".join([self.executable.name, *redacted])
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise PocketBaseError(f"{shown} could not run: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise PocketBaseError(f"{shown} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["PocketBaseError", "PocketBaseProvider"]
