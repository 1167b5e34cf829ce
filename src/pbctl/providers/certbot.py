"""certbot provider for issuing and renewing Let's Encrypt certificates."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


class CertbotError(RuntimeError):
    """Raised when certbot operations fail."""


@dataclass(slots=True)
class CertbotProvider:
    """Invoke certbot's nginx plugin non-interactively."""

    certbot_bin: str = "certbot"
    nginx_server_root: Path | None = None

    def available(self) -> bool:
        """Return ``True`` when the certbot executable can be found."""
        return shutil.which(self.certbot_bin) is not None

    def obtain(self, domain: str, email: str) -> subprocess.CompletedProcess[str]:
        """Request a certificate for *domain* and let certbot add the redirect."""
        args = [
            "--nginx",
            "-d",
            domain,
            "--non-interactive",
            "--agree-tos",
            "-m",
            email,
            "--redirect",
        ]
        if self.nginx_server_root is not None:
            args.extend(["--nginx-server-root", str(self.nginx_server_root)])
        return self._certbot(args)

    def renew(
        self,
        *,
        cert_name: str | None = None,
        force: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Renew every certificate, or only *cert_name*."""
        args = ["renew", "--non-interactive"]
        if cert_name:
            args.extend(["--cert-name", cert_name])
        if force:
            args.append("--force-renewal")
        return self._certbot(args)

    # ------------------------------------------------------------------
    def _certbot(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.certbot_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CertbotError(
                f"{self.certbot_bin} not found; install certbot and its nginx plugin."
            ) from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise CertbotError(
                f"{self.certbot_bin} {args[0]} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["CertbotError", "CertbotProvider"]
