"""Nginx provider for managing per-instance vhost configurations.

Three packaging conventions are supported:

``debian``
    ``sites-available`` holds the file and ``sites-enabled`` a symlink to it.
``rhel``
    A single ``conf.d`` directory; no activation symlink. certbot needs the
    server root passed explicitly.
``arch``
    The Debian layout, but the directories are not shipped by the package and
    ``nginx.conf`` has to include ``sites-enabled/*`` by hand.
"""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..config import CertbotConfig, NginxConfig
from ..instances import InstanceRecord
from ..templates import TemplateEngine, write_atomic

SITE_TEMPLATE = "nginx/site.conf.j2"

_RHEL_IDS = {"rhel", "centos", "fedora", "rocky", "almalinux", "amzn", "ol"}
_ARCH_IDS = {"arch", "manjaro", "endeavouros"}
_DEBIAN_IDS = {"debian", "ubuntu", "raspbian", "linuxmint", "pop"}


class NginxError(RuntimeError):
    """Raised when nginx operations fail."""


@dataclass(frozen=True, slots=True)
class NginxLayout:
    """Filesystem convention used by the local nginx package."""

    name: str
    root: Path
    config_dir: Path
    enabled_dir: Path | None

    @property
    def uses_symlinks(self) -> bool:
        """Return ``True`` when sites are activated through a symlink."""
        return self.enabled_dir is not None

    @classmethod
    def for_name(cls, name: str, root: Path) -> NginxLayout:
        """Return the layout called *name* rooted at *root*."""
        if name == "rhel":
            return cls(name="rhel", root=root, config_dir=root / "conf.d", enabled_dir=None)
        if name in {"debian", "arch"}:
            return cls(
                name=name,
                root=root,
                config_dir=root / "sites-available",
                enabled_dir=root / "sites-enabled",
            )
        raise NginxError(f"Unknown nginx layout '{name}'.")


def _read_os_release(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return values
    for line in lines:
        if "=" not in line or line.lstrip().startswith("#"):
            continue
        key, _, raw = line.partition("=")
        values[key.strip()] = raw.strip().strip('"').strip("'")
    return values


def detect_layout(config: NginxConfig) -> NginxLayout:
    """Resolve the nginx layout once per process.

    An explicit ``nginx.layout`` wins. Otherwise ``/etc/os-release`` is
    consulted (``ID`` first, then ``ID_LIKE``) and finally the directories that
    exist below the nginx root.
    """
    if config.layout != "auto":
        return NginxLayout.for_name(config.layout, config.root)

    release = _read_os_release(config.os_release)
    candidates = [release.get("ID", "")] + release.get("ID_LIKE", "").split()
    for candidate in candidates:
        candidate = candidate.lower()
        if candidate in _RHEL_IDS:
            return NginxLayout.for_name("rhel", config.root)
        if candidate in _ARCH_IDS:
            return NginxLayout.for_name("arch", config.root)
        if candidate in _DEBIAN_IDS:
            return NginxLayout.for_name("debian", config.root)

    if (config.root / "sites-available").is_dir():
        return NginxLayout.for_name("debian", config.root)
    if (config.root / "conf.d").is_dir():
        return NginxLayout.for_name("rhel", config.root)
    return NginxLayout.for_name("debian", config.root)


@dataclass(slots=True)
class NginxRenderResult:
    """Outcome of rendering and activating an nginx site configuration."""

    changed: bool
    path: Path | None = None
    validation: subprocess.CompletedProcess[str] | None = None
    reload: subprocess.CompletedProcess[str] | None = None
    validation_error: str | None = None
    symlink_error: str | None = None


@dataclass(slots=True)
class NginxProvider:
    """Render and manage nginx site configurations for pbctl instances."""

    templates: TemplateEngine
    layout: NginxLayout
    certbot: CertbotConfig = CertbotConfig()
    acme_root: Path = Path("/var/www/html")
    nginx_bin: str = "nginx"
    site_prefix: str = "pb-"

    def site_name(self, instance: str) -> str:
        """Return the canonical site name for *instance*."""
        safe = instance.replace("/", "-")
        return f"{self.site_prefix}{safe}.conf"

    def site_path(self, instance: str) -> Path:
        """Return the path to the nginx site configuration file."""
        return self.layout.config_dir / self.site_name(instance)

    def enabled_path(self, instance: str) -> Path | None:
        """Return the activation symlink for *instance*, if the layout uses one."""
        if self.layout.enabled_dir is None:
            return None
        return self.layout.enabled_dir / self.site_name(instance)

    def certificate_paths(self, domain: str) -> tuple[Path, Path]:
        """Return the certificate and key paths certbot issues for *domain*."""
        live = self.certbot.live_dir / domain
        return live / "fullchain.pem", live / "privkey.pem"

    def build_context(
        self,
        record: InstanceRecord,
        *,
        tls: bool,
        provisional: bool = False,
    ) -> dict[str, object]:
        """Return the template context for *record*."""
        certificate, certificate_key = self.certificate_paths(record.domain)
        options_file = self.certbot.options_file if self.certbot.options_file.exists() else None
        return {
            "instance_name": record.name,
            "server_name": record.domain,
            "port": record.port,
            "use_tls": tls,
            "use_http2": record.use_http2,
            "max_body_20mb": record.max_body_20mb,
            "provisional": provisional,
            "certificate": str(certificate),
            "certificate_key": str(certificate_key),
            "dhparam_path": str(self.certbot.dhparam_path),
            "options_file": str(options_file) if options_file else None,
            "acme_root": str(self.acme_root),
        }

    def render(self, record: InstanceRecord, *, tls: bool, provisional: bool = False) -> str:
        """Return the rendered site document without touching the filesystem."""
        context = self.build_context(record, tls=tls, provisional=provisional)
        return self.templates.render_to_string(SITE_TEMPLATE, context)

    def render_site(
        self,
        record: InstanceRecord,
        *,
        tls: bool,
        provisional: bool = False,
        reload_on_change: bool = True,
    ) -> NginxRenderResult:
        """Render, install and activate the site configuration for *record*.

        The document is written through a temporary file and renamed into
        place. When the content changed it is validated with ``nginx -t``
        before reloading; a failed validation restores the previous file (or
        removes a new one) and is reported through ``validation_error``.
        A failed activation symlink is reported through ``symlink_error`` but
        does not stop the validation and reload.
        """
        destination = self.site_path(record.name)
        destination.parent.mkdir(parents=True, exist_ok=True)

        previous: tuple[str, int] | None = None
        if destination.exists():
            previous = (
                destination.read_text(encoding="utf-8"),
                destination.stat().st_mode,
            )

        changed = self.templates.render_to_path(
            SITE_TEMPLATE,
            destination,
            self.build_context(record, tls=tls, provisional=provisional),
            mode=0o644,
        )

        symlink_error: str | None = None
        try:
            self.enable(record.name)
        except OSError as exc:
            symlink_error = f"Failed to link {destination}: {exc}"

        if not changed:
            return NginxRenderResult(
                changed=False, path=destination, symlink_error=symlink_error
            )

        try:
            validation_result = self.test_config()
        except NginxError as exc:
            if previous is None:
                self.remove(record.name)
            else:
                content, mode = previous
                self.restore(record.name, content, mode=mode)
            return NginxRenderResult(
                changed=False,
                path=destination,
                validation_error=str(exc),
                symlink_error=symlink_error,
            )

        reload_result: subprocess.CompletedProcess[str] | None = None
        if reload_on_change:
            reload_result = self.reload()
        return NginxRenderResult(
            changed=True,
            path=destination,
            validation=validation_result,
            reload=reload_result,
            symlink_error=symlink_error,
        )

    def enable(self, instance: str) -> None:
        """Enable the site by creating a symlink in sites-enabled."""
        target = self.enabled_path(instance)
        if target is None:
            return
        source = self.site_path(instance)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists() or target.is_symlink():
            try:
                if target.resolve() == source.resolve():
                    return
            except FileNotFoundError:
                # Broken symlink; replace it with a fresh one.
                pass
            target.unlink()
        target.symlink_to(source)

    def disable(self, instance: str) -> None:
        """Disable the site by removing the symlink."""
        target = self.enabled_path(instance)
        if target is None:
            return
        target.unlink(missing_ok=True)

    def restore(self, instance: str, content: str, *, mode: int = 0o644) -> None:
        """Put a previously rendered document for *instance* back in place."""
        write_atomic(self.site_path(instance), content, mode=mode & 0o777)

    def remove(self, instance: str) -> bool:
        """Remove both the configuration and symlink for *instance*."""
        self.disable(instance)
        path = self.site_path(instance)
        existed = path.exists()
        path.unlink(missing_ok=True)
        return existed

    def site_exists(self, instance: str) -> bool:
        """Return True when the rendered site configuration exists."""
        return self.site_path(instance).exists()

    def is_enabled(self, instance: str) -> bool:
        """Return True when nginx will load the site."""
        target = self.enabled_path(instance)
        if target is None:
            return self.site_exists(instance)
        if not target.exists() and not target.is_symlink():
            return False
        try:
            return target.is_symlink() and target.resolve() == self.site_path(instance).resolve()
        except FileNotFoundError:
            return False

    def include_warning(self) -> str | None:
        """Return a hint when ``nginx.conf`` never loads ``sites-enabled``."""
        if self.layout.name != "arch" or self.layout.enabled_dir is None:
            return None
        main_conf = self.layout.root / "nginx.conf"
        try:
            content = main_conf.read_text(encoding="utf-8")
        except OSError:
            return f"Could not read {main_conf}; make sure it includes sites-enabled/*."
        if "sites-enabled" in content:
            return None
        return (
            f"{main_conf} does not include {self.layout.enabled_dir}/*; add "
            f"'include {self.layout.enabled_dir}/*;' inside the http block."
        )

    def ensure_directories(self) -> None:
        """Create the layout's directories when the package does not ship them."""
        self.layout.config_dir.mkdir(parents=True, exist_ok=True)
        if self.layout.enabled_dir is not None:
            self.layout.enabled_dir.mkdir(parents=True, exist_ok=True)
        self.acme_root.mkdir(parents=True, exist_ok=True)

    def diagnostics(self, instance: str) -> dict[str, object]:
        """Return diagnostic metadata for *instance*."""
        site_path = self.site_path(instance)
        enabled_path = self.enabled_path(instance)
        return {
            "layout": self.layout.name,
            "site_path": str(site_path),
            "site_exists": site_path.exists(),
            "enabled_path": str(enabled_path),
            "enabled": self.is_enabled(instance),
        }

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` to validate the configuration."""
        try:
            return self._run_nginx(["-t"])
        except FileNotFoundError:
            return subprocess.CompletedProcess([self.nginx_bin, "-t"], returncode=0)

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload nginx to apply configuration changes."""
        try:
            return self._run_nginx(["-s", "reload"])
        except FileNotFoundError:
            return subprocess.CompletedProcess([self.nginx_bin, "-s", "reload"], returncode=0)

    def validate_and_reload(self) -> None:
        """Validate the full configuration and reload, raising on failure."""
        self.test_config()
        self.reload()

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.nginx_bin, *args]
        result = subprocess.run(  # noqa: S603, S607
            command,
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise NginxError(
                f"{self.nginx_bin} {' '.join(args)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = [
    "NginxError",
    "NginxLayout",
    "NginxProvider",
    "NginxRenderResult",
    "detect_layout",
]
