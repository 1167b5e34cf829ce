"""Configuration loader for pbctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/pbctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``PBCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export PBCTL_NGINX__LAYOUT=rhel
    export PBCTL_DNS__ENABLED=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load pbctl configuration. Install with "
        "`pip install pbctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "PBCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

FALLBACK_POCKETBASE_VERSION = "0.28.1"
ALLOWED_NGINX_LAYOUTS = {"auto", "debian", "rhel", "arch"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PocketBaseConfig:
    """Where PocketBase releases come from and how they are cached."""

    fallback_version: str = FALLBACK_POCKETBASE_VERSION
    release_url: str = (
        "https://github.com/pocketbase/pocketbase/releases/download/"
        "v{version}/pocketbase_{version}_linux_{arch}.zip"
    )
    checksums_url: str | None = (
        "https://github.com/pocketbase/pocketbase/releases/download/v{version}/checksums.txt"
    )
    latest_release_api: str = "https://api.github.com/repos/pocketbase/pocketbase/releases/latest"
    version_cache_ttl: int = 86400
    request_timeout: float = 5.0
    arch: str = "auto"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "fallback_version": self.fallback_version,
            "release_url": self.release_url,
            "checksums_url": self.checksums_url,
            "latest_release_api": self.latest_release_api,
            "version_cache_ttl": self.version_cache_ttl,
            "request_timeout": self.request_timeout,
            "arch": self.arch,
        }


@dataclass(frozen=True)
class NginxConfig:
    """Reverse proxy integration settings."""

    layout: str = "auto"
    root: Path = Path("/etc/nginx")
    nginx_bin: str = "nginx"
    os_release: Path = Path("/etc/os-release")
    acme_root: Path = Path("/var/www/html")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "layout": self.layout,
            "root": str(self.root),
            "nginx_bin": self.nginx_bin,
            "os_release": str(self.os_release),
            "acme_root": str(self.acme_root),
        }


@dataclass(frozen=True)
class Pm2Config:
    """Process supervisor settings."""

    pm2_bin: str = "pm2"
    process_prefix: str = "pb-"
    max_memory_restart: str = "200M"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "pm2_bin": self.pm2_bin,
            "process_prefix": self.process_prefix,
            "max_memory_restart": self.max_memory_restart,
        }


@dataclass(frozen=True)
class CertbotConfig:
    """Certificate client settings."""

    certbot_bin: str = "certbot"
    live_dir: Path = Path("/etc/letsencrypt/live")
    dhparam_path: Path = Path("/etc/letsencrypt/ssl-dhparams.pem")
    options_file: Path = Path("/etc/letsencrypt/options-ssl-nginx.conf")
    dhparam_bits: int = 2048
    warn_expiry_days: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "certbot_bin": self.certbot_bin,
            "live_dir": str(self.live_dir),
            "dhparam_path": str(self.dhparam_path),
            "options_file": str(self.options_file),
            "dhparam_bits": self.dhparam_bits,
            "warn_expiry_days": self.warn_expiry_days,
        }


@dataclass(frozen=True)
class DnsConfig:
    """Pre-flight DNS validation settings."""

    enabled: bool = True
    timeout: float = 5.0
    public_ip_urls: tuple[str, ...] = (
        "https://api.ipify.org",
        "https://ifconfig.me/ip",
    )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "timeout": self.timeout,
            "public_ip_urls": list(self.public_ip_urls),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for pbctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    bin_dir: Path
    instances_root: Path
    ecosystem_file: Path
    lock_timeout: float
    pocketbase: PocketBaseConfig
    nginx: NginxConfig
    pm2: Pm2Config
    certbot: CertbotConfig
    dns: DnsConfig

    @property
    def pocketbase_bin(self) -> Path:
        """Return the path of the shared PocketBase executable."""
        return self.bin_dir / "pocketbase"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "bin_dir": str(self.bin_dir),
            "instances_root": str(self.instances_root),
            "ecosystem_file": str(self.ecosystem_file),
            "lock_timeout": self.lock_timeout,
            "pocketbase": self.pocketbase.to_dict(),
            "nginx": self.nginx.to_dict(),
            "pm2": self.pm2.to_dict(),
            "certbot": self.certbot.to_dict(),
            "dns": self.dns.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/pbctl/config.yml",
    "state_dir": "/var/lib/pbctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/pbctl",
    "runtime_dir": "/run/pbctl",
    "templates_dir": "/etc/pbctl/templates",
    "bin_dir": None,  # derived from state_dir when absent
    "instances_root": None,  # derived from state_dir when absent
    "ecosystem_file": None,  # derived from state_dir when absent
    "lock_timeout": 30.0,
    "pocketbase": {
        "fallback_version": FALLBACK_POCKETBASE_VERSION,
        "release_url": PocketBaseConfig.release_url,
        "checksums_url": PocketBaseConfig.checksums_url,
        "latest_release_api": PocketBaseConfig.latest_release_api,
        "version_cache_ttl": 86400,
        "request_timeout": 5.0,
        "arch": "auto",
    },
    "nginx": {
        "layout": "auto",
        "root": "/etc/nginx",
        "nginx_bin": "nginx",
        "os_release": "/etc/os-release",
        "acme_root": "/var/www/html",
    },
    "pm2": {
        "pm2_bin": "pm2",
        "process_prefix": "pb-",
        "max_memory_restart": "200M",
    },
    "certbot": {
        "certbot_bin": "certbot",
        "live_dir": "/etc/letsencrypt/live",
        "dhparam_path": "/etc/letsencrypt/ssl-dhparams.pem",
        "options_file": "/etc/letsencrypt/options-ssl-nginx.conf",
        "dhparam_bits": 2048,
        "warn_expiry_days": 30,
    },
    "dns": {
        "enabled": True,
        "timeout": 5.0,
        "public_ip_urls": list(DnsConfig.public_ip_urls),
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    "pocketbase": {
        "fallback_version",
        "release_url",
        "checksums_url",
        "latest_release_api",
        "version_cache_ttl",
        "request_timeout",
        "arch",
    },
    "nginx": {"layout", "root", "nginx_bin", "os_release", "acme_root"},
    "pm2": {"pm2_bin", "process_prefix", "max_memory_restart"},
    "certbot": {
        "certbot_bin",
        "live_dir",
        "dhparam_path",
        "options_file",
        "dhparam_bits",
        "warn_expiry_days",
    },
    "dns": {"enabled", "timeout", "public_ip_urls"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    nginx_map = _as_dict(raw.get("nginx"), "nginx")
    layout = nginx_map.get("layout")
    if layout is not None and str(layout) not in ALLOWED_NGINX_LAYOUTS:
        allowed_layouts = ", ".join(sorted(ALLOWED_NGINX_LAYOUTS))
        raise ConfigError(f"Unsupported nginx layout '{layout}'. Allowed: {allowed_layouts}.")

    certbot_map = _as_dict(raw.get("certbot"), "certbot")
    bits = certbot_map.get("dhparam_bits")
    if bits is not None and _expect_int(bits, "certbot.dhparam_bits", default=2048) < 512:
        raise ConfigError("certbot.dhparam_bits must be at least 512.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir = _derived_path(raw.get("registry_dir"), state_dir / "registry")
    bin_dir = _derived_path(raw.get("bin_dir"), state_dir / "bin")
    instances_root = _derived_path(raw.get("instances_root"), state_dir / "instances")
    ecosystem_file = _derived_path(raw.get("ecosystem_file"), state_dir / "ecosystem.config.json")

    pb_mapping = _as_dict(raw.get("pocketbase"), "pocketbase")
    defaults_pb = PocketBaseConfig()
    version_cache_ttl = _expect_int(
        pb_mapping.get("version_cache_ttl"),
        "pocketbase.version_cache_ttl",
        default=defaults_pb.version_cache_ttl,
    )
    if version_cache_ttl < 0:
        raise ConfigError("pocketbase.version_cache_ttl must be non-negative.")
    checksums_url = pb_mapping.get("checksums_url", defaults_pb.checksums_url)
    pocketbase = PocketBaseConfig(
        fallback_version=str(pb_mapping.get("fallback_version", defaults_pb.fallback_version)),
        release_url=str(pb_mapping.get("release_url", defaults_pb.release_url)),
        checksums_url=str(checksums_url) if checksums_url else None,
        latest_release_api=str(
            pb_mapping.get("latest_release_api", defaults_pb.latest_release_api)
        ),
        version_cache_ttl=version_cache_ttl,
        request_timeout=_expect_positive_float(
            pb_mapping.get("request_timeout"),
            "pocketbase.request_timeout",
            default=defaults_pb.request_timeout,
        ),
        arch=str(pb_mapping.get("arch", defaults_pb.arch)),
    )

    nginx_mapping = _as_dict(raw.get("nginx"), "nginx")
    nginx = NginxConfig(
        layout=str(nginx_mapping.get("layout", "auto")),
        root=_to_path(nginx_mapping.get("root", "/etc/nginx")),
        nginx_bin=str(nginx_mapping.get("nginx_bin", "nginx")),
        os_release=_to_path(nginx_mapping.get("os_release", "/etc/os-release")),
        acme_root=_to_path(nginx_mapping.get("acme_root", "/var/www/html")),
    )

    pm2_mapping = _as_dict(raw.get("pm2"), "pm2")
    pm2 = Pm2Config(
        pm2_bin=str(pm2_mapping.get("pm2_bin", "pm2")),
        process_prefix=str(pm2_mapping.get("process_prefix", "pb-")),
        max_memory_restart=str(pm2_mapping.get("max_memory_restart", "200M")),
    )

    certbot_mapping = _as_dict(raw.get("certbot"), "certbot")
    warn_expiry_days = _expect_int(
        certbot_mapping.get("warn_expiry_days"), "certbot.warn_expiry_days", default=30
    )
    if warn_expiry_days < 0:
        raise ConfigError("certbot.warn_expiry_days must be non-negative.")
    certbot = CertbotConfig(
        certbot_bin=str(certbot_mapping.get("certbot_bin", "certbot")),
        live_dir=_to_path(certbot_mapping.get("live_dir", "/etc/letsencrypt/live")),
        dhparam_path=_to_path(
            certbot_mapping.get("dhparam_path", "/etc/letsencrypt/ssl-dhparams.pem")
        ),
        options_file=_to_path(
            certbot_mapping.get("options_file", "/etc/letsencrypt/options-ssl-nginx.conf")
        ),
        dhparam_bits=_expect_int(
            certbot_mapping.get("dhparam_bits"), "certbot.dhparam_bits", default=2048
        ),
        warn_expiry_days=warn_expiry_days,
    )

    dns_mapping = _as_dict(raw.get("dns"), "dns")
    urls_raw = dns_mapping.get("public_ip_urls")
    public_ip_urls = (
        DnsConfig.public_ip_urls
        if urls_raw is None
        else tuple(str(item) for item in _as_sequence(urls_raw, "dns.public_ip_urls"))
    )
    dns = DnsConfig(
        enabled=bool(dns_mapping.get("enabled", True)),
        timeout=_expect_positive_float(dns_mapping.get("timeout"), "dns.timeout", default=5.0),
        public_ip_urls=public_ip_urls,
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        bin_dir=bin_dir,
        instances_root=instances_root,
        ecosystem_file=ecosystem_file,
        lock_timeout=lock_timeout,
        pocketbase=pocketbase,
        nginx=nginx,
        pm2=pm2,
        certbot=certbot,
        dns=dns,
    )


def _derived_path(value: object | None, fallback: Path) -> Path:
    return _to_path(value) if value else fallback


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "CertbotConfig",
    "ConfigError",
    "DnsConfig",
    "FALLBACK_POCKETBASE_VERSION",
    "NginxConfig",
    "Pm2Config",
    "PocketBaseConfig",
    "load_config",
]
