"""Construction of the objects shared by CLI commands and the bridge."""
from __future__ import annotations

from dataclasses import dataclass

from .config import AppConfig
from .ecosystem import EcosystemBuilder
from .locking import LockManager
from .logging import StructuredLogger
from .providers import (
    BinaryInstaller,
    CertbotProvider,
    NginxLayout,
    NginxProvider,
    Pm2Provider,
    PocketBaseProvider,
    VersionCache,
    VersionResolver,
    detect_layout,
)
from .state import StateRegistry
from .templates import TemplateEngine
from .tls import CertificateWorkflow, DhParams, DnsValidator

VERSION_CACHE_FILE = "version-cache.json"


@dataclass(slots=True)
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    layout: NginxLayout
    nginx: NginxProvider
    pm2: Pm2Provider
    certbot: CertbotProvider
    pocketbase: PocketBaseProvider
    version_cache: VersionCache
    resolver: VersionResolver
    installer: BinaryInstaller
    ecosystem: EcosystemBuilder
    certificates: CertificateWorkflow


def build_runtime(
    config: AppConfig, *, version_cache: VersionCache | None = None
) -> RuntimeContext:
    """Wire providers for *config*; the nginx layout is detected once here."""
    registry = StateRegistry(config.registry_dir)
    registry.ensure_root()
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)

    layout = detect_layout(config.nginx)
    nginx = NginxProvider(
        templates=templates,
        layout=layout,
        certbot=config.certbot,
        acme_root=config.nginx.acme_root,
        nginx_bin=config.nginx.nginx_bin,
        site_prefix=config.pm2.process_prefix,
    )
    certbot = CertbotProvider(
        certbot_bin=config.certbot.certbot_bin,
        nginx_server_root=layout.root if layout.name == "rhel" else None,
    )
    pm2 = Pm2Provider(pm2_bin=config.pm2.pm2_bin, process_prefix=config.pm2.process_prefix)

    cache = version_cache or VersionCache(ttl_seconds=config.pocketbase.version_cache_ttl)
    resolver = VersionResolver(
        cache=cache,
        cache_path=registry.path_for(VERSION_CACHE_FILE),
        api_url=config.pocketbase.latest_release_api,
        fallback_version=config.pocketbase.fallback_version,
        timeout=config.pocketbase.request_timeout,
    )
    installer = BinaryInstaller(
        executable=config.pocketbase_bin,
        registry=registry,
        resolver=resolver,
        release_url=config.pocketbase.release_url,
        checksums_url=config.pocketbase.checksums_url,
        request_timeout=config.pocketbase.request_timeout,
        arch=config.pocketbase.arch,
    )
    ecosystem = EcosystemBuilder(
        path=config.ecosystem_file,
        executable=config.pocketbase_bin,
        process_prefix=config.pm2.process_prefix,
        max_memory_restart=config.pm2.max_memory_restart,
    )
    certificates = CertificateWorkflow(
        dns=DnsValidator(config.dns),
        dhparams=DhParams(config.certbot.dhparam_path, bits=config.certbot.dhparam_bits),
        certbot=certbot,
        nginx=nginx,
    )
    return RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        logger=logger,
        templates=templates,
        layout=layout,
        nginx=nginx,
        pm2=pm2,
        certbot=certbot,
        pocketbase=PocketBaseProvider(config.pocketbase_bin),
        version_cache=cache,
        resolver=resolver,
        installer=installer,
        ecosystem=ecosystem,
        certificates=certificates,
    )


__all__ = ["RuntimeContext", "build_runtime"]
