"""Provider interfaces for pbctl."""
from __future__ import annotations

from .binary_installer import BinaryInstaller, BinaryInstallError, BinaryInstallResult
from .certbot import CertbotError, CertbotProvider
from .nginx import NginxError, NginxLayout, NginxProvider, NginxRenderResult, detect_layout
from .pm2 import Pm2Error, Pm2Provider, ProcessStatus
from .pocketbase import PocketBaseError, PocketBaseProvider
from .version_provider import ResolvedVersion, VersionCache, VersionResolver

__all__ = [
    "BinaryInstallError",
    "BinaryInstallResult",
    "BinaryInstaller",
    "CertbotError",
    "CertbotProvider",
    "NginxError",
    "NginxLayout",
    "NginxProvider",
    "NginxRenderResult",
    "Pm2Error",
    "Pm2Provider",
    "PocketBaseError",
    "PocketBaseProvider",
    "ProcessStatus",
    "ResolvedVersion",
    "VersionCache",
    "VersionResolver",
    "detect_layout",
]
