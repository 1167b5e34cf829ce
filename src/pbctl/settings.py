"""Operator settings persisted in ``settings.yml``.

Settings are the values an operator changes at runtime rather than at install
time: the default certificate email offered when adding instances, a pinned
PocketBase version, and the shared secret that gates the command bridge.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any

from .instances import validate_email
from .providers.version_provider import normalize_version
from .state import StateRegistry


@dataclass(frozen=True)
class OperatorSettings:
    """Typed view over ``settings.yml``."""

    default_certificate_email: str | None = None
    default_pocketbase_version: str | None = None
    bridge_enabled: bool = False
    bridge_secret: str | None = None

    @classmethod
    def from_mapping(cls, payload: dict[str, Any]) -> OperatorSettings:
        """Build settings from the merged registry mapping."""
        bridge = payload.get("bridge") or {}
        email = payload.get("default_certificate_email")
        version = payload.get("default_pocketbase_version")
        secret = bridge.get("secret")
        return cls(
            default_certificate_email=str(email) if email else None,
            default_pocketbase_version=str(version) if version else None,
            bridge_enabled=bool(bridge.get("enabled", False)),
            bridge_secret=str(secret) if secret else None,
        )

    @property
    def bridge_ready(self) -> bool:
        """Return ``True`` when the bridge may accept requests."""
        return self.bridge_enabled and bool(self.bridge_secret)

    def to_dict(self, *, reveal_secret: bool = False) -> dict[str, Any]:
        """Return a serialisable representation, masking the secret by default."""
        if self.bridge_secret is None:
            secret: str | None = None
        elif reveal_secret:
            secret = self.bridge_secret
        else:
            secret = "********"
        return {
            "default_certificate_email": self.default_certificate_email,
            "default_pocketbase_version": self.default_pocketbase_version,
            "bridge": {"enabled": self.bridge_enabled, "secret": secret},
        }


def load_settings(registry: StateRegistry) -> OperatorSettings:
    """Return the current operator settings."""
    return OperatorSettings.from_mapping(registry.read_settings())


def set_default_email(registry: StateRegistry, email: str | None) -> OperatorSettings:
    """Store (or clear, when *email* is empty) the default certificate email."""
    clean = validate_email(email, required=False)
    return OperatorSettings.from_mapping(
        registry.update_settings({"default_certificate_email": clean})
    )


def set_default_version(registry: StateRegistry, version: str | None) -> OperatorSettings:
    """Pin (or unpin, when *version* is empty) the PocketBase version to install."""
    clean = normalize_version(version) if version else None
    return OperatorSettings.from_mapping(
        registry.update_settings({"default_pocketbase_version": clean})
    )


def configure_bridge(
    registry: StateRegistry,
    *,
    enabled: bool,
    rotate_secret: bool = False,
) -> OperatorSettings:
    """Enable or disable the bridge, generating a secret when none exists."""
    current = load_settings(registry)
    secret = current.bridge_secret
    if enabled and (secret is None or rotate_secret):
        secret = secrets.token_urlsafe(32)
    return OperatorSettings.from_mapping(
        registry.update_settings({"bridge": {"enabled": enabled, "secret": secret}})
    )


__all__ = [
    "OperatorSettings",
    "configure_bridge",
    "load_settings",
    "set_default_email",
    "set_default_version",
]
