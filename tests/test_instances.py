"""Tests for instance validation, port suggestion and operator settings."""
from __future__ import annotations

from pathlib import Path

import pytest

from pbctl.instances import (
    InstanceRecord,
    InstanceValidationError,
    build_record,
    validate_domain,
    validate_email,
    validate_name,
    validate_port,
)
from pbctl.ports import suggest_port
from pbctl.settings import (
    configure_bridge,
    load_settings,
    set_default_email,
    set_default_version,
)
from pbctl.state import StateRegistry

ROOT = Path("/var/lib/pbctl/instances")


def _existing() -> dict[str, InstanceRecord]:
    return {
        "blog": InstanceRecord(
            name="blog", domain="blog.example.com", port=8090, data_dir=ROOT / "blog"
        ),
        "shop": InstanceRecord(
            name="shop", domain="shop.example.com", port=8091, data_dir=ROOT / "shop"
        ),
    }


@pytest.mark.parametrize("name", ["", "has space", "slash/name", "dots.in.name", "ünï"])
def test_invalid_names(name: str) -> None:
    """Names are limited to letters, digits and hyphens."""
    with pytest.raises(InstanceValidationError):
        validate_name(name)


@pytest.mark.parametrize("port", [1024, 65535, 80, "http", True, None])
def test_invalid_ports(port: object) -> None:
    """Ports must lie strictly between 1024 and 65535."""
    with pytest.raises(InstanceValidationError):
        validate_port(port)


def test_port_bounds_are_exclusive() -> None:
    """1025 and 65534 are the extreme valid ports."""
    assert validate_port(1025) == 1025
    assert validate_port("65534") == 65534


def test_domain_is_normalised() -> None:
    """Domains are lower-cased and stripped of a trailing dot."""
    assert validate_domain(" Blog.Example.COM. ") == "blog.example.com"
    with pytest.raises(InstanceValidationError):
        validate_domain("bad_domain!.com")


def test_email_required_only_with_tls() -> None:
    """An email is optional unless TLS is requested."""
    assert validate_email(None, required=False) is None
    with pytest.raises(InstanceValidationError, match="required"):
        validate_email("", required=True)
    with pytest.raises(InstanceValidationError, match="Invalid email"):
        validate_email("not-an-email", required=False)


@pytest.mark.parametrize(
    ("name", "domain", "port", "message"),
    [
        ("blog", "new.example.com", 8092, "already exists"),
        ("new", "BLOG.example.com", 8092, "Domain 'blog.example.com' is already used"),
        ("new", "new.example.com", 8091, "Port 8091 is already used by instance 'shop'"),
    ],
)
def test_build_record_enforces_uniqueness(
    name: str, domain: str, port: int, message: str
) -> None:
    """Names, domains and ports are unique across the registry."""
    with pytest.raises(InstanceValidationError) as excinfo:
        build_record(
            _existing(),
            instances_root=ROOT,
            name=name,
            domain=domain,
            port=port,
            use_tls=False,
            certificate_email=None,
        )

    assert message in str(excinfo.value)


def test_build_record_derives_data_dir() -> None:
    """The data directory is derived from the name."""
    record = build_record(
        _existing(),
        instances_root=ROOT,
        name="docs",
        domain="Docs.Example.com",
        port="8092",
        use_tls=True,
        certificate_email="ops@example.com",
        use_http2=False,
    )

    assert record.data_dir == ROOT / "docs"
    assert record.domain == "docs.example.com"
    assert record.port == 8092
    assert record.use_http2 is False
    assert record.max_body_20mb is True


def test_suggest_port_skips_used_ports() -> None:
    """The first free port at or above the base is offered."""
    assert suggest_port({}) == 8090
    assert suggest_port(_existing()) == 8092
    assert suggest_port(_existing(), base_port=9000) == 9000
    with pytest.raises(InstanceValidationError):
        suggest_port({}, base_port=80)


def test_settings_defaults_and_updates(tmp_path: Path) -> None:
    """Settings start empty and validate what is stored."""
    registry = StateRegistry(tmp_path)

    settings = load_settings(registry)
    assert settings.default_certificate_email is None
    assert settings.bridge_ready is False

    assert set_default_email(registry, "ops@example.com").default_certificate_email == (
        "ops@example.com"
    )
    assert set_default_email(registry, "").default_certificate_email is None
    with pytest.raises(InstanceValidationError):
        set_default_email(registry, "nope")

    assert set_default_version(registry, "v0.29.0").default_pocketbase_version == "0.29.0"
    with pytest.raises(ValueError):
        set_default_version(registry, "banana")


def test_bridge_secret_generation_and_masking(tmp_path: Path) -> None:
    """Enabling the bridge creates a secret that is masked unless revealed."""
    registry = StateRegistry(tmp_path)

    enabled = configure_bridge(registry, enabled=True)
    assert enabled.bridge_ready
    secret = enabled.bridge_secret
    assert secret is not None and len(secret) >= 32
    assert enabled.to_dict()["bridge"] == {"enabled": True, "secret": "********"}
    assert enabled.to_dict(reveal_secret=True)["bridge"]["secret"] == secret

    assert configure_bridge(registry, enabled=True).bridge_secret == secret
    rotated = configure_bridge(registry, enabled=True, rotate_secret=True)
    assert rotated.bridge_secret != secret

    disabled = configure_bridge(registry, enabled=False)
    assert disabled.bridge_ready is False
    assert disabled.bridge_secret == rotated.bridge_secret
