"""Unit tests for DNS validation, DH parameters and the certificate workflow."""
from __future__ import annotations

import socket
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from pbctl import tls as tls_module
from pbctl.config import DnsConfig
from pbctl.instances import InstanceRecord, InstanceValidationError
from pbctl.runtime import RuntimeContext
from pbctl.tls import (
    DhParams,
    DnsCheckResult,
    DnsOutcome,
    DnsValidator,
    certificate_status,
)

if TYPE_CHECKING:
    from conftest import StubHost

HOST_ADDRESS = "203.0.113.10"


def _create_self_signed_cert(path: Path, *, common_name: str, valid_to: datetime) -> Path:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_to - timedelta(days=90))
        .not_valid_after(valid_to)
        .sign(key, hashes.SHA256())
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return path


def _resolver_for(*addresses: str):  # type: ignore[no-untyped-def]
    def resolve(host: str, *args: Any) -> list[tuple[object, ...]]:
        return [
            (socket.AF_INET, socket.SOCK_STREAM, 6, "", (address, 0)) for address in addresses
        ]

    return resolve


def _failing_resolver(errno: int):  # type: ignore[no-untyped-def]
    def resolve(host: str, *args: Any) -> list[tuple[object, ...]]:
        raise socket.gaierror(errno, "lookup failed")

    return resolve


def _validator(resolver: Any, monkeypatch: pytest.MonkeyPatch) -> DnsValidator:
    validator = DnsValidator(DnsConfig(enabled=True, timeout=1.0), resolver=resolver)
    monkeypatch.setattr(validator, "public_addresses", lambda: {HOST_ADDRESS})
    return validator


def _tls_record(runtime: RuntimeContext, **overrides: object) -> InstanceRecord:
    values: dict[str, object] = {
        "name": "blog",
        "domain": "blog.example.com",
        "port": 8090,
        "data_dir": runtime.config.instances_root / "blog",
        "use_tls": True,
        "certificate_email": "ops@example.com",
    }
    values.update(overrides)
    return InstanceRecord(**values)  # type: ignore[arg-type]


def test_dns_disabled_skips() -> None:
    """Disabled validation never resolves anything."""
    validator = DnsValidator(DnsConfig(enabled=False), resolver=_failing_resolver(0))

    result = validator.check("blog.example.com")

    assert result.outcome is DnsOutcome.SKIPPED
    assert not result.needs_confirmation


def test_dns_match(monkeypatch: pytest.MonkeyPatch) -> None:
    """A domain pointing at this host passes."""
    result = _validator(_resolver_for(HOST_ADDRESS, "2001:db8::1"), monkeypatch).check(
        "blog.example.com"
    )

    assert result.outcome is DnsOutcome.MATCH
    assert result.domain_addresses == ("2001:db8::1", HOST_ADDRESS)
    assert not result.needs_confirmation


def test_dns_mismatch_is_a_soft_warning(monkeypatch: pytest.MonkeyPatch) -> None:
    """A domain resolving elsewhere needs confirmation."""
    result = _validator(_resolver_for("198.51.100.7"), monkeypatch).check("blog.example.com")

    assert result.outcome is DnsOutcome.MISMATCH
    assert result.needs_confirmation
    assert "198.51.100.7" in result.message
    assert result.to_dict()["outcome"] == "mismatch"


def test_dns_unresolved_is_a_hard_warning(monkeypatch: pytest.MonkeyPatch) -> None:
    """NXDOMAIN needs confirmation as well."""
    result = _validator(_failing_resolver(socket.EAI_NONAME), monkeypatch).check(
        "nope.example.com"
    )

    assert result.outcome is DnsOutcome.UNRESOLVED
    assert result.needs_confirmation


def test_dns_network_failure_skips(monkeypatch: pytest.MonkeyPatch) -> None:
    """Transient resolver failures skip validation rather than blocking."""
    result = _validator(_failing_resolver(socket.EAI_AGAIN), monkeypatch).check(
        "blog.example.com"
    )

    assert result.outcome is DnsOutcome.SKIPPED


def test_public_addresses_ignore_bad_lookups(monkeypatch: pytest.MonkeyPatch) -> None:
    """Lookup failures and junk answers are ignored."""
    config = DnsConfig(
        enabled=True,
        public_ip_urls=("https://down.invalid", "https://junk.invalid", "https://ok.invalid"),
    )

    def fake_get(url: str, **kwargs: Any) -> httpx.Response:
        request = httpx.Request("GET", url)
        if "down" in url:
            raise httpx.ConnectError("unreachable", request=request)
        if "junk" in url:
            return httpx.Response(200, text="<html>", request=request)
        return httpx.Response(200, text=f"{HOST_ADDRESS}\n", request=request)

    monkeypatch.setattr(tls_module.httpx, "get", fake_get)

    assert DnsValidator(config).public_addresses() == {HOST_ADDRESS}


@pytest.mark.mutation_timeout
def test_dhparams_generated_once(tmp_path: Path) -> None:
    """DH parameters are written once and then reused."""
    params = DhParams(tmp_path / "letsencrypt" / "ssl-dhparams.pem", bits=512)

    assert params.ensure() is True
    content = params.path.read_bytes()
    assert content.startswith(b"-----BEGIN DH PARAMETERS-----")
    assert (params.path.stat().st_mode & 0o777) == 0o644
    assert params.ensure() is False
    assert params.path.read_bytes() == content


def test_certificate_status_reports_days_remaining(tmp_path: Path) -> None:
    """Expiry is computed from the certificate's notAfter."""
    now = datetime(2030, 1, 1, tzinfo=UTC)
    cert = _create_self_signed_cert(
        tmp_path / "fullchain.pem",
        common_name="blog.example.com",
        valid_to=now + timedelta(days=20),
    )

    status = certificate_status("blog.example.com", cert, now=now)

    assert status.exists is True
    assert status.days_remaining == 20
    assert status.to_dict()["not_valid_after"] == "2030-01-21T00:00:00+00:00"


def test_certificate_status_missing_and_unreadable(tmp_path: Path) -> None:
    """Missing and corrupt certificates are reported, not raised."""
    missing = certificate_status("a.example.com", tmp_path / "none.pem")
    garbage_path = tmp_path / "garbage.pem"
    garbage_path.write_text("not a certificate")
    garbage = certificate_status("b.example.com", garbage_path)

    assert missing.exists is False
    assert garbage.exists is True
    assert garbage.error is not None
    assert garbage.days_remaining is None


def test_acquire_issues_certificate(stub_host: StubHost, runtime: RuntimeContext) -> None:
    """A clean run calls certbot once and leaves a certificate behind."""
    record = _tls_record(runtime)

    outcome = runtime.certificates.acquire(record)

    assert outcome.issued is True
    assert outcome.warnings == []
    assert stub_host.calls("certbot") == [
        "--nginx -d blog.example.com --non-interactive --agree-tos -m ops@example.com --redirect"
    ]
    assert runtime.certificates.has_certificate(record)


def test_acquire_aborts_on_unconfirmed_dns_warning(
    stub_host: StubHost, runtime: RuntimeContext, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Without confirmation certbot is never invoked after a DNS warning."""
    runtime.certificates.dns = _validator(_failing_resolver(socket.EAI_NONAME), monkeypatch)

    outcome = runtime.certificates.acquire(_tls_record(runtime))

    assert outcome.aborted is True
    assert outcome.issued is False
    assert outcome.dns is not None and outcome.dns.outcome is DnsOutcome.UNRESOLVED
    assert stub_host.calls("certbot") == []


def test_acquire_continues_when_confirmed(
    stub_host: StubHost, runtime: RuntimeContext, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A confirmed DNS warning proceeds to certbot."""
    runtime.certificates.dns = _validator(_resolver_for("198.51.100.7"), monkeypatch)
    seen: list[DnsCheckResult] = []

    def confirm(result: DnsCheckResult) -> bool:
        seen.append(result)
        return True

    outcome = runtime.certificates.acquire(_tls_record(runtime), confirm_dns=confirm)

    assert outcome.issued is True
    assert [result.outcome for result in seen] == [DnsOutcome.MISMATCH]
    assert len(outcome.warnings) == 1


def test_certbot_failure_is_a_warning(stub_host: StubHost, runtime: RuntimeContext) -> None:
    """certbot errors are not raised; the caller keeps the HTTP-only site."""
    stub_host.fail("certbot", "--nginx")

    outcome = runtime.certificates.acquire(_tls_record(runtime))

    assert outcome.issued is False
    assert outcome.error is not None and "exit 1" in outcome.error
    assert any("certbot failed" in warning for warning in outcome.warnings)
    assert len(stub_host.calls("certbot")) == 1


def test_missing_certbot_is_a_warning(stub_host: StubHost, runtime: RuntimeContext) -> None:
    """A host without certbot reports the problem instead of failing."""
    runtime.certificates.certbot.certbot_bin = str(stub_host.root / "no-certbot")

    outcome = runtime.certificates.acquire(_tls_record(runtime))

    assert outcome.issued is False
    assert outcome.error is not None and "not found" in outcome.error


def test_acquire_requires_tls_and_email(runtime: RuntimeContext) -> None:
    """Records without TLS or an email are rejected outright."""
    with pytest.raises(InstanceValidationError):
        runtime.certificates.acquire(_tls_record(runtime, use_tls=False))
    with pytest.raises(InstanceValidationError):
        runtime.certificates.acquire(_tls_record(runtime, certificate_email=None))


def test_renew_all_or_selected(stub_host: StubHost, runtime: RuntimeContext) -> None:
    """Renewal runs once for all certificates or once per selected domain."""
    runtime.certificates.renew()
    runtime.certificates.renew(["blog.example.com"], force=True)

    assert stub_host.calls("certbot") == [
        "renew --non-interactive",
        "renew --non-interactive --cert-name blog.example.com --force-renewal",
    ]


def test_reconcile_switches_between_http_and_https(runtime: RuntimeContext) -> None:
    """The final vhost follows whether a certificate was issued."""
    record = _tls_record(runtime)

    runtime.certificates.reconcile(record, issued=False)
    http_only = runtime.nginx.site_path("blog").read_text(encoding="utf-8")
    runtime.certificates.reconcile(record, issued=True)
    with_tls = runtime.nginx.site_path("blog").read_text(encoding="utf-8")

    assert "listen 443" not in http_only
    assert "listen 443 ssl http2;" in with_tls
