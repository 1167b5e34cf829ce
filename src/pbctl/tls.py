"""Certificate acquisition for pbctl instances.

Acquiring a certificate is a fixed sequence of independently fallible steps:

1. DNS validation: the domain has to resolve to one of this host's public
   addresses. A domain that does not resolve at all is a hard warning, one
   that resolves elsewhere is a soft warning. The caller decides whether to
   continue in both cases. When the network is unavailable the check is
   skipped.
2. Diffie-Hellman parameters: a single PEM file shared by every vhost is
   generated once per host.
3. certbot: ``certbot --nginx`` issues the certificate non-interactively.
4. Reconciliation: the vhost is re-rendered with TLS when certbot succeeded
   and HTTP-only otherwise.

The workflow never retries certbot. A failure is reported as a warning and the
owning operation carries on with the non-TLS parts.
"""
from __future__ import annotations

import ipaddress
import os
import socket
import tempfile
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import dh

from .config import DnsConfig
from .instances import InstanceRecord, InstanceValidationError
from .providers.certbot import CertbotError, CertbotProvider
from .providers.nginx import NginxProvider, NginxRenderResult

AddressResolver = Callable[..., list[tuple[object, ...]]]


class DnsOutcome(Enum):
    """Possible results of the pre-flight DNS check."""

    MATCH = "match"
    MISMATCH = "mismatch"
    UNRESOLVED = "unresolved"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class DnsCheckResult:
    """Outcome of :meth:`DnsValidator.check`."""

    domain: str
    outcome: DnsOutcome
    message: str
    domain_addresses: tuple[str, ...] = ()
    public_addresses: tuple[str, ...] = ()

    @property
    def needs_confirmation(self) -> bool:
        """Return ``True`` for outcomes where the caller has to decide."""
        return self.outcome in {DnsOutcome.MISMATCH, DnsOutcome.UNRESOLVED}

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "outcome": self.outcome.value,
            "message": self.message,
            "domain_addresses": list(self.domain_addresses),
            "public_addresses": list(self.public_addresses),
        }


class _NetworkUnavailable(Exception):
    """Internal signal that DNS could not be consulted at all."""


class DnsValidator:
    """Check that a domain points at this host before asking for a certificate."""

    def __init__(
        self,
        config: DnsConfig,
        *,
        resolver: AddressResolver = socket.getaddrinfo,
    ) -> None:
        self.config = config
        self._resolver = resolver

    def check(self, domain: str) -> DnsCheckResult:
        """Compare the A/AAAA records of *domain* with this host's public address."""
        if not self.config.enabled:
            return DnsCheckResult(domain, DnsOutcome.SKIPPED, "DNS validation disabled.")

        try:
            domain_addresses = self.resolve_domain(domain)
        except _NetworkUnavailable as exc:
            return DnsCheckResult(
                domain, DnsOutcome.SKIPPED, f"DNS lookup unavailable ({exc}); skipping validation."
            )
        if not domain_addresses:
            return DnsCheckResult(
                domain,
                DnsOutcome.UNRESOLVED,
                f"{domain} does not resolve to any address; certificate issuance will fail.",
            )

        public_addresses = self.public_addresses()
        if not public_addresses:
            return DnsCheckResult(
                domain,
                DnsOutcome.SKIPPED,
                "Could not determine this host's public address; skipping validation.",
                domain_addresses=tuple(sorted(domain_addresses)),
            )

        if domain_addresses & public_addresses:
            return DnsCheckResult(
                domain,
                DnsOutcome.MATCH,
                f"{domain} resolves to this host.",
                domain_addresses=tuple(sorted(domain_addresses)),
                public_addresses=tuple(sorted(public_addresses)),
            )
        return DnsCheckResult(
            domain,
            DnsOutcome.MISMATCH,
            (
                f"{domain} resolves to {', '.join(sorted(domain_addresses))}, not to this "
                f"host ({', '.join(sorted(public_addresses))})."
            ),
            domain_addresses=tuple(sorted(domain_addresses)),
            public_addresses=tuple(sorted(public_addresses)),
        )

    def resolve_domain(self, domain: str) -> set[str]:
        """Return the IPv4 and IPv6 addresses of *domain*."""
        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(self._resolver, domain, None, 0, socket.SOCK_STREAM)
        try:
            infos = future.result(timeout=self.config.timeout)
        except FutureTimeoutError as exc:
            raise _NetworkUnavailable(f"timed out after {self.config.timeout:.0f}s") from exc
        except socket.gaierror as exc:
            if exc.errno in {socket.EAI_NONAME, getattr(socket, "EAI_NODATA", socket.EAI_NONAME)}:
                return set()
            raise _NetworkUnavailable(str(exc)) from exc
        finally:
            executor.shutdown(wait=False)
        addresses: set[str] = set()
        for info in infos:
            sockaddr = info[4]
            if isinstance(sockaddr, tuple) and sockaddr:
                addresses.add(str(sockaddr[0]))
        return addresses

    def public_addresses(self) -> set[str]:
        """Return this host's public addresses as reported by the lookup URLs."""
        found: set[str] = set()
        for url in self.config.public_ip_urls:
            try:
                response = httpx.get(url, timeout=self.config.timeout)
                response.raise_for_status()
            except httpx.HTTPError:
                continue
            candidate = response.text.strip()
            try:
                found.add(str(ipaddress.ip_address(candidate)))
            except ValueError:
                continue
        return found


@dataclass(slots=True)
class DhParams:
    """Shared Diffie-Hellman parameter file referenced by every TLS vhost."""

    path: Path
    bits: int = 2048

    def exists(self) -> bool:
        """Return ``True`` when the parameter file is present and non-empty."""
        return self.path.exists() and self.path.stat().st_size > 0

    def ensure(self) -> bool:
        """Generate the parameter file when missing; return ``True`` if generated."""
        if self.exists():
            return False
        pem = self._generate()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as handle:
                handle.write(pem)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.path)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True

    def _generate(self) -> bytes:
        """Return PEM encoded parameters (CPU bound; takes minutes at 2048 bits)."""
        parameters = dh.generate_parameters(generator=2, key_size=self.bits)
        return parameters.parameter_bytes(
            serialization.Encoding.PEM,
            serialization.ParameterFormat.PKCS3,
        )


@dataclass(frozen=True)
class CertificateStatus:
    """Expiry information for an issued certificate."""

    domain: str
    path: Path
    exists: bool
    not_valid_after: datetime | None = None
    days_remaining: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "path": str(self.path),
            "exists": self.exists,
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
            "days_remaining": self.days_remaining,
            "error": self.error,
        }


def certificate_status(
    domain: str,
    path: Path,
    *,
    now: datetime | None = None,
) -> CertificateStatus:
    """Inspect the certificate at *path* and report when it expires."""
    if not path.exists():
        return CertificateStatus(domain=domain, path=path, exists=False)
    moment = now or datetime.now(UTC)
    try:
        cert = _load_certificate(path)
    except (OSError, ValueError) as exc:
        return CertificateStatus(domain=domain, path=path, exists=True, error=str(exc))
    not_after = _as_utc(cert.not_valid_after_utc)
    return CertificateStatus(
        domain=domain,
        path=path,
        exists=True,
        not_valid_after=not_after,
        days_remaining=(not_after - moment).days,
    )


@dataclass(slots=True)
class CertificateOutcome:
    """Result of one pass through the certificate workflow."""

    issued: bool = False
    dns: DnsCheckResult | None = None
    dhparam_generated: bool = False
    aborted: bool = False
    error: str | None = None
    messages: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "issued": self.issued,
            "dns": self.dns.to_dict() if self.dns else None,
            "dhparam_generated": self.dhparam_generated,
            "aborted": self.aborted,
            "error": self.error,
        }


DnsDecision = Callable[[DnsCheckResult], bool]


class CertificateWorkflow:
    """Drive DNS validation, DH parameters and certbot for one instance."""

    def __init__(
        self,
        *,
        dns: DnsValidator,
        dhparams: DhParams,
        certbot: CertbotProvider,
        nginx: NginxProvider,
    ) -> None:
        self.dns = dns
        self.dhparams = dhparams
        self.certbot = certbot
        self.nginx = nginx

    def acquire(
        self,
        record: InstanceRecord,
        *,
        confirm_dns: DnsDecision | None = None,
    ) -> CertificateOutcome:
        """Try to obtain a certificate for *record*.

        ``confirm_dns`` is consulted when DNS validation produced a warning; a
        missing callback or a ``False`` answer stops before certbot runs.
        """
        if not record.use_tls:
            raise InstanceValidationError(f"Instance '{record.name}' does not request TLS.")
        if not record.certificate_email:
            raise InstanceValidationError(
                f"Instance '{record.name}' needs a certificate email before requesting TLS."
            )

        outcome = CertificateOutcome()

        dns_result = self.dns.check(record.domain)
        outcome.dns = dns_result
        outcome.messages.append(f"DNS: {dns_result.message}")
        if dns_result.needs_confirmation:
            outcome.warnings.append(dns_result.message)
            proceed = confirm_dns(dns_result) if confirm_dns is not None else False
            if not proceed:
                outcome.aborted = True
                outcome.error = "Certificate request cancelled after DNS warning."
                outcome.messages.append(outcome.error)
                return outcome
            outcome.messages.append("Continuing despite the DNS warning.")

        try:
            outcome.dhparam_generated = self.dhparams.ensure()
        except (OSError, ValueError) as exc:
            outcome.error = f"Failed to prepare DH parameters at {self.dhparams.path}: {exc}"
            outcome.warnings.append(outcome.error)
            outcome.messages.append(outcome.error)
            return outcome
        if outcome.dhparam_generated:
            outcome.messages.append(f"Generated DH parameters at {self.dhparams.path}.")

        if not self.certbot.available():
            outcome.error = f"{self.certbot.certbot_bin} not found; cannot request a certificate."
            outcome.warnings.append(outcome.error)
            outcome.messages.append(outcome.error)
            return outcome

        try:
            self.certbot.obtain(record.domain, record.certificate_email)
        except CertbotError as exc:
            outcome.error = str(exc)
            outcome.warnings.append(f"certbot failed for {record.domain}: {exc}")
            outcome.messages.append(
                f"certbot failed for {record.domain}; keeping the HTTP-only configuration."
            )
            return outcome

        outcome.issued = True
        outcome.messages.append(f"Certificate issued for {record.domain}.")
        return outcome

    def reconcile(self, record: InstanceRecord, *, issued: bool) -> NginxRenderResult:
        """Render the final vhost: TLS when a certificate exists, HTTP-only otherwise."""
        return self.nginx.render_site(record, tls=issued)

    def has_certificate(self, record: InstanceRecord) -> bool:
        """Return ``True`` when certbot's live directory holds a certificate."""
        certificate, key = self.nginx.certificate_paths(record.domain)
        return certificate.exists() and key.exists()

    def status(self, record: InstanceRecord) -> CertificateStatus:
        """Return expiry information for *record*'s certificate."""
        certificate, _ = self.nginx.certificate_paths(record.domain)
        return certificate_status(record.domain, certificate)

    def renew(self, domains: Iterable[str] = (), *, force: bool = False) -> list[str]:
        """Renew certificates for *domains* (all when empty); return messages."""
        targets = list(domains)
        messages: list[str] = []
        if not targets:
            self.certbot.renew(force=force)
            messages.append("certbot renewed every certificate that was due.")
            return messages
        for domain in targets:
            self.certbot.renew(cert_name=domain, force=force)
            messages.append(f"certbot renewal finished for {domain}.")
        return messages


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "CertificateOutcome",
    "CertificateStatus",
    "CertificateWorkflow",
    "DhParams",
    "DnsCheckResult",
    "DnsOutcome",
    "DnsValidator",
    "certificate_status",
]
