"""Instance records and the invariants that guard them."""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9-]+$")
DOMAIN_PATTERN = re.compile(
    r"^(?=.{1,253}$)(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))*$"
)
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PORT_MIN = 1024
PORT_MAX = 65535

_KNOWN_KEYS = (
    "name",
    "domain",
    "port",
    "data_dir",
    "use_tls",
    "certificate_email",
    "use_http2",
    "max_body_20mb",
)


class InstanceValidationError(RuntimeError):
    """Raised when an instance request violates a registry invariant."""


@dataclass(slots=True)
class InstanceRecord:
    """Configuration record for one managed PocketBase process."""

    name: str
    domain: str
    port: int
    data_dir: Path
    use_tls: bool = False
    certificate_email: str | None = None
    use_http2: bool = True
    max_body_20mb: bool = True
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, name: str, payload: Mapping[str, Any]) -> InstanceRecord:
        """Build a record from a registry mapping, keeping unknown keys."""
        try:
            port = int(payload["port"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InstanceValidationError(
                f"Registry entry '{name}' has no valid port."
            ) from exc
        domain = payload.get("domain")
        data_dir = payload.get("data_dir")
        if not domain or not data_dir:
            raise InstanceValidationError(
                f"Registry entry '{name}' is missing domain or data_dir."
            )
        email = payload.get("certificate_email")
        return cls(
            name=str(payload.get("name", name)),
            domain=str(domain),
            port=port,
            data_dir=Path(str(data_dir)),
            use_tls=bool(payload.get("use_tls", False)),
            certificate_email=str(email) if email else None,
            use_http2=bool(payload.get("use_http2", True)),
            max_body_20mb=bool(payload.get("max_body_20mb", True)),
            extra={key: value for key, value in payload.items() if key not in _KNOWN_KEYS},
        )

    def to_mapping(self) -> dict[str, Any]:
        """Return the mapping stored in ``instances.yml``."""
        payload: dict[str, Any] = {
            "name": self.name,
            "domain": self.domain,
            "port": self.port,
            "data_dir": str(self.data_dir),
            "use_tls": self.use_tls,
            "certificate_email": self.certificate_email,
            "use_http2": self.use_http2,
            "max_body_20mb": self.max_body_20mb,
        }
        payload.update(self.extra)
        return payload


def data_dir_for(instances_root: Path, name: str) -> Path:
    """Return the data directory derived from an instance *name*."""
    return instances_root / name


def normalize_domain(domain: str) -> str:
    """Lower-case *domain* and strip surrounding whitespace and dots."""
    return domain.strip().strip(".").lower()


def validate_name(name: str) -> str:
    """Ensure *name* is identifier-safe."""
    candidate = name.strip()
    if not candidate or not NAME_PATTERN.match(candidate):
        raise InstanceValidationError(
            f"Invalid instance name '{name}'. Use letters, digits, and hyphens only."
        )
    return candidate


def validate_domain(domain: str) -> str:
    """Ensure *domain* is a plausible hostname and return it normalised."""
    candidate = normalize_domain(domain)
    if not DOMAIN_PATTERN.match(candidate):
        raise InstanceValidationError(f"Invalid domain '{domain}'.")
    return candidate


def validate_port(port: object) -> int:
    """Ensure *port* is an integer strictly between 1024 and 65535."""
    if isinstance(port, bool):
        raise InstanceValidationError(f"Invalid port {port!r}.")
    try:
        value = int(port)  # type: ignore[call-overload]
    except (TypeError, ValueError) as exc:
        raise InstanceValidationError(f"Invalid port {port!r}.") from exc
    if not PORT_MIN < value < PORT_MAX:
        raise InstanceValidationError(
            f"Port {value} is out of range; choose a value between "
            f"{PORT_MIN + 1} and {PORT_MAX - 1}."
        )
    return value


def validate_email(email: str | None, *, required: bool) -> str | None:
    """Validate an issuance email; mandatory when TLS is requested."""
    candidate = (email or "").strip()
    if not candidate:
        if required:
            raise InstanceValidationError(
                "A certificate email is required when TLS is enabled."
            )
        return None
    if not EMAIL_PATTERN.match(candidate):
        raise InstanceValidationError(f"Invalid email address '{candidate}'.")
    return candidate


def ensure_unique(
    records: Mapping[str, InstanceRecord],
    *,
    name: str,
    domain: str,
    port: int,
) -> None:
    """Reject *name*, *domain* or *port* when another record already owns it."""
    if name in records:
        raise InstanceValidationError(f"Instance '{name}' already exists.")
    for record in records.values():
        if record.port == port:
            raise InstanceValidationError(
                f"Port {port} is already used by instance '{record.name}'."
            )
        if normalize_domain(record.domain) == domain:
            raise InstanceValidationError(
                f"Domain '{domain}' is already used by instance '{record.name}'."
            )


def build_record(
    records: Mapping[str, InstanceRecord],
    *,
    instances_root: Path,
    name: str,
    domain: str,
    port: object,
    use_tls: bool,
    certificate_email: str | None,
    use_http2: bool = True,
    max_body_20mb: bool = True,
) -> InstanceRecord:
    """Validate a new instance request against *records* and return its record."""
    clean_name = validate_name(name)
    clean_domain = validate_domain(domain)
    clean_port = validate_port(port)
    clean_email = validate_email(certificate_email, required=use_tls)
    ensure_unique(records, name=clean_name, domain=clean_domain, port=clean_port)
    return InstanceRecord(
        name=clean_name,
        domain=clean_domain,
        port=clean_port,
        data_dir=data_dir_for(instances_root, clean_name),
        use_tls=use_tls,
        certificate_email=clean_email,
        use_http2=use_http2,
        max_body_20mb=max_body_20mb,
    )


__all__ = [
    "InstanceRecord",
    "InstanceValidationError",
    "build_record",
    "data_dir_for",
    "ensure_unique",
    "normalize_domain",
    "validate_domain",
    "validate_email",
    "validate_name",
    "validate_port",
]
