"""Secret-gated entry point for the network-facing API process.

The API process runs with fewer privileges and calls::

    pbctl internal-api-request --secret S --action add-instance --payload B64

where ``B64`` is the base64 encoding of a JSON object. Each action has one
frozen payload dataclass; unknown keys, missing required keys and values of
the wrong type are rejected before any operation runs. The response is the
JSON envelope produced by :meth:`OperationResult.to_envelope`.

The bridge never prompts. DNS warnings during certificate acquisition abort the
certificate step unless the payload sets ``ignore_dns_warnings``.
"""
from __future__ import annotations

import base64
import binascii
import json
import secrets
import types
import typing
from collections.abc import Callable, Mapping
from dataclasses import MISSING, dataclass, fields
from enum import Enum
from typing import Any

from .exit_codes import ExitCode
from .logging import StructuredLogger
from .orchestrator import (
    OPERATION_ERRORS,
    AddRequest,
    CloneRequest,
    OperationResult,
    Orchestrator,
)
from .settings import load_settings
from .state import StateRegistry
from .tls import DnsCheckResult


class BridgeError(RuntimeError):
    """Raised when a bridge request is malformed."""


class BridgeAction(Enum):
    """Actions the bridge accepts."""

    LIST_INSTANCES = "list-instances"
    ADD_INSTANCE = "add-instance"
    REMOVE_INSTANCE = "remove-instance"
    CLONE_INSTANCE = "clone-instance"
    RESET_INSTANCE = "reset-instance"
    RESET_CREDENTIAL = "reset-credential"
    RENEW_CERTIFICATES = "renew-certificates"
    UPDATE_BINARY = "update-binary"
    REBUILD_ECOSYSTEM = "rebuild-ecosystem"
    SET_DEFAULT_EMAIL = "set-default-email"
    GET_LOGS = "get-logs"
    GET_DIAGNOSTICS = "get-diagnostics"


@dataclass(frozen=True)
class ListInstancesPayload:
    """No parameters."""


@dataclass(frozen=True)
class AddInstancePayload:
    name: str
    domain: str
    port: int
    use_tls: bool = False
    certificate_email: str | None = None
    use_http2: bool = True
    max_body_20mb: bool = True
    run_certbot: bool = True
    ignore_dns_warnings: bool = False
    superuser_email: str | None = None
    superuser_password: str | None = None


@dataclass(frozen=True)
class RemoveInstancePayload:
    name: str
    delete_data: bool = False


@dataclass(frozen=True)
class CloneInstancePayload:
    source: str
    name: str
    domain: str
    port: int
    use_tls: bool = False
    certificate_email: str | None = None
    use_http2: bool = True
    max_body_20mb: bool = True
    run_certbot: bool = True
    ignore_dns_warnings: bool = False


@dataclass(frozen=True)
class ResetInstancePayload:
    name: str
    superuser_email: str | None = None
    superuser_password: str | None = None


@dataclass(frozen=True)
class ResetCredentialPayload:
    name: str
    email: str
    password: str


@dataclass(frozen=True)
class RenewCertificatesPayload:
    name: str | None = None
    force: bool = False


@dataclass(frozen=True)
class UpdateBinaryPayload:
    version: str | None = None


@dataclass(frozen=True)
class RebuildEcosystemPayload:
    """No parameters."""


@dataclass(frozen=True)
class SetDefaultEmailPayload:
    email: str | None = None


@dataclass(frozen=True)
class GetLogsPayload:
    name: str
    lines: int = 50


@dataclass(frozen=True)
class GetDiagnosticsPayload:
    """No parameters."""


def _accept_dns(ignore: bool) -> Callable[[DnsCheckResult], bool] | None:
    if not ignore:
        return None
    return lambda _result: True


def _list_instances(orch: Orchestrator, payload: ListInstancesPayload) -> OperationResult:
    return orch.list_instances()


def _add_instance(orch: Orchestrator, payload: AddInstancePayload) -> OperationResult:
    request = AddRequest(
        name=payload.name,
        domain=payload.domain,
        port=payload.port,
        use_tls=payload.use_tls,
        certificate_email=payload.certificate_email,
        use_http2=payload.use_http2,
        max_body_20mb=payload.max_body_20mb,
        run_certbot=payload.run_certbot,
        superuser_email=payload.superuser_email,
        superuser_password=payload.superuser_password,
    )
    return orch.add(request, confirm_dns=_accept_dns(payload.ignore_dns_warnings))


def _remove_instance(orch: Orchestrator, payload: RemoveInstancePayload) -> OperationResult:
    return orch.remove(payload.name, delete_data=payload.delete_data)


def _clone_instance(orch: Orchestrator, payload: CloneInstancePayload) -> OperationResult:
    request = CloneRequest(
        source=payload.source,
        name=payload.name,
        domain=payload.domain,
        port=payload.port,
        use_tls=payload.use_tls,
        certificate_email=payload.certificate_email,
        use_http2=payload.use_http2,
        max_body_20mb=payload.max_body_20mb,
        run_certbot=payload.run_certbot,
    )
    return orch.clone(request, confirm_dns=_accept_dns(payload.ignore_dns_warnings))


def _reset_instance(orch: Orchestrator, payload: ResetInstancePayload) -> OperationResult:
    return orch.reset(
        payload.name,
        superuser_email=payload.superuser_email,
        superuser_password=payload.superuser_password,
    )


def _reset_credential(orch: Orchestrator, payload: ResetCredentialPayload) -> OperationResult:
    return orch.reset_credential(payload.name, payload.email, payload.password)


def _renew_certificates(
    orch: Orchestrator, payload: RenewCertificatesPayload
) -> OperationResult:
    return orch.renew_certificates(payload.name, force=payload.force)


def _update_binary(orch: Orchestrator, payload: UpdateBinaryPayload) -> OperationResult:
    return orch.update_binary(payload.version)


def _rebuild_ecosystem(orch: Orchestrator, payload: RebuildEcosystemPayload) -> OperationResult:
    return orch.rebuild_ecosystem()


def _set_default_email(orch: Orchestrator, payload: SetDefaultEmailPayload) -> OperationResult:
    return orch.set_default_email(payload.email)


def _get_logs(orch: Orchestrator, payload: GetLogsPayload) -> OperationResult:
    return orch.get_logs(payload.name, lines=payload.lines)


def _get_diagnostics(orch: Orchestrator, payload: GetDiagnosticsPayload) -> OperationResult:
    return orch.get_diagnostics()


Handler = Callable[[Orchestrator, Any], OperationResult]

DISPATCH: dict[BridgeAction, tuple[type, Handler]] = {
    BridgeAction.LIST_INSTANCES: (ListInstancesPayload, _list_instances),
    BridgeAction.ADD_INSTANCE: (AddInstancePayload, _add_instance),
    BridgeAction.REMOVE_INSTANCE: (RemoveInstancePayload, _remove_instance),
    BridgeAction.CLONE_INSTANCE: (CloneInstancePayload, _clone_instance),
    BridgeAction.RESET_INSTANCE: (ResetInstancePayload, _reset_instance),
    BridgeAction.RESET_CREDENTIAL: (ResetCredentialPayload, _reset_credential),
    BridgeAction.RENEW_CERTIFICATES: (RenewCertificatesPayload, _renew_certificates),
    BridgeAction.UPDATE_BINARY: (UpdateBinaryPayload, _update_binary),
    BridgeAction.REBUILD_ECOSYSTEM: (RebuildEcosystemPayload, _rebuild_ecosystem),
    BridgeAction.SET_DEFAULT_EMAIL: (SetDefaultEmailPayload, _set_default_email),
    BridgeAction.GET_LOGS: (GetLogsPayload, _get_logs),
    BridgeAction.GET_DIAGNOSTICS: (GetDiagnosticsPayload, _get_diagnostics),
}

_unhandled = set(BridgeAction) - set(DISPATCH)
if _unhandled:  # pragma: no cover - guarded by tests
    raise RuntimeError(
        "Bridge actions without a handler: "
        + ", ".join(sorted(action.value for action in _unhandled))
    )


def decode_blob(blob: str | None) -> dict[str, Any]:
    """Decode a base64 JSON object; an empty blob is an empty object."""
    if blob is None or not blob.strip():
        return {}
    try:
        raw = base64.b64decode(blob.strip(), validate=True)
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BridgeError(f"Payload is not base64-encoded JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise BridgeError("Payload must be a JSON object.")
    return payload


def parse_payload(action: BridgeAction, raw: Mapping[str, Any]) -> Any:
    """Build the payload dataclass for *action* from *raw*."""
    payload_type = DISPATCH[action][0]
    hints = typing.get_type_hints(payload_type)
    known = {item.name: item for item in fields(payload_type)}
    unknown = sorted(set(raw) - set(known))
    if unknown:
        raise BridgeError(f"Unknown payload field(s) for {action.value}: {', '.join(unknown)}.")

    values: dict[str, Any] = {}
    for name, item in known.items():
        if name not in raw:
            if item.default is MISSING and item.default_factory is MISSING:
                raise BridgeError(f"Missing payload field '{name}' for {action.value}.")
            continue
        value = raw[name]
        if not _matches(value, hints[name]):
            raise BridgeError(f"Payload field '{name}' has the wrong type.")
        values[name] = value
    return payload_type(**values)


def _matches(value: object, hint: object) -> bool:
    if isinstance(hint, types.UnionType) or typing.get_origin(hint) is typing.Union:
        return any(_matches(value, option) for option in typing.get_args(hint))
    if hint is type(None):
        return value is None
    if hint is bool:
        return isinstance(value, bool)
    if hint is int:
        return isinstance(value, int) and not isinstance(value, bool)
    if isinstance(hint, type):
        return isinstance(value, hint)
    return False


class Bridge:
    """Authenticate and dispatch requests from the API process."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        registry: StateRegistry,
        logger: StructuredLogger,
    ) -> None:
        self.orchestrator = orchestrator
        self.registry = registry
        self.logger = logger

    def handle(self, secret: str, action: str, payload_blob: str | None = None) -> OperationResult:
        """Run *action* when *secret* matches the configured bridge secret."""
        with self.logger.operation("bridge", args={"action": action}) as op:
            refusal = self._authorize(secret)
            result = refusal if refusal is not None else self._dispatch(action, payload_blob)

            if result.success:
                op.success(f"{action} completed")
            else:
                op.error(result.error or f"{action} failed", rc=int(result.exit_code))
            return result

    def _authorize(self, secret: str) -> OperationResult | None:
        try:
            settings = load_settings(self.registry)
        except OPERATION_ERRORS as exc:
            return OperationResult.failure(
                f"Unable to read bridge settings: {exc}", exit_code=ExitCode.ENVIRONMENT
            )
        if not settings.bridge_ready or settings.bridge_secret is None:
            return OperationResult.failure(
                "The command bridge is disabled.", exit_code=ExitCode.UNAUTHORIZED
            )
        if not secrets.compare_digest(
            secret.encode("utf-8"), settings.bridge_secret.encode("utf-8")
        ):
            return OperationResult.failure(
                "Invalid bridge secret.", exit_code=ExitCode.UNAUTHORIZED
            )
        return None

    def _dispatch(self, action: str, payload_blob: str | None) -> OperationResult:
        try:
            bridge_action = BridgeAction(action)
        except ValueError:
            return OperationResult.failure(
                f"Unknown action '{action}'.", exit_code=ExitCode.VALIDATION
            )
        try:
            payload = parse_payload(bridge_action, decode_blob(payload_blob))
        except BridgeError as exc:
            return OperationResult.failure(str(exc), exit_code=ExitCode.VALIDATION)
        handler = DISPATCH[bridge_action][1]
        return handler(self.orchestrator, payload)


__all__ = [
    "Bridge",
    "BridgeAction",
    "BridgeError",
    "DISPATCH",
    "decode_blob",
    "parse_payload",
]
