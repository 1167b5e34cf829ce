"""Lifecycle operations for PocketBase instances.

Every public method of :class:`Orchestrator` is an operation boundary: it
records an entry in ``operations.jsonl``, takes the registry mutation lock when
it changes state, and converts domain exceptions into an
:class:`OperationResult` instead of raising.

Mutating operations are expressed as a :class:`~pbctl.saga.Saga`. The order of
side effects is fixed: validate against the registry snapshot, prepare the data
directory, save the registry, render and activate the proxy configuration,
run the certificate workflow, regenerate the ecosystem descriptor and reload
the supervisor. Validation happens before the first step so a rejected request
leaves no trace on disk.
"""
from __future__ import annotations

import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from . import __version__
from .config import ConfigError
from .diagnostics import host_stats
from .exit_codes import ExitCode
from .instances import (
    InstanceRecord,
    InstanceValidationError,
    build_record,
    validate_email,
)
from .locking import DownloadLockHeldError, LockTimeoutError
from .logging import OperationScope
from .providers import (
    BinaryInstallError,
    CertbotError,
    NginxError,
    NginxRenderResult,
    Pm2Error,
    PocketBaseError,
    ProcessStatus,
)
from .runtime import RuntimeContext
from .saga import Saga, SagaOutcome, SagaStep
from .settings import load_settings
from .settings import set_default_email as store_default_email
from .state import StateRegistryError
from .tls import DnsCheckResult

OPERATION_ERRORS: tuple[type[BaseException], ...] = (RuntimeError, OSError, ValueError)
CONTROL_ACTIONS = ("start", "stop", "restart")
_PAST_TENSE = {"start": "Started", "stop": "Stopped", "restart": "Restarted"}

DnsDecision = Callable[[DnsCheckResult], bool]


def exit_code_for(exc: BaseException) -> ExitCode:
    """Map a domain exception onto the CLI exit code taxonomy."""
    if isinstance(exc, (InstanceValidationError, ConfigError, ValueError)):
        return ExitCode.VALIDATION
    if isinstance(
        exc,
        (NginxError, Pm2Error, CertbotError, PocketBaseError, BinaryInstallError),
    ):
        return ExitCode.PROVIDER
    if isinstance(exc, (DownloadLockHeldError, LockTimeoutError, StateRegistryError, OSError)):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


@dataclass(slots=True)
class OperationResult:
    """Outcome returned by every orchestrator operation."""

    success: bool
    messages: list[str] = field(default_factory=list)
    data: Any = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    exit_code: ExitCode = ExitCode.OK

    @classmethod
    def failure(
        cls,
        error: str,
        *,
        exit_code: ExitCode,
        messages: list[str] | None = None,
        warnings: list[str] | None = None,
    ) -> OperationResult:
        """Return a failed result carrying *error*."""
        return cls(
            success=False,
            messages=list(messages or []),
            error=error,
            warnings=list(warnings or []),
            exit_code=exit_code,
        )

    @classmethod
    def from_saga(cls, outcome: SagaOutcome, *, data: Any = None) -> OperationResult:
        """Translate a saga outcome into a result."""
        if outcome.success:
            return cls(
                success=True,
                messages=list(outcome.messages),
                data=data,
                warnings=list(outcome.warnings),
            )
        exit_code = ExitCode.PROVIDER
        if outcome.exception is not None:
            exit_code = exit_code_for(outcome.exception)
        return cls.failure(
            outcome.error or "Operation failed.",
            exit_code=exit_code,
            messages=outcome.messages,
            warnings=outcome.warnings,
        )

    def to_envelope(self) -> dict[str, object]:
        """Return the JSON envelope used by ``--json`` output and the bridge."""
        envelope: dict[str, object] = {"success": self.success, "messages": list(self.messages)}
        if self.success:
            envelope["data"] = self.data
        else:
            envelope["error"] = self.error
        if self.warnings:
            envelope["warnings"] = list(self.warnings)
        return envelope


@dataclass(frozen=True)
class AddRequest:
    """Parameters for creating a new instance."""

    name: str
    domain: str
    port: int
    use_tls: bool = False
    certificate_email: str | None = None
    use_http2: bool = True
    max_body_20mb: bool = True
    run_certbot: bool = True
    superuser_email: str | None = None
    superuser_password: str | None = None


@dataclass(frozen=True)
class CloneRequest:
    """Parameters for copying an existing instance under a new identity."""

    source: str
    name: str
    domain: str
    port: int
    use_tls: bool = False
    certificate_email: str | None = None
    use_http2: bool = True
    max_body_20mb: bool = True
    run_certbot: bool = True


class Orchestrator:
    """Compose providers into instance lifecycle operations."""

    def __init__(self, runtime: RuntimeContext) -> None:
        self.runtime = runtime
        self.config = runtime.config
        self.registry = runtime.registry

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------
    def setup(self, *, version: str | None = None) -> OperationResult:
        """Create the working directories and install PocketBase when missing."""

        def body(op: OperationScope) -> OperationResult:
            saga = Saga(op, prefix="setup")
            steps = [
                SagaStep("directories", self._prepare_directories),
                SagaStep("binary", lambda: self._ensure_binary(version, force=False)),
                SagaStep(
                    "ecosystem",
                    lambda: self._write_ecosystem(self.registry.load()),
                ),
            ]
            outcome = saga.run(steps)
            hint = self.runtime.nginx.include_warning()
            if hint:
                saga.warn(hint)
            return OperationResult.from_saga(
                outcome, data={"layout": self.runtime.layout.name}
            )

        return self._execute(
            "setup", args={"version": version}, lock=[], body=body
        )

    def add(
        self,
        request: AddRequest,
        *,
        confirm_dns: DnsDecision | None = None,
    ) -> OperationResult:
        """Create a new instance end to end."""

        def body(op: OperationScope) -> OperationResult:
            records = self.registry.load()
            record = build_record(
                records,
                instances_root=self.config.instances_root,
                name=request.name,
                domain=request.domain,
                port=request.port,
                use_tls=request.use_tls,
                certificate_email=request.certificate_email,
                use_http2=request.use_http2,
                max_body_20mb=request.max_body_20mb,
            )
            self._validate_superuser(request.superuser_email, request.superuser_password)
            self._check_data_target(record, source=None)
            saga = Saga(op, prefix="add")
            steps = [
                SagaStep("binary", lambda: self._ensure_binary(None, force=False)),
                *self._create_data_steps(record, source=None),
                *self._publish_steps(
                    saga,
                    records,
                    record,
                    run_certbot=request.run_certbot,
                    confirm_dns=confirm_dns,
                ),
            ]
            if request.superuser_email and request.superuser_password:
                email, password = request.superuser_email, request.superuser_password
                steps.append(
                    SagaStep(
                        "superuser",
                        lambda: self._upsert_superuser(record, email, password),
                        fatal=False,
                    )
                )
            outcome = saga.run(steps)
            return OperationResult.from_saga(outcome, data=self._describe(record))

        return self._execute(
            "add",
            args=_request_args(request),
            target={"kind": "instance", "name": request.name},
            lock=[request.name],
            body=body,
        )

    def clone(
        self,
        request: CloneRequest,
        *,
        confirm_dns: DnsDecision | None = None,
    ) -> OperationResult:
        """Copy *request.source* (data included) into a new instance."""

        def body(op: OperationScope) -> OperationResult:
            records = self.registry.load()
            source = self._require(records, request.source)
            record = build_record(
                records,
                instances_root=self.config.instances_root,
                name=request.name,
                domain=request.domain,
                port=request.port,
                use_tls=request.use_tls,
                certificate_email=request.certificate_email,
                use_http2=request.use_http2,
                max_body_20mb=request.max_body_20mb,
            )
            self._check_data_target(record, source=source)
            saga = Saga(op, prefix="clone")
            steps = [
                SagaStep("binary", lambda: self._ensure_binary(None, force=False)),
                *self._create_data_steps(record, source=source),
                *self._publish_steps(
                    saga,
                    records,
                    record,
                    run_certbot=request.run_certbot,
                    confirm_dns=confirm_dns,
                ),
            ]
            outcome = saga.run(steps)
            return OperationResult.from_saga(outcome, data=self._describe(record))

        return self._execute(
            "clone",
            args=_request_args(request),
            target={"kind": "instance", "name": request.name, "source": request.source},
            lock=[request.source, request.name],
            body=body,
        )

    def reset(
        self,
        name: str,
        *,
        superuser_email: str | None = None,
        superuser_password: str | None = None,
    ) -> OperationResult:
        """Wipe the data directory of *name*; the registry record is unchanged."""

        def body(op: OperationScope) -> OperationResult:
            records = self.registry.load()
            record = self._require(records, name)
            self._validate_superuser(superuser_email, superuser_password)
            saga = Saga(op, prefix="reset")
            steps = [
                SagaStep("stop", lambda: self._pm2_call("stop", record.name), fatal=False),
                SagaStep("data", lambda: self._recreate_data(record)),
                SagaStep("ecosystem", lambda: self._write_ecosystem(records)),
                SagaStep("supervisor", lambda: self._restart_process(record)),
            ]
            if superuser_email and superuser_password:
                email, password = superuser_email, superuser_password
                steps.append(
                    SagaStep(
                        "superuser",
                        lambda: self._upsert_superuser(record, email, password),
                        fatal=False,
                    )
                )
            outcome = saga.run(steps)
            return OperationResult.from_saga(outcome, data=self._describe(record))

        return self._execute(
            "reset",
            args={"name": name, "superuser_email": superuser_email},
            target={"kind": "instance", "name": name},
            lock=[name],
            body=body,
        )

    def remove(self, name: str, *, delete_data: bool = False) -> OperationResult:
        """Unregister *name* and tear down its process and proxy configuration."""

        def body(op: OperationScope) -> OperationResult:
            records = self.registry.load()
            record = self._require(records, name)
            remaining = {key: value for key, value in records.items() if key != name}
            saga = Saga(op, prefix="remove")
            steps = [
                SagaStep("stop", lambda: self._pm2_call("stop", name), fatal=False),
                SagaStep("delete", lambda: self._pm2_call("delete", name), fatal=False),
            ]
            if delete_data:
                steps.append(SagaStep("data", lambda: self._delete_data(record)))
            steps.extend(
                [
                    SagaStep(
                        "registry",
                        lambda: self._save_registry(remaining, f"Removed '{name}' from registry."),
                        compensate=lambda: self._save_registry(
                            records, f"Restored '{name}' in registry."
                        ),
                    ),
                    SagaStep("proxy", lambda: self._remove_proxy(record), fatal=False),
                    SagaStep("ecosystem", lambda: self._write_ecosystem(remaining)),
                    SagaStep("supervisor", self._save_process_list),
                ]
            )
            outcome = saga.run(steps)
            data = {"name": name, "data_deleted": delete_data}
            return OperationResult.from_saga(outcome, data=data)

        return self._execute(
            "remove",
            args={"name": name, "delete_data": delete_data},
            target={"kind": "instance", "name": name},
            lock=[name],
            body=body,
        )

    def reset_credential(self, name: str, email: str, password: str) -> OperationResult:
        """Create or update the superuser account of *name*."""

        def body(op: OperationScope) -> OperationResult:
            record = self._require(self.registry.load(), name)
            self._validate_superuser(email, password)
            if not self.config.pocketbase_bin.exists():
                raise BinaryInstallError(
                    f"PocketBase executable {self.config.pocketbase_bin} is missing; run setup."
                )
            message = self._upsert_superuser(record, email, password)
            op.add_step("reset-credential.superuser", detail=email)
            return OperationResult(success=True, messages=[message], data={"name": name})

        return self._execute(
            "reset-credential",
            args={"name": name, "email": email},
            target={"kind": "instance", "name": name},
            lock=[name],
            body=body,
        )

    def renew_certificates(
        self,
        name: str | None = None,
        *,
        force: bool = False,
    ) -> OperationResult:
        """Renew certificates and reconcile the proxy configuration of TLS instances."""

        def body(op: OperationScope) -> OperationResult:
            records = self.registry.load()
            if name is not None:
                target = self._require(records, name)
                if not target.use_tls:
                    raise InstanceValidationError(f"Instance '{name}' does not use TLS.")
                candidates = [target]
            else:
                candidates = [record for record in records.values() if record.use_tls]
            if not candidates:
                return OperationResult(
                    success=True, messages=["No TLS instances to renew."], data=[]
                )

            workflow = self.runtime.certificates
            messages: list[str] = []
            warnings: list[str] = []
            if name is None:
                messages.extend(workflow.renew(force=force))
            else:
                messages.extend(workflow.renew([candidates[0].domain], force=force))
            op.add_step("renew.certbot", detail=[record.domain for record in candidates])

            statuses: list[dict[str, object]] = []
            for record in candidates:
                issued = workflow.has_certificate(record)
                result = workflow.reconcile(record, issued=issued)
                problem = self._render_problem(result)
                if problem:
                    warnings.append(f"{record.name}: {problem}")
                elif not issued:
                    warnings.append(
                        f"{record.name}: no certificate found for {record.domain}; "
                        "serving HTTP only."
                    )
                statuses.append(workflow.status(record).to_dict())
            self.runtime.nginx.validate_and_reload()
            messages.append("nginx reloaded with renewed certificates.")
            op.add_step("renew.reload")
            return OperationResult(
                success=True, messages=messages, data=statuses, warnings=warnings
            )

        return self._execute(
            "renew-certificates",
            args={"name": name, "force": force},
            target={"kind": "instance", "name": name} if name else None,
            lock=[name] if name else [],
            body=body,
        )

    def update_binary(self, version: str | None = None) -> OperationResult:
        """Reinstall PocketBase and restart every instance one after another."""

        def body(op: OperationScope) -> OperationResult:
            requested = version or load_settings(self.registry).default_pocketbase_version
            resolved = self.runtime.resolver.resolve(requested)
            install = self.runtime.installer.ensure_installed(resolved.version, force=True)
            op.add_step("update-binary.install", detail=install.version)
            messages = [f"Installed PocketBase {install.version} ({resolved.source})."]
            warnings: list[str] = []
            if resolved.is_fallback:
                warnings.append(
                    f"Could not query the latest release; used fallback {resolved.version}."
                )
            for record in self.registry.load().values():
                try:
                    self._pm2_call("restart", record.name)
                except Pm2Error as exc:
                    warnings.append(f"Failed to restart {record.name}: {exc}")
                    op.add_step(f"update-binary.restart.{record.name}", status="warning")
                    continue
                messages.append(f"Restarted {record.name}.")
                op.add_step(f"update-binary.restart.{record.name}")
            data = {
                "version": install.version,
                "source": resolved.source,
                "path": str(install.path),
                "sha256": install.sha256,
            }
            return OperationResult(success=True, messages=messages, data=data, warnings=warnings)

        return self._execute(
            "update-binary", args={"version": version}, lock=[], body=body
        )

    def rebuild_ecosystem(self) -> OperationResult:
        """Regenerate the ecosystem descriptor and reload pm2."""

        def body(op: OperationScope) -> OperationResult:
            records = self.registry.load()
            saga = Saga(op, prefix="rebuild-ecosystem")
            outcome = saga.run(
                [
                    SagaStep("ecosystem", lambda: self._write_ecosystem(records)),
                    SagaStep("supervisor", self._reload_supervisor),
                ]
            )
            return OperationResult.from_saga(outcome, data={"instances": len(records)})

        return self._execute("rebuild-ecosystem", args={}, lock=[], body=body)

    def set_default_email(self, email: str | None) -> OperationResult:
        """Store the certificate email offered by default."""

        def body(op: OperationScope) -> OperationResult:
            settings = store_default_email(self.registry, email)
            value = settings.default_certificate_email
            message = (
                f"Default certificate email set to {value}."
                if value
                else "Default certificate email cleared."
            )
            return OperationResult(
                success=True,
                messages=[message],
                data={"default_certificate_email": value},
            )

        return self._execute("set-default-email", args={"email": email}, lock=[], body=body)

    def control(self, action: str, target: str) -> OperationResult:
        """Start, stop or restart one instance or ``all`` of them sequentially."""

        def body(op: OperationScope) -> OperationResult:
            if action not in CONTROL_ACTIONS:
                raise InstanceValidationError(
                    f"Unknown action '{action}'; expected one of {', '.join(CONTROL_ACTIONS)}."
                )
            records = self.registry.load()
            names = list(records) if target == "all" else [self._require(records, target).name]
            messages: list[str] = []
            warnings: list[str] = []
            for instance in names:
                try:
                    self._pm2_call(action, instance)
                except Pm2Error as exc:
                    if target != "all":
                        raise
                    warnings.append(f"{action} {instance} failed: {exc}")
                    op.add_step(f"{action}.{instance}", status="warning", detail=str(exc))
                    continue
                messages.append(f"{_PAST_TENSE[action]} {self.runtime.pm2.process_name(instance)}.")
                op.add_step(f"{action}.{instance}")
            if not names:
                messages.append("No instances registered.")
            return OperationResult(
                success=True, messages=messages, data={"instances": names}, warnings=warnings
            )

        lock_names = [] if target == "all" else [target]
        return self._execute(
            action,
            args={"target": target},
            target={"kind": "instance", "name": target},
            lock=lock_names,
            body=body,
        )

    # ------------------------------------------------------------------
    # Read-only operations
    # ------------------------------------------------------------------
    def list_instances(self) -> OperationResult:
        """Return every instance with its process and certificate state."""

        def body(op: OperationScope) -> OperationResult:
            records = self.registry.load()
            warnings: list[str] = []
            statuses: dict[str, ProcessStatus] = {}
            if records:
                try:
                    statuses = self.runtime.pm2.statuses()
                except Pm2Error as exc:
                    warnings.append(f"Could not query pm2: {exc}")
            rows = []
            for record in records.values():
                row = self._describe(record)
                process = statuses.get(self.runtime.pm2.process_name(record.name))
                row["process"] = process.to_dict() if process else None
                row["status"] = process.status if process else "unknown"
                row["certificate"] = None
                if record.use_tls:
                    certificate = self.runtime.certificates.status(record)
                    row["certificate"] = certificate.to_dict()
                    days = certificate.days_remaining
                    if days is not None and days < self.config.certbot.warn_expiry_days:
                        warnings.append(
                            f"Certificate for {record.domain} expires in {days} days."
                        )
                rows.append(row)
            return OperationResult(
                success=True,
                messages=[f"{len(rows)} instance(s) registered."],
                data=rows,
                warnings=warnings,
            )

        return self._execute("list", args={}, lock=None, body=body)

    def get_logs(self, name: str, *, lines: int = 50) -> OperationResult:
        """Return the recent pm2 log output of *name*."""

        def body(op: OperationScope) -> OperationResult:
            if lines < 1:
                raise InstanceValidationError("Line count must be a positive integer.")
            record = self._require(self.registry.load(), name)
            output = self.runtime.pm2.logs(record.name, lines=lines)
            return OperationResult(
                success=True,
                messages=[f"Last {lines} log lines for {name}."],
                data={"name": name, "lines": lines, "logs": output},
            )

        return self._execute(
            "logs",
            args={"name": name, "lines": lines},
            target={"kind": "instance", "name": name},
            lock=None,
            body=body,
        )

    def get_diagnostics(self) -> OperationResult:
        """Return host statistics and a summary of the managed fleet."""

        def body(op: OperationScope) -> OperationResult:
            records = self.registry.load()
            warnings: list[str] = []
            online = 0
            if records:
                try:
                    statuses = self.runtime.pm2.statuses()
                except Pm2Error as exc:
                    warnings.append(f"Could not query pm2: {exc}")
                else:
                    online = sum(
                        1
                        for record in records.values()
                        if (process := statuses.get(self.runtime.pm2.process_name(record.name)))
                        and process.status == "online"
                    )
            hint = self.runtime.nginx.include_warning()
            if hint:
                warnings.append(hint)
            sites = {name: self.runtime.nginx.diagnostics(name) for name in records}
            warnings.extend(
                f"Proxy site for '{name}' is missing: {site['site_path']}"
                for name, site in sites.items()
                if not site["site_exists"]
            )
            installed = self.config.pocketbase_bin.exists()
            binary = self.registry.read_binary()
            settings = load_settings(self.registry)
            data = {
                "pbctl_version": __version__,
                "host": host_stats(),
                "binary": {
                    "path": str(self.config.pocketbase_bin),
                    "installed": installed,
                    "reported_version": (
                        self.runtime.pocketbase.version() if installed else None
                    ),
                    "record": binary,
                },
                "nginx": {
                    "layout": self.runtime.layout.name,
                    "config_dir": str(self.runtime.layout.config_dir),
                    "enabled_dir": (
                        str(self.runtime.layout.enabled_dir)
                        if self.runtime.layout.enabled_dir
                        else None
                    ),
                },
                "certbot": {"available": self.runtime.certbot.available()},
                "instances": {
                    "total": len(records),
                    "tls": sum(1 for record in records.values() if record.use_tls),
                    "online": online,
                },
                "sites": sites,
                "settings": settings.to_dict(),
            }
            return OperationResult(
                success=True, messages=["Diagnostics collected."], data=data, warnings=warnings
            )

        return self._execute("diagnostics", args={}, lock=None, body=body)

    # ------------------------------------------------------------------
    # Boundary
    # ------------------------------------------------------------------
    def _execute(
        self,
        command: str,
        *,
        args: Mapping[str, object],
        body: Callable[[OperationScope], OperationResult],
        lock: list[str] | None,
        target: Mapping[str, object] | None = None,
    ) -> OperationResult:
        with self.runtime.logger.operation(command, args=args, target=target) as op:
            try:
                if lock is None:
                    result = body(op)
                else:
                    with self.runtime.locks.mutate_instances(lock) as bundle:
                        op.set_lock_wait_ms(bundle.wait_ms)
                        result = body(op)
            except OPERATION_ERRORS as exc:
                result = OperationResult.failure(str(exc), exit_code=exit_code_for(exc))
                result.messages.append(str(exc))
            _record_result(op, command, result)
            return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def _require(self, records: Mapping[str, InstanceRecord], name: str) -> InstanceRecord:
        record = records.get(name)
        if record is None:
            raise InstanceValidationError(f"Instance '{name}' not found.")
        return record

    def _validate_superuser(self, email: str | None, password: str | None) -> None:
        if not email and not password:
            return
        if not email or not password:
            raise InstanceValidationError(
                "Both a superuser email and password are required to create a superuser."
            )
        validate_email(email, required=True)

    def _prepare_directories(self) -> str:
        for path in (
            self.config.state_dir,
            self.config.registry_dir,
            self.config.bin_dir,
            self.config.instances_root,
        ):
            path.mkdir(parents=True, exist_ok=True)
        self.runtime.nginx.ensure_directories()
        return "Working directories are in place."

    def _ensure_binary(self, version: str | None, *, force: bool) -> str:
        installer = self.runtime.installer
        if version is None and not installer.executable.exists():
            version = load_settings(self.registry).default_pocketbase_version
        result = installer.ensure_installed(version, force=force)
        if not result.changed:
            return f"PocketBase executable present at {result.path}."
        return f"Installed PocketBase {result.version} at {result.path}."

    def _create_data_steps(
        self,
        record: InstanceRecord,
        *,
        source: InstanceRecord | None,
    ) -> list[SagaStep]:
        created = {"value": False}

        def apply() -> str:
            target = record.data_dir
            self._check_data_target(record, source=source)
            if source is None:
                created["value"] = not target.exists()
                target.mkdir(parents=True, exist_ok=True)
                return f"Created data directory {target}."
            if target.exists():
                target.rmdir()
            created["value"] = True
            shutil.copytree(source.data_dir, target, symlinks=True)
            return f"Copied {source.data_dir} to {target}."

        def compensate() -> str | None:
            if not created["value"]:
                return None
            shutil.rmtree(record.data_dir, ignore_errors=True)
            return f"Removed data directory {record.data_dir}."

        return [SagaStep("data", apply, compensate=compensate)]

    def _check_data_target(
        self,
        record: InstanceRecord,
        *,
        source: InstanceRecord | None,
    ) -> None:
        target = record.data_dir
        if target.exists() and (not target.is_dir() or any(target.iterdir())):
            raise InstanceValidationError(
                f"Data directory {target} already exists and is not empty."
            )
        if source is not None and not source.data_dir.is_dir():
            raise InstanceValidationError(
                f"Source data directory {source.data_dir} does not exist."
            )

    def _publish_steps(
        self,
        saga: Saga,
        records: Mapping[str, InstanceRecord],
        record: InstanceRecord,
        *,
        run_certbot: bool,
        confirm_dns: DnsDecision | None,
    ) -> list[SagaStep]:
        """Registry, proxy, certificate, ecosystem and supervisor steps for a new record."""
        before = dict(records)
        after = {**records, record.name: record}
        previous_site = self._read_site(record)
        state = {"issued": False}

        def restore_proxy() -> str:
            self._restore_site(record, previous_site)
            return f"Removed proxy configuration for {record.name}."

        def final_proxy() -> str:
            tls = state["issued"]
            if record.use_tls and not run_certbot:
                tls = self.runtime.certificates.has_certificate(record)
                if not tls:
                    saga.warn(
                        f"No certificate for {record.domain} yet; serving HTTP only "
                        "until renew-certificates succeeds."
                    )
            self._activate(saga, self.runtime.certificates.reconcile(record, issued=tls))
            scheme = "HTTPS" if tls else "HTTP"
            return f"Proxy configuration for {record.domain} active ({scheme})."

        def provisional_proxy() -> str:
            result = self.runtime.nginx.render_site(record, tls=False, provisional=True)
            self._activate(saga, result)
            return f"Provisional HTTP configuration for {record.domain} active."

        def certificate() -> str | None:
            outcome = self.runtime.certificates.acquire(record, confirm_dns=confirm_dns)
            state["issued"] = outcome.issued
            for message in outcome.messages:
                saga.note(message)
            saga.outcome.warnings.extend(outcome.warnings)
            return None

        steps = [
            SagaStep(
                "registry",
                lambda: self._save_registry(after, f"Registered '{record.name}'."),
                compensate=lambda: self._save_registry(
                    before, f"Removed '{record.name}' from registry."
                ),
            ),
        ]
        if record.use_tls and run_certbot:
            steps.extend(
                [
                    SagaStep("proxy.provisional", provisional_proxy, compensate=restore_proxy),
                    SagaStep("certificate", certificate, fatal=False),
                ]
            )
        steps.extend(
            [
                SagaStep("proxy", final_proxy, compensate=restore_proxy),
                SagaStep(
                    "ecosystem",
                    lambda: self._write_ecosystem(after),
                    compensate=lambda: self._write_ecosystem(before),
                ),
                SagaStep("supervisor", self._reload_supervisor),
            ]
        )
        return steps

    def _activate(self, saga: Saga, result: NginxRenderResult) -> None:
        if result.symlink_error:
            saga.warn(result.symlink_error)
        if result.validation_error:
            raise NginxError(f"nginx rejected the configuration: {result.validation_error}")

    def _render_problem(self, result: NginxRenderResult) -> str | None:
        return result.validation_error or result.symlink_error

    def _read_site(self, record: InstanceRecord) -> str | None:
        path = self.runtime.nginx.site_path(record.name)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _restore_site(self, record: InstanceRecord, previous: str | None) -> None:
        nginx = self.runtime.nginx
        if previous is None:
            nginx.remove(record.name)
        else:
            nginx.restore(record.name, previous)
        nginx.validate_and_reload()

    def _remove_proxy(self, record: InstanceRecord) -> str:
        nginx = self.runtime.nginx
        existed = nginx.remove(record.name)
        nginx.validate_and_reload()
        if not existed:
            return f"No proxy configuration found for {record.name}."
        return f"Removed proxy configuration for {record.domain}."

    def _save_registry(self, records: Mapping[str, InstanceRecord], message: str) -> str:
        self.registry.save(records)
        return message

    def _write_ecosystem(self, records: Mapping[str, InstanceRecord]) -> str:
        changed = self.runtime.ecosystem.write(records)
        path = self.runtime.ecosystem.path
        return f"Updated {path}." if changed else f"{path} already up to date."

    def _reload_supervisor(self) -> str:
        pm2 = self.runtime.pm2
        pm2.reload(self.runtime.ecosystem.path)
        pm2.save()
        return "pm2 reloaded the ecosystem and saved its process list."

    def _save_process_list(self) -> str:
        self.runtime.pm2.save()
        return "pm2 process list saved."

    def _restart_process(self, record: InstanceRecord) -> str:
        pm2 = self.runtime.pm2
        try:
            pm2.restart(record.name)
        except Pm2Error:
            pm2.start_ecosystem(self.runtime.ecosystem.path, record.name)
        pm2.save()
        return f"Restarted {pm2.process_name(record.name)} and saved the process list."

    def _pm2_call(self, action: str, name: str) -> str:
        pm2 = self.runtime.pm2
        getattr(pm2, action)(name)
        return f"pm2 {action} {pm2.process_name(name)} finished."

    def _recreate_data(self, record: InstanceRecord) -> str:
        if record.data_dir.exists():
            shutil.rmtree(record.data_dir)
        record.data_dir.mkdir(parents=True, exist_ok=True)
        return f"Recreated empty data directory {record.data_dir}."

    def _delete_data(self, record: InstanceRecord) -> str:
        if not record.data_dir.exists():
            return f"Data directory {record.data_dir} already absent."
        shutil.rmtree(record.data_dir)
        return f"Deleted data directory {record.data_dir}."

    def _upsert_superuser(self, record: InstanceRecord, email: str, password: str) -> str:
        self.runtime.pocketbase.upsert_superuser(record.data_dir, email, password)
        return f"Superuser {email} configured for {record.name}."

    def _describe(self, record: InstanceRecord) -> dict[str, Any]:
        scheme = "https" if record.use_tls else "http"
        payload = record.to_mapping()
        payload["url"] = f"{scheme}://{record.domain}"
        payload["admin_url"] = f"{scheme}://{record.domain}/_/"
        return payload


def _request_args(request: AddRequest | CloneRequest) -> dict[str, object]:
    args: dict[str, object] = {
        key: getattr(request, key)
        for key in request.__dataclass_fields__
        if key != "superuser_password"
    }
    return args


def _record_result(op: OperationScope, command: str, result: OperationResult) -> None:
    summary = result.messages[-1] if result.messages else command
    if not result.success:
        op.error(
            result.error or summary,
            errors=[result.error] if result.error else None,
            rc=int(result.exit_code),
        )
    elif result.warnings:
        op.warning(summary, warnings=result.warnings)
    else:
        op.success(summary)


__all__ = [
    "AddRequest",
    "CloneRequest",
    "OperationResult",
    "Orchestrator",
    "exit_code_for",
]
