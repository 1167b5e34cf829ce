"""Typer-powered command line interface for ``pbctl``.

Commands are thin: they collect options, ask for confirmation where an
operation destroys data, and hand the request to :class:`Orchestrator`. The
orchestrator records the operation in ``operations.jsonl``; this module only
renders the returned :class:`OperationResult` and maps it to an exit code.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .bridge import Bridge
from .config import ConfigError, load_config
from .exit_codes import ExitCode
from .instances import InstanceValidationError
from .orchestrator import AddRequest, CloneRequest, OperationResult, Orchestrator
from .ports import suggest_port
from .runtime import RuntimeContext, build_runtime
from .settings import configure_bridge, load_settings, set_default_version
from .state import StateRegistryError
from .tls import DnsCheckResult

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to pbctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result envelope as JSON.",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Skip yes/no confirmation prompts and proceed non-interactively.",
)

CONFIRM_NAME_OPTION = typer.Option(
    None,
    "--confirm-name",
    help="Instance name typed in advance to confirm a destructive operation.",
)

DOMAIN_OPTION = typer.Option(
    ...,
    "--domain",
    "-d",
    help="Public hostname served by the instance.",
)

PORT_OPTION = typer.Option(
    None,
    "--port",
    "-p",
    help="Loopback port for PocketBase (defaults to the first free port from 8090).",
)

TLS_OPTION = typer.Option(
    False,
    "--tls/--no-tls",
    help="Request a Let's Encrypt certificate through certbot.",
)

EMAIL_OPTION = typer.Option(
    None,
    "--email",
    help="Certificate email (defaults to the configured default email).",
)

HTTP2_OPTION = typer.Option(
    True,
    "--http2/--no-http2",
    help="Enable HTTP/2 on the nginx listener.",
)

MAX_BODY_OPTION = typer.Option(
    True,
    "--max-body-20mb/--no-max-body-20mb",
    help="Allow request bodies up to 20 MB.",
)

NO_CERTBOT_OPTION = typer.Option(
    False,
    "--no-certbot",
    help="Keep the TLS flag but do not run certbot now.",
)

IGNORE_DNS_OPTION = typer.Option(
    False,
    "--ignore-dns",
    help="Continue with certbot even when DNS does not point at this host.",
)

SUPERUSER_EMAIL_OPTION = typer.Option(
    None,
    "--superuser-email",
    help="Create a PocketBase superuser with this email.",
)

SUPERUSER_PASSWORD_OPTION = typer.Option(
    None,
    "--superuser-password",
    help="Password for --superuser-email (prompted when omitted).",
)


app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        PocketBase multi-instance manager.

        Runs many PocketBase servers on one host behind nginx, supervised by
        pm2, with optional Let's Encrypt certificates issued through certbot.
        """
    ).strip(),
)
configure_app = typer.Typer(help="Inspect and change pbctl settings.")
app.add_typer(configure_app, name="configure")


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    try:
        runtime = build_runtime(config)
    except (StateRegistryError, OSError) as exc:
        console.print(f"[red]Cannot prepare pbctl state: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _orchestrator(ctx: typer.Context) -> Orchestrator:
    return Orchestrator(_get_runtime(ctx))


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the pbctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"pbctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Rendering helpers
# ----------------------------------------------------------------------
def _report(result: OperationResult, *, json_output: bool = False) -> None:
    """Print *result* and exit non-zero when it failed."""
    if json_output:
        console.print_json(data=result.to_envelope(), default=str)
    else:
        for message in result.messages:
            if not result.success and message == result.error:
                console.print(f"[red]{escape(message)}[/red]", highlight=False)
            elif message.startswith("Warning: "):
                console.print(f"[yellow]{escape(message)}[/yellow]", highlight=False)
            else:
                console.print(message, highlight=False, markup=False)
        shown = set(result.messages)
        for warning in result.warnings:
            if warning not in shown and f"Warning: {warning}" not in shown:
                console.print(f"[yellow]Warning: {escape(warning)}[/yellow]", highlight=False)
        if not result.success and result.error not in shown:
            console.print(f"[red]{escape(str(result.error))}[/red]", highlight=False)
    if not result.success:
        raise typer.Exit(code=int(result.exit_code))


def _dns_prompt(yes: bool, ignore_dns: bool) -> Callable[[DnsCheckResult], bool]:
    """Return the DNS decision callback for interactive commands."""

    def decide(result: DnsCheckResult) -> bool:
        console.print(f"[yellow]DNS check: {result.message}[/yellow]")
        if ignore_dns:
            return True
        if yes:
            return False
        return typer.confirm("Continue with certificate issuance anyway?", default=False)

    return decide


def _cancelled(runtime: RuntimeContext, command: str, name: str) -> None:
    console.print(f"[yellow]{command} cancelled.[/yellow]")
    with runtime.logger.operation(
        command, args={"name": name}, target={"kind": "instance", "name": name}
    ) as op:
        op.warning(f"{command} cancelled by operator.", warnings=["user-cancelled"])


def _confirm_destructive(
    name: str,
    *,
    question: str,
    yes: bool,
    confirm_name: str | None,
) -> bool:
    """Ask yes/no and then for the typed instance name."""
    if not yes and not typer.confirm(question, default=False):
        return False
    typed = confirm_name
    if typed is None:
        typed = typer.prompt(f"Type the instance name ({name}) to confirm")
    if typed.strip() != name:
        console.print("[red]The typed name does not match.[/red]")
        return False
    return True


def _resolve_email(runtime: RuntimeContext, email: str | None, use_tls: bool) -> str | None:
    if email or not use_tls:
        return email
    return load_settings(runtime.registry).default_certificate_email


def _resolve_port(runtime: RuntimeContext, port: int | None) -> int:
    if port is not None:
        return port
    try:
        return suggest_port(runtime.registry.load())
    except (InstanceValidationError, StateRegistryError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc


def _superuser_password(email: str | None, password: str | None) -> str | None:
    if email and not password:
        return typer.prompt(
            f"Password for superuser {email}", hide_input=True, confirmation_prompt=True
        )
    return password


def _format_days(certificate: Mapping[str, Any] | None, warn_days: int) -> str:
    if not certificate:
        return ""
    if not certificate.get("exists"):
        return "[yellow]missing[/yellow]"
    days = certificate.get("days_remaining")
    if days is None:
        return "[red]unreadable[/red]"
    if days < warn_days:
        return f"[yellow]{days}d[/yellow]"
    return f"[green]{days}d[/green]"


# ----------------------------------------------------------------------
# Setup & configuration
# ----------------------------------------------------------------------
@app.command()
def setup(
    ctx: typer.Context,
    version: str | None = typer.Option(
        None,
        "--version",
        "-v",
        help="PocketBase version to install (defaults to the latest release).",
    ),
) -> None:
    """Create working directories and download PocketBase."""
    _report(_orchestrator(ctx).setup(version=version))


@configure_app.command("show")
def configure_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration and operator settings."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    data["settings"] = load_settings(runtime.registry).to_dict()
    data["nginx_layout"] = runtime.layout.name

    with runtime.logger.operation(
        "configure show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@configure_app.command("set-email")
def configure_set_email(
    ctx: typer.Context,
    email: str = typer.Argument("", help="Default certificate email; empty clears it."),
) -> None:
    """Set the certificate email offered when adding TLS instances."""
    _report(_orchestrator(ctx).set_default_email(email or None))


@configure_app.command("set-version")
def configure_set_version(
    ctx: typer.Context,
    version: str = typer.Argument("", help="PocketBase version to pin; empty unpins."),
) -> None:
    """Pin the PocketBase version used by setup and update-binary."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "configure set-version",
        args={"version": version},
        target={"kind": "config"},
    ) as op:
        try:
            settings = set_default_version(runtime.registry, version or None)
        except ValueError as exc:
            console.print(f"[red]{exc}[/red]")
            op.error(str(exc), rc=int(ExitCode.VALIDATION))
            raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
        pinned = settings.default_pocketbase_version
        message = (
            f"Default PocketBase version pinned to {pinned}."
            if pinned
            else "Default PocketBase version unpinned; the latest release will be used."
        )
        console.print(f"[green]{message}[/green]")
        op.success(message, changed=1)


@configure_app.command("bridge")
def configure_bridge_command(
    ctx: typer.Context,
    enable: bool = typer.Option(
        True,
        "--enable/--disable",
        help="Enable or disable the command bridge.",
    ),
    rotate_secret: bool = typer.Option(
        False,
        "--rotate-secret",
        help="Generate a new bridge secret.",
    ),
    show_secret: bool = typer.Option(
        False,
        "--show-secret",
        help="Print the bridge secret after updating.",
    ),
) -> None:
    """Enable the secret-gated bridge used by the API process."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "configure bridge",
        args={"enable": enable, "rotate_secret": rotate_secret},
        target={"kind": "config", "scope": "bridge"},
    ) as op:
        settings = configure_bridge(runtime.registry, enabled=enable, rotate_secret=rotate_secret)
        state = "enabled" if settings.bridge_enabled else "disabled"
        console.print(f"[green]Command bridge {state}.[/green]")
        if show_secret and settings.bridge_secret:
            console.print(settings.bridge_secret, highlight=False, markup=False)
        op.success(f"Command bridge {state}.", changed=1)


# ----------------------------------------------------------------------
# Instance lifecycle
# ----------------------------------------------------------------------
@app.command()
def add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance name (letters, digits, hyphens)."),
    domain: str = DOMAIN_OPTION,
    port: int | None = PORT_OPTION,
    use_tls: bool = TLS_OPTION,
    email: str | None = EMAIL_OPTION,
    use_http2: bool = HTTP2_OPTION,
    max_body_20mb: bool = MAX_BODY_OPTION,
    no_certbot: bool = NO_CERTBOT_OPTION,
    ignore_dns: bool = IGNORE_DNS_OPTION,
    superuser_email: str | None = SUPERUSER_EMAIL_OPTION,
    superuser_password: str | None = SUPERUSER_PASSWORD_OPTION,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Add a new PocketBase instance."""
    runtime = _get_runtime(ctx)
    request = AddRequest(
        name=name,
        domain=domain,
        port=_resolve_port(runtime, port),
        use_tls=use_tls,
        certificate_email=_resolve_email(runtime, email, use_tls),
        use_http2=use_http2,
        max_body_20mb=max_body_20mb,
        run_certbot=not no_certbot,
        superuser_email=superuser_email,
        superuser_password=_superuser_password(superuser_email, superuser_password),
    )
    result = Orchestrator(runtime).add(request, confirm_dns=_dns_prompt(yes, ignore_dns))
    _report(result, json_output=json_output)


@app.command()
def clone(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Existing instance to copy."),
    name: str = typer.Argument(..., help="Name of the new instance."),
    domain: str = DOMAIN_OPTION,
    port: int | None = PORT_OPTION,
    use_tls: bool = TLS_OPTION,
    email: str | None = EMAIL_OPTION,
    use_http2: bool = HTTP2_OPTION,
    max_body_20mb: bool = MAX_BODY_OPTION,
    no_certbot: bool = NO_CERTBOT_OPTION,
    ignore_dns: bool = IGNORE_DNS_OPTION,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Copy an instance, including its data, under a new name and domain."""
    runtime = _get_runtime(ctx)
    request = CloneRequest(
        source=source,
        name=name,
        domain=domain,
        port=_resolve_port(runtime, port),
        use_tls=use_tls,
        certificate_email=_resolve_email(runtime, email, use_tls),
        use_http2=use_http2,
        max_body_20mb=max_body_20mb,
        run_certbot=not no_certbot,
    )
    result = Orchestrator(runtime).clone(request, confirm_dns=_dns_prompt(yes, ignore_dns))
    _report(result, json_output=json_output)


@app.command()
def remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance to remove."),
    delete_data: bool = typer.Option(
        False,
        "--delete-data",
        help="Also delete the instance's data directory.",
    ),
    yes: bool = YES_OPTION,
    confirm_name: str | None = CONFIRM_NAME_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove an instance from pm2, nginx and the registry."""
    runtime = _get_runtime(ctx)
    if delete_data:
        confirmed = _confirm_destructive(
            name,
            question=f"Remove '{name}' and permanently delete its data?",
            yes=yes,
            confirm_name=confirm_name,
        )
    else:
        confirmed = yes or typer.confirm(f"Remove instance '{name}'?", default=False)
    if not confirmed:
        _cancelled(runtime, "remove", name)
        return
    _report(
        Orchestrator(runtime).remove(name, delete_data=delete_data), json_output=json_output
    )


@app.command()
def reset(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance whose data is wiped."),
    superuser_email: str | None = SUPERUSER_EMAIL_OPTION,
    superuser_password: str | None = SUPERUSER_PASSWORD_OPTION,
    yes: bool = YES_OPTION,
    confirm_name: str | None = CONFIRM_NAME_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Delete all data of an instance and start it again empty."""
    runtime = _get_runtime(ctx)
    confirmed = _confirm_destructive(
        name,
        question=f"Reset '{name}'? All of its data will be deleted.",
        yes=yes,
        confirm_name=confirm_name,
    )
    if not confirmed:
        _cancelled(runtime, "reset", name)
        return
    result = Orchestrator(runtime).reset(
        name,
        superuser_email=superuser_email,
        superuser_password=_superuser_password(superuser_email, superuser_password),
    )
    _report(result, json_output=json_output)


@app.command("reset-credential")
def reset_credential(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance whose superuser is updated."),
    email: str = typer.Option(..., "--email", help="Superuser email."),
    password: str | None = typer.Option(
        None,
        "--password",
        help="New password (prompted when omitted).",
    ),
) -> None:
    """Create a superuser or reset its password."""
    secret = _superuser_password(email, password) or ""
    _report(_orchestrator(ctx).reset_credential(name, email, secret))


def _control(ctx: typer.Context, action: str, target: str) -> None:
    _report(_orchestrator(ctx).control(action, target))


@app.command()
def start(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Instance name or 'all'."),
) -> None:
    """Start an instance through pm2."""
    _control(ctx, "start", target)


@app.command()
def stop(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Instance name or 'all'."),
) -> None:
    """Stop an instance through pm2."""
    _control(ctx, "stop", target)


@app.command()
def restart(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Instance name or 'all'."),
) -> None:
    """Restart an instance through pm2."""
    _control(ctx, "restart", target)


@app.command("renew-certificates")
def renew_certificates(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Only renew this instance."),
    force: bool = typer.Option(False, "--force", help="Renew even if not yet due."),
) -> None:
    """Renew certificates and refresh the nginx configuration."""
    _report(_orchestrator(ctx).renew_certificates(name, force=force))


@app.command("update-binary")
def update_binary(
    ctx: typer.Context,
    version: str | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Install this version instead of the pinned or latest one.",
    ),
) -> None:
    """Reinstall PocketBase and restart every instance."""
    _report(_orchestrator(ctx).update_binary(version))


@app.command("rebuild-ecosystem")
def rebuild_ecosystem(ctx: typer.Context) -> None:
    """Regenerate the pm2 ecosystem file from the registry and reload pm2."""
    _report(_orchestrator(ctx).rebuild_ecosystem())


# ----------------------------------------------------------------------
# Reporting
# ----------------------------------------------------------------------
@app.command("list")
def list_instances(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit instances as JSON instead of a table.",
    ),
) -> None:
    """List registered instances with process and certificate state."""
    runtime = _get_runtime(ctx)
    result = Orchestrator(runtime).list_instances()
    if json_output or not result.success:
        _report(result, json_output=json_output)
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Name", style="bold")
    table.add_column("Domain")
    table.add_column("Port")
    table.add_column("TLS")
    table.add_column("Status")
    table.add_column("Certificate")

    rows = result.data or []
    if not rows:
        table.add_row("(none)", "", "", "", "", "")
    for row in rows:
        status = str(row.get("status", "unknown"))
        colour = "green" if status == "online" else "yellow"
        table.add_row(
            str(row["name"]),
            str(row["url"]),
            str(row["port"]),
            "yes" if row.get("use_tls") else "no",
            f"[{colour}]{status}[/{colour}]",
            _format_days(row.get("certificate"), runtime.config.certbot.warn_expiry_days),
        )
    console.print(table)
    for warning in result.warnings:
        console.print(f"[yellow]Warning: {escape(warning)}[/yellow]", highlight=False)


@app.command()
def logs(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance whose logs are shown."),
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show."),
) -> None:
    """Show recent pm2 log output for an instance."""
    result = _orchestrator(ctx).get_logs(name, lines=lines)
    if not result.success:
        _report(result)
        return
    typer.echo(result.data["logs"])


@app.command()
def diagnostics(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit diagnostics as JSON instead of a table.",
    ),
) -> None:
    """Report host statistics and a summary of managed instances."""
    result = _orchestrator(ctx).get_diagnostics()
    if json_output or not result.success:
        _report(result, json_output=json_output)
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Section", style="bold")
    table.add_column("Value")
    for key, value in result.data.items():
        if isinstance(value, dict):
            rendered = json.dumps(value, indent=2, sort_keys=True, default=str)
        else:
            rendered = str(value)
        table.add_row(key, rendered)
    console.print(table)
    for warning in result.warnings:
        console.print(f"[yellow]Warning: {escape(warning)}[/yellow]", highlight=False)


@app.command("internal-api-request", hidden=True)
def internal_api_request(
    ctx: typer.Context,
    secret: str = typer.Option(..., "--secret", help="Shared bridge secret."),
    action: str = typer.Option(..., "--action", help="Bridge action name."),
    payload: str | None = typer.Option(
        None,
        "--payload",
        help="Base64-encoded JSON payload.",
    ),
) -> None:
    """Entry point for the API process; prints one JSON envelope."""
    runtime = _get_runtime(ctx)
    bridge = Bridge(Orchestrator(runtime), runtime.registry, runtime.logger)
    result = bridge.handle(secret, action, payload)
    typer.echo(json.dumps(result.to_envelope(), default=str))
    if not result.success:
        raise typer.Exit(code=int(result.exit_code))


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
