"""Tests for the secret-gated command bridge."""
from __future__ import annotations

import base64
import json
from typing import TYPE_CHECKING, Any

import pytest

from pbctl.bridge import (
    DISPATCH,
    Bridge,
    BridgeAction,
    BridgeError,
    decode_blob,
    parse_payload,
)
from pbctl.exit_codes import ExitCode
from pbctl.orchestrator import Orchestrator
from pbctl.runtime import RuntimeContext
from pbctl.settings import configure_bridge

if TYPE_CHECKING:
    from conftest import StubHost


def _blob(payload: dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


@pytest.fixture
def bridge(runtime: RuntimeContext, orchestrator: Orchestrator) -> Bridge:
    """Bridge over the stub runtime."""
    return Bridge(orchestrator, runtime.registry, runtime.logger)


@pytest.fixture
def secret(runtime: RuntimeContext) -> str:
    """Enable the bridge and return its secret."""
    settings = configure_bridge(runtime.registry, enabled=True)
    assert settings.bridge_secret is not None
    return settings.bridge_secret


def test_every_action_has_a_handler() -> None:
    """Each action maps onto a payload type and a handler."""
    assert set(DISPATCH) == set(BridgeAction)


def test_disabled_bridge_is_unauthorized(bridge: Bridge) -> None:
    """Requests are refused while the bridge is disabled."""
    result = bridge.handle("anything", "list-instances")

    assert result.exit_code is ExitCode.UNAUTHORIZED
    assert result.error == "The command bridge is disabled."


def test_wrong_secret_is_unauthorized(
    bridge: Bridge, secret: str, runtime: RuntimeContext
) -> None:
    """A mismatched secret never reaches the orchestrator."""
    result = bridge.handle(secret + "x", "add-instance", _blob({"name": "blog"}))

    assert result.exit_code is ExitCode.UNAUTHORIZED
    assert runtime.registry.load() == {}


def test_list_instances_envelope(bridge: Bridge, secret: str, runtime: RuntimeContext) -> None:
    """A valid request returns the orchestrator envelope."""
    result = bridge.handle(secret, "list-instances")

    assert result.to_envelope() == {
        "success": True,
        "messages": ["0 instance(s) registered."],
        "data": [],
    }
    lines = (runtime.config.logs_dir / "operations.jsonl").read_text().splitlines()
    commands = [json.loads(line)["command"] for line in lines]
    assert commands == ["list", "bridge"]


def test_add_instance_through_bridge(
    stub_host: StubHost, bridge: Bridge, secret: str, runtime: RuntimeContext
) -> None:
    """Snake-case payloads drive the add operation."""
    result = bridge.handle(
        secret,
        "add-instance",
        _blob({"name": "blog", "domain": "blog.example.com", "port": 8090}),
    )

    assert result.success, result.error
    assert list(runtime.registry.load()) == ["blog"]
    assert result.to_envelope()["data"]["port"] == 8090  # type: ignore[index]
    assert stub_host.calls("pm2")[-1] == "save"


def test_orchestrator_failure_keeps_exit_code(bridge: Bridge, secret: str) -> None:
    """Operation failures are passed through unchanged."""
    result = bridge.handle(secret, "remove-instance", _blob({"name": "ghost"}))

    assert result.exit_code is ExitCode.VALIDATION
    assert result.to_envelope() == {
        "success": False,
        "messages": ["Instance 'ghost' not found."],
        "error": "Instance 'ghost' not found.",
    }


@pytest.mark.parametrize(
    ("action", "blob", "message"),
    [
        ("explode", None, "Unknown action 'explode'."),
        ("get-logs", "%%%not-base64%%%", "not base64-encoded JSON"),
        ("get-logs", _blob(["blog"]), "must be a JSON object"),  # type: ignore[arg-type]
        ("get-logs", _blob({}), "Missing payload field 'name'"),
        ("get-logs", _blob({"name": "blog", "tail": 3}), "Unknown payload field(s)"),
        ("get-logs", _blob({"name": "blog", "lines": "20"}), "'lines' has the wrong type"),
        ("get-logs", _blob({"name": "blog", "lines": True}), "'lines' has the wrong type"),
        ("remove-instance", _blob({"name": "blog", "delete_data": 1}), "wrong type"),
    ],
)
def test_malformed_requests_are_validation_errors(
    bridge: Bridge, secret: str, action: str, blob: str | None, message: str
) -> None:
    """Malformed payloads fail before any operation runs."""
    result = bridge.handle(secret, action, blob)

    assert result.exit_code is ExitCode.VALIDATION
    assert result.error is not None and message in result.error


def test_decode_blob_empty_is_empty_object() -> None:
    """A missing payload decodes to an empty object."""
    assert decode_blob(None) == {}
    assert decode_blob("  ") == {}


def test_parse_payload_accepts_optional_none() -> None:
    """Optional fields accept null and defaults fill the rest."""
    payload = parse_payload(
        BridgeAction.ADD_INSTANCE,
        {"name": "blog", "domain": "blog.example.com", "port": 8090, "certificate_email": None},
    )

    assert payload.certificate_email is None
    assert payload.run_certbot is True
    assert payload.ignore_dns_warnings is False

    with pytest.raises(BridgeError):
        parse_payload(BridgeAction.ADD_INSTANCE, {"name": "blog", "domain": 1, "port": 8090})


def test_bridge_failure_is_recorded(bridge: Bridge, runtime: RuntimeContext) -> None:
    """Refused requests are logged with their exit code."""
    bridge.handle("nope", "get-diagnostics")

    record = json.loads(
        (runtime.config.logs_dir / "operations.jsonl").read_text().splitlines()[-1]
    )
    assert record["command"] == "bridge"
    assert record["args"] == {"action": "get-diagnostics"}
    assert record["result"]["rc"] == int(ExitCode.UNAUTHORIZED)


@pytest.mark.parametrize("content", ["bridge: [unclosed\n", "bridge: on\n"])
def test_unreadable_settings_return_envelope(
    bridge: Bridge, runtime: RuntimeContext, content: str
) -> None:
    """Broken settings files are reported as an environment failure."""
    runtime.registry.path_for("settings.yml").write_text(content, encoding="utf-8")

    result = bridge.handle("anything", "list-instances")

    assert result.exit_code is ExitCode.ENVIRONMENT
    envelope = result.to_envelope()
    assert envelope["success"] is False
    assert "Unable to read bridge settings" in str(envelope["error"])
