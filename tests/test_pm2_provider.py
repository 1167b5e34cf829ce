"""Tests for the pm2 and PocketBase command wrappers."""
from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any

import pytest

from pbctl.providers import pm2 as pm2_module
from pbctl.providers import pocketbase as pocketbase_module
from pbctl.providers.pm2 import Pm2Error, Pm2Provider
from pbctl.providers.pocketbase import PocketBaseError, PocketBaseProvider


class _Recorder:
    """Capture subprocess.run invocations and replay canned results."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.calls: list[list[str]] = []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    def __call__(self, args: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(args))
        return subprocess.CompletedProcess(
            args, self.returncode, stdout=self.stdout, stderr=self.stderr
        )


def test_control_commands_use_prefixed_process_names(monkeypatch: pytest.MonkeyPatch) -> None:
    """Process names carry the configured prefix."""
    recorder = _Recorder()
    monkeypatch.setattr(pm2_module.subprocess, "run", recorder)
    provider = Pm2Provider(pm2_bin="pm2", process_prefix="pb-")

    provider.start("blog")
    provider.stop("blog")
    provider.restart("blog")
    provider.delete("blog")
    provider.reload(Path("/var/lib/pbctl/ecosystem.config.json"))
    provider.start_ecosystem(Path("/var/lib/pbctl/ecosystem.config.json"), "blog")
    provider.save()

    assert recorder.calls == [
        ["pm2", "start", "pb-blog"],
        ["pm2", "stop", "pb-blog"],
        ["pm2", "restart", "pb-blog"],
        ["pm2", "delete", "pb-blog"],
        ["pm2", "reload", "/var/lib/pbctl/ecosystem.config.json"],
        ["pm2", "start", "/var/lib/pbctl/ecosystem.config.json", "--only", "pb-blog"],
        ["pm2", "save"],
    ]


def test_failure_raises_with_exit_code(monkeypatch: pytest.MonkeyPatch) -> None:
    """Non-zero exits surface stderr in the error."""
    monkeypatch.setattr(
        pm2_module.subprocess, "run", _Recorder(returncode=1, stderr="process not found\n")
    )

    with pytest.raises(Pm2Error) as excinfo:
        Pm2Provider().stop("ghost")

    assert str(excinfo.value) == "pm2 stop failed (exit 1): process not found"


def test_missing_binary_raises(tmp_path: Path) -> None:
    """A missing pm2 executable is reported as Pm2Error."""
    with pytest.raises(Pm2Error, match="not found"):
        Pm2Provider(pm2_bin=str(tmp_path / "pm2")).save()


def test_statuses_parse_jlist(monkeypatch: pytest.MonkeyPatch) -> None:
    """jlist output is mapped to ProcessStatus objects."""
    payload = [
        {
            "name": "pb-blog",
            "pid": 4242,
            "pm2_env": {"status": "online", "restart_time": 2, "pm_uptime": 1700000000000},
            "monit": {"memory": 1048576, "cpu": 0.5},
        },
        {"name": "pb-shop", "pid": 0, "pm2_env": {"status": "stopped"}},
        "garbage",
    ]
    monkeypatch.setattr(pm2_module.subprocess, "run", _Recorder(stdout=json.dumps(payload)))
    provider = Pm2Provider()

    statuses = provider.statuses()

    assert set(statuses) == {"pb-blog", "pb-shop"}
    blog = statuses["pb-blog"]
    assert (blog.status, blog.pid, blog.memory, blog.restarts) == ("online", 4242, 1048576, 2)
    assert statuses["pb-shop"].pid is None
    assert statuses["pb-shop"].status == "stopped"
    assert "pb-missing" not in statuses


def test_statuses_reject_invalid_json(monkeypatch: pytest.MonkeyPatch) -> None:
    """Unparseable jlist output raises Pm2Error."""
    monkeypatch.setattr(pm2_module.subprocess, "run", _Recorder(stdout="not json"))

    with pytest.raises(Pm2Error, match="invalid JSON"):
        Pm2Provider().statuses()


def test_logs_request_fixed_line_count(monkeypatch: pytest.MonkeyPatch) -> None:
    """Logs are read without streaming."""
    recorder = _Recorder(stdout="line one\nline two\n")
    monkeypatch.setattr(pm2_module.subprocess, "run", recorder)

    output = Pm2Provider().logs("blog", lines=20)

    assert output == "line one\nline two\n"
    assert recorder.calls == [["pm2", "logs", "pb-blog", "--lines", "20", "--nostream"]]


def test_superuser_password_is_redacted(monkeypatch: pytest.MonkeyPatch) -> None:
    """The password is passed to PocketBase but never appears in errors."""
    recorder = _Recorder(returncode=1, stderr="boom")
    monkeypatch.setattr(pocketbase_module.subprocess, "run", recorder)
    provider = PocketBaseProvider(Path("/opt/pb/pocketbase"))

    with pytest.raises(PocketBaseError) as excinfo:
        provider.upsert_superuser(Path("/data/blog"), "admin@example.com", "s3cret-pass")

    assert recorder.calls[0] == [
        "/opt/pb/pocketbase",
        "superuser",
        "upsert",
        "admin@example.com",
        "s3cret-pass",
        "--dir",
        "/data/blog",
    ]
    assert "s3cret-pass" not in str(excinfo.value)
    assert "***" in str(excinfo.value)


def test_pocketbase_version_parsing(monkeypatch: pytest.MonkeyPatch) -> None:
    """The version subcommand output is reduced to the bare version."""
    monkeypatch.setattr(
        pocketbase_module.subprocess, "run", _Recorder(stdout="pocketbase version 0.28.1\n")
    )

    assert PocketBaseProvider(Path("/opt/pb/pocketbase")).version() == "0.28.1"
