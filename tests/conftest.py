"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import pytest
import yaml

from pbctl.config import AppConfig, load_config
from pbctl.orchestrator import Orchestrator
from pbctl.runtime import RuntimeContext, build_runtime


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def write_stub(path: Path, body: str) -> Path:
    """Write an executable shell script at *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return path


@dataclass
class StubHost:
    """Temporary host with stub nginx, pm2, certbot and pocketbase executables."""

    root: Path
    bin_dir: Path
    config_file: Path
    nginx_root: Path
    live_dir: Path

    @property
    def env(self) -> dict[str, str]:
        """Environment pointing pbctl at this host's config file."""
        return {"PBCTL_CONFIG_FILE": str(self.config_file)}

    def load_config(self) -> AppConfig:
        """Load the host configuration without consulting the real environment."""
        return load_config(config_file=self.config_file, env={})

    def calls(self, tool: str) -> list[str]:
        """Return the argument lines recorded by the stub called *tool*."""
        log = self.root / "calls" / f"{tool}.log"
        if not log.exists():
            return []
        return log.read_text(encoding="utf-8").splitlines()

    def fail(self, tool: str, first_arg: str) -> None:
        """Make *tool* exit 1 whenever its first argument equals *first_arg*."""
        (self.root / "calls" / f"{tool}.fail").write_text(first_arg, encoding="utf-8")

    def heal(self, tool: str) -> None:
        """Undo :meth:`fail` for *tool*."""
        (self.root / "calls" / f"{tool}.fail").unlink(missing_ok=True)


def _tool_body(root: Path, tool: str, extra: str = "") -> str:
    calls = root / "calls"
    return (
        f'echo "$@" >> "{calls}/{tool}.log"\n'
        f'if [ -f "{calls}/{tool}.fail" ] && [ "$1" = "$(cat "{calls}/{tool}.fail")" ]; then\n'
        f'  echo "{tool} $1 failed" >&2\n'
        "  exit 1\n"
        "fi\n"
        f"{extra}"
        "exit 0\n"
    )


@pytest.fixture
def stub_host(tmp_path: Path) -> StubHost:
    """Prepare stub executables and a config file rooted at *tmp_path*."""
    bin_dir = tmp_path / "bin"
    nginx_root = tmp_path / "nginx"
    live_dir = tmp_path / "letsencrypt" / "live"
    state_dir = tmp_path / "state"
    (tmp_path / "calls").mkdir()

    write_stub(bin_dir / "nginx", _tool_body(tmp_path, "nginx"))
    write_stub(
        bin_dir / "pm2",
        _tool_body(
            tmp_path,
            "pm2",
            'case "$1" in\n'
            "  jlist) echo '[]' ;;\n"
            '  logs) echo "[pb] serving on 127.0.0.1" ;;\n'
            "esac\n",
        ),
    )
    write_stub(
        bin_dir / "certbot",
        _tool_body(
            tmp_path,
            "certbot",
            'if [ "$1" = "--nginx" ]; then\n'
            f'  cat "{nginx_root}"/sites-available/*.conf > "{tmp_path}/calls/certbot-site.conf"\n'
            f'  mkdir -p "{live_dir}/$3"\n'
            f'  echo cert > "{live_dir}/$3/fullchain.pem"\n'
            f'  echo key > "{live_dir}/$3/privkey.pem"\n'
            "fi\n",
        ),
    )
    write_stub(
        state_dir / "bin" / "pocketbase",
        _tool_body(
            tmp_path,
            "pocketbase",
            'if [ "$1" = "--version" ]; then echo "pocketbase version 0.28.1"; fi\n',
        ),
    )

    dhparam = tmp_path / "letsencrypt" / "ssl-dhparams.pem"
    dhparam.parent.mkdir(parents=True, exist_ok=True)
    dhparam.write_text("-----BEGIN DH PARAMETERS-----\nstub\n", encoding="utf-8")

    config_file = tmp_path / "config.yml"
    config_file.write_text(
        yaml.safe_dump(
            {
                "state_dir": str(state_dir),
                "logs_dir": str(tmp_path / "logs"),
                "runtime_dir": str(tmp_path / "run"),
                "templates_dir": str(tmp_path / "templates"),
                "lock_timeout": 2,
                "pocketbase": {
                    "latest_release_api": "http://127.0.0.1:9/releases/latest",
                    "request_timeout": 0.5,
                    "checksums_url": "",
                },
                "nginx": {
                    "layout": "debian",
                    "root": str(nginx_root),
                    "nginx_bin": str(bin_dir / "nginx"),
                    "os_release": str(tmp_path / "os-release"),
                    "acme_root": str(tmp_path / "acme"),
                },
                "pm2": {"pm2_bin": str(bin_dir / "pm2")},
                "certbot": {
                    "certbot_bin": str(bin_dir / "certbot"),
                    "live_dir": str(live_dir),
                    "dhparam_path": str(dhparam),
                    "options_file": str(tmp_path / "letsencrypt" / "options-ssl-nginx.conf"),
                },
                "dns": {"enabled": False},
            }
        ),
        encoding="utf-8",
    )
    return StubHost(
        root=tmp_path,
        bin_dir=bin_dir,
        config_file=config_file,
        nginx_root=nginx_root,
        live_dir=live_dir,
    )


@pytest.fixture
def runtime(stub_host: StubHost) -> RuntimeContext:
    """Runtime wired to the stub host."""
    return build_runtime(stub_host.load_config())


@pytest.fixture
def orchestrator(runtime: RuntimeContext) -> Orchestrator:
    """Orchestrator over the stub runtime."""
    return Orchestrator(runtime)
