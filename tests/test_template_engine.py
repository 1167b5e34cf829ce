"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest
from jinja2 import UndefinedError

from pbctl.templates import TemplateEngine


def _context(**overrides: object) -> dict[str, object]:
    context: dict[str, object] = {
        "instance_name": "blog",
        "server_name": "blog.example.com",
        "port": 8090,
        "use_tls": False,
        "use_http2": True,
        "max_body_20mb": True,
        "provisional": False,
        "certificate": "/etc/letsencrypt/live/blog.example.com/fullchain.pem",
        "certificate_key": "/etc/letsencrypt/live/blog.example.com/privkey.pem",
        "dhparam_path": "/etc/letsencrypt/ssl-dhparams.pem",
        "options_file": None,
        "acme_root": "/var/www/html",
    }
    context.update(overrides)
    return context


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates render with strict variables."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("nginx/site.conf.j2", _context())

    assert "server_name blog.example.com;" in output
    assert "proxy_pass http://127.0.0.1:8090;" in output
    assert "client_max_body_size 20M;" in output


def test_missing_variable_is_an_error() -> None:
    """StrictUndefined turns a missing context key into an error."""
    engine = TemplateEngine.with_overrides(None)
    context = _context()
    del context["port"]

    with pytest.raises(UndefinedError):
        engine.render_to_string("nginx/site.conf.j2", context)


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "pb-blog.conf"

    changed = engine.render_to_path("nginx/site.conf.j2", destination, _context(), mode=0o600)

    assert changed is True
    assert oct(destination.stat().st_mode & 0o777) == "0o600"

    # Second render with same content should be a no-op.
    assert engine.render_to_path("nginx/site.conf.j2", destination, _context()) is False


def test_override_directory_takes_precedence(tmp_path: Path) -> None:
    """Operator templates shadow the packaged ones."""
    override = tmp_path / "templates" / "nginx"
    override.mkdir(parents=True)
    (override / "site.conf.j2").write_text("# custom {{ server_name }}\n")

    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    assert engine.render_to_string("nginx/site.conf.j2", _context()) == (
        "# custom blog.example.com\n"
    )
