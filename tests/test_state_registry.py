"""State registry helpers tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from pbctl.instances import InstanceRecord
from pbctl.state import StateRegistry, StateRegistryError


def _record(name: str, port: int) -> InstanceRecord:
    return InstanceRecord(
        name=name,
        domain=f"{name}.example.com",
        port=port,
        data_dir=Path("/var/lib/pbctl/instances") / name,
    )


def test_read_missing_files_returns_default(tmp_path: Path) -> None:
    """Missing files return the provided default structure."""
    registry = StateRegistry(tmp_path)

    result = registry.read("instances.yml", default={"instances": {}})

    assert result == {"instances": {}}


def test_write_is_atomic_and_private(tmp_path: Path) -> None:
    """Writing a registry file leaves no temporary files behind."""
    registry = StateRegistry(tmp_path)

    registry.write("instances.yml", {"instances": {}})

    path = tmp_path / "instances.yml"
    assert (path.stat().st_mode & 0o777) == 0o640
    assert [item.name for item in tmp_path.iterdir()] == ["instances.yml"]


def test_load_creates_empty_document(tmp_path: Path) -> None:
    """The first load materialises an empty instances.yml."""
    registry = StateRegistry(tmp_path / "registry")

    assert registry.load() == {}
    assert (tmp_path / "registry" / "instances.yml").exists()


def test_save_and_load_preserve_order_and_extra_keys(tmp_path: Path) -> None:
    """Records keep their insertion order and unknown keys survive a rewrite."""
    registry = StateRegistry(tmp_path)
    registry.write(
        "instances.yml",
        {
            "instances": {
                "zeta": {**_record("zeta", 8091).to_mapping(), "owner": "ops"},
                "alpha": _record("alpha", 8090).to_mapping(),
            }
        },
    )

    records = registry.load()
    registry.save(records)
    reloaded = registry.load()

    assert list(reloaded) == ["zeta", "alpha"]
    assert reloaded["zeta"].extra == {"owner": "ops"}
    assert reloaded["zeta"].to_mapping()["owner"] == "ops"
    assert reloaded["alpha"] == records["alpha"]


@pytest.mark.parametrize(
    "content",
    [
        "::: not yaml :::\n",
        "- a\n- b\n",
        "instances:\n  broken: 5\n",
        "instances:\n  broken:\n    domain: x.example.com\n",
    ],
)
def test_invalid_documents_raise(tmp_path: Path, content: str) -> None:
    """Malformed registry documents raise StateRegistryError."""
    registry = StateRegistry(tmp_path)
    (tmp_path / "instances.yml").write_text(content)

    with pytest.raises(StateRegistryError):
        registry.load()


def test_settings_merge_defaults_and_stay_private(tmp_path: Path) -> None:
    """Settings updates merge over defaults and keep settings.yml at 0600."""
    registry = StateRegistry(tmp_path)

    assert registry.read_settings()["bridge"] == {"enabled": False, "secret": None}

    registry.update_settings({"bridge": {"enabled": True}})
    settings = registry.update_settings({"default_certificate_email": "ops@example.com"})

    assert settings["bridge"] == {"enabled": True, "secret": None}
    assert settings["default_certificate_email"] == "ops@example.com"
    assert ((tmp_path / "settings.yml").stat().st_mode & 0o777) == 0o600


def test_settings_reject_scalar_bridge(tmp_path: Path) -> None:
    """A bridge value that is not a mapping is reported, an empty one is ignored."""
    registry = StateRegistry(tmp_path)
    (tmp_path / "settings.yml").write_text("bridge: on\n", encoding="utf-8")

    with pytest.raises(StateRegistryError, match="must be a mapping"):
        registry.read_settings()

    (tmp_path / "settings.yml").write_text("bridge:\n", encoding="utf-8")
    assert registry.read_settings()["bridge"] == {"enabled": False, "secret": None}


def test_binary_metadata_roundtrip(tmp_path: Path) -> None:
    """Binary metadata is stored separately from instances."""
    registry = StateRegistry(tmp_path)

    assert registry.read_binary() is None
    registry.write_binary({"version": "0.28.1", "sha256": "abc"})

    assert registry.read_binary() == {"version": "0.28.1", "sha256": "abc"}
