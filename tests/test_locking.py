"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from pbctl.locking import (
    DownloadLock,
    DownloadLockHeldError,
    LockManager,
    LockTimeoutError,
)


def test_instance_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "alpha.lock"
    with manager.instance_lock("alpha") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.instance_lock("alpha", timeout=0.2):
        pass


def test_instance_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("alpha"):
        with pytest.raises(LockTimeoutError):
            with manager.instance_lock("alpha", timeout=0.1):
                pass


def test_mutate_instances_acquires_global_then_instance(tmp_path: Path) -> None:
    """Lock bundles acquire global first followed by per-instance locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_instances(["beta", "alpha", "beta"]) as bundle:
        assert bundle.wait_ms >= 0
        assert [handle.path.name for handle in bundle.handles] == [
            "pbctl.lock",
            "alpha.lock",
            "beta.lock",
        ]


def test_mutate_instances_blocks_on_global_lock(tmp_path: Path) -> None:
    """A held global lock serialises every mutating operation."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        with pytest.raises(LockTimeoutError):
            with manager.mutate_instances([], timeout=0.1):
                pass


def test_download_lock_is_exclusive(tmp_path: Path) -> None:
    """The download marker cannot be created twice and is removed afterwards."""
    lock = DownloadLock(tmp_path / "bin" / ".download.lock")

    with lock.acquire() as path:
        assert lock.is_held()
        assert json.loads(path.read_text(encoding="utf-8"))["pid"] == os.getpid()
        with pytest.raises(DownloadLockHeldError):
            with lock.acquire():
                pass

    assert not lock.is_held()


def test_download_lock_released_on_error(tmp_path: Path) -> None:
    """The marker disappears even when the holder fails."""
    lock = DownloadLock(tmp_path / ".download.lock")

    with pytest.raises(RuntimeError):
        with lock.acquire():
            raise RuntimeError("download failed")

    assert not lock.is_held()
