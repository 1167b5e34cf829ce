"""Locking primitives for pbctl.

Two kinds of locks exist:

* ``LockManager`` hands out advisory ``fcntl`` locks under the runtime
  directory. Mutating operations take the global ``pbctl.lock`` followed by
  one lock per affected instance so that concurrent invocations cannot
  interleave their read-modify-write cycles on ``instances.yml``.
* ``DownloadLock`` is an exclusive marker file created next to the PocketBase
  executable. Creation fails when the marker already exists and the marker is
  always removed when the holder finishes.
"""
from __future__ import annotations

import errno
import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import AbstractContextManager, ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "pbctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


class DownloadLockHeldError(RuntimeError):
    """Raised when another process already holds the download lock."""


@dataclass(slots=True)
class LockHandle:
    """A held lock and how long acquiring it took."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """Several locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting across every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Hand out advisory file locks rooted at *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    def global_lock(
        self, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Acquire the tool-wide lock."""
        return self._lock(self.runtime_dir / GLOBAL_LOCK_NAME, timeout)

    def instance_lock(
        self, name: str, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Acquire the lock dedicated to instance *name*."""
        return self._lock(self.runtime_dir / f"{name}.lock", timeout)

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock and then per-instance locks in sorted order."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            yield LockBundle(handles)

    @contextmanager
    def _lock(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as exc:
                    if exc.errno not in (errno.EAGAIN, errno.EACCES):
                        raise
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from exc
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            metadata = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(UTC).isoformat(),
            }
            os.ftruncate(fd, 0)
            os.write(fd, json.dumps(metadata).encode("utf-8"))
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


class DownloadLock:
    """Exclusive marker file guarding the PocketBase executable."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def is_held(self) -> bool:
        """Return ``True`` when a marker file is present."""
        return self.path.exists()

    @contextmanager
    def acquire(self) -> Iterator[Path]:
        """Create the marker or raise :class:`DownloadLockHeldError`."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError as exc:
            raise DownloadLockHeldError(
                f"Another download is in progress ({self.path} exists). "
                "Retry once it finishes."
            ) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(
                    {"pid": os.getpid(), "created_at": datetime.now(UTC).isoformat()},
                    handle,
                )
            yield self.path
        finally:
            self.path.unlink(missing_ok=True)


__all__ = [
    "DownloadLock",
    "DownloadLockHeldError",
    "LockBundle",
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
]
