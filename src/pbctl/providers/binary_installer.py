"""Download and install the shared PocketBase executable."""
from __future__ import annotations

import hashlib
import os
import platform
import shutil
import tempfile
import time
import zipfile
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import httpx

from ..locking import DownloadLock, DownloadLockHeldError
from ..state import StateRegistry
from .version_provider import VersionResolver

DOWNLOAD_LOCK_NAME = ".download.lock"
_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "armv7",
    "armv7": "armv7",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}


class BinaryInstallError(RuntimeError):
    """Raised when the PocketBase executable cannot be installed."""


@dataclass(frozen=True, slots=True)
class BinaryInstallResult:
    """Outcome of :meth:`BinaryInstaller.ensure_installed`."""

    path: Path
    version: str | None
    changed: bool
    source: str
    sha256: str | None = None


def host_arch(configured: str = "auto") -> str:
    """Map the configured or detected CPU architecture to a release suffix."""
    if configured != "auto":
        return configured
    machine = platform.machine().lower()
    try:
        return _ARCH_ALIASES[machine]
    except KeyError as exc:
        raise BinaryInstallError(f"Unsupported CPU architecture '{machine}'.") from exc


class BinaryInstaller:
    """Install PocketBase releases under an exclusive download lock."""

    def __init__(
        self,
        *,
        executable: Path,
        registry: StateRegistry,
        resolver: VersionResolver,
        release_url: str,
        checksums_url: str | None = None,
        request_timeout: float = 5.0,
        arch: str = "auto",
        lock_wait: float = 10.0,
        poll_interval: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialise the installer for *executable*."""
        self.executable = executable.expanduser()
        self.registry = registry
        self.resolver = resolver
        self.release_url = release_url
        self.checksums_url = checksums_url
        self.request_timeout = request_timeout
        self.arch = arch
        self.lock_wait = lock_wait
        self.poll_interval = poll_interval
        self._sleep = sleep
        self.lock = DownloadLock(self.executable.parent / DOWNLOAD_LOCK_NAME)

    def installed_version(self) -> str | None:
        """Return the version recorded for the current executable."""
        record = self.registry.read_binary()
        if record is None or not self.executable.exists():
            return None
        version = record.get("version")
        return str(version) if version else None

    def ensure_installed(
        self,
        version: str | None = None,
        *,
        force: bool = False,
    ) -> BinaryInstallResult:
        """Install PocketBase unless it is already present.

        With no *version* and no *force* an existing executable is kept as is.
        A fresh download is checked against the release's published SHA-256
        when ``checksums_url`` is set.
        When the download lock is held by another process the installer waits
        up to ``lock_wait`` seconds for it to clear and re-checks; if it never
        clears, :class:`DownloadLockHeldError` propagates to the caller.
        """
        explicit = force or bool(version)
        if self.executable.exists() and not explicit:
            return BinaryInstallResult(
                path=self.executable,
                version=self.installed_version(),
                changed=False,
                source="existing",
            )

        resolved = self.resolver.resolve(version)
        try:
            with self.lock.acquire():
                return self._install(resolved.version, resolved.source)
        except DownloadLockHeldError:
            if not self._wait_for_lock_release():
                raise
        if self.executable.exists() and not explicit:
            return BinaryInstallResult(
                path=self.executable,
                version=self.installed_version(),
                changed=False,
                source="concurrent",
            )
        with self.lock.acquire():
            return self._install(resolved.version, resolved.source)

    def download_url(self, version: str) -> str:
        """Return the release archive URL for *version*."""
        return self.release_url.format(version=version, arch=host_arch(self.arch))

    # ------------------------------------------------------------------
    def _wait_for_lock_release(self) -> bool:
        deadline = time.monotonic() + self.lock_wait
        while self.lock.is_held():
            if time.monotonic() >= deadline:
                return False
            self._sleep(self.poll_interval)
        return True

    def _install(self, version: str, source: str) -> BinaryInstallResult:
        bin_dir = self.executable.parent
        bin_dir.mkdir(parents=True, exist_ok=True)
        staging_dir = Path(tempfile.mkdtemp(prefix=f"pbctl-install-{version}-", dir=str(bin_dir)))
        try:
            archive = staging_dir / "pocketbase.zip"
            url = self.download_url(version)
            digest = self._download(url, archive)
            self._verify(version, url, digest)
            extracted = self._extract(archive, staging_dir)
            os.chmod(extracted, 0o755)
            os.replace(extracted, self.executable)
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

        installed_at = datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")
        self.registry.write_binary(
            {
                "version": version,
                "path": str(self.executable),
                "installed_at": installed_at,
                "source": url,
                "sha256": digest,
            }
        )
        return BinaryInstallResult(
            path=self.executable,
            version=version,
            changed=True,
            source=source,
            sha256=digest,
        )

    def _download(self, url: str, destination: Path) -> str:
        """Stream *url* into *destination* and return its SHA-256 (isolated for testing)."""
        digest = hashlib.sha256()
        try:
            with httpx.stream("GET", url, follow_redirects=True, timeout=None) as response:
                response.raise_for_status()
                with destination.open("wb") as handle:
                    for chunk in response.iter_bytes():
                        handle.write(chunk)
                        digest.update(chunk)
        except httpx.HTTPError as exc:
            raise BinaryInstallError(f"Failed to download {url}: {exc}") from exc
        return digest.hexdigest()

    def _verify(self, version: str, url: str, digest: str) -> None:
        """Compare *digest* with the release's published checksum for the archive."""
        if not self.checksums_url:
            return
        checksums_url = self.checksums_url.format(version=version, arch=host_arch(self.arch))
        archive_name = url.rsplit("/", 1)[-1]
        expected: str | None = None
        for line in self._fetch_checksums(checksums_url).splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1].lstrip("*") == archive_name:
                expected = parts[0].lower()
                break
        if expected is None:
            raise BinaryInstallError(f"{checksums_url} lists no checksum for {archive_name}.")
        if expected != digest:
            raise BinaryInstallError(
                f"Checksum mismatch for {archive_name}: expected {expected}, got {digest}."
            )

    def _fetch_checksums(self, url: str) -> str:
        """Return the checksum listing at *url* (isolated for testing)."""
        try:
            response = httpx.get(url, follow_redirects=True, timeout=self.request_timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise BinaryInstallError(f"Failed to download {url}: {exc}") from exc
        return response.text

    def _extract(self, archive: Path, staging_dir: Path) -> Path:
        try:
            with zipfile.ZipFile(archive) as bundle:
                candidates = [
                    info for info in bundle.infolist() if Path(info.filename).name == "pocketbase"
                ]
                member = candidates[0] if candidates else None
                if member is None:
                    raise BinaryInstallError(
                        f"{archive.name} does not contain a pocketbase binary."
                    )
                target = staging_dir / "pocketbase.new"
                with bundle.open(member) as source, target.open("wb") as handle:
                    shutil.copyfileobj(source, handle)
        except zipfile.BadZipFile as exc:
            raise BinaryInstallError(f"Downloaded archive is not a valid zip file: {exc}") from exc
        return target


__all__ = [
    "BinaryInstallError",
    "BinaryInstallResult",
    "BinaryInstaller",
    "host_arch",
]
