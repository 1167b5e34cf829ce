"""Resolve which PocketBase release to install.

Resolution order for the "latest" release:

1. the in-process :class:`VersionCache` when it is younger than its TTL;
2. the on-disk cache document ``{"timestamp": <epoch seconds>,
   "latestVersion": "x.y.z"}``;
3. the upstream releases API, queried with a short timeout.

Any upstream failure (network error, timeout, unexpected payload) resolves to
the configured fallback version. The fallback is a fixed string that has to be
bumped by hand from time to time.
"""
from __future__ import annotations

import json
import os
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import httpx
from packaging.version import InvalidVersion, Version


@dataclass(slots=True)
class VersionCache:
    """In-process memo of the latest upstream release."""

    ttl_seconds: int = 86400
    fetched_at: float | None = None
    latest_version: str | None = None

    def is_fresh(self, now: float) -> bool:
        """Return ``True`` when a cached value exists and is within the TTL."""
        if self.latest_version is None or self.fetched_at is None:
            return False
        return 0 <= now - self.fetched_at < self.ttl_seconds

    def store(self, version: str, fetched_at: float) -> None:
        """Remember *version* as observed at *fetched_at*."""
        self.latest_version = version
        self.fetched_at = fetched_at


@dataclass(frozen=True, slots=True)
class ResolvedVersion:
    """A resolved version and where it came from."""

    version: str
    source: str

    @property
    def is_fallback(self) -> bool:
        """Return ``True`` when upstream could not be consulted."""
        return self.source == "fallback"


def normalize_version(value: str) -> str:
    """Strip a leading ``v`` and validate *value* as a release version."""
    candidate = value.strip()
    if candidate[:1] in {"v", "V"}:
        candidate = candidate[1:]
    try:
        Version(candidate)
    except InvalidVersion as exc:
        raise ValueError(f"Invalid PocketBase version '{value}'.") from exc
    return candidate


class VersionResolver:
    """Resolve PocketBase versions using an explicit cache object."""

    def __init__(
        self,
        *,
        cache: VersionCache,
        cache_path: Path,
        api_url: str,
        fallback_version: str,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.cache_path = cache_path
        self.api_url = api_url
        self.fallback_version = fallback_version
        self.timeout = timeout
        self._clock = clock

    def resolve(self, requested: str | None = None) -> ResolvedVersion:
        """Return *requested* when given, otherwise the latest known release."""
        if requested:
            return ResolvedVersion(normalize_version(requested), "requested")
        return self.latest()

    def latest(self) -> ResolvedVersion:
        """Return the latest release, consulting caches before upstream."""
        now = self._clock()
        if self.cache.is_fresh(now):
            return ResolvedVersion(str(self.cache.latest_version), "memory")

        disk = self._from_disk()
        if disk is not None:
            fetched_at, version = disk
            self.cache.store(version, fetched_at)
            if self.cache.is_fresh(now):
                return ResolvedVersion(version, "disk")

        version = self._from_upstream()
        if version is None:
            return ResolvedVersion(self.fallback_version, "fallback")
        self.cache.store(version, now)
        self._write_disk(version, now)
        return ResolvedVersion(version, "upstream")

    # ------------------------------------------------------------------
    def _from_disk(self) -> tuple[float, str] | None:
        try:
            payload = json.loads(self.cache_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(payload, dict):
            return None
        timestamp = payload.get("timestamp")
        version = payload.get("latestVersion")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            return None
        if not isinstance(version, str):
            return None
        try:
            return float(timestamp), normalize_version(version)
        except ValueError:
            return None

    def _write_disk(self, version: str, fetched_at: float) -> None:
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.cache_path.parent), prefix=f".{self.cache_path.name}."
            )
        except OSError:
            return
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump({"timestamp": int(fetched_at), "latestVersion": version}, handle)
            os.replace(tmp_path, self.cache_path)
        except OSError:
            return
        finally:
            tmp_path.unlink(missing_ok=True)

    def _from_upstream(self) -> str | None:
        try:
            response = httpx.get(
                self.api_url,
                headers={"Accept": "application/vnd.github+json"},
                timeout=self.timeout,
                follow_redirects=True,
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError):
            return None
        tag = payload.get("tag_name") if isinstance(payload, dict) else None
        if not isinstance(tag, str):
            return None
        try:
            return normalize_version(tag)
        except ValueError:
            return None


__all__ = ["ResolvedVersion", "VersionCache", "VersionResolver", "normalize_version"]
