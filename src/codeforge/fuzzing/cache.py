"""Time-bounded cache of discovered fuzzers and the service that fills it."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from codeforge.core.exceptions import CrashDiscoveryError
from codeforge.core.schema import CrashArtifact, CrashGroup, FuzzerMetadata, FuzzerStatus, FuzzTargetDescriptor
from codeforge.fuzzing.crashes import CrashDiscovery, read_test_count, scan_crash_files
from codeforge.fuzzing.names import fuzzer_output_directory, fuzzing_directory

if TYPE_CHECKING:
    from codeforge.fuzzing.discovery import TargetDiscovery

log = logging.getLogger(__name__)

#: Default time-to-live (seconds) of a populated cache.
DEFAULT_TTL = 30.0

#: Statuses owned by a running workflow; rediscovery does not overwrite them.
_ACTIVE_STATUSES = frozenset({FuzzerStatus.BUILDING, FuzzerStatus.RUNNING})


class FuzzerMetadataCache:
    """Fuzzer name -> :class:`FuzzerMetadata`, valid for ``ttl`` seconds after population."""

    def __init__(self, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, FuzzerMetadata] = {}
        self._timestamp: float | None = None
        self._lock = threading.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def is_valid(self) -> bool:
        """True only when populated and younger than the TTL."""
        with self._lock:
            if self._timestamp is None or not self._entries:
                return False
            return (self._clock() - self._timestamp) < self._ttl

    def update_cache(self, fuzzers: list[FuzzerMetadata]) -> None:
        """Replace every entry and restart the TTL."""
        with self._lock:
            self._entries = {f.name: f for f in fuzzers}
            self._timestamp = self._clock()
        log.debug("Fuzzer cache updated with %d entries", len(fuzzers))

    def invalidate(self) -> None:
        with self._lock:
            self._entries = {}
            self._timestamp = None

    def get(self, name: str) -> FuzzerMetadata | None:
        with self._lock:
            return self._entries.get(name)

    def all(self) -> list[FuzzerMetadata]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda f: f.name)

    def merge(self, fuzzer: FuzzerMetadata) -> None:
        """Insert or replace one entry. Only :meth:`update_cache` makes the cache valid."""
        with self._lock:
            self._entries[fuzzer.name] = fuzzer

    def set_status(self, name: str, status: FuzzerStatus, **updates: Any) -> FuzzerMetadata:
        """Update (or create) the entry for ``name`` with a new lifecycle status."""
        with self._lock:
            current = self._entries.get(name) or FuzzerMetadata(name=name)
            updated = current.model_copy(
                update={"status": status, "last_updated": datetime.now(), **updates}
            )
            self._entries[name] = updated
            return updated


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


class FuzzerDiscoveryService:
    """Fill a :class:`FuzzerMetadataCache` from target discovery plus crash discovery."""

    def __init__(
        self,
        discovery: TargetDiscovery,
        cache: FuzzerMetadataCache,
        *,
        crash_discovery: CrashDiscovery | None = None,
        output_directory: str = ".codeforge/fuzzing",
    ) -> None:
        self._discovery = discovery
        self._cache = cache
        self._crashes = crash_discovery or CrashDiscovery()
        self._output_directory = output_directory

    @property
    def cache(self) -> FuzzerMetadataCache:
        return self._cache

    def fuzzing_dir(self, workspace_root: Path) -> Path:
        return fuzzing_directory(workspace_root, self._output_directory)

    async def _crash_groups(self, fuzzing_dir: Path) -> dict[str, CrashGroup]:
        try:
            groups = await asyncio.to_thread(self._crashes.discover, fuzzing_dir)
        except (CrashDiscoveryError, OSError) as e:
            log.warning("Crash discovery failed; reporting fuzzers without crashes: %s", e)
            return {}
        return {Path(g.output_dir).name: g for g in groups}

    async def _metadata(
        self,
        descriptor: FuzzTargetDescriptor,
        fuzzing_dir: Path,
        groups: dict[str, CrashGroup],
    ) -> FuzzerMetadata:
        name = descriptor.target
        output_dir = fuzzer_output_directory(fuzzing_dir, name)
        executable = fuzzing_dir / name
        built = await asyncio.to_thread(_is_executable, executable)
        test_count = await asyncio.to_thread(read_test_count, output_dir)
        group = groups.get(output_dir.name)
        crashes: list[CrashArtifact] = list(group.crashes) if group else []

        status = FuzzerStatus.BUILT if built else FuzzerStatus.DISCOVERED
        previous = self._cache.get(name)
        if previous is not None and previous.status in _ACTIVE_STATUSES:
            status = previous.status
        elif previous is not None and previous.status is FuzzerStatus.FAILED and not built:
            status = FuzzerStatus.FAILED
        return FuzzerMetadata(
            name=name,
            preset=descriptor.preset,
            status=status,
            crashes=crashes,
            output_dir=str(output_dir),
            executable_path=str(executable) if built else None,
            test_count=test_count,
        )

    async def discover_fuzzers(self, workspace_root: Path, *, force: bool = False) -> list[FuzzerMetadata]:
        """Return every fuzzer, from the cache while it is valid.

        Target discovery errors propagate; crash discovery errors only empty the crash lists.
        """
        if not force and self._cache.is_valid():
            return self._cache.all()
        fuzzing_dir = self.fuzzing_dir(workspace_root)
        descriptors = await self._discovery.discover_all(workspace_root, fuzzing_dir, clean=force)
        groups = await self._crash_groups(fuzzing_dir)
        fuzzers = await asyncio.gather(*(self._metadata(d, fuzzing_dir, groups) for d in descriptors))
        self._cache.update_cache(list(fuzzers))
        return self._cache.all()

    async def refresh(self, workspace_root: Path, name: str) -> FuzzerMetadata | None:
        """Re-read one fuzzer's state; falls back to full discovery for unknown names."""
        current = self._cache.get(name)
        if current is None:
            await self.discover_fuzzers(workspace_root, force=True)
            return self._cache.get(name)

        fuzzing_dir = self.fuzzing_dir(workspace_root)
        output_dir = fuzzer_output_directory(fuzzing_dir, name)
        try:
            crashes = await asyncio.to_thread(scan_crash_files, output_dir)
        except (CrashDiscoveryError, OSError) as e:
            log.warning("Crash discovery for %s failed: %s", name, e)
            crashes = []
        refreshed = await self._metadata(
            FuzzTargetDescriptor(preset=current.preset, target=name),
            fuzzing_dir,
            {},
        )
        refreshed = refreshed.model_copy(update={"crashes": crashes})
        self._cache.merge(refreshed)
        return refreshed

    def invalidate(self) -> None:
        self._cache.invalidate()
