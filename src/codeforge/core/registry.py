"""Central registry for every container codeforge starts."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from codeforge.core.exceptions import CodeForgeError
from codeforge.core.retry import RetryPolicy
from codeforge.core.schema import ContainerFailure, ContainerRecord, TerminationSummary
from codeforge.runtime.docker import CATEGORY_LABEL, WORKSPACE_LABEL, generate_container_name
from codeforge.runtime.process import RunOptions

if TYPE_CHECKING:
    from codeforge.protocols import ContainerProcess, ContainerRuntime

log = logging.getLogger(__name__)

#: Seconds to wait for ``docker stop`` before escalating to ``docker kill``.
DEFAULT_STOP_TIMEOUT = 10.0


class ContainerRegistry:
    """Keyed store of :class:`ContainerRecord` with reconciliation against the runtime.

    Records are keyed by identifier with a secondary name index. All
    mutations hold ``_lock``; runtime queries never do. No public method
    raises because of a runtime failure.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        *,
        retry_policy: RetryPolicy | None = None,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
    ) -> None:
        self._runtime = runtime
        self._retry = retry_policy or RetryPolicy()
        self._stop_timeout = stop_timeout
        self._records: dict[str, ContainerRecord] = {}
        self._by_name: dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def runtime(self) -> ContainerRuntime:
        return self._runtime

    # ------------------------------------------------------------------
    # Record keeping
    # ------------------------------------------------------------------

    def track(
        self,
        identifier: str | None,
        *,
        name: str | None = None,
        image: str = "unknown",
        workspace_root: str | Path = "",
        category: str = "general",
        created_at: datetime | None = None,
        **metadata: Any,
    ) -> ContainerRecord | None:
        """Insert or overwrite the record for ``identifier``.

        A missing identifier is logged and ignored.
        """
        if not identifier:
            log.error("Cannot track container: identifier is required")
            return None
        record = ContainerRecord(
            identifier=identifier,
            name=name or identifier,
            image=image,
            workspace_root=str(workspace_root),
            category=category,
            created_at=created_at or datetime.now(),
            metadata=metadata,
        )
        with self._lock:
            previous = self._records.get(identifier)
            if previous is not None:
                log.debug("Overwriting tracked container: %s", identifier)
                self._by_name.pop(previous.name, None)
            self._records[identifier] = record
            self._by_name[record.name] = identifier
        log.debug("Tracking container %s (%s)", identifier, record.category)
        return record

    def attach_identifier(self, name: str, identifier: str) -> ContainerRecord | None:
        """Re-key the record tracked under ``name`` to the runtime-confirmed ``identifier``."""
        with self._lock:
            key = self._by_name.get(name, name)
            record = self._records.pop(key, None)
            if record is None:
                return None
            record = record.model_copy(update={"identifier": identifier})
            self._records[identifier] = record
            self._by_name[record.name] = identifier
            return record

    def untrack(self, identifier: str) -> bool:
        """Remove the record known by id or name. Idempotent."""
        with self._lock:
            key = identifier if identifier in self._records else self._by_name.get(identifier)
            if key is None:
                return False
            record = self._records.pop(key)
            self._by_name.pop(record.name, None)
        log.debug("Untracked container %s", identifier)
        return True

    def get(self, identifier: str) -> ContainerRecord | None:
        with self._lock:
            key = identifier if identifier in self._records else self._by_name.get(identifier)
            return self._records.get(key) if key else None

    def list_active(self) -> list[ContainerRecord]:
        """Snapshot of every tracked record."""
        with self._lock:
            return list(self._records.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ------------------------------------------------------------------
    # Runtime reconciliation
    # ------------------------------------------------------------------

    async def is_running(self, identifier: str) -> bool:
        """True if the runtime reports a running container by id or exact name."""
        try:
            if await self._runtime.find_containers(container_id=identifier):
                return True
            return bool(await self._runtime.find_containers(name=identifier))
        except Exception as e:
            log.debug("Runtime query for %s failed, treating as not running: %s", identifier, e)
            return False

    async def _resolve(self, identifier: str) -> str:
        record = self.get(identifier)
        candidates = [identifier] + ([record.name] if record and record.name != identifier else [])
        for ref in candidates:
            try:
                ids = await self._runtime.find_containers(
                    container_id=ref, name=ref, include_stopped=True
                )
            except Exception as e:
                log.debug("Could not resolve container %s: %s", ref, e)
                continue
            if ids:
                return ids[0]
        return identifier

    async def _stop(self, identifier: str, remove: bool) -> str | None:
        """Stop one container; return an error message, or None on success."""
        error: str | None = None
        try:
            ref = await self._resolve(identifier)
            try:
                await asyncio.wait_for(
                    self._runtime.stop_container(ref, self._stop_timeout),
                    self._stop_timeout + 5,
                )
                log.info("Stopped container %s", identifier)
            except (asyncio.TimeoutError, CodeForgeError, OSError) as e:
                log.warning("Graceful stop of %s failed (%s); killing", identifier, e)
                try:
                    await self._runtime.kill_container(ref)
                    log.info("Killed container %s", identifier)
                except (CodeForgeError, OSError) as kill_error:
                    error = f"stop failed: {e}; kill failed: {kill_error}"
            if remove:
                try:
                    await self._runtime.remove_container(ref)
                except (CodeForgeError, OSError) as e:
                    log.debug("Removing container %s failed: %s", identifier, e)
        finally:
            self.untrack(identifier)
        return error

    async def stop(self, identifier: str, remove: bool = True) -> bool:
        """Stop (escalating to kill) and optionally remove; always untracks."""
        try:
            error = await self._stop(identifier, remove)
        except Exception as e:
            log.error("Failed to stop container %s: %s", identifier, e)
            return False
        if error:
            log.error("Failed to stop container %s: %s", identifier, error)
        return error is None

    async def terminate_all(self, remove: bool = True) -> TerminationSummary:
        """Stop every tracked container concurrently."""
        identifiers = [r.identifier for r in self.list_active()]
        if not identifiers:
            return TerminationSummary()
        log.info("Terminating %d tracked container(s)", len(identifiers))
        outcomes = await asyncio.gather(
            *(self._stop(i, remove) for i in identifiers), return_exceptions=True
        )
        summary = TerminationSummary(total=len(identifiers))
        for identifier, outcome in zip(identifiers, outcomes):
            if isinstance(outcome, BaseException):
                self.untrack(identifier)
                outcome = str(outcome) or type(outcome).__name__
            if outcome is None:
                summary.succeeded += 1
            else:
                summary.failed += 1
                summary.errors.append(ContainerFailure(identifier=identifier, error=outcome))
        log.info(
            "Terminated containers: %d succeeded, %d failed", summary.succeeded, summary.failed
        )
        return summary

    async def cleanup_orphaned(self, remove: bool = False) -> int:
        """Untrack every record whose container is no longer running.

        With ``remove`` the exited containers are also deleted from the runtime.
        """
        records = self.list_active()
        alive = await asyncio.gather(*(self.is_running(r.identifier) for r in records))
        removed = 0
        for record, running in zip(records, alive):
            if running:
                continue
            if remove:
                try:
                    await self._runtime.remove_container(record.identifier)
                except (CodeForgeError, OSError) as e:
                    log.warning("Removing exited container %s failed: %s", record.name, e)
            if self.untrack(record.identifier):
                removed += 1
        if removed:
            log.info("Cleaned up %d orphaned container record(s)", removed)
        return removed

    async def track_launched(
        self,
        name: str,
        workspace_root: str | Path,
        image: str,
        category: str = "terminal",
        process: ContainerProcess | None = None,
    ) -> bool:
        """Poll the runtime until a container named ``name`` is running, then track it.

        Used when the container was started without a process handle we own
        (e.g. an interactive terminal). A record already tracked under ``name``
        is re-keyed to the confirmed id. When ``process`` has exited by the
        time the container is found, nothing is tracked and any record under
        ``name`` is dropped.
        """
        attempts = self._retry.max_attempts
        for attempt in range(attempts):
            await self._retry.wait(attempt)
            last = attempt == attempts - 1
            try:
                ids = await self._runtime.find_containers(name=name)
            except Exception as e:
                log.debug("Attempt %d/%d to find container %s failed: %s", attempt + 1, attempts, name, e)
                ids = []
            if process is not None and process.exit_code is not None:
                self.untrack(name)
                log.info("Container %s exited before it could be tracked", name)
                return False
            if ids:
                if self.attach_identifier(name, ids[0]) is None:
                    self.track(
                        ids[0],
                        name=name,
                        image=image,
                        workspace_root=workspace_root,
                        category=category,
                        launched_indirectly=True,
                    )
                log.info("Tracked launched container %s after %d attempt(s)", name, attempt + 1)
                return True
            if last:
                try:
                    stopped = await self._runtime.find_containers(name=name, include_stopped=True)
                except Exception as e:
                    log.warning("Failed to track container %s: %s", name, e)
                    return False
                if stopped:
                    log.warning(
                        "Failed to track container %s: container exists but is not running", name
                    )
                else:
                    log.warning(
                        "Failed to track container %s: container was never created after %d attempts",
                        name,
                        attempts,
                    )
        return False

    async def adopt_running(self, workspace_root: str | Path, include_stopped: bool = False) -> int:
        """Track containers labelled with ``workspace_root``. Returns how many were added.

        Only running containers are adopted unless ``include_stopped`` is set.
        """
        try:
            found = await self._runtime.list_labelled(
                f"{WORKSPACE_LABEL}={workspace_root}", include_stopped=include_stopped
            )
        except Exception as e:
            log.warning("Could not list containers for %s: %s", workspace_root, e)
            return 0
        added = 0
        for info in found:
            if self.get(info["id"]) is None and self.get(info["name"]) is None:
                self.track(
                    info["id"],
                    name=info["name"],
                    image=info.get("image", "unknown"),
                    workspace_root=workspace_root,
                    category="adopted",
                )
                added += 1
        return added

    # ------------------------------------------------------------------
    # Launching
    # ------------------------------------------------------------------

    def generate_name(self, workspace_root: str | Path, category: str) -> str:
        """``<workspace>_<category>_<ms timestamp>_<suffix>``."""
        base = generate_container_name(workspace_root)
        return f"{base}_{category}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"

    async def launch(
        self,
        workspace_root: str | Path,
        image: str,
        command: str | None,
        *,
        category: str = "task",
        options: RunOptions | None = None,
    ) -> ContainerProcess:
        """Start a named, labelled container and track it until its process exits."""
        options = options or RunOptions()
        name = options.name or self.generate_name(workspace_root, category)
        labels = {WORKSPACE_LABEL: str(workspace_root), CATEGORY_LABEL: category, **options.labels}
        options = RunOptions(
            interactive=options.interactive,
            tty=options.tty,
            remove=options.remove,
            working_dir=options.working_dir,
            extra_args=list(options.extra_args),
            name=name,
            labels=labels,
            inherit_stdio=options.inherit_stdio,
        )
        process = await self._runtime.start(Path(workspace_root), image, command, options)
        self.track(
            name,
            name=name,
            image=image,
            workspace_root=workspace_root,
            category=category,
            command=command,
        )
        process.add_exit_callback(lambda _code: self.untrack(name))
        return process
