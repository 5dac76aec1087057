"""Protocols for the container runtime adapter and its process handles."""

from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, Protocol

from codeforge.runtime.process import ExitCallback, ProcessEvent, RunOptions


class ContainerProcess(Protocol):
    """A running container whose output can be consumed and whose exit can be awaited."""

    name: str | None
    #: ``None`` until the process has exited.
    exit_code: int | None

    def events(self) -> AsyncIterator[ProcessEvent]:
        """Yield output chunks followed by one final exit event."""
        ...

    async def wait(self) -> int:
        """Wait for exit and return the exit code."""
        ...

    def kill(self) -> None:
        """Forcefully terminate the local client process."""
        ...

    def add_exit_callback(self, callback: ExitCallback) -> None:
        """Register ``callback(exit_code)`` to run on exit."""
        ...


class ContainerRuntime(Protocol):
    """Adapter over a container CLI (Docker)."""

    def build_run_args(
        self,
        workspace_root: Path,
        image: str,
        command: str | None,
        options: RunOptions,
    ) -> list[str]:
        """Full argv that would start the container."""
        ...

    async def start(
        self,
        workspace_root: Path,
        image: str,
        command: str | None,
        options: RunOptions,
    ) -> ContainerProcess:
        """Start a container and return its process handle."""
        ...

    async def find_containers(
        self,
        *,
        container_id: str | None = None,
        name: str | None = None,
        include_stopped: bool = False,
    ) -> list[str]:
        """Ids of containers matching ``container_id`` or exactly ``name``."""
        ...

    async def list_labelled(self, label: str, include_stopped: bool = False) -> list[dict[str, str]]:
        """Containers carrying ``label`` (running only unless ``include_stopped``) as dicts with id, name, image."""
        ...

    async def stop_container(self, ref: str, timeout: float) -> None:
        """Graceful stop; raises on failure."""
        ...

    async def kill_container(self, ref: str) -> None:
        """Forceful kill; raises on failure."""
        ...

    async def remove_container(self, ref: str) -> None:
        """Force-remove; raises on failure."""
        ...

    async def image_exists(self, image: str) -> bool:
        ...

    async def build_image(self, workspace_root: Path, image: str) -> None:
        ...

    async def is_available(self) -> bool:
        ...
