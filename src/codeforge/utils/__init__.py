"""Shared helpers for running workflow steps inside tracked containers."""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from codeforge.core.exceptions import ProcessTimeout
from codeforge.core.paths import PathMapper
from codeforge.runtime.process import OutputChunk, ProcessOutput, collect_output

if TYPE_CHECKING:
    from codeforge.core.registry import ContainerRegistry
    from codeforge.protocols import Sink

log = logging.getLogger(__name__)


async def run_in_container(
    registry: ContainerRegistry,
    workspace_root: Path,
    image: str,
    command: str,
    *,
    category: str,
    timeout: float | None = None,
    on_chunk: Callable[[OutputChunk], None] | None = None,
) -> ProcessOutput:
    """Run ``command`` in an ephemeral tracked container and collect its output.

    On timeout the container is stopped before :class:`ProcessTimeout` propagates.
    Spawn failures propagate as :class:`RuntimeCommandError`.
    """
    process = await registry.launch(workspace_root, image, command, category=category)
    try:
        return await collect_output(process, timeout=timeout, on_chunk=on_chunk)
    except ProcessTimeout:
        if process.name:
            await registry.stop(process.name)
        raise


def sink_writer(sink: Sink | None, prefix: str = "") -> Callable[[OutputChunk], None] | None:
    """Adapt a :class:`Sink` to an ``on_chunk`` callback that emits whole lines."""
    if sink is None:
        return None

    def _write(chunk: OutputChunk) -> None:
        for line in chunk.text.splitlines():
            if line.strip():
                sink.append_line(f"{prefix}{line}")

    return _write


def container_path(mapper: PathMapper, path: Path, workspace_root: Path) -> str:
    """Shell-quoted container form of ``path``."""
    return shlex.quote(mapper.host_to_container(path, workspace_root))
