"""Tests for codeforge.utils: shared container helpers."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from codeforge.core.exceptions import PathOutsideWorkspace, ProcessTimeout
from codeforge.core.paths import PathMapper
from codeforge.core.registry import ContainerRegistry
from codeforge.runtime.process import OutputChunk
from codeforge.utils import container_path, run_in_container, sink_writer

from _helpers import FakeProcess, FakeRuntime, RecordingSink


class TestRunInContainer:
    def test_collects_output_and_untracks(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        runtime.handler = lambda command: (0, "Available configure presets:\n", "")
        result = asyncio.run(run_in_container(registry, Path("/ws"), "img", "cmake . --list-presets", category="x"))
        assert result.ok is True
        assert result.stdout.startswith("Available")
        assert runtime.started[0].options.labels["codeforge.category"] == "x"
        assert len(registry) == 0

    def test_timeout_stops_container(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        runtime.handler = lambda command: FakeProcess(hang=True)

        async def _run():
            await run_in_container(registry, Path("/ws"), "img", "sleep 1000", category="x", timeout=0.01)

        with pytest.raises(ProcessTimeout):
            asyncio.run(_run())
        assert runtime.processes[0].killed is True
        assert len(registry) == 0

    def test_on_chunk(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        runtime.handler = lambda command: (0, "one\n", "two\n")
        seen: list[str] = []
        asyncio.run(
            run_in_container(
                registry, Path("/ws"), "img", "x", category="x", on_chunk=lambda c: seen.append(c.stream)
            )
        )
        assert seen == ["stdout", "stderr"]


class TestSinkWriter:
    def test_none_sink(self) -> None:
        assert sink_writer(None) is None

    def test_splits_lines_and_skips_blank(self) -> None:
        sink = RecordingSink()
        write = sink_writer(sink, prefix="> ")
        write(OutputChunk("stdout", "a\n\n  \nb\n"))
        assert sink.lines == ["> a", "> b"]


def test_container_path_quotes() -> None:
    mapper = PathMapper()
    assert container_path(mapper, Path("/my ws/build"), Path("/my ws")) == "'/my ws/build'"
    with pytest.raises(PathOutsideWorkspace):
        container_path(mapper, Path("/elsewhere"), Path("/my ws"))
