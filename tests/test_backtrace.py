"""Tests for BacktraceService and backtrace formatting."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

import pytest

from codeforge.analysis.backtrace import BANNER, BacktraceService, backtrace_file, format_backtrace_for_display
from codeforge.core.exceptions import BacktraceError

from _helpers import FakeRuntime, make_crash, make_executable, make_fuzzing_dir, make_registry

GDB_OUTPUT = "#0  0x0000555555555131 in parse_header (buf=0x0) at parse.c:12\n#1  main ()\n"


@pytest.fixture()
def fuzzer(workspace: Path) -> tuple[Path, Path]:
    fuzzing_dir = make_fuzzing_dir(workspace)
    exe = make_executable(fuzzing_dir / "codeforge-png-fuzz")
    output_dir = fuzzing_dir / "codeforge-png-fuzz-output"
    make_crash(output_dir, "abc")
    return exe, output_dir


class TestGenerate:
    def test_runs_gdb_and_caches(self, workspace: Path, fuzzer) -> None:
        exe, output_dir = fuzzer
        runtime = FakeRuntime(lambda command: (0, GDB_OUTPUT, ""))
        service = BacktraceService(make_registry(runtime), "img")

        text = asyncio.run(service.generate(workspace, "png/crash-abc"))
        assert text == GDB_OUTPUT.strip()
        assert backtrace_file(output_dir, "abc").read_text() == GDB_OUTPUT.strip() + "\n"
        assert runtime.commands == [
            f"gdb --batch --ex run --ex 'bt full' --ex quit --args {exe} {output_dir / 'crash-abc'}"
        ]
        assert runtime.started[0].options.labels["codeforge.category"] == "backtrace"

        asyncio.run(service.generate(workspace, "png/crash-abc"))
        assert len(runtime.started) == 1

    def test_crash_found_in_corpus(self, workspace: Path, fuzzer) -> None:
        _, output_dir = fuzzer
        make_crash(output_dir / "corpus", "nested")
        runtime = FakeRuntime(lambda command: (0, GDB_OUTPUT, ""))
        service = BacktraceService(make_registry(runtime), "img")
        asyncio.run(service.generate(workspace, "png/crash-nested"))
        assert "corpus/crash-nested" in runtime.commands[0]

    def test_gdb_failure(self, workspace: Path, fuzzer) -> None:
        runtime = FakeRuntime(lambda command: (127, "", "gdb: command not found"))
        service = BacktraceService(make_registry(runtime), "img")
        with pytest.raises(BacktraceError, match="gdb exited with code 127"):
            asyncio.run(service.generate(workspace, "png/crash-abc"))

    def test_no_crash_reported(self, workspace: Path, fuzzer) -> None:
        _, output_dir = fuzzer
        runtime = FakeRuntime(lambda command: (0, "", ""))
        service = BacktraceService(make_registry(runtime), "img")
        text = asyncio.run(service.generate(workspace, "png/crash-abc"))
        assert text == "No backtrace generated (process may not have crashed)"
        assert not backtrace_file(output_dir, "abc").exists()

    @pytest.mark.parametrize("identifier", ["", "crash-abc", "/crash-abc", "png/"])
    def test_invalid_identifier(self, workspace: Path, identifier: str) -> None:
        service = BacktraceService(make_registry(), "img")
        with pytest.raises(BacktraceError, match="Invalid crash identifier"):
            asyncio.run(service.generate(workspace, identifier))

    def test_unknown_fuzzer(self, workspace: Path) -> None:
        service = BacktraceService(make_registry(), "img")
        with pytest.raises(BacktraceError, match="Backtrace generation failed"):
            asyncio.run(service.generate(workspace, "nope/crash-abc"))

    def test_unknown_crash(self, workspace: Path, fuzzer) -> None:
        service = BacktraceService(make_registry(), "img")
        with pytest.raises(BacktraceError, match="crash-zzz not found"):
            asyncio.run(service.generate(workspace, "png/crash-zzz"))


class TestFormat:
    def test_banners_and_header(self) -> None:
        text = format_backtrace_for_display(
            "#0 main ()", "png", "abc", crash_time=datetime(2024, 12, 19, 15, 45, 23)
        )
        assert text.count(BANNER) == 5
        assert "BACKTRACE ANALYSIS" in text
        assert "Fuzzer:      png\n" in text
        assert "Crash:       abc\n" in text
        assert "Crash Time:  December 19, 2024 at 3:45:23 PM\n" in text
        assert "STACK TRACE" in text
        assert "#0 main ()" in text

    def test_midnight_is_twelve(self) -> None:
        text = format_backtrace_for_display("#0 main ()", "png", "abc", crash_time=datetime(2024, 1, 2, 0, 5, 9))
        assert "January 2, 2024 at 12:05:09 AM" in text

    def test_empty_backtrace(self) -> None:
        assert format_backtrace_for_display("  \n", "png", "abc") == (
            "BACKTRACE NOT AVAILABLE\nCould not generate backtrace for crash abc\n"
        )
