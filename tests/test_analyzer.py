"""Tests for the gdb command builder, fuzzer resolution and CrashAnalyzer."""

from __future__ import annotations

import asyncio
import shlex
from pathlib import Path

import pytest

from codeforge.analysis.gdb import GDB_CATEGORY, CrashAnalyzer, FuzzerResolver, GdbCommandBuilder
from codeforge.core.exceptions import FuzzerNotFound, FuzzingDirectoryMissing, InvalidFuzzerName, MissingArgument

from _helpers import FakeRuntime, make_crash, make_executable, make_fuzzing_dir, make_registry


class TestGdbCommandBuilder:
    def test_minimal(self) -> None:
        argv = GdbCommandBuilder().build("/ws/f/exe", "/ws/f/out/crash-1")
        assert argv == ["gdb", "--args", "/ws/f/exe", "/ws/f/out/crash-1"]

    def test_all_flags(self) -> None:
        argv = GdbCommandBuilder().build(
            "/ws/exe", "/ws/crash", batch=True, quiet=True, commands=["run", "bt full"]
        )
        assert argv == [
            "gdb", "--batch", "--quiet", "--ex", "run", "--ex", "bt full", "--args", "/ws/exe", "/ws/crash",
        ]

    @pytest.mark.parametrize("exe,crash", [("", "/ws/crash"), ("/ws/exe", "")])
    def test_missing_argument(self, exe: str, crash: str) -> None:
        with pytest.raises(MissingArgument):
            GdbCommandBuilder().build(exe, crash)

    def test_to_shell_quotes(self) -> None:
        argv = GdbCommandBuilder().build("/my ws/exe", "/ws/crash", commands=["bt full"])
        assert shlex.split(GdbCommandBuilder.to_shell(argv)) == argv


class TestFuzzerResolver:
    def test_candidate_order(self, tmp_path: Path) -> None:
        names = [p.relative_to(tmp_path).as_posix() for p in FuzzerResolver.candidates(tmp_path, "png")]
        assert names == [
            "png",
            "png-fuzz",
            "codeforge-png-fuzz",
            "png/png",
            "png/png-fuzz",
            "png/codeforge-png-fuzz",
        ]

    def test_resolves_display_name(self, workspace: Path) -> None:
        exe = make_executable(make_fuzzing_dir(workspace) / "codeforge-png-fuzz")
        assert FuzzerResolver().resolve(workspace, "png") == exe

    def test_prefers_earlier_candidate(self, workspace: Path) -> None:
        fuzzing_dir = make_fuzzing_dir(workspace)
        make_executable(fuzzing_dir / "codeforge-png-fuzz")
        first = make_executable(fuzzing_dir / "png-fuzz")
        assert FuzzerResolver().resolve(workspace, "png") == first

    def test_non_executable_is_skipped(self, workspace: Path) -> None:
        fuzzing_dir = make_fuzzing_dir(workspace)
        (fuzzing_dir / "png").write_text("not a binary")
        with pytest.raises(FuzzerNotFound) as info:
            FuzzerResolver().resolve(workspace, "png")
        assert len(info.value.attempted) == 6
        assert info.value.attempted[0] == str(fuzzing_dir / "png")

    def test_missing_fuzzing_dir(self, tmp_path: Path) -> None:
        with pytest.raises(FuzzingDirectoryMissing):
            FuzzerResolver().resolve(tmp_path, "png")

    @pytest.mark.parametrize("name", ["../../bin/sh", "-png", "png;rm"])
    def test_rejects_unsafe_name(self, workspace: Path, name: str) -> None:
        make_executable(make_fuzzing_dir(workspace) / "codeforge-png-fuzz")
        with pytest.raises(InvalidFuzzerName) as info:
            FuzzerResolver().resolve(workspace, name)
        assert info.value.name == name

    def test_list_available_fuzzers(self, workspace: Path) -> None:
        fuzzing_dir = make_fuzzing_dir(workspace)
        make_executable(fuzzing_dir / "codeforge-a-fuzz")
        make_executable(fuzzing_dir / "nested" / "nested-fuzz")
        (fuzzing_dir / ".fuzzers_list").write_text("debug:codeforge-a-fuzz\n")
        make_crash(fuzzing_dir / "codeforge-a-fuzz-output", "1")
        assert FuzzerResolver().list_available_fuzzers(workspace) == ["codeforge-a-fuzz", "nested"]


def _tracking_runtime() -> FakeRuntime:
    """Runtime whose started containers show up as running under their name."""
    runtime = FakeRuntime()

    def handler(command: str):
        runtime.add_running(f"cid-{len(runtime.started)}", runtime.started[-1].options.name)
        return (0, "", "")

    runtime.handler = handler
    return runtime


class TestCrashAnalyzer:
    def test_validate_collects_every_issue(self, tmp_path: Path) -> None:
        workspace = tmp_path / "ws"
        workspace.mkdir()
        outside = make_crash(tmp_path / "elsewhere", "1")
        analyzer = CrashAnalyzer(make_registry(), "img")

        result = analyzer.validate(workspace, "png", tmp_path / "missing-crash")
        assert result.valid is False
        assert result.issues[0].startswith("Crash file not found or not readable")
        assert "Fuzzing directory not found" in result.issues[1]

        make_executable(make_fuzzing_dir(workspace) / "codeforge-png-fuzz")
        result = analyzer.validate(workspace, "png", outside)
        assert result.issues == [f"Path {outside} is not within workspace {workspace}"]

    def test_validate_ok(self, workspace: Path) -> None:
        fuzzing_dir = make_fuzzing_dir(workspace)
        make_executable(fuzzing_dir / "codeforge-png-fuzz")
        crash = make_crash(fuzzing_dir / "codeforge-png-fuzz-output", "1")
        result = CrashAnalyzer(make_registry(), "img").validate(workspace, "png", crash)
        assert result.valid is True
        assert result.issues == []

    def test_analyze_launches_tracked_session(self, workspace: Path) -> None:
        fuzzing_dir = make_fuzzing_dir(workspace)
        exe = make_executable(fuzzing_dir / "codeforge-png-fuzz")
        crash = make_crash(fuzzing_dir / "codeforge-png-fuzz-output", "1")
        runtime = _tracking_runtime()
        registry = make_registry(runtime)
        analyzer = CrashAnalyzer(registry, "img")

        result = asyncio.run(analyzer.analyze(workspace, "png", crash, wait=False))
        assert result.success is True
        assert result.gdb_command == ["gdb", "--args", str(exe), str(crash)]
        assert result.container_crash_path == str(crash)
        options = runtime.started[0].options
        assert options.interactive is True
        assert options.tty is True
        assert options.labels["codeforge.category"] == GDB_CATEGORY
        record = registry.get(result.container_name)
        assert record is not None
        assert record.category == GDB_CATEGORY
        assert record.identifier == "cid-1"
        assert len(registry) == 1

    def test_analyze_untracks_after_exit(self, workspace: Path) -> None:
        fuzzing_dir = make_fuzzing_dir(workspace)
        make_executable(fuzzing_dir / "codeforge-png-fuzz")
        crash = make_crash(fuzzing_dir / "codeforge-png-fuzz-output", "1")
        registry = make_registry(_tracking_runtime())
        result = asyncio.run(CrashAnalyzer(registry, "img").analyze(workspace, "png", crash))
        assert result.success is True
        assert registry.list_active() == []

    def test_session_exiting_before_confirmation_leaves_no_record(self, workspace: Path) -> None:
        fuzzing_dir = make_fuzzing_dir(workspace)
        make_executable(fuzzing_dir / "codeforge-png-fuzz")
        crash = make_crash(fuzzing_dir / "codeforge-png-fuzz-output", "1")

        class _GdbExitsDuringLookup(FakeRuntime):
            async def find_containers(self, **kwargs) -> list[str]:
                await self.processes[-1].wait()
                return ["cid123"]

        registry = make_registry(_GdbExitsDuringLookup())
        result = asyncio.run(CrashAnalyzer(registry, "img").analyze(workspace, "png", crash, wait=False))
        assert result.success is True
        assert registry.list_active() == []

    def test_analyze_reports_validation_failure(self, workspace: Path) -> None:
        runtime = FakeRuntime()
        result = asyncio.run(
            CrashAnalyzer(make_registry(runtime), "img").analyze(workspace, "png", workspace / "nope")
        )
        assert result.success is False
        assert "Crash file not found" in result.error
        assert runtime.started == []
