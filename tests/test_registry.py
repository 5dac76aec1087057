"""Tests for ContainerRegistry."""

from __future__ import annotations

import asyncio
import logging

import pytest

from codeforge.core.exceptions import RuntimeCommandError
from codeforge.core.registry import ContainerRegistry
from codeforge.runtime.docker import CATEGORY_LABEL, WORKSPACE_LABEL
from codeforge.runtime.process import RunOptions

from _helpers import FakeProcess, FakeRuntime, RecordingSleep, make_registry


class TestTracking:
    def test_track_and_get(self, registry: ContainerRegistry) -> None:
        record = registry.track("abc123", name="ws_task_1", image="img", workspace_root="/ws", category="build")
        assert record is not None
        assert registry.get("abc123") == record
        assert registry.get("ws_task_1") == record
        assert record.category == "build"

    def test_missing_identifier_is_ignored(self, registry: ContainerRegistry, caplog) -> None:
        with caplog.at_level(logging.ERROR):
            assert registry.track("", name="x") is None
        assert len(registry) == 0
        assert "identifier is required" in caplog.text

    def test_retrack_overwrites_without_duplicating(self, registry: ContainerRegistry) -> None:
        registry.track("abc", name="first", image="a")
        registry.track("abc", name="second", image="b")
        assert len(registry) == 1
        record = registry.get("abc")
        assert record.name == "second"
        assert record.image == "b"
        assert registry.get("first") is None

    def test_metadata_is_kept(self, registry: ContainerRegistry) -> None:
        record = registry.track("abc", command="ls")
        assert record.metadata == {"command": "ls"}

    def test_untrack_by_name(self, registry: ContainerRegistry) -> None:
        registry.track("abc", name="named")
        assert registry.untrack("named") is True
        assert registry.untrack("abc") is False
        assert registry.list_active() == []

    def test_attach_identifier_rekeys_record(self, registry: ContainerRegistry) -> None:
        registry.track("pending-name", name="pending-name")
        registry.attach_identifier("pending-name", "deadbeef")
        assert registry.get("deadbeef").name == "pending-name"
        assert len(registry) == 1


class TestRuntimeQueries:
    def test_is_running_by_id_or_name(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        runtime.add_running("abc", "named")
        assert asyncio.run(registry.is_running("abc")) is True
        assert asyncio.run(registry.is_running("named")) is True
        assert asyncio.run(registry.is_running("other")) is False

    def test_is_running_false_on_query_failure(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        runtime.add_running("abc", "named")
        runtime.fail_queries = True
        assert asyncio.run(registry.is_running("abc")) is False

    def test_cleanup_orphaned(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        runtime.add_running("alive", "alive-name")
        registry.track("alive", name="alive-name")
        registry.track("dead", name="dead-name")
        assert asyncio.run(registry.cleanup_orphaned()) == 1
        assert [r.identifier for r in registry.list_active()] == ["alive"]

    def test_adopt_running(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        runtime.labelled = [{"id": "c1", "name": "ws_fuzz-run_1", "image": "img"}]
        assert asyncio.run(registry.adopt_running("/ws")) == 1
        assert asyncio.run(registry.adopt_running("/ws")) == 0
        assert registry.get("c1").category == "adopted"

    def test_cleanup_orphaned_removes_exited(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        runtime.add_stopped("dead", "dead-name")
        registry.track("dead", name="dead-name")
        assert asyncio.run(registry.cleanup_orphaned(remove=True)) == 1
        assert runtime.remove_calls == ["dead"]
        assert registry.list_active() == []

    def test_adopt_including_stopped(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        runtime.labelled = [{"id": "c1", "name": "n1", "image": "img"}]
        runtime.labelled_stopped = [{"id": "c2", "name": "n2", "image": "img"}]
        assert asyncio.run(registry.adopt_running("/ws")) == 1
        assert asyncio.run(registry.adopt_running("/ws", include_stopped=True)) == 1
        assert {r.identifier for r in registry.list_active()} == {"c1", "c2"}


class TestStop:
    def test_stop_untracks_and_removes(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        runtime.add_running("abc", "named")
        registry.track("abc", name="named")
        assert asyncio.run(registry.stop("abc")) is True
        assert runtime.stop_calls == ["abc"]
        assert runtime.remove_calls == ["abc"]
        assert registry.get("abc") is None

    def test_stop_escalates_to_kill(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        runtime.add_running("abc", "named")
        runtime.stop_failures.add("abc")
        registry.track("abc", name="named")
        assert asyncio.run(registry.stop("abc")) is True
        assert runtime.kill_calls == ["abc"]

    def test_stop_fails_when_kill_fails(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        runtime.add_running("abc", "named")
        runtime.stop_failures.add("abc")
        runtime.kill_failures.add("abc")
        registry.track("abc", name="named")
        assert asyncio.run(registry.stop("abc")) is False
        assert registry.get("abc") is None

    def test_terminate_all_reports_partial_failure(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        for i in range(3):
            runtime.add_running(f"c{i}", f"n{i}")
            registry.track(f"c{i}", name=f"n{i}")
        runtime.stop_failures.add("c1")
        runtime.kill_failures.add("c1")

        summary = asyncio.run(registry.terminate_all())
        assert summary.total == 3
        assert summary.succeeded == 2
        assert summary.failed == 1
        assert summary.errors[0].identifier == "c1"
        assert "kill failed" in summary.errors[0].error
        assert len(registry) == 0

    def test_terminate_all_empty(self, registry: ContainerRegistry) -> None:
        summary = asyncio.run(registry.terminate_all())
        assert summary.total == 0
        assert summary.errors == []


class TestTrackLaunched:
    def test_tracks_once_running(self, runtime: FakeRuntime) -> None:
        sleep = RecordingSleep()
        registry = make_registry(runtime, max_attempts=5, sleep=sleep)
        runtime.add_running("abc", "ws_terminal_1")
        assert asyncio.run(registry.track_launched("ws_terminal_1", "/ws", "img")) is True
        record = registry.get("abc")
        assert record.name == "ws_terminal_1"
        assert record.metadata["launched_indirectly"] is True
        assert sleep.delays == []

    def test_never_created(self, runtime: FakeRuntime, caplog) -> None:
        sleep = RecordingSleep()
        registry = make_registry(runtime, max_attempts=3, sleep=sleep)
        with caplog.at_level(logging.WARNING):
            assert asyncio.run(registry.track_launched("ghost", "/ws", "img")) is False
        assert "never created after 3 attempts" in caplog.text
        assert sleep.delays == [0.5, 0.75]
        assert len(registry) == 0

    def test_exists_but_not_running(self, runtime: FakeRuntime, caplog) -> None:
        registry = make_registry(runtime, max_attempts=2)
        runtime.add_stopped("abc", "exited")
        with caplog.at_level(logging.WARNING):
            assert asyncio.run(registry.track_launched("exited", "/ws", "img")) is False
        assert "exists but is not running" in caplog.text

    def test_rekeys_record_tracked_by_name(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        registry.track("ws_gdb_1", name="ws_gdb_1", category="debug-session")
        runtime.add_running("abc", "ws_gdb_1")
        assert asyncio.run(registry.track_launched("ws_gdb_1", "/ws", "img", process=FakeProcess())) is True
        assert [r.identifier for r in registry.list_active()] == ["abc"]
        assert registry.get("abc").category == "debug-session"

    def test_process_exiting_during_lookup_is_not_tracked(self) -> None:
        process = FakeProcess()

        class _ExitsWhileQueried(FakeRuntime):
            async def find_containers(self, **kwargs) -> list[str]:
                await process.wait()
                return ["cid123"]

        registry = make_registry(_ExitsWhileQueried())
        registry.track("ws_gdb_1", name="ws_gdb_1")
        assert asyncio.run(registry.track_launched("ws_gdb_1", "/ws", "img", process=process)) is False
        assert registry.list_active() == []


class TestLaunch:
    def test_launch_tracks_until_exit(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        async def _launch():
            process = await registry.launch("/home/me/proj", "img", "echo hi", category="build")
            tracked = len(registry)
            code = await process.wait()
            return process, tracked, code

        process, tracked, code = asyncio.run(_launch())
        assert tracked == 1
        assert code == 0
        assert len(registry) == 0
        call = runtime.started[0]
        assert call.options.name == process.name
        assert process.name.startswith("home_me_proj_build_")
        assert call.options.labels[WORKSPACE_LABEL] == "/home/me/proj"
        assert call.options.labels[CATEGORY_LABEL] == "build"

    def test_launch_keeps_explicit_name(self, runtime: FakeRuntime, registry: ContainerRegistry) -> None:
        async def _launch():
            return await registry.launch("/ws", "img", None, options=RunOptions(name="fixed", tty=True))

        process = asyncio.run(_launch())
        assert process.name == "fixed"
        assert runtime.started[0].options.tty is True

    def test_launch_spawn_failure_propagates(self, registry: ContainerRegistry) -> None:
        registry.runtime.handler = lambda command: RuntimeCommandError(["docker", "run"], None, "not found")
        with pytest.raises(RuntimeCommandError):
            asyncio.run(registry.launch("/ws", "img", "true"))
        assert len(registry) == 0


def test_generate_name_is_unique(registry: ContainerRegistry) -> None:
    a = registry.generate_name("/home/me/proj", "fuzz-run")
    b = registry.generate_name("/home/me/proj", "fuzz-run")
    assert a != b
    assert a.startswith("home_me_proj_fuzz-run_")
