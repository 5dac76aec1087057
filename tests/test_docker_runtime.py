"""Tests for the docker CLI runtime adapter."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from codeforge.core.config import DockerConfigModel
from codeforge.core.exceptions import MissingArgument, RuntimeCommandError
from codeforge.runtime.docker import DockerRuntime, generate_container_name, image_name_for_workspace
from codeforge.runtime.process import ProcessOutput, RunOptions


class TestContainerName:
    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/home/me/proj", "home_me_proj"),
            ("/home/me/My Project", "home_me_my_project"),
            (r"C:\Users\me\proj", "c__users_me_proj"),
            ("/srv/.hidden", "srv_.hidden"),
        ],
    )
    def test_generate(self, path: str, expected: str) -> None:
        assert generate_container_name(path) == expected

    def test_truncated(self) -> None:
        assert len(generate_container_name("/" + "a" * 300)) == 100

    @pytest.mark.parametrize("path", ["", "/", "/..."])
    def test_unusable(self, path: str) -> None:
        with pytest.raises(MissingArgument):
            generate_container_name(path)

    def test_image_name_matches(self) -> None:
        assert image_name_for_workspace("/home/me/proj") == "home_me_proj"


class TestBuildRunArgs:
    def test_command_with_labels(self) -> None:
        runtime = DockerRuntime()
        args = runtime.build_run_args(
            Path("/ws"),
            "img",
            "cmake . --list-presets",
            RunOptions(name="ws_x_1", labels={"codeforge.workspace": "/ws"}),
        )
        assert args == [
            "docker", "run", "--name", "ws_x_1", "--rm",
            "-v", "/ws:/ws", "-w", "/ws",
            "--label", "codeforge.workspace=/ws",
            "img", "/bin/bash", "-c", "cmake . --list-presets",
        ]

    def test_interactive_shell(self) -> None:
        runtime = DockerRuntime(command="podman", shell="/bin/sh", additional_run_args=["--cap-add=SYS_PTRACE"])
        args = runtime.build_run_args(
            Path("/ws"), "img", None, RunOptions(interactive=True, tty=True, remove=False, working_dir="/ws/sub")
        )
        assert args == [
            "podman", "run", "-i", "-t",
            "-v", "/ws:/ws", "-w", "/ws/sub",
            "--cap-add=SYS_PTRACE",
            "img", "/bin/sh",
        ]

    def test_from_config(self) -> None:
        runtime = DockerRuntime.from_config(DockerConfigModel(command="podman", additional_run_args=["--privileged"]))
        args = runtime.build_run_args(Path("/ws"), "img", "true", RunOptions())
        assert args[0] == "podman"
        assert "--privileged" in args


class TestQueries:
    def test_find_by_id_and_name_deduplicates(self) -> None:
        runtime = DockerRuntime()
        outputs = [ProcessOutput(0, "abc\n"), ProcessOutput(0, "abc\ndef\n")]
        with patch.object(runtime, "_exec", AsyncMock(side_effect=outputs)) as m:
            found = asyncio.run(runtime.find_containers(container_id="abc", name="my.box", include_stopped=True))
        assert found == ["abc", "def"]
        name_args = m.call_args_list[1].args
        assert "-a" in name_args
        assert r"name=^/?my\.box$" in name_args

    def test_query_failure_raises(self) -> None:
        runtime = DockerRuntime()
        with patch.object(runtime, "_exec", AsyncMock(return_value=ProcessOutput(1, "", "daemon down"))):
            with pytest.raises(RuntimeCommandError, match="daemon down"):
                asyncio.run(runtime.find_containers(name="x"))

    def test_list_labelled_parses_rows(self) -> None:
        runtime = DockerRuntime()
        out = ProcessOutput(0, "c1\tws_fuzz-run_1\timg\nmalformed\n")
        with patch.object(runtime, "_exec", AsyncMock(return_value=out)):
            rows = asyncio.run(runtime.list_labelled("codeforge.workspace=/ws"))
        assert rows == [{"id": "c1", "name": "ws_fuzz-run_1", "image": "img"}]

    def test_remove_tolerates_missing_container(self) -> None:
        runtime = DockerRuntime()
        out = ProcessOutput(1, "", "Error: No such container: abc")
        with patch.object(runtime, "_exec", AsyncMock(return_value=out)):
            asyncio.run(runtime.remove_container("abc"))

    def test_missing_binary_is_unavailable(self) -> None:
        runtime = DockerRuntime(command="definitely-not-a-docker-binary")
        assert asyncio.run(runtime.is_available()) is False
        assert asyncio.run(runtime.image_exists("img")) is False

    def test_build_image_requires_dockerfile(self, tmp_path: Path) -> None:
        with pytest.raises(RuntimeCommandError, match="Dockerfile not found"):
            asyncio.run(DockerRuntime().build_image(tmp_path, "img"))
