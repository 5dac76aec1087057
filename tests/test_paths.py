"""Tests for PathMapper."""

from __future__ import annotations

import pytest

from codeforge.core.exceptions import MissingArgument, PathOutsideWorkspace
from codeforge.core.paths import PathMapper


@pytest.fixture()
def mapper() -> PathMapper:
    return PathMapper()


class TestHostToContainer:
    def test_unix_path(self, mapper: PathMapper) -> None:
        assert mapper.host_to_container("/home/me/proj/a/b.txt", "/home/me/proj") == "/home/me/proj/a/b.txt"

    def test_workspace_root_itself(self, mapper: PathMapper) -> None:
        assert mapper.host_to_container("/home/me/proj", "/home/me/proj") == "/home/me/proj"

    def test_normalises_dot_segments(self, mapper: PathMapper) -> None:
        assert mapper.host_to_container("/home/me/proj/x/../y", "/home/me/proj/") == "/home/me/proj/y"

    def test_windows_drive_path(self, mapper: PathMapper) -> None:
        result = mapper.host_to_container(r"C:\work\proj\out\crash-1", r"C:\work\proj")
        assert result == "/work/proj/out/crash-1"

    def test_windows_forward_slashes(self, mapper: PathMapper) -> None:
        assert mapper.host_to_container("C:/work/proj/file", "C:/work/proj") == "/work/proj/file"

    def test_outside_workspace(self, mapper: PathMapper) -> None:
        with pytest.raises(PathOutsideWorkspace):
            mapper.host_to_container("/etc/passwd", "/home/me/proj")

    def test_sibling_prefix_is_outside(self, mapper: PathMapper) -> None:
        with pytest.raises(PathOutsideWorkspace):
            mapper.host_to_container("/home/me/project2/file", "/home/me/proj")

    @pytest.mark.parametrize("host,root", [("", "/ws"), ("/ws/a", ""), (None, "/ws")])
    def test_missing_argument(self, mapper: PathMapper, host, root) -> None:
        with pytest.raises(MissingArgument):
            mapper.host_to_container(host, root)


def test_container_to_host_is_identity(mapper: PathMapper) -> None:
    assert mapper.container_to_host("/home/me/proj/a") == "/home/me/proj/a"


def test_container_to_host_requires_path(mapper: PathMapper) -> None:
    with pytest.raises(MissingArgument):
        mapper.container_to_host("")


def test_can_map(mapper: PathMapper) -> None:
    assert mapper.can_map("/ws/a", "/ws") is True
    assert mapper.can_map("/other", "/ws") is False
    assert mapper.can_map(None, "/ws") is False
