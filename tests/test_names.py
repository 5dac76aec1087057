"""Tests for fuzzer naming and the fuzzing directory layout."""

from __future__ import annotations

from pathlib import Path

import pytest

from codeforge.fuzzing.names import (
    build_directory,
    format_fuzzer_display_name,
    fuzzer_output_directory,
    fuzzing_directory,
    is_fuzz_target_name,
    sanitize_fuzzer_name,
    validate_fuzzer_name,
)


@pytest.mark.parametrize(
    "name,expected",
    [
        ("codeforge-png-fuzz", True),
        ("codeforge--fuzz", True),
        ("png-fuzz", False),
        ("codeforge-png", False),
        ("xcodeforge-png-fuzz", False),
    ],
)
def test_is_fuzz_target_name(name: str, expected: bool) -> None:
    assert is_fuzz_target_name(name) is expected


class TestValidateFuzzerName:
    @pytest.mark.parametrize("name", ["png", "codeforge-png-fuzz", "ns:png_v1.2", "dir/png"])
    def test_valid(self, name: str) -> None:
        assert validate_fuzzer_name(name) == (True, "")

    @pytest.mark.parametrize(
        "name,fragment",
        [
            ("", "non-empty"),
            (None, "non-empty"),
            ("   ", "whitespace"),
            ("png; rm -rf /", "Only alphanumeric"),
            ("../png", "Path traversal"),
            ("-png", "cannot start with a hyphen"),
            ("a" * 257, "too long"),
        ],
    )
    def test_invalid(self, name, fragment: str) -> None:
        valid, error = validate_fuzzer_name(name)
        assert valid is False
        assert fragment in error


def test_sanitize_fuzzer_name() -> None:
    assert sanitize_fuzzer_name("png fuzz;$") == "png_fuzz__"
    assert sanitize_fuzzer_name(None) == ""
    assert len(sanitize_fuzzer_name("a" * 300)) == 256


@pytest.mark.parametrize(
    "name,expected",
    [("codeforge-png-fuzz", "png"), ("png-fuzz", "png"), ("codeforge-png", "png"), ("png", "png"), ("", "")],
)
def test_format_fuzzer_display_name(name: str, expected: str) -> None:
    assert format_fuzzer_display_name(name) == expected


def test_layout(tmp_path: Path) -> None:
    fuzzing_dir = fuzzing_directory(tmp_path)
    assert fuzzing_dir == tmp_path / ".codeforge" / "fuzzing"
    assert fuzzing_directory(tmp_path, "/abs/fuzz") == Path("/abs/fuzz")
    assert fuzzer_output_directory(fuzzing_dir, "codeforge-a-fuzz") == fuzzing_dir / "codeforge-a-fuzz-output"
    assert build_directory(fuzzing_dir, "linux debug") == fuzzing_dir / "build-linux_debug"
