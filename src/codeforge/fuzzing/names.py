"""Fuzzer naming conventions and the on-disk fuzzing layout."""

from __future__ import annotations

import re
from pathlib import Path

# ---------------------------------------------------------------------------
# Named constants
# ---------------------------------------------------------------------------

#: Prefix and suffix every CMake fuzz target carries.
TARGET_PREFIX = "codeforge-"
TARGET_SUFFIX = "-fuzz"

#: Per-fuzzer output directories are ``<fuzzer>-output``.
OUTPUT_SUFFIX = "-output"

#: Crash artifacts written by libFuzzer are ``crash-<hash>``.
CRASH_PREFIX = "crash-"

#: Longest accepted fuzzer name.
MAX_FUZZER_NAME_LENGTH = 256

FUZZ_TARGET_RE = re.compile(r"^codeforge-.*-fuzz$")
_ALLOWED_NAME_RE = re.compile(r"^[a-zA-Z0-9_.\-/:]+$")
_DISALLOWED_CHAR_RE = re.compile(r"[^a-zA-Z0-9_.\-/:]")


def is_fuzz_target_name(name: str) -> bool:
    """True for CMake target names following the ``codeforge-<name>-fuzz`` convention."""
    return bool(FUZZ_TARGET_RE.match(name))


def validate_fuzzer_name(name: str | None) -> tuple[bool, str]:
    """Check that ``name`` is safe to pass to a shell. Returns (valid, error)."""
    if not name or not isinstance(name, str):
        return False, "Fuzzer name must be a non-empty string"
    if not name.strip():
        return False, "Fuzzer name cannot be empty or whitespace only"
    if not _ALLOWED_NAME_RE.match(name):
        return False, (
            f'Invalid fuzzer name: "{name}". Only alphanumeric characters, hyphens, underscores, '
            "dots, colons, and forward slashes are allowed."
        )
    if ".." in name:
        return False, f'Invalid fuzzer name: "{name}". Path traversal sequences (..) are not allowed.'
    if name.startswith("-"):
        return False, f'Invalid fuzzer name: "{name}". Fuzzer names cannot start with a hyphen.'
    if len(name) > MAX_FUZZER_NAME_LENGTH:
        return False, f"Invalid fuzzer name: too long (max {MAX_FUZZER_NAME_LENGTH} characters)"
    return True, ""


def sanitize_fuzzer_name(name: str | None) -> str:
    """Replace every disallowed character with ``_`` and truncate."""
    if not name:
        return ""
    return _DISALLOWED_CHAR_RE.sub("_", name)[:MAX_FUZZER_NAME_LENGTH]


def format_fuzzer_display_name(name: str | None) -> str:
    """``codeforge-example-fuzz`` -> ``example``."""
    if not name:
        return name or ""
    if name.startswith(TARGET_PREFIX):
        name = name[len(TARGET_PREFIX):]
    if name.endswith(TARGET_SUFFIX):
        name = name[: -len(TARGET_SUFFIX)]
    return name


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------


def fuzzing_directory(workspace_root: str | Path, output_directory: str = ".codeforge/fuzzing") -> Path:
    """Central directory holding built fuzzers, their outputs and build trees."""
    path = Path(output_directory)
    return path if path.is_absolute() else Path(workspace_root) / path


def fuzzer_output_directory(fuzzing_dir: str | Path, fuzzer_name: str) -> Path:
    return Path(fuzzing_dir) / f"{fuzzer_name}{OUTPUT_SUFFIX}"


def build_directory(fuzzing_dir: str | Path, preset: str) -> Path:
    return Path(fuzzing_dir) / f"build-{sanitize_fuzzer_name(preset)}"
