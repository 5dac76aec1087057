"""Discover CMake presets and the fuzz targets each preset defines.

Everything runs inside ephemeral, tracked containers; this module only
parses the textual output of ``cmake --list-presets`` and
``cmake --build <dir> --target help``.
"""

from __future__ import annotations

import logging
import re
import shlex
import shutil
from enum import Enum
from pathlib import Path

from codeforge.core.exceptions import (
    CodeForgeError,
    DiscoveryError,
    NoPresetsFound,
    PresetDiscoveryError,
)
from codeforge.core.paths import PathMapper
from codeforge.core.registry import ContainerRegistry
from codeforge.core.schema import FuzzTargetDescriptor
from codeforge.fuzzing.names import build_directory, is_fuzz_target_name
from codeforge.protocols import Sink
from codeforge.utils import container_path, run_in_container

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Named constants
# ---------------------------------------------------------------------------

#: Timeout (seconds) for listing presets and configuring one preset.
DISCOVERY_TIMEOUT = 300

#: File (inside the fuzzing directory) caching ``preset:fuzzer`` lines.
FUZZERS_LIST_NAME = ".fuzzers_list"

_PRESET_RE = re.compile(r'^\s*"([^"]+)"')
_NINJA_TARGET_RE = re.compile(r"^\s*([^\s:]+):\s*phony\b")
_MAKE_TARGET_RE = re.compile(r"^\.\.\.\s+(\S+)")


class BuildBackend(str, Enum):
    NINJA = "ninja"
    MAKE = "make"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def parse_preset_list(text: str) -> list[str]:
    """Parse ``cmake --list-presets`` output.

    The first line is a header ("Available configure presets:"); each
    following line looks like ``  "debug" - Debug``.
    """
    presets: list[str] = []
    for line in text.splitlines()[1:]:
        m = _PRESET_RE.match(line)
        if m and m.group(1) not in presets:
            presets.append(m.group(1))
    return presets


def detect_build_backend(build_dir: Path) -> BuildBackend:
    """Identify the generator used for ``build_dir`` by its marker files."""
    if (build_dir / "build.ninja").is_file():
        return BuildBackend.NINJA
    if (build_dir / "Makefile").is_file():
        return BuildBackend.MAKE
    return BuildBackend.UNKNOWN


def parse_target_list(text: str, backend: BuildBackend = BuildBackend.UNKNOWN) -> list[str]:
    """Extract fuzz target names from ``--target help`` output."""
    patterns = {
        BuildBackend.NINJA: [_NINJA_TARGET_RE],
        BuildBackend.MAKE: [_MAKE_TARGET_RE],
        BuildBackend.UNKNOWN: [_NINJA_TARGET_RE, _MAKE_TARGET_RE],
    }[backend]
    targets: list[str] = []
    for line in text.splitlines():
        for pattern in patterns:
            m = pattern.match(line)
            if m:
                name = m.group(1)
                if is_fuzz_target_name(name) and name not in targets:
                    targets.append(name)
                break
    return targets


def parse_fuzzer_list(text: str) -> list[FuzzTargetDescriptor]:
    """Parse ``preset:fuzzer`` lines, splitting on the first colon."""
    found: list[FuzzTargetDescriptor] = []
    for line in text.splitlines():
        line = line.strip()
        if ":" not in line:
            continue
        preset, fuzzer = (part.strip() for part in line.split(":", 1))
        if preset and fuzzer:
            found.append(FuzzTargetDescriptor(preset=preset, target=fuzzer))
    return found


def format_fuzzer_list(targets: list[FuzzTargetDescriptor]) -> str:
    return "".join(f"{t.preset}:{t.target}\n" for t in targets)


def prepare_build_directory(fuzzing_dir: Path, preset: str) -> Path:
    """Create an empty ``build-<preset>`` directory, removing any previous tree."""
    build_dir = build_directory(fuzzing_dir, preset)
    if build_dir.exists():
        shutil.rmtree(build_dir)
    build_dir.mkdir(parents=True)
    return build_dir


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


class TargetDiscovery:
    """Run the CMake introspection commands in containers and parse their output."""

    def __init__(
        self,
        registry: ContainerRegistry,
        image: str,
        *,
        sink: Sink | None = None,
        mapper: PathMapper | None = None,
        timeout: float = DISCOVERY_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._image = image
        self._sink = sink
        self._mapper = mapper or PathMapper()
        self._timeout = timeout

    def _say(self, message: str) -> None:
        log.info(message)
        if self._sink is not None:
            self._sink.append_line(f"[Fuzzing] {message}")

    async def discover_presets(self, workspace_root: Path) -> list[str]:
        """Return every configure preset of the workspace.

        Raises:
            PresetDiscoveryError: the listing could not be run or failed.
            NoPresetsFound: the listing succeeded but named no presets.
        """
        self._say("Discovering CMake presets...")
        try:
            result = await run_in_container(
                self._registry,
                workspace_root,
                self._image,
                "cmake . --list-presets",
                category="preset-discovery",
                timeout=self._timeout,
            )
        except CodeForgeError as e:
            raise PresetDiscoveryError(f"Failed to list CMake presets: {e}") from e
        if not result.ok:
            raise PresetDiscoveryError(
                f"cmake --list-presets exited with code {result.exit_code}: {result.stderr.strip()}"
            )
        presets = parse_preset_list(result.stdout)
        if not presets:
            raise NoPresetsFound()
        self._say(f"Found {len(presets)} preset(s): {', '.join(presets)}")
        return presets

    async def configure_preset(self, workspace_root: Path, preset: str, build_dir: Path) -> None:
        """Configure ``build_dir`` with ``preset``; raises :class:`DiscoveryError` on failure."""
        cmd = (
            f"cmake --preset {shlex.quote(preset)} "
            f"-S . -B {container_path(self._mapper, build_dir, workspace_root)}"
        )
        result = await run_in_container(
            self._registry,
            workspace_root,
            self._image,
            cmd,
            category="configure",
            timeout=self._timeout,
        )
        if not result.ok:
            raise DiscoveryError(
                f"Failed to configure preset {preset} (exit code {result.exit_code}): "
                f"{(result.stderr or result.stdout).strip()[-2000:]}"
            )

    async def discover_targets(
        self, workspace_root: Path, preset: str, build_dir: Path
    ) -> list[FuzzTargetDescriptor]:
        """List fuzz targets of an already configured ``build_dir``."""
        cmd = f"cmake --build {container_path(self._mapper, build_dir, workspace_root)} --target help"
        result = await run_in_container(
            self._registry,
            workspace_root,
            self._image,
            cmd,
            category="target-discovery",
            timeout=self._timeout,
        )
        backend = detect_build_backend(build_dir)
        targets = parse_target_list(result.stdout, backend)
        if not result.ok and not targets:
            raise DiscoveryError(
                f"Failed to list targets for preset {preset} (exit code {result.exit_code}): "
                f"{result.stderr.strip()}"
            )
        log.debug("Preset %s (%s backend): %d fuzz target(s)", preset, backend.value, len(targets))
        return [FuzzTargetDescriptor(preset=preset, target=t) for t in targets]

    async def discover_all(
        self, workspace_root: Path, fuzzing_dir: Path, *, clean: bool = False
    ) -> list[FuzzTargetDescriptor]:
        """Discover every fuzz target across all presets, using the ``.fuzzers_list`` cache.

        Presets that fail to configure or list targets are skipped. A target
        defined by several presets is attributed to the last one.
        """
        list_file = fuzzing_dir / FUZZERS_LIST_NAME
        if clean and list_file.exists():
            list_file.unlink()
        if list_file.is_file():
            cached = parse_fuzzer_list(list_file.read_text(encoding="utf-8"))
            if cached:
                log.debug("Using cached fuzzers list %s", list_file)
                return cached

        fuzzing_dir.mkdir(parents=True, exist_ok=True)
        by_target: dict[str, FuzzTargetDescriptor] = {}
        for preset in await self.discover_presets(workspace_root):
            build_dir = prepare_build_directory(fuzzing_dir, preset)
            try:
                await self.configure_preset(workspace_root, preset, build_dir)
                targets = await self.discover_targets(workspace_root, preset, build_dir)
            except CodeForgeError as e:
                self._say(f"Skipping preset {preset}: {e}")
                shutil.rmtree(build_dir, ignore_errors=True)
                continue
            if not targets:
                self._say(f"No fuzz targets found for preset {preset}")
                shutil.rmtree(build_dir, ignore_errors=True)
                continue
            for t in targets:
                by_target[t.target] = t

        found = list(by_target.values())
        if found:
            list_file.write_text(format_fuzzer_list(found), encoding="utf-8")
        self._say(f"Discovered {len(found)} fuzz test(s)")
        return found
