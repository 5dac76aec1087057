"""Build fuzz targets in containers and collect the executables centrally."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
import shutil
from pathlib import Path
from typing import Callable

from codeforge.core.exceptions import CodeForgeError, ProcessTimeout
from codeforge.core.paths import PathMapper
from codeforge.core.registry import ContainerRegistry
from codeforge.core.schema import BuildOutcome, FuzzTargetDescriptor
from codeforge.fuzzing.discovery import prepare_build_directory
from codeforge.protocols import Sink
from codeforge.runtime.process import tail
from codeforge.utils import container_path, run_in_container

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Named constants
# ---------------------------------------------------------------------------

#: Default per-target build timeout (seconds).
BUILD_TIMEOUT = 600

#: Mode of executables copied into the fuzzing directory.
EXECUTABLE_MODE = 0o755

#: Characters of stdout/stderr kept on a BuildOutcome.
OUTPUT_EXCERPT_CHARS = 4000


# ---------------------------------------------------------------------------
# Troubleshooting hints
# ---------------------------------------------------------------------------


def _contains(*needles: str) -> Callable[[str], bool]:
    lowered = [n.lower() for n in needles]
    return lambda text: any(n in text for n in lowered)


#: Ordered (predicate, hint) pairs; the first matching predicate wins.
#: Predicates receive the lower-cased error text. Best effort, not exhaustive.
HINT_TABLE: list[tuple[Callable[[str], bool], str]] = [
    (
        _contains("-fsanitize=fuzzer", "llvmfuzzertestoneinput", "libfuzzer", "fuzzer-no-link"),
        "The target is missing libFuzzer instrumentation. Compile and link it with "
        "-fsanitize=fuzzer (and build with clang).",
    ),
    (
        _contains("sanitizer", "__asan", "__ubsan", "-fsanitize"),
        "Sanitizer flags or runtimes are missing or inconsistent. Use the same -fsanitize "
        "options for compiling and linking every object in the target.",
    ),
    (
        _contains("undefined reference", "undefined symbol", "unresolved external"),
        "The linker could not resolve a symbol. Check target_link_libraries for the fuzz "
        "target and that all required sources are part of the build.",
    ),
    (
        _contains("no such file or directory", "file not found", "cannot find", "could not find"),
        "A file or dependency is missing. Check include paths, source lists and that "
        "dependencies are installed in the container image.",
    ),
    (
        _contains("permission denied", "operation not permitted", "read-only file system"),
        "A permission error occurred. Check ownership of the build directory and that the "
        "container user can write to the workspace.",
    ),
    (
        lambda text: bool(re.search(r"\berror:|cmake error|compiler|clang|gcc|g\+\+|c\+\+", text)),
        "The compiler or toolchain reported an error. Review the compiler output above and "
        "verify the preset's toolchain settings.",
    ),
]


def troubleshooting_hint(error_text: str | None) -> str | None:
    """Return the first hint from :data:`HINT_TABLE` matching ``error_text``, if any."""
    if not error_text:
        return None
    text = error_text.lower()
    for predicate, hint in HINT_TABLE:
        if predicate(text):
            return hint
    return None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def find_executable(build_dir: Path, target: str) -> Path | None:
    """First regular, executable file named ``target`` under ``build_dir``."""
    for candidate in sorted(build_dir.rglob(target)):
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return candidate
    return None


def copy_executable(source: Path, fuzzing_dir: Path, target: str) -> Path:
    """Copy ``source`` to ``fuzzing_dir/target`` preserving timestamps; the copy is always mode 0755."""
    fuzzing_dir.mkdir(parents=True, exist_ok=True)
    dest = fuzzing_dir / target
    shutil.copy2(source, dest)
    dest.chmod(EXECUTABLE_MODE)
    return dest


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class FuzzTargetBuilder:
    """Build fuzz targets of one preset and copy them into the fuzzing directory."""

    def __init__(
        self,
        registry: ContainerRegistry,
        image: str,
        *,
        sink: Sink | None = None,
        mapper: PathMapper | None = None,
        timeout: float = BUILD_TIMEOUT,
        max_parallel: int = 1,
    ) -> None:
        self._registry = registry
        self._image = image
        self._sink = sink
        self._mapper = mapper or PathMapper()
        self._timeout = timeout
        self._max_parallel = max(1, max_parallel)

    def _say(self, message: str) -> None:
        log.info(message)
        if self._sink is not None:
            self._sink.append_line(f"[Fuzzing] {message}")

    async def build_target(
        self,
        workspace_root: Path,
        descriptor: FuzzTargetDescriptor,
        build_dir: Path,
        fuzzing_dir: Path,
    ) -> BuildOutcome:
        """Build one target; never raises for build failures."""
        target = descriptor.target
        self._say(f"Building fuzz target: {target}")
        cmd = (
            f"cmake --build {container_path(self._mapper, build_dir, workspace_root)} "
            f"--target {shlex.quote(target)}"
        )
        try:
            result = await run_in_container(
                self._registry,
                workspace_root,
                self._image,
                cmd,
                category="build",
                timeout=self._timeout,
            )
        except ProcessTimeout as e:
            error = f"Build of {target} timed out after {self._timeout:g} seconds"
            log.warning("%s (%s)", error, e)
            return BuildOutcome(
                target=target,
                preset=descriptor.preset,
                error=error,
                hint="Increase fuzzing.build_timeout or check for a hanging build step.",
            )
        except CodeForgeError as e:
            error = f"Failed to start build container for {target}: {e}"
            return BuildOutcome(
                target=target,
                preset=descriptor.preset,
                error=error,
                hint=troubleshooting_hint(str(e)),
            )

        if not result.ok:
            combined = f"{result.stderr}\n{result.stdout}"
            error = f"Build failed with exit code {result.exit_code}"
            self._say(f"Failed to build {target}: {error}")
            return BuildOutcome(
                target=target,
                preset=descriptor.preset,
                error=error,
                stdout=tail(result.stdout, OUTPUT_EXCERPT_CHARS),
                stderr=tail(result.stderr, OUTPUT_EXCERPT_CHARS),
                exit_code=result.exit_code,
                hint=troubleshooting_hint(combined),
            )

        executable = find_executable(build_dir, target)
        if executable is None:
            error = f"Built executable for {target} not found in {build_dir}"
            return BuildOutcome(
                target=target,
                preset=descriptor.preset,
                error=error,
                stdout=tail(result.stdout, OUTPUT_EXCERPT_CHARS),
                stderr=tail(result.stderr, OUTPUT_EXCERPT_CHARS),
                exit_code=result.exit_code,
                hint=troubleshooting_hint(error),
            )
        try:
            dest = copy_executable(executable, fuzzing_dir, target)
        except OSError as e:
            error = f"Failed to copy {executable} to {fuzzing_dir}: {e}"
            return BuildOutcome(
                target=target,
                preset=descriptor.preset,
                error=error,
                exit_code=result.exit_code,
                hint=troubleshooting_hint(error),
            )
        self._say(f"Built fuzzer: {target}")
        return BuildOutcome(
            target=target,
            preset=descriptor.preset,
            success=True,
            executable_path=str(dest),
            stdout=tail(result.stdout, OUTPUT_EXCERPT_CHARS),
            stderr=tail(result.stderr, OUTPUT_EXCERPT_CHARS),
            exit_code=result.exit_code,
        )

    async def build_targets(
        self,
        workspace_root: Path,
        descriptors: list[FuzzTargetDescriptor],
        build_dir: Path,
        fuzzing_dir: Path,
    ) -> list[BuildOutcome]:
        """Build every target; outcomes are returned in input order."""
        semaphore = asyncio.Semaphore(self._max_parallel)

        async def _one(descriptor: FuzzTargetDescriptor) -> BuildOutcome:
            async with semaphore:
                try:
                    return await self.build_target(workspace_root, descriptor, build_dir, fuzzing_dir)
                except Exception as e:
                    log.exception("Unexpected error building %s", descriptor.target)
                    return BuildOutcome(
                        target=descriptor.target,
                        preset=descriptor.preset,
                        error=str(e) or type(e).__name__,
                        hint=troubleshooting_hint(str(e)),
                    )

        return list(await asyncio.gather(*(_one(d) for d in descriptors)))

    def create_build_directory(self, fuzzing_dir: Path, preset: str) -> Path:
        """Fresh ``build-<preset>`` directory under ``fuzzing_dir``."""
        build_dir = prepare_build_directory(fuzzing_dir, preset)
        log.debug("Prepared build directory %s", build_dir)
        return build_dir

    def cleanup_build_directories(self, build_dirs: list[Path]) -> None:
        """Remove temporary build trees; failures are only logged."""
        for build_dir in build_dirs:
            try:
                shutil.rmtree(build_dir)
            except FileNotFoundError:
                pass
            except OSError as e:
                log.warning("Failed to remove build directory %s: %s", build_dir, e)
