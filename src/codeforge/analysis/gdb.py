"""Interactive gdb sessions on crash inputs, run inside the workspace container."""

from __future__ import annotations

import logging
import os
import shlex
from pathlib import Path

from codeforge.core.exceptions import (
    CodeForgeError,
    FuzzerNotFound,
    FuzzingDirectoryMissing,
    InvalidFuzzerName,
    MissingArgument,
)
from codeforge.core.paths import PathMapper
from codeforge.core.registry import ContainerRegistry
from codeforge.core.schema import AnalysisResult, ValidationResult
from codeforge.fuzzing.names import TARGET_PREFIX, TARGET_SUFFIX, fuzzing_directory, validate_fuzzer_name
from codeforge.runtime.docker import CATEGORY_LABEL, WORKSPACE_LABEL
from codeforge.runtime.process import RunOptions

log = logging.getLogger(__name__)

#: Container category of debugging sessions.
GDB_CATEGORY = "gdb-analysis"


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


class GdbCommandBuilder:
    """Assemble gdb argument vectors."""

    def build(
        self,
        executable: str,
        crash_file: str,
        *,
        batch: bool = False,
        quiet: bool = False,
        commands: list[str] | None = None,
    ) -> list[str]:
        """``gdb [--batch] [--quiet] [--ex CMD]... --args EXE CRASH``."""
        if not executable or not crash_file:
            raise MissingArgument("Both fuzzer executable and crash file are required")
        flags: list[str] = []
        if batch:
            flags.append("--batch")
        if quiet:
            flags.append("--quiet")
        for cmd in commands or []:
            flags += ["--ex", cmd]
        return ["gdb", *flags, "--args", executable, crash_file]

    @staticmethod
    def to_shell(argv: list[str]) -> str:
        return shlex.join(argv)


class FuzzerResolver:
    """Find a fuzzer executable in the fuzzing directory from a (display) name."""

    def __init__(self, output_directory: str = ".codeforge/fuzzing") -> None:
        self._output_directory = output_directory

    def fuzzing_dir(self, workspace_root: str | Path) -> Path:
        return fuzzing_directory(workspace_root, self._output_directory)

    @staticmethod
    def candidates(fuzzing_dir: Path, name: str) -> list[Path]:
        names = [name, f"{name}{TARGET_SUFFIX}", f"{TARGET_PREFIX}{name}{TARGET_SUFFIX}"]
        return [fuzzing_dir / n for n in names] + [fuzzing_dir / name / n for n in names]

    def resolve(self, workspace_root: str | Path, name: str) -> Path:
        """Return the first executable candidate.

        Raises:
            MissingArgument: ``name`` is empty.
            InvalidFuzzerName: ``name`` could escape the fuzzing directory.
            FuzzingDirectoryMissing: the fuzzing directory does not exist.
            FuzzerNotFound: no candidate is an executable regular file.
        """
        if not name:
            raise MissingArgument("Fuzzer name is required")
        valid, error = validate_fuzzer_name(name)
        if not valid:
            raise InvalidFuzzerName(name, error)
        fuzzing_dir = self.fuzzing_dir(workspace_root)
        if not fuzzing_dir.is_dir():
            raise FuzzingDirectoryMissing(str(fuzzing_dir))
        attempted = self.candidates(fuzzing_dir, name)
        for path in attempted:
            if _is_executable(path):
                return path
        raise FuzzerNotFound(name, [str(p) for p in attempted])

    def list_available_fuzzers(self, workspace_root: str | Path) -> list[str]:
        """Names of executables (or directories holding one) in the fuzzing directory."""
        fuzzing_dir = self.fuzzing_dir(workspace_root)
        if not fuzzing_dir.is_dir():
            return []
        found: list[str] = []
        for entry in sorted(fuzzing_dir.iterdir()):
            if entry.is_file():
                if os.access(entry, os.X_OK):
                    found.append(entry.name)
            elif entry.is_dir():
                try:
                    if any(_is_executable(child) for child in entry.iterdir()):
                        found.append(entry.name)
                except OSError:
                    log.debug("Skipping unreadable directory %s", entry)
        return found


class CrashAnalyzer:
    """Validate a crash and open gdb on it in a tracked interactive container."""

    def __init__(
        self,
        registry: ContainerRegistry,
        image: str,
        *,
        resolver: FuzzerResolver | None = None,
        mapper: PathMapper | None = None,
        builder: GdbCommandBuilder | None = None,
    ) -> None:
        self._registry = registry
        self._image = image
        self._resolver = resolver or FuzzerResolver()
        self._mapper = mapper or PathMapper()
        self._builder = builder or GdbCommandBuilder()

    def validate(self, workspace_root: str | Path, fuzzer_name: str, crash_file: str | Path) -> ValidationResult:
        """Collect every reason the session cannot start; checks do not short-circuit."""
        issues: list[str] = []
        crash = Path(crash_file) if crash_file else None
        if crash is None or not crash.is_file() or not os.access(crash, os.R_OK):
            issues.append(f"Crash file not found or not readable: {crash_file}")

        executable: Path | None = None
        try:
            executable = self._resolver.resolve(workspace_root, fuzzer_name)
        except CodeForgeError as e:
            issues.append(str(e))

        for path in (crash, executable):
            if path is not None and not self._mapper.can_map(path, workspace_root):
                issues.append(f"Path {path} is not within workspace {workspace_root}")
        return ValidationResult(valid=not issues, issues=issues)

    async def analyze(
        self,
        workspace_root: str | Path,
        fuzzer_name: str,
        crash_file: str | Path,
        *,
        commands: list[str] | None = None,
        wait: bool = True,
    ) -> AnalysisResult:
        """Start gdb on ``crash_file``; failures are reported in the result."""
        validation = self.validate(workspace_root, fuzzer_name, crash_file)
        if not validation.valid:
            return AnalysisResult(success=False, error="; ".join(validation.issues), crash_file=str(crash_file))

        name: str | None = None
        try:
            executable = self._resolver.resolve(workspace_root, fuzzer_name)
            container_crash = self._mapper.host_to_container(crash_file, workspace_root)
            argv = self._builder.build(
                self._mapper.host_to_container(executable, workspace_root),
                container_crash,
                commands=commands,
            )
            name = self._registry.generate_name(workspace_root, GDB_CATEGORY)
            options = RunOptions(
                interactive=True,
                tty=True,
                name=name,
                inherit_stdio=True,
                labels={WORKSPACE_LABEL: str(workspace_root), CATEGORY_LABEL: GDB_CATEGORY},
            )
            process = await self._registry.runtime.start(
                Path(workspace_root), self._image, self._builder.to_shell(argv), options
            )
            self._registry.track(
                name, name=name, image=self._image, workspace_root=workspace_root, category=GDB_CATEGORY
            )
            process.add_exit_callback(lambda _code: self._registry.untrack(name))
            tracked = await self._registry.track_launched(
                name, workspace_root, self._image, category=GDB_CATEGORY, process=process
            )
            if not tracked and process.exit_code is None:
                log.warning("gdb session %s is running untracked", name)
            if wait:
                await process.wait()
        except (CodeForgeError, OSError) as e:
            log.error("Crash analysis for %s failed: %s", fuzzer_name, e)
            return AnalysisResult(
                success=False, error=str(e), crash_file=str(crash_file), container_name=name
            )
        return AnalysisResult(
            success=True,
            fuzzer_executable=str(executable),
            crash_file=str(crash_file),
            container_crash_path=container_crash,
            gdb_command=argv,
            container_name=name,
        )
