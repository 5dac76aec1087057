"""End-to-end fuzzing workflow: presets -> targets -> builds -> runs -> report."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from codeforge.core.config import AppConfig
from codeforge.core.exceptions import CodeForgeError
from codeforge.core.paths import PathMapper
from codeforge.core.registry import ContainerRegistry
from codeforge.core.schema import (
    BuildOutcome,
    FuzzerStatus,
    FuzzRunResult,
    WorkflowError,
    WorkflowReport,
)
from codeforge.fuzzing.builder import FuzzTargetBuilder
from codeforge.fuzzing.cache import FuzzerMetadataCache
from codeforge.fuzzing.discovery import TargetDiscovery
from codeforge.fuzzing.names import fuzzing_directory
from codeforge.fuzzing.runner import FuzzRunner
from codeforge.protocols import ProgressCallback, Sink

log = logging.getLogger(__name__)

#: Seconds added to max_total_time before a fuzzer run is killed.
RUN_TIMEOUT_SLACK = 120


@dataclass
class _RunState:
    presets_total: int = 0
    presets_processed: int = 0
    targets_total: int = 0
    targets_built: int = 0
    executables: dict[str, str] = field(default_factory=dict)
    results: list[FuzzRunResult] = field(default_factory=list)
    errors: list[WorkflowError] = field(default_factory=list)
    build_dirs: list[Path] = field(default_factory=list)
    fatal: str | None = None

    def report(self) -> WorkflowReport:
        crashes = sum(len(r.crashes) for r in self.results)
        success = self.fatal is None and (self.targets_total == 0 or self.targets_built > 0)
        if self.fatal:
            message = self.fatal
        elif crashes:
            message = f"Fuzzing completed with {crashes} crash(es) found!"
        else:
            message = f"Fuzzing completed. {len(self.results)} fuzzer(s) executed."
        return WorkflowReport(
            success=success,
            message=message,
            presets_total=self.presets_total,
            presets_processed=self.presets_processed,
            targets_total=self.targets_total,
            targets_built=self.targets_built,
            fuzzers_run=len(self.results),
            crashes_found=crashes,
            executables=dict(self.executables),
            results=list(self.results),
            errors=list(self.errors),
        )


def _noop_progress(label: str, percent: float) -> None:
    pass


def format_summary(report: WorkflowReport) -> str:
    """Human-readable summary of a :class:`WorkflowReport`."""
    lines = [
        "=== Fuzzing Results Summary ===",
        f"Presets processed: {report.presets_processed}/{report.presets_total}",
        f"Targets built: {report.targets_built}/{report.targets_total}",
        f"Fuzzers executed: {report.fuzzers_run}",
        f"Crashes found: {report.crashes_found}",
        f"Errors encountered: {len(report.errors)}",
    ]
    crashes = [(r.fuzzer, c) for r in report.results for c in r.crashes]
    if crashes:
        lines += ["", "Crashes found:"]
        lines += [f"  - {fuzzer}: {crash.relative_path or crash.path}" for fuzzer, crash in crashes]
    if report.errors:
        lines += ["", "Errors:"]
        for error in report.errors:
            scope = error.preset or error.fuzzer
            prefix = f"{error.type} [{scope}]" if scope else error.type
            lines.append(f"  - {prefix}: {error.message}")
            for outcome in error.build_errors:
                lines.append(f"      {outcome.target}: {outcome.error}")
                if outcome.hint:
                    lines.append(f"        hint: {outcome.hint}")
    return "\n".join(lines)


class FuzzingOrchestrator:
    """Drive discovery, builds and fuzzer runs, collecting failures as data."""

    def __init__(
        self,
        registry: ContainerRegistry,
        image: str,
        *,
        discovery: TargetDiscovery | None = None,
        builder: FuzzTargetBuilder | None = None,
        runner: FuzzRunner | None = None,
        sink: Sink | None = None,
        cache: FuzzerMetadataCache | None = None,
        mapper: PathMapper | None = None,
        output_directory: str = ".codeforge/fuzzing",
        cleanup_build_dirs: bool = False,
    ) -> None:
        mapper = mapper or PathMapper()
        self._registry = registry
        self._image = image
        self._sink = sink
        self._cache = cache
        self._discovery = discovery or TargetDiscovery(registry, image, sink=sink, mapper=mapper)
        self._builder = builder or FuzzTargetBuilder(registry, image, sink=sink, mapper=mapper)
        self._runner = runner or FuzzRunner(registry, image, sink=sink, mapper=mapper)
        self._output_directory = output_directory
        self._cleanup_build_dirs = cleanup_build_dirs

    @classmethod
    def from_config(
        cls,
        registry: ContainerRegistry,
        config: AppConfig,
        image: str,
        *,
        sink: Sink | None = None,
        cache: FuzzerMetadataCache | None = None,
    ) -> FuzzingOrchestrator:
        """Wire discovery, builder and runner from the fuzzing section of ``config``."""
        fuzzing = config.fuzzing
        mapper = PathMapper()
        run_timeout = fuzzing.max_total_time + RUN_TIMEOUT_SLACK if fuzzing.max_total_time > 0 else None
        return cls(
            registry,
            image,
            discovery=TargetDiscovery(registry, image, sink=sink, mapper=mapper),
            builder=FuzzTargetBuilder(
                registry,
                image,
                sink=sink,
                mapper=mapper,
                timeout=fuzzing.build_timeout,
                max_parallel=fuzzing.max_parallel_builds,
            ),
            runner=FuzzRunner(
                registry,
                image,
                sink=sink,
                mapper=mapper,
                options=fuzzing.libfuzzer_options(),
                timeout=run_timeout,
                collect_coverage=fuzzing.collect_coverage,
                preserve_corpus=fuzzing.preserve_corpus,
            ),
            sink=sink,
            cache=cache,
            mapper=mapper,
            output_directory=fuzzing.output_directory,
            cleanup_build_dirs=fuzzing.cleanup_build_dirs,
        )

    def _say(self, message: str, reveal: bool = False) -> None:
        log.info(message)
        if self._sink is not None:
            self._sink.append_line(f"[Fuzzing] {message}")
            if reveal:
                self._sink.reveal()

    def fuzzing_dir(self, workspace_root: Path) -> Path:
        return fuzzing_directory(workspace_root, self._output_directory)

    def _mark(self, name: str, status: FuzzerStatus, **updates: object) -> None:
        if self._cache is not None:
            self._cache.set_status(name, status, **updates)

    async def _ensure_image(self, workspace_root: Path) -> None:
        runtime = self._registry.runtime
        if not await runtime.is_available():
            raise CodeForgeError("Docker is not available. Install Docker and make sure the daemon is running.")
        if not await runtime.image_exists(self._image):
            self._say(f"Image {self._image} not found; building it")
            await runtime.build_image(workspace_root, self._image)

    async def _process_preset(
        self, workspace_root: Path, fuzzing_dir: Path, preset: str, state: _RunState
    ) -> None:
        build_dir = self._builder.create_build_directory(fuzzing_dir, preset)
        state.build_dirs.append(build_dir)
        await self._discovery.configure_preset(workspace_root, preset, build_dir)
        targets = await self._discovery.discover_targets(workspace_root, preset, build_dir)
        if not targets:
            self._say(f"No fuzz targets found for preset {preset} - skipping")
            state.presets_processed += 1
            return

        state.targets_total += len(targets)
        self._say(
            f"Found {len(targets)} fuzz target(s) for preset {preset}: "
            f"{', '.join(t.target for t in targets)}"
        )
        for t in targets:
            self._mark(t.target, FuzzerStatus.BUILDING, preset=preset)

        outcomes = await self._builder.build_targets(workspace_root, targets, build_dir, fuzzing_dir)
        failed: list[BuildOutcome] = []
        for outcome in outcomes:
            if outcome.success and outcome.executable_path:
                state.targets_built += 1
                state.executables[outcome.target] = outcome.executable_path
                self._mark(outcome.target, FuzzerStatus.BUILT, executable_path=outcome.executable_path)
            else:
                failed.append(outcome)
                self._mark(outcome.target, FuzzerStatus.FAILED)
        if failed:
            state.errors.append(
                WorkflowError(
                    type="build",
                    preset=preset,
                    message=f"Failed to build {len(failed)} of {len(outcomes)} target(s)",
                    failed_targets=[o.target for o in failed],
                    build_errors=failed,
                )
            )
        state.presets_processed += 1

    async def _build_phase(
        self, workspace_root: Path, progress: ProgressCallback, state: _RunState
    ) -> Path | None:
        fuzzing_dir = self.fuzzing_dir(workspace_root)
        self._say("Creating fuzzing directory structure...")
        progress("Checking environment", 5)
        try:
            fuzzing_dir.mkdir(parents=True, exist_ok=True)
            await self._ensure_image(workspace_root)
        except (CodeForgeError, OSError) as e:
            state.fatal = str(e)
            state.errors.append(WorkflowError(type="workflow", message=str(e)))
            return None

        progress("Discovering CMake presets", 10)
        try:
            presets = await self._discovery.discover_presets(workspace_root)
        except CodeForgeError as e:
            state.fatal = str(e)
            state.errors.append(WorkflowError(type="workflow", message=str(e)))
            self._say(str(e), reveal=True)
            return None

        state.presets_total = len(presets)
        for i, preset in enumerate(presets):
            self._say(f"Processing preset: {preset}")
            progress(f"Processing preset: {preset}", 20 + (i / len(presets)) * 60)
            try:
                await self._process_preset(workspace_root, fuzzing_dir, preset, state)
            except (CodeForgeError, OSError) as e:
                self._say(f"Error processing preset {preset}: {e}")
                state.errors.append(WorkflowError(type="preset_processing", preset=preset, message=str(e)))
        return fuzzing_dir

    def _finish(self, progress: ProgressCallback, state: _RunState) -> WorkflowReport:
        if self._cleanup_build_dirs:
            self._builder.cleanup_build_directories(state.build_dirs)
        progress("Generating reports", 95)
        report = state.report()
        self._say(format_summary(report), reveal=True)
        progress("Fuzzing complete", 100)
        return report

    async def build_only(
        self, workspace_root: Path, progress: ProgressCallback | None = None
    ) -> WorkflowReport:
        """Discover and build every fuzz target without running them."""
        progress = progress or _noop_progress
        state = _RunState()
        await self._build_phase(Path(workspace_root), progress, state)
        return self._finish(progress, state)

    async def run(
        self, workspace_root: Path, progress: ProgressCallback | None = None
    ) -> WorkflowReport:
        """Run the complete workflow and return its report.

        Only environment and preset discovery failures end the run early;
        everything else is recorded in the report.
        """
        progress = progress or _noop_progress
        workspace_root = Path(workspace_root)
        self._say("Starting fuzzing workflow...", reveal=True)
        state = _RunState()
        fuzzing_dir = await self._build_phase(workspace_root, progress, state)

        if fuzzing_dir is not None and state.executables:
            self._say(f"Running {len(state.executables)} fuzzer(s)...")
            progress("Running fuzzers", 85)
            for name in state.executables:
                self._mark(name, FuzzerStatus.RUNNING)
            results, errors = await self._runner.run_all(workspace_root, state.executables, fuzzing_dir)
            state.results.extend(results)
            state.errors.extend(errors)
            finished = {r.fuzzer: r for r in results}
            for name in state.executables:
                result = finished.get(name)
                if result is None:
                    self._mark(name, FuzzerStatus.FAILED)
                else:
                    self._mark(name, FuzzerStatus.BUILT, crashes=result.crashes, output_dir=result.output_dir)
        return self._finish(progress, state)
