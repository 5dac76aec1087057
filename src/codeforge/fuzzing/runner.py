"""Run built fuzz targets under libFuzzer and collect their crash artifacts."""

from __future__ import annotations

import logging
import re
import shlex
import shutil
from pathlib import Path

from codeforge.core.exceptions import CodeForgeError, CrashDiscoveryError
from codeforge.core.paths import PathMapper
from codeforge.core.registry import ContainerRegistry
from codeforge.core.schema import FuzzOutcome, FuzzRunResult, WorkflowError
from codeforge.fuzzing.crashes import CORPUS_DIR, TEST_COUNT_FILE, read_test_count, scan_crash_files
from codeforge.fuzzing.names import fuzzer_output_directory
from codeforge.protocols import Sink
from codeforge.runtime.process import tail
from codeforge.utils import run_in_container, sink_writer

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Named constants
# ---------------------------------------------------------------------------

#: Flags passed to every fuzzer run unless overridden.
DEFAULT_LIBFUZZER_OPTIONS: dict[str, int] = {
    "fork": 1,
    "ignore_crashes": 1,
    "jobs": 8,
    "runs": 16,
    "create_missing_dirs": 1,
}

#: Exit codes libFuzzer uses for findings (crash, timeout, OOM, leak, fork-mode crash).
CRASH_EXIT_CODES = frozenset({1, 70, 71, 72, 77})

#: Characters of output kept on a FuzzRunResult.
OUTPUT_EXCERPT_CHARS = 8000

#: Timeout (seconds) for generating a coverage report.
COVERAGE_TIMEOUT = 300

_RUNS_RE = re.compile(r"Done\s+(\d+)\s+runs")
_EXECS_RE = re.compile(r"exec/s:\s+(\d+)")


def build_fuzzer_command(
    fuzzer_name: str,
    executable: str,
    output_dir: str,
    options: dict[str, int] | None = None,
) -> str:
    """Shell command running one fuzzer from inside its output directory."""
    merged = {**DEFAULT_LIBFUZZER_OPTIONS, **(options or {})}
    flags = " ".join(f"-{key}={value}" for key, value in merged.items())
    profile = f"{output_dir}/{fuzzer_name}.profraw"
    corpus = f"{output_dir}/corpus"
    return (
        f"cd {shlex.quote(output_dir)} && "
        f"LLVM_PROFILE_FILE={shlex.quote(profile)} {shlex.quote(executable)} {flags} {shlex.quote(corpus)}"
    )


def classify_exit(exit_code: int | None, crash_count: int) -> FuzzOutcome:
    """Separate "the fuzzer found something" from "the engine itself failed"."""
    if crash_count > 0:
        return FuzzOutcome.CRASHES_FOUND
    if exit_code == 0:
        return FuzzOutcome.CLEAN
    if exit_code in CRASH_EXIT_CODES:
        return FuzzOutcome.CRASHES_FOUND
    return FuzzOutcome.ENGINE_ERROR


def _parse_executions(stderr: str) -> int:
    m = _RUNS_RE.findall(stderr)
    return int(m[-1]) if m else 0


def _parse_execs_per_sec(stderr: str) -> float:
    matches = _EXECS_RE.findall(stderr)
    return float(matches[-1]) if matches else 0.0


class FuzzRunner:
    """Execute fuzzers one at a time in tracked containers."""

    def __init__(
        self,
        registry: ContainerRegistry,
        image: str,
        *,
        sink: Sink | None = None,
        mapper: PathMapper | None = None,
        options: dict[str, int] | None = None,
        timeout: float | None = None,
        collect_coverage: bool = False,
        preserve_corpus: bool = True,
    ) -> None:
        self._registry = registry
        self._image = image
        self._sink = sink
        self._mapper = mapper or PathMapper()
        self._options = dict(options or {})
        self._timeout = timeout
        self._collect_coverage = collect_coverage
        self._preserve_corpus = preserve_corpus

    def _say(self, message: str) -> None:
        log.info(message)
        if self._sink is not None:
            self._sink.append_line(f"[Fuzzing] {message}")

    async def run_fuzzer(
        self,
        workspace_root: Path,
        fuzzer_name: str,
        executable: Path,
        fuzzing_dir: Path,
    ) -> FuzzRunResult:
        """Run one fuzzer and scan its output directory for crashes.

        Raises:
            RuntimeCommandError: the container could not be started.
            ProcessTimeout: the run exceeded the configured timeout.
            OSError: the output directory could not be prepared.
        """
        output_dir = fuzzer_output_directory(fuzzing_dir, fuzzer_name)
        corpus = output_dir / CORPUS_DIR
        if not self._preserve_corpus and corpus.is_dir():
            log.debug("Discarding previous corpus of %s", fuzzer_name)
            shutil.rmtree(corpus)
        corpus.mkdir(parents=True, exist_ok=True)
        command = build_fuzzer_command(
            fuzzer_name,
            self._mapper.host_to_container(executable, workspace_root),
            self._mapper.host_to_container(output_dir, workspace_root),
            self._options,
        )
        self._say(f"Running fuzzer: {fuzzer_name}")
        result = await run_in_container(
            self._registry,
            workspace_root,
            self._image,
            command,
            category="fuzz-run",
            timeout=self._timeout,
            on_chunk=sink_writer(self._sink),
        )

        try:
            crashes = scan_crash_files(output_dir)
        except CrashDiscoveryError as e:
            log.warning("Crash detection for %s failed: %s", fuzzer_name, e)
            crashes = []
        outcome = classify_exit(result.exit_code, len(crashes))
        executions = _parse_executions(result.stderr)
        if executions:
            total = read_test_count(output_dir) + executions
            try:
                (output_dir / TEST_COUNT_FILE).write_text(f"{total}\n", encoding="utf-8")
            except OSError as e:
                log.warning("Could not update test count of %s: %s", fuzzer_name, e)

        if crashes:
            self._say(f"Fuzzer {fuzzer_name} found {len(crashes)} crash(es)")
        elif outcome is FuzzOutcome.ENGINE_ERROR:
            self._say(f"Fuzzer {fuzzer_name} failed with exit code {result.exit_code}")
        else:
            self._say(f"Fuzzer {fuzzer_name} completed without crashes")

        coverage = None
        if self._collect_coverage:
            coverage = await self.generate_coverage_report(
                workspace_root, fuzzer_name, executable, output_dir
            )
        return FuzzRunResult(
            fuzzer=fuzzer_name,
            executable_path=str(executable),
            output_dir=str(output_dir),
            exit_code=result.exit_code,
            stdout=tail(result.stdout, OUTPUT_EXCERPT_CHARS),
            stderr=tail(result.stderr, OUTPUT_EXCERPT_CHARS),
            crashes=crashes,
            outcome=outcome,
            executions=executions,
            execs_per_sec=_parse_execs_per_sec(result.stderr),
            coverage_report=str(coverage) if coverage else None,
        )

    async def run_all(
        self,
        workspace_root: Path,
        executables: dict[str, str],
        fuzzing_dir: Path,
    ) -> tuple[list[FuzzRunResult], list[WorkflowError]]:
        """Run every fuzzer in turn; one fuzzer's failure never stops the batch."""
        results: list[FuzzRunResult] = []
        errors: list[WorkflowError] = []
        for name, path in executables.items():
            try:
                result = await self.run_fuzzer(workspace_root, name, Path(path), fuzzing_dir)
            except (CodeForgeError, OSError) as e:
                log.warning("Fuzzer %s could not be executed: %s", name, e)
                self._say(f"Fuzzer {name} could not be executed: {e}")
                errors.append(WorkflowError(type="execution", fuzzer=name, message=str(e)))
                continue
            results.append(result)
            if result.outcome is FuzzOutcome.ENGINE_ERROR:
                errors.append(
                    WorkflowError(
                        type="execution",
                        fuzzer=name,
                        message=(
                            f"Fuzzer exited with code {result.exit_code} without producing crash "
                            f"artifacts: {result.stderr.strip()[-500:]}"
                        ),
                    )
                )
        return results, errors

    async def generate_coverage_report(
        self,
        workspace_root: Path,
        fuzzer_name: str,
        executable: Path,
        output_dir: Path,
    ) -> Path | None:
        """HTML coverage report from the run's profile data; ``None`` on any failure."""
        profile = output_dir / f"{fuzzer_name}.profraw"
        if not profile.exists():
            log.debug("No profile data for %s; skipping coverage", fuzzer_name)
            return None
        report = output_dir / f"{fuzzer_name}-coverage.html"
        out = self._mapper.host_to_container(output_dir, workspace_root)
        profdata = f"{out}/{fuzzer_name}.profdata"
        command = (
            f"cd {shlex.quote(out)} && "
            f"llvm-profdata merge -sparse {shlex.quote(f'{out}/{profile.name}')} -o {shlex.quote(profdata)} && "
            f"llvm-cov show {shlex.quote(self._mapper.host_to_container(executable, workspace_root))} "
            f"-instr-profile={shlex.quote(profdata)} -format=html "
            f"> {shlex.quote(self._mapper.host_to_container(report, workspace_root))}"
        )
        try:
            result = await run_in_container(
                self._registry,
                workspace_root,
                self._image,
                command,
                category="coverage",
                timeout=COVERAGE_TIMEOUT,
            )
        except CodeForgeError as e:
            log.warning("Coverage report for %s failed: %s", fuzzer_name, e)
            return None
        if not result.ok:
            log.warning("Coverage report for %s failed: %s", fuzzer_name, result.stderr.strip())
            return None
        self._say(f"Coverage report generated: {report}")
        return report
