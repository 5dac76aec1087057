"""CLI entry point for codeforge."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Coroutine

import click

from codeforge import __version__
from codeforge.analysis import BacktraceService, CrashAnalyzer, FuzzerResolver, format_backtrace_for_display
from codeforge.core.config import AppConfig, ConfigManager
from codeforge.core.exceptions import (
    CodeForgeError,
    FuzzerNotFound,
    FuzzingDirectoryMissing,
    InvalidFuzzerName,
)
from codeforge.core.health import HealthChecker
from codeforge.core.paths import PathMapper
from codeforge.core.registry import ContainerRegistry
from codeforge.core.retry import RetryPolicy
from codeforge.core.schema import TerminationSummary, WorkflowReport
from codeforge.core.sinks import LoggingSink
from codeforge.fuzzing import (
    CrashDiscovery,
    CrashReevaluator,
    FuzzerDiscoveryService,
    FuzzerMetadataCache,
    FuzzingOrchestrator,
    TargetDiscovery,
)
from codeforge.fuzzing.crashes import (
    CORPUS_DIR,
    clear_crashes,
    extract_crash_hash,
    list_corpus,
    read_crash_preview,
    scan_crash_files,
)
from codeforge.fuzzing.fuzz_log import DEFAULT_LOG_NAME, fuzz_log_context
from codeforge.fuzzing.names import fuzzer_output_directory, fuzzing_directory
from codeforge.reporters import JsonReporter
from codeforge.runtime.docker import DockerRuntime, image_name_for_workspace

workspace_option = click.option(
    "--workspace",
    "-w",
    "workspace",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
    default=".",
    show_default=True,
    help="Workspace root (directory containing CMakePresets.json).",
)


class EchoSink:
    """Sink printing every line to the terminal."""

    def append_line(self, text: str) -> None:
        click.echo(text)

    def reveal(self) -> None:
        pass


quiet_option = click.option(
    "--quiet",
    "-q",
    is_flag=True,
    help="Write workflow progress to the log file only.",
)


def _sink(quiet: bool) -> EchoSink | LoggingSink:
    return LoggingSink() if quiet else EchoSink()


@dataclass
class _Services:
    workspace: Path
    config: AppConfig
    registry: ContainerRegistry
    image: str

    @property
    def fuzzing_dir(self) -> Path:
        return fuzzing_directory(self.workspace, self.config.fuzzing.output_directory)

    @property
    def resolver(self) -> FuzzerResolver:
        return FuzzerResolver(self.config.fuzzing.output_directory)


def _load(workspace: Path, verbose: bool = False) -> _Services:
    """Load config for ``workspace`` and wire the runtime and registry."""
    workspace = workspace.resolve()
    try:
        config = ConfigManager(workspace_root=workspace).load()
    except CodeForgeError as e:
        click.echo(str(e), err=True)
        raise SystemExit(1)
    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    runtime = DockerRuntime.from_config(config.docker)
    registry = ContainerRegistry(
        runtime,
        retry_policy=RetryPolicy.from_config(config.tracking),
        stop_timeout=config.docker.stop_timeout,
    )
    image = config.docker.image or image_name_for_workspace(workspace)
    return _Services(workspace=workspace, config=config, registry=registry, image=image)


def _run(services: _Services, coro: Coroutine[Any, Any, Any]) -> Any:
    """Run ``coro``; Ctrl-C stops every tracked container, CodeForgeError exits 1."""
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        asyncio.run(services.registry.terminate_all())
        click.echo("Interrupted.", err=True)
        raise SystemExit(130)
    except CodeForgeError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


def _output_dir_for(services: _Services, fuzzer: str) -> Path:
    """Output directory of ``fuzzer``, accepting display names when the executable exists."""
    try:
        name = services.resolver.resolve(services.workspace, fuzzer).name
    except (FuzzerNotFound, FuzzingDirectoryMissing):
        name = fuzzer
    except InvalidFuzzerName as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    return fuzzer_output_directory(services.fuzzing_dir, name)


def _progress(label: str, percent: float) -> None:
    click.echo(f"[{percent:3.0f}%] {label}")


def _finish_workflow(report: WorkflowReport, json_report: Path | None) -> None:
    if json_report:
        JsonReporter().report_workflow(report, json_report)
        click.echo(f"Report: {json_report}")
    if not report.success:
        click.echo(report.message or "Fuzzing workflow failed.", err=True)
        raise SystemExit(1)


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """codeforge: build and run CMake fuzz targets inside Docker containers."""
    pass


@main.command()
@workspace_option
@click.option("--verbose", "-v", is_flag=True, help="Show detailed output for passing checks.")
@click.option("--skip-docker", is_flag=True, help="Skip Docker and image checks.")
def check(workspace: Path, verbose: bool, skip_docker: bool) -> None:
    """Verify Docker, the workspace image, the Dockerfile and CMake presets."""
    checker = HealthChecker(ConfigManager(workspace_root=workspace))
    results = checker.check_all(skip_docker=skip_docker)
    for r in results:
        status = "OK" if r.ok else "FAIL"
        click.echo(f"  {r.name}: {status}")
        if verbose or not r.ok:
            click.echo(f"    {r.message}")
        if not r.ok and r.suggestion:
            click.echo(f"    → {r.suggestion}")
    if all(r.ok for r in results):
        click.echo("All checks passed.")
    else:
        click.echo("Some checks failed. Fix the issues above or follow the suggested steps.", err=True)
        raise SystemExit(1)


@main.command()
@workspace_option
@click.option("--json-report", type=click.Path(path_type=Path), help="Write the workflow report to this JSON file.")
@click.option("--log-file", type=click.Path(path_type=Path), help=f"Workflow log file (default: <fuzzing dir>/{DEFAULT_LOG_NAME}).")
@click.option("--verbose", "-v", is_flag=True, help="Verbose log (DEBUG level).")
@quiet_option
def fuzz(workspace: Path, json_report: Path | None, log_file: Path | None, verbose: bool, quiet: bool) -> None:
    """Discover, build and run every fuzz target of the workspace."""
    services = _load(workspace, verbose)
    orchestrator = FuzzingOrchestrator.from_config(
        services.registry, services.config, services.image, sink=_sink(quiet)
    )
    log_path = log_file or services.fuzzing_dir / DEFAULT_LOG_NAME
    with fuzz_log_context(log_path, verbose=verbose):
        report = _run(services, orchestrator.run(services.workspace, progress=_progress))
    click.echo(f"Log: {log_path}")
    _finish_workflow(report, json_report)


@main.command()
@workspace_option
@click.option("--json-report", type=click.Path(path_type=Path), help="Write the build report to this JSON file.")
@click.option("--log-file", type=click.Path(path_type=Path), help=f"Build log file (default: <fuzzing dir>/{DEFAULT_LOG_NAME}).")
@click.option("--verbose", "-v", is_flag=True, help="Verbose log (DEBUG level).")
@quiet_option
def build(workspace: Path, json_report: Path | None, log_file: Path | None, verbose: bool, quiet: bool) -> None:
    """Discover and build fuzz targets without running them."""
    services = _load(workspace, verbose)
    orchestrator = FuzzingOrchestrator.from_config(
        services.registry, services.config, services.image, sink=_sink(quiet)
    )
    log_path = log_file or services.fuzzing_dir / DEFAULT_LOG_NAME
    with fuzz_log_context(log_path, verbose=verbose):
        report = _run(services, orchestrator.build_only(services.workspace, progress=_progress))
    for name, path in report.executables.items():
        click.echo(f"  {name}: {path}")
    _finish_workflow(report, json_report)


# ---------------------------------------------------------------------------
# fuzzers
# ---------------------------------------------------------------------------


@main.group()
def fuzzers() -> None:
    """Inspect discovered fuzzers."""
    pass


@fuzzers.command("list")
@workspace_option
@click.option("--refresh", is_flag=True, help="Ignore the cached fuzzers list and rediscover.")
def fuzzers_list(workspace: Path, refresh: bool) -> None:
    """List fuzz targets with their status and crash counts."""
    services = _load(workspace)
    service = FuzzerDiscoveryService(
        TargetDiscovery(services.registry, services.image),
        FuzzerMetadataCache(ttl=services.config.cache.ttl_seconds),
        output_directory=services.config.fuzzing.output_directory,
    )
    found = _run(services, service.discover_fuzzers(services.workspace, force=refresh))
    if not found:
        click.echo("No fuzzers found.")
        return
    for f in found:
        click.echo(
            f"  {f.name} [{f.status.value}] preset={f.preset} crashes={len(f.crashes)} tests={f.test_count}"
        )


# ---------------------------------------------------------------------------
# crashes
# ---------------------------------------------------------------------------


@main.group()
def crashes() -> None:
    """List, inspect and maintain crash inputs."""
    pass


@crashes.command("list")
@workspace_option
@click.option("--json", "json_path", type=click.Path(path_type=Path), help="Also write the crash list to this JSON file.")
def crashes_list(workspace: Path, json_path: Path | None) -> None:
    """List crashes grouped by fuzzer, newest first."""
    services = _load(workspace)
    try:
        groups = CrashDiscovery().discover(services.fuzzing_dir)
    except CodeForgeError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    if not groups:
        click.echo("No crashes found.")
    for group in groups:
        click.echo(f"{group.fuzzer_name} ({len(group.crashes)} crash(es)):")
        for c in group.crashes:
            created = c.created_at.strftime("%Y-%m-%d %H:%M:%S") if c.created_at else "?"
            click.echo(f"  crash-{c.crash_id}  {c.size} bytes  {created}")
    if json_path:
        JsonReporter().report_crashes([c for g in groups for c in g.crashes], json_path)
        click.echo(f"Report: {json_path}")


@crashes.command("show")
@workspace_option
@click.argument("fuzzer")
@click.argument("crash_id")
@click.option("--bytes", "max_bytes", type=int, default=1024, show_default=True, help="Bytes to preview.")
def crashes_show(workspace: Path, fuzzer: str, crash_id: str, max_bytes: int) -> None:
    """Hex preview of a crash input."""
    services = _load(workspace)
    wanted = extract_crash_hash(crash_id)
    output_dir = _output_dir_for(services, fuzzer)
    try:
        matches = [c for c in scan_crash_files(output_dir) if c.crash_id == wanted]
    except CodeForgeError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    if not matches:
        click.echo(f"Crash {crash_id} not found in {output_dir}", err=True)
        raise SystemExit(1)
    click.echo(read_crash_preview(Path(matches[0].path), max_bytes))


@crashes.command("clear")
@workspace_option
@click.argument("fuzzer")
@click.confirmation_option(prompt="Delete all crash inputs and backtraces of this fuzzer?")
def crashes_clear(workspace: Path, fuzzer: str) -> None:
    """Delete crash inputs, cached backtraces and the test counter of a fuzzer."""
    services = _load(workspace)
    removed = clear_crashes(_output_dir_for(services, fuzzer))
    click.echo(f"Removed {removed} file(s).")


@crashes.command("reevaluate")
@workspace_option
@click.argument("fuzzer")
@click.argument("crash_id", required=False)
def crashes_reevaluate(workspace: Path, fuzzer: str, crash_id: str | None) -> None:
    """Re-run crash inputs; the ones that no longer crash move to fixed-crashes/."""
    services = _load(workspace)
    try:
        executable = services.resolver.resolve(services.workspace, fuzzer)
    except CodeForgeError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    output_dir = fuzzer_output_directory(services.fuzzing_dir, executable.name)
    reevaluator = CrashReevaluator(services.registry, services.image)
    fixed = _run(services, reevaluator.reevaluate(services.workspace, executable, output_dir, crash_id))
    click.echo(f"{len(fixed)} crash(es) no longer reproduce.")
    for path in fixed:
        click.echo(f"  {path}")


# ---------------------------------------------------------------------------
# corpus
# ---------------------------------------------------------------------------


@main.command()
@workspace_option
@click.argument("fuzzer")
@click.option("--show", "show_name", help="Hex preview of this corpus file instead of the listing.")
@click.option("--all", "show_all", is_flag=True, help="Hex preview of every corpus file.")
@click.option("--bytes", "max_bytes", type=int, default=1024, show_default=True, help="Bytes to preview.")
def corpus(workspace: Path, fuzzer: str, show_name: str | None, show_all: bool, max_bytes: int) -> None:
    """List the corpus of FUZZER, or preview its inputs."""
    services = _load(workspace)
    output_dir = _output_dir_for(services, fuzzer)
    try:
        entries = list_corpus(output_dir)
    except CodeForgeError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    if show_name:
        matches = [entry for entry in entries if entry.name == show_name]
        if not matches:
            click.echo(f"Corpus file {show_name} not found in {output_dir / CORPUS_DIR}", err=True)
            raise SystemExit(1)
        click.echo(read_crash_preview(Path(matches[0].path), max_bytes, label="Corpus file"))
        return
    if not entries:
        click.echo("No corpus files found. Run the fuzzer to generate corpus files.")
        return
    click.echo(f"{len(entries)} corpus file(s) in {output_dir / CORPUS_DIR}:")
    for entry in entries:
        modified = entry.modified_at.strftime("%Y-%m-%d %H:%M:%S") if entry.modified_at else "?"
        click.echo(f"  {entry.name}  {entry.size} bytes  {modified}")
    if show_all:
        for entry in entries:
            click.echo("")
            click.echo(read_crash_preview(Path(entry.path), max_bytes, label="Corpus file"))


# ---------------------------------------------------------------------------
# gdb
# ---------------------------------------------------------------------------


@main.command()
@workspace_option
@click.argument("crash_identifier")
def backtrace(workspace: Path, crash_identifier: str) -> None:
    """Print the gdb backtrace of CRASH_IDENTIFIER (<fuzzer>/crash-<hash>)."""
    services = _load(workspace)
    service = BacktraceService(services.registry, services.image, resolver=services.resolver)
    output = _run(services, service.generate(services.workspace, crash_identifier))
    fuzzer, _, crash = crash_identifier.rpartition("/")
    click.echo(format_backtrace_for_display(output, fuzzer, crash))


@main.command()
@workspace_option
@click.argument("fuzzer")
@click.argument("crash_file", type=click.Path(path_type=Path))
def debug(workspace: Path, fuzzer: str, crash_file: Path) -> None:
    """Open an interactive gdb session on CRASH_FILE in the workspace container."""
    services = _load(workspace)
    analyzer = CrashAnalyzer(services.registry, services.image, resolver=services.resolver, mapper=PathMapper())
    result = _run(services, analyzer.analyze(services.workspace, fuzzer, crash_file.resolve()))
    if not result.success:
        click.echo(f"Error: {result.error}", err=True)
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# containers
# ---------------------------------------------------------------------------


@main.group()
def containers() -> None:
    """Inspect and stop containers started for this workspace."""
    pass


async def _adopted(services: _Services) -> ContainerRegistry:
    await services.registry.adopt_running(services.workspace)
    return services.registry


@containers.command("list")
@workspace_option
def containers_list(workspace: Path) -> None:
    """List running codeforge containers of the workspace."""
    services = _load(workspace)
    registry = _run(services, _adopted(services))
    records = registry.list_active()
    if not records:
        click.echo("No active containers.")
        return
    for r in records:
        click.echo(f"  {r.identifier[:12]}  {r.name}  {r.image}  [{r.category}]")


@containers.command("stop")
@workspace_option
@click.argument("container")
def containers_stop(workspace: Path, container: str) -> None:
    """Stop and remove CONTAINER (id or name)."""
    services = _load(workspace)

    async def _stop() -> bool:
        await services.registry.adopt_running(services.workspace)
        return await services.registry.stop(container)

    if not _run(services, _stop()):
        click.echo(f"Failed to stop {container}.", err=True)
        raise SystemExit(1)
    click.echo(f"Stopped {container}.")


@containers.command("terminate")
@workspace_option
def containers_terminate(workspace: Path) -> None:
    """Stop and remove every codeforge container of the workspace."""
    services = _load(workspace)

    async def _terminate() -> TerminationSummary:
        await services.registry.adopt_running(services.workspace)
        return await services.registry.terminate_all()

    summary = _run(services, _terminate())
    click.echo(f"Stopped {summary.succeeded}/{summary.total} container(s).")
    for failure in summary.errors:
        click.echo(f"  {failure.identifier}: {failure.error}", err=True)
    if summary.failed:
        raise SystemExit(1)


@containers.command("cleanup")
@workspace_option
def containers_cleanup(workspace: Path) -> None:
    """Remove exited codeforge containers of the workspace."""
    services = _load(workspace)

    async def _cleanup() -> int:
        await services.registry.adopt_running(services.workspace, include_stopped=True)
        return await services.registry.cleanup_orphaned(remove=True)

    removed = _run(services, _cleanup())
    click.echo(f"Removed {removed} exited container(s).")


if __name__ == "__main__":
    main()
