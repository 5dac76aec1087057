"""Batch gdb backtraces for crash inputs, cached next to the crash."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from codeforge.analysis.gdb import FuzzerResolver, GdbCommandBuilder
from codeforge.core.exceptions import BacktraceError, CodeForgeError
from codeforge.core.paths import PathMapper
from codeforge.core.registry import ContainerRegistry
from codeforge.fuzzing.crashes import extract_crash_hash, scan_crash_files
from codeforge.fuzzing.names import CRASH_PREFIX, fuzzer_output_directory
from codeforge.utils import run_in_container

log = logging.getLogger(__name__)

#: Timeout (seconds) for one batch gdb run.
BACKTRACE_TIMEOUT = 120

#: gdb commands executed for every backtrace.
BACKTRACE_COMMANDS = ["run", "bt full", "quit"]

BANNER = "=" * 80


def backtrace_file(output_dir: Path, crash_hash: str) -> Path:
    return output_dir / f"backtrace-{crash_hash}.txt"


def _format_time(when: datetime) -> str:
    """``December 19, 2024 at 3:45:23 PM``."""
    hour = when.hour % 12 or 12
    return f"{when:%B} {when.day}, {when.year} at {hour}:{when:%M:%S} {when:%p}"


def format_backtrace_for_display(
    backtrace: str,
    fuzzer_name: str,
    crash_id: str,
    crash_time: datetime | None = None,
) -> str:
    if not backtrace or not backtrace.strip():
        return f"BACKTRACE NOT AVAILABLE\nCould not generate backtrace for crash {crash_id}\n"
    when = crash_time or datetime.now()
    return (
        f"\n{BANNER}\nBACKTRACE ANALYSIS\n{BANNER}\n\n"
        f"Fuzzer:      {fuzzer_name}\n"
        f"Crash:       {crash_id}\n"
        f"Crash Time:  {_format_time(when)}\n\n"
        f"{BANNER}\nSTACK TRACE\n{BANNER}\n\n"
        f"{backtrace}"
        f"\n\n{BANNER}\n"
    )


class BacktraceService:
    """Produce ``bt full`` output for ``<fuzzer>/crash-<hash>`` identifiers."""

    def __init__(
        self,
        registry: ContainerRegistry,
        image: str,
        *,
        resolver: FuzzerResolver | None = None,
        mapper: PathMapper | None = None,
        builder: GdbCommandBuilder | None = None,
        timeout: float = BACKTRACE_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._image = image
        self._resolver = resolver or FuzzerResolver()
        self._mapper = mapper or PathMapper()
        self._builder = builder or GdbCommandBuilder()
        self._timeout = timeout

    def _crash_file(self, output_dir: Path, crash_hash: str) -> Path:
        direct = output_dir / f"{CRASH_PREFIX}{crash_hash}"
        if direct.is_file():
            return direct
        for crash in scan_crash_files(output_dir):
            if crash.crash_id == crash_hash:
                return Path(crash.path)
        raise BacktraceError(f"Crash file {CRASH_PREFIX}{crash_hash} not found in {output_dir}")

    async def generate(self, workspace_root: Path, crash_identifier: str) -> str:
        """Return the backtrace, from the cache file when present.

        Raises:
            BacktraceError: bad identifier, unknown fuzzer or crash, or gdb could not run.
        """
        if not crash_identifier or "/" not in crash_identifier:
            raise BacktraceError(
                f"Invalid crash identifier {crash_identifier!r}; expected <fuzzer>/crash-<hash>"
            )
        fuzzer, crash = crash_identifier.rsplit("/", 1)
        crash_hash = extract_crash_hash(crash)
        if not fuzzer or not crash_hash:
            raise BacktraceError(f"Invalid crash identifier {crash_identifier!r}")

        try:
            executable = self._resolver.resolve(workspace_root, fuzzer)
        except CodeForgeError as e:
            raise BacktraceError(f"Backtrace generation failed: {e}") from e
        output_dir = fuzzer_output_directory(self._resolver.fuzzing_dir(workspace_root), executable.name)
        if not output_dir.is_dir():
            raise BacktraceError(f"Fuzzer output directory not found: {output_dir}")

        cached = backtrace_file(output_dir, crash_hash)
        if cached.is_file():
            log.debug("Using cached backtrace %s", cached)
            return cached.read_text(encoding="utf-8", errors="replace").strip()

        crash_file = self._crash_file(output_dir, crash_hash)
        argv = self._builder.build(
            self._mapper.host_to_container(executable, workspace_root),
            self._mapper.host_to_container(crash_file, workspace_root),
            batch=True,
            commands=BACKTRACE_COMMANDS,
        )
        try:
            result = await run_in_container(
                self._registry,
                workspace_root,
                self._image,
                self._builder.to_shell(argv),
                category="backtrace",
                timeout=self._timeout,
            )
        except CodeForgeError as e:
            raise BacktraceError(f"Backtrace generation failed: {e}") from e

        output = result.stdout.strip()
        if not output:
            if not result.ok:
                detail = result.stderr.strip() or "Unknown error"
                raise BacktraceError(f"gdb exited with code {result.exit_code}: {detail}")
            return result.stderr.strip() or "No backtrace generated (process may not have crashed)"
        cached.write_text(output + "\n", encoding="utf-8")
        return output
