"""Crash artifact discovery and maintenance.

Every fuzzer writes into ``<fuzzing>/<fuzzer>-output``; crash inputs are
files named ``crash-<hash>`` somewhere below it (libFuzzer places them in
the working directory or the corpus). ``fixed-crashes/`` holds inputs that
no longer reproduce and is never scanned.
"""

from __future__ import annotations

import logging
import re
import shutil
from datetime import datetime
from pathlib import Path

from codeforge.core.exceptions import CodeForgeError, CrashDiscoveryError
from codeforge.core.paths import PathMapper
from codeforge.core.registry import ContainerRegistry
from codeforge.core.schema import CorpusEntry, CrashArtifact, CrashGroup
from codeforge.fuzzing.names import CRASH_PREFIX, OUTPUT_SUFFIX, format_fuzzer_display_name
from codeforge.utils import container_path, run_in_container

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Named constants
# ---------------------------------------------------------------------------

#: Subdirectory receiving crashes that no longer reproduce.
FIXED_CRASHES_DIR = "fixed-crashes"

#: File holding the number of executed test inputs.
TEST_COUNT_FILE = "test-count.txt"

#: Subdirectory of an output directory holding the fuzzer's corpus.
CORPUS_DIR = "corpus"

#: Default number of bytes shown when previewing a crash input.
PREVIEW_BYTES = 1024

#: Timeout (seconds) for re-running one crash input.
REEVALUATE_TIMEOUT = 120

_SEPARATORS = re.compile(r"[\\/]+")


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------


def _basename(path: str | Path) -> str:
    parts = [p for p in _SEPARATORS.split(str(path)) if p]
    return parts[-1] if parts else ""


def extract_fuzzer_name(output_dir: str | Path) -> str:
    """``.../codeforge-foo-fuzz-output`` -> ``foo``. Unrecognised names are returned as-is."""
    name = _basename(output_dir)
    if not name.endswith(OUTPUT_SUFFIX):
        return name
    return format_fuzzer_display_name(name[: -len(OUTPUT_SUFFIX)])


def extract_fuzzer_name_from_path(crash_path: str | Path) -> str:
    """Owning fuzzer of a crash file path, for either separator style."""
    parts = [p for p in _SEPARATORS.split(str(crash_path)) if p]
    for part in reversed(parts[:-1]):
        if part.endswith(OUTPUT_SUFFIX):
            return extract_fuzzer_name(part)
    return extract_fuzzer_name(parts[-2]) if len(parts) >= 2 else ""


def extract_crash_hash(crash_id: str) -> str:
    """``fuzzer/crash-abc`` or ``crash-abc`` -> ``abc``."""
    name = _basename(crash_id)
    return name[len(CRASH_PREFIX):] if name.startswith(CRASH_PREFIX) else name


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


def scan_crash_files(output_dir: Path, fuzzer_name: str | None = None) -> list[CrashArtifact]:
    """Every ``crash-*`` file below ``output_dir``, newest first.

    Raises:
        CrashDiscoveryError: the directory could not be read or a file could not be stat'ed.
    """
    if not output_dir.is_dir():
        return []
    owner = fuzzer_name or extract_fuzzer_name(output_dir)
    crashes: list[CrashArtifact] = []
    try:
        candidates = [
            p
            for p in output_dir.rglob(f"{CRASH_PREFIX}*")
            if FIXED_CRASHES_DIR not in p.relative_to(output_dir).parts
        ]
    except PermissionError as e:
        raise CrashDiscoveryError(f"Permission denied while scanning for crashes: {e}") from e
    for path in candidates:
        try:
            st = path.stat()
        except OSError as e:
            raise CrashDiscoveryError(f"Failed to get file stats for {path}: {e}") from e
        if not path.is_file():
            continue
        crashes.append(
            CrashArtifact(
                fuzzer_name=owner,
                crash_id=extract_crash_hash(path.name),
                path=str(path.resolve()),
                relative_path=str(path.relative_to(output_dir)),
                size=st.st_size,
                created_at=datetime.fromtimestamp(st.st_mtime),
            )
        )
    crashes.sort(key=lambda c: c.created_at or datetime.min, reverse=True)
    return crashes


class CrashDiscovery:
    """Walk the fuzzing directory and group crashes by fuzzer output directory."""

    def discover(self, fuzzing_dir: Path) -> list[CrashGroup]:
        """One :class:`CrashGroup` per ``*-output`` directory containing crashes.

        Raises:
            CrashDiscoveryError: on permission or stat failures.
        """
        if not fuzzing_dir.is_dir():
            return []
        try:
            output_dirs = sorted(
                p for p in fuzzing_dir.iterdir() if p.is_dir() and p.name.endswith(OUTPUT_SUFFIX)
            )
        except PermissionError as e:
            raise CrashDiscoveryError(f"Permission denied while scanning for crashes: {e}") from e

        groups: list[CrashGroup] = []
        for output_dir in output_dirs:
            crashes = scan_crash_files(output_dir)
            if crashes:
                groups.append(
                    CrashGroup(
                        fuzzer_name=extract_fuzzer_name(output_dir),
                        output_dir=str(output_dir),
                        crashes=crashes,
                    )
                )
        log.debug("Found crashes for %d fuzzer(s) in %s", len(groups), fuzzing_dir)
        return groups


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def clear_crashes(output_dir: Path) -> int:
    """Delete crash inputs, cached backtraces and the test counter. Returns files removed.

    Crash inputs and backtraces are removed at any depth; ``fixed-crashes/`` is kept.
    """
    if not output_dir.is_dir():
        return 0
    targets = [
        p
        for pattern in (f"{CRASH_PREFIX}*", "backtrace-*")
        for p in output_dir.rglob(pattern)
        if FIXED_CRASHES_DIR not in p.relative_to(output_dir).parts
    ]
    targets.append(output_dir / TEST_COUNT_FILE)
    removed = 0
    for path in targets:
        if path.is_file():
            path.unlink()
            removed += 1
    log.info("Removed %d crash file(s) from %s", removed, output_dir)
    return removed


def read_test_count(output_dir: Path) -> int:
    """Value of ``test-count.txt``; 0 when absent or unreadable."""
    try:
        return int((output_dir / TEST_COUNT_FILE).read_text(encoding="utf-8").strip() or 0)
    except (OSError, ValueError):
        return 0


def hexdump(data: bytes, offset: int = 0) -> list[str]:
    """``hexdump -C`` style lines."""
    lines = []
    for i in range(0, len(data), 16):
        chunk = data[i : i + 16]
        hex_part = " ".join(f"{b:02x}" for b in chunk[:8])
        if len(chunk) > 8:
            hex_part += "  " + " ".join(f"{b:02x}" for b in chunk[8:])
        ascii_part = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        lines.append(f"{offset + i:08x}  {hex_part:<48}  |{ascii_part}|")
    return lines


def read_crash_preview(path: Path, max_bytes: int = PREVIEW_BYTES, label: str = "Crash file") -> str:
    """Hex preview of at most ``max_bytes`` from the start of a crash (or corpus) input."""
    size = path.stat().st_size
    with open(path, "rb") as f:
        data = f.read(max_bytes)
    lines = [f"{label}: {path}", f"Size: {size} bytes", ""]
    lines += hexdump(data)
    if size > len(data):
        lines.append(f"... {size - len(data)} more bytes not shown")
    return "\n".join(lines)


def list_corpus(output_dir: Path) -> list[CorpusEntry]:
    """Regular files directly inside ``output_dir/corpus``, sorted by name.

    A missing corpus is empty; files that vanish while listing are skipped.

    Raises:
        CrashDiscoveryError: the corpus directory could not be read.
    """
    corpus = output_dir / CORPUS_DIR
    if not corpus.is_dir():
        return []
    try:
        children = sorted(corpus.iterdir())
    except OSError as e:
        raise CrashDiscoveryError(f"Failed to read corpus directory {corpus}: {e}") from e
    entries: list[CorpusEntry] = []
    for path in children:
        try:
            if not path.is_file():
                continue
            st = path.stat()
        except OSError as e:
            log.warning("Skipping corpus file %s: %s", path, e)
            continue
        entries.append(
            CorpusEntry(
                name=path.name,
                path=str(path),
                size=st.st_size,
                modified_at=datetime.fromtimestamp(st.st_mtime),
            )
        )
    return entries


class CrashReevaluator:
    """Re-run crash inputs and move the ones that no longer crash to ``fixed-crashes/``."""

    def __init__(
        self,
        registry: ContainerRegistry,
        image: str,
        *,
        mapper: PathMapper | None = None,
        timeout: float = REEVALUATE_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._image = image
        self._mapper = mapper or PathMapper()
        self._timeout = timeout

    async def reevaluate(
        self,
        workspace_root: Path,
        executable: Path,
        output_dir: Path,
        crash_id: str | None = None,
    ) -> list[Path]:
        """Return the crash files that were moved because they no longer reproduce."""
        crashes = scan_crash_files(output_dir)
        if crash_id:
            wanted = extract_crash_hash(crash_id)
            crashes = [c for c in crashes if c.crash_id == wanted]
        fixed: list[Path] = []
        for crash in crashes:
            crash_path = Path(crash.path)
            cmd = (
                f"{container_path(self._mapper, executable, workspace_root)} "
                f"{container_path(self._mapper, crash_path, workspace_root)}"
            )
            try:
                result = await run_in_container(
                    self._registry,
                    workspace_root,
                    self._image,
                    cmd,
                    category="reevaluate",
                    timeout=self._timeout,
                )
            except CodeForgeError as e:
                log.warning("Could not re-run crash %s: %s", crash_path.name, e)
                continue
            if result.ok:
                dest_dir = output_dir / FIXED_CRASHES_DIR
                dest_dir.mkdir(exist_ok=True)
                shutil.move(str(crash_path), str(dest_dir / crash_path.name))
                fixed.append(dest_dir / crash_path.name)
                log.info("Crash %s no longer reproduces; moved to %s", crash_path.name, dest_dir)
        return fixed
