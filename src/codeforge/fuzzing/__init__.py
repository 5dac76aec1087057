"""Fuzzing workflow: target discovery, builds, runs, crashes and the fuzzer cache."""

from codeforge.fuzzing.builder import FuzzTargetBuilder, troubleshooting_hint
from codeforge.fuzzing.cache import FuzzerDiscoveryService, FuzzerMetadataCache
from codeforge.fuzzing.crashes import CrashDiscovery, CrashReevaluator, scan_crash_files
from codeforge.fuzzing.discovery import TargetDiscovery
from codeforge.fuzzing.orchestrator import FuzzingOrchestrator, format_summary
from codeforge.fuzzing.runner import FuzzRunner

__all__ = [
    "CrashDiscovery",
    "CrashReevaluator",
    "FuzzRunner",
    "FuzzTargetBuilder",
    "FuzzerDiscoveryService",
    "FuzzerMetadataCache",
    "FuzzingOrchestrator",
    "TargetDiscovery",
    "format_summary",
    "scan_crash_files",
    "troubleshooting_hint",
]
