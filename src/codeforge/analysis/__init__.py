"""Crash analysis: interactive gdb sessions and batch backtraces."""

from codeforge.analysis.backtrace import BacktraceService, format_backtrace_for_display
from codeforge.analysis.gdb import CrashAnalyzer, FuzzerResolver, GdbCommandBuilder

__all__ = [
    "BacktraceService",
    "CrashAnalyzer",
    "FuzzerResolver",
    "GdbCommandBuilder",
    "format_backtrace_for_display",
]
