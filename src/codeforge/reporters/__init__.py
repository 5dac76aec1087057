"""Built-in reporters for workflow and crash output."""

from codeforge.reporters.json_reporter import JsonReporter

__all__ = [
    "JsonReporter",
]
