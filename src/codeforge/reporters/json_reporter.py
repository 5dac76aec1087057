"""JSON reporter: write workflow reports and crash lists as JSON."""

from __future__ import annotations

import json
from pathlib import Path

from codeforge.core.schema import CrashArtifact, WorkflowReport


class JsonReporter:
    """Reporter that writes JSON output for workflow runs and crashes."""

    format_name: str = "json"

    def report_workflow(self, report: WorkflowReport, output: Path) -> None:
        """Write a workflow report as a JSON object to the output path."""
        output = Path(output).resolve()
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps(report.model_dump(mode="json"), indent=2), encoding="utf-8")

    def report_crashes(self, crashes: list[CrashArtifact], output: Path) -> None:
        """Write crash list as a JSON array to the output path."""
        output = Path(output).resolve()
        output.parent.mkdir(parents=True, exist_ok=True)
        data = [c.model_dump(mode="json") for c in crashes]
        output.write_text(json.dumps(data, indent=2), encoding="utf-8")
