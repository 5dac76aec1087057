"""Tests for JSON reporter."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

from codeforge.core.schema import (
    BuildOutcome,
    CrashArtifact,
    FuzzOutcome,
    FuzzRunResult,
    WorkflowError,
    WorkflowReport,
)
from codeforge.reporters.json_reporter import JsonReporter


def test_json_reporter_report_workflow(tmp_path: Path) -> None:
    """report_workflow writes the whole report, nested results and errors included."""
    out = tmp_path / "out" / "report.json"
    crash = CrashArtifact(fuzzer_name="png", crash_id="abc", path="/ws/crash-abc", created_at=datetime(2024, 1, 2))
    report = WorkflowReport(
        success=True,
        message="Fuzzing completed with 1 crash(es) found!",
        presets_total=1,
        presets_processed=1,
        fuzzers_run=1,
        crashes_found=1,
        results=[FuzzRunResult(fuzzer="codeforge-png-fuzz", crashes=[crash], outcome=FuzzOutcome.CRASHES_FOUND)],
        errors=[
            WorkflowError(
                type="build",
                preset="debug",
                message="Failed to build 1 of 2 target(s)",
                build_errors=[BuildOutcome(target="codeforge-x-fuzz", error="boom")],
            )
        ],
    )
    JsonReporter().report_workflow(report, out)
    assert out.is_file()
    data = json.loads(out.read_text())
    assert data["success"] is True
    assert data["crashes_found"] == 1
    assert data["results"][0]["outcome"] == "crashes_found"
    assert data["results"][0]["crashes"][0]["created_at"] == "2024-01-02T00:00:00"
    assert data["errors"][0]["build_errors"][0]["target"] == "codeforge-x-fuzz"


def test_json_reporter_report_crashes(tmp_path: Path) -> None:
    """report_crashes writes a JSON array of crash dicts."""
    out = tmp_path / "crashes.json"
    crashes = [
        CrashArtifact(fuzzer_name="png", crash_id="1", path="/ws/crash-1", size=10),
        CrashArtifact(fuzzer_name="png", crash_id="2", path="/ws/crash-2"),
    ]
    JsonReporter().report_crashes(crashes, out)
    data = json.loads(out.read_text())
    assert [c["crash_id"] for c in data] == ["1", "2"]
    assert data[0]["size"] == 10
    assert data[1]["created_at"] is None


def test_json_reporter_format_name() -> None:
    assert JsonReporter.format_name == "json"
