"""Pydantic models and data structures for the framework."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ContainerRecord(BaseModel):
    """A container started (or observed) by codeforge."""

    identifier: str
    name: str
    image: str = "unknown"
    workspace_root: str = ""
    created_at: datetime = Field(default_factory=datetime.now)
    category: str = "general"
    metadata: dict[str, Any] = Field(default_factory=dict)


class ContainerFailure(BaseModel):
    """A container that could not be stopped cleanly."""

    identifier: str
    error: str


class TerminationSummary(BaseModel):
    """Result of stopping every tracked container."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[ContainerFailure] = Field(default_factory=list)


class FuzzTargetDescriptor(BaseModel):
    """A fuzz target found in one preset's build tree."""

    model_config = {"frozen": True}

    preset: str
    target: str


class BuildOutcome(BaseModel):
    """Result of building one fuzz target."""

    target: str
    preset: str = ""
    success: bool = False
    executable_path: str | None = None
    error: str = ""
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    hint: str | None = None


class CrashArtifact(BaseModel):
    """A saved input that made a fuzz target fail."""

    model_config = {"frozen": True}

    fuzzer_name: str
    crash_id: str
    path: str
    relative_path: str = ""
    size: int = 0
    created_at: datetime | None = None


class CorpusEntry(BaseModel):
    """One input kept in a fuzzer's corpus directory."""

    model_config = {"frozen": True}

    name: str
    path: str
    size: int = 0
    modified_at: datetime | None = None


class FuzzOutcome(str, Enum):
    """How a fuzzer process ended."""

    CLEAN = "clean"
    CRASHES_FOUND = "crashes_found"
    ENGINE_ERROR = "engine_error"


class FuzzRunResult(BaseModel):
    """Result of running one fuzz target."""

    fuzzer: str
    executable_path: str = ""
    output_dir: str = ""
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    crashes: list[CrashArtifact] = Field(default_factory=list)
    outcome: FuzzOutcome = FuzzOutcome.CLEAN
    executions: int = 0
    execs_per_sec: float = 0.0
    coverage_report: str | None = None


class FuzzerStatus(str, Enum):
    """Lifecycle status of a fuzzer in the metadata cache."""

    DISCOVERED = "discovered"
    BUILDING = "building"
    BUILT = "built"
    RUNNING = "running"
    FAILED = "failed"


class FuzzerMetadata(BaseModel):
    """Cached state of one discovered fuzzer."""

    name: str
    preset: str = ""
    status: FuzzerStatus = FuzzerStatus.DISCOVERED
    crashes: list[CrashArtifact] = Field(default_factory=list)
    output_dir: str = ""
    executable_path: str | None = None
    test_count: int = 0
    last_updated: datetime = Field(default_factory=datetime.now)


class CrashGroup(BaseModel):
    """Crashes found in one fuzzer output directory."""

    fuzzer_name: str
    output_dir: str
    crashes: list[CrashArtifact] = Field(default_factory=list)
    last_scan: datetime = Field(default_factory=datetime.now)


class WorkflowError(BaseModel):
    """A structured error collected during an orchestration run."""

    type: str
    message: str
    preset: str | None = None
    fuzzer: str | None = None
    failed_targets: list[str] = Field(default_factory=list)
    build_errors: list[BuildOutcome] = Field(default_factory=list)


class WorkflowReport(BaseModel):
    """Aggregated result of one orchestration run. Never mutated after construction."""

    model_config = {"frozen": True}

    success: bool = True
    message: str = ""
    presets_total: int = 0
    presets_processed: int = 0
    targets_total: int = 0
    targets_built: int = 0
    fuzzers_run: int = 0
    crashes_found: int = 0
    executables: dict[str, str] = Field(default_factory=dict)
    results: list[FuzzRunResult] = Field(default_factory=list)
    errors: list[WorkflowError] = Field(default_factory=list)


class ValidationResult(BaseModel):
    """Every precondition failure found before launching an analysis session."""

    valid: bool = True
    issues: list[str] = Field(default_factory=list)


class AnalysisResult(BaseModel):
    """Outcome of preparing and launching a gdb session for a crash."""

    success: bool
    error: str | None = None
    fuzzer_executable: str | None = None
    crash_file: str | None = None
    container_crash_path: str | None = None
    gdb_command: list[str] = Field(default_factory=list)
    container_name: str | None = None
