"""Framework core: config, schema, exceptions, container registry, path mapping."""

from codeforge.core.config import AppConfig, ConfigManager
from codeforge.core.schema import (
    AnalysisResult,
    BuildOutcome,
    ContainerRecord,
    CrashArtifact,
    FuzzerMetadata,
    FuzzerStatus,
    FuzzOutcome,
    FuzzRunResult,
    FuzzTargetDescriptor,
    TerminationSummary,
    ValidationResult,
    WorkflowError,
    WorkflowReport,
)

__all__ = [
    "AnalysisResult",
    "AppConfig",
    "BuildOutcome",
    "ConfigManager",
    "ContainerRecord",
    "CrashArtifact",
    "FuzzerMetadata",
    "FuzzerStatus",
    "FuzzOutcome",
    "FuzzRunResult",
    "FuzzTargetDescriptor",
    "TerminationSummary",
    "ValidationResult",
    "WorkflowError",
    "WorkflowReport",
]
