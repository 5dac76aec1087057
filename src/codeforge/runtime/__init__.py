"""Container runtime adapters and process streaming."""

from codeforge.runtime.docker import DockerRuntime, generate_container_name, image_name_for_workspace
from codeforge.runtime.process import (
    OutputChunk,
    ProcessExit,
    ProcessOutput,
    RunOptions,
    SubprocessContainerProcess,
    collect_output,
)

__all__ = [
    "DockerRuntime",
    "OutputChunk",
    "ProcessExit",
    "ProcessOutput",
    "RunOptions",
    "SubprocessContainerProcess",
    "collect_output",
    "generate_container_name",
    "image_name_for_workspace",
]
