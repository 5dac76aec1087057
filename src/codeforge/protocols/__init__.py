"""Protocol interfaces for pluggable components."""

from codeforge.protocols.container_runtime import ContainerProcess, ContainerRuntime
from codeforge.protocols.sink import ProgressCallback, Sink

__all__ = [
    "ContainerProcess",
    "ContainerRuntime",
    "ProgressCallback",
    "Sink",
]
