"""codeforge: containerised fuzzing orchestration for CMake workspaces."""

__version__ = "0.1.0"
