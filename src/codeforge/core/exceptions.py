"""Custom exception hierarchy for codeforge."""

from __future__ import annotations


class CodeForgeError(Exception):
    """Base exception for codeforge."""

    pass


class ConfigError(CodeForgeError):
    """Raised when configuration loading or validation fails."""

    pass


class MissingArgument(CodeForgeError, ValueError):
    """Raised when a required argument is empty or absent."""

    pass


class PathOutsideWorkspace(CodeForgeError, ValueError):
    """Raised when a host path is not nested under the workspace root."""

    def __init__(self, path: str, workspace_root: str) -> None:
        super().__init__(f"Path {path} is not inside workspace {workspace_root}")
        self.path = path
        self.workspace_root = workspace_root


class RuntimeCommandError(CodeForgeError):
    """Raised when a container runtime command exits non-zero or cannot be spawned."""

    def __init__(self, command: list[str] | str, exit_code: int | None = None, stderr: str = "") -> None:
        cmd = command if isinstance(command, str) else " ".join(command)
        detail = stderr.strip() or (f"exit code {exit_code}" if exit_code is not None else "failed to start")
        super().__init__(f"{cmd}: {detail}")
        self.command = cmd
        self.exit_code = exit_code
        self.stderr = stderr


class ProcessTimeout(CodeForgeError):
    """Raised when a container process exceeds its timeout and was killed."""

    def __init__(self, timeout: float, name: str | None = None) -> None:
        label = f"Container {name}" if name else "Process"
        super().__init__(f"{label} timed out after {timeout:g} seconds")
        self.timeout = timeout
        self.name = name


class DiscoveryError(CodeForgeError):
    """Raised when preset or target discovery fails."""

    pass


class PresetDiscoveryError(DiscoveryError):
    """Raised when the preset listing cannot be obtained or parsed."""

    pass


class NoPresetsFound(DiscoveryError):
    """Raised when the workspace defines no CMake presets."""

    def __init__(self) -> None:
        super().__init__("No CMake presets found. Make sure CMakePresets.json exists and defines presets.")


class FuzzingDirectoryMissing(CodeForgeError):
    """Raised when the central fuzzing output directory does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Fuzzing directory not found: {path}")
        self.path = path


class FuzzerNotFound(CodeForgeError):
    """Raised when no executable matches any fuzzer naming candidate."""

    def __init__(self, name: str, attempted: list[str]) -> None:
        super().__init__(f"Fuzzer executable not found for: {name}. Searched paths: {', '.join(attempted)}")
        self.name = name
        self.attempted = attempted


class CrashDiscoveryError(CodeForgeError):
    """Raised when scanning fuzzer output directories for crashes fails."""

    pass


class BacktraceError(CodeForgeError):
    """Raised when a backtrace cannot be generated."""

    pass


class InvalidFuzzerName(CodeForgeError, ValueError):
    """Raised when a fuzzer name contains disallowed characters or path traversal."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(reason)
        self.name = name
        self.reason = reason
