"""Health checks for Docker, the workspace image, and the CMake project layout."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass

from codeforge.core.config import ConfigManager
from codeforge.runtime.docker import DOCKERFILE_RELPATH, image_name_for_workspace

#: CMake presets file expected at the workspace root.
PRESETS_FILE = "CMakePresets.json"


@dataclass
class HealthCheckResult:
    """Result of a single health check."""

    name: str
    ok: bool
    message: str = ""
    suggestion: str = ""


def _run_cmd(cmd: list[str], timeout: int = 10) -> tuple[bool, str]:
    """Run command, return (success, output_or_error)."""
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        if result.returncode == 0:
            return True, (result.stdout or "").strip()
        return False, (result.stderr or result.stdout or f"exit code {result.returncode}").strip()
    except FileNotFoundError:
        return False, "command not found"
    except subprocess.TimeoutExpired:
        return False, "timeout"
    except OSError as e:
        return False, str(e)


class HealthChecker:
    """Run environment checks before a fuzzing workflow."""

    def __init__(self, config: ConfigManager | None = None) -> None:
        self._config = config or ConfigManager()

    @property
    def image(self) -> str:
        return self._config.config.docker.image or image_name_for_workspace(self._config.workspace_root)

    def check_docker(self) -> HealthCheckResult:
        """Check that the docker CLI exists and the daemon answers."""
        docker = self._config.config.docker.command
        ok, out = _run_cmd([docker, "--version"])
        if not ok:
            return HealthCheckResult(
                name="docker",
                ok=False,
                message=f"{docker} --version failed: {out}",
                suggestion="Install Docker (https://docs.docker.com/get-docker/) or set CODEFORGE_DOCKER_COMMAND.",
            )
        daemon_ok, daemon_out = _run_cmd([docker, "info", "--format", "{{.ServerVersion}}"])
        if not daemon_ok:
            return HealthCheckResult(
                name="docker",
                ok=False,
                message=f"Docker daemon is not reachable: {daemon_out}",
                suggestion="Start the Docker daemon and make sure your user may access it.",
            )
        return HealthCheckResult(name="docker", ok=True, message=f"{out} (server {daemon_out})")

    def check_image(self) -> HealthCheckResult:
        """Check that the workspace image has been built."""
        image = self.image
        ok, _ = _run_cmd([self._config.config.docker.command, "image", "inspect", image])
        if ok:
            return HealthCheckResult(name="image", ok=True, message=f"{image} present")
        return HealthCheckResult(
            name="image",
            ok=False,
            message=f"Image {image} not found.",
            suggestion="It is built from .codeforge/Dockerfile on the first 'codeforge fuzz' run.",
        )

    def check_dockerfile(self) -> HealthCheckResult:
        dockerfile = self._config.workspace_root / DOCKERFILE_RELPATH
        if dockerfile.is_file():
            return HealthCheckResult(name="dockerfile", ok=True, message=str(dockerfile))
        return HealthCheckResult(
            name="dockerfile",
            ok=False,
            message=f"No Dockerfile at {dockerfile}.",
            suggestion="Add .codeforge/Dockerfile with clang and cmake installed.",
        )

    def check_presets(self) -> HealthCheckResult:
        presets = self._config.workspace_root / PRESETS_FILE
        if presets.is_file():
            return HealthCheckResult(name="presets", ok=True, message=str(presets))
        return HealthCheckResult(
            name="presets",
            ok=False,
            message=f"No {PRESETS_FILE} in {self._config.workspace_root}.",
            suggestion="Define configure presets whose builds contain *-fuzz targets.",
        )

    def check_all(self, *, skip_docker: bool = False) -> list[HealthCheckResult]:
        """Run all enabled checks. Image checks need docker and are skipped with it."""
        results: list[HealthCheckResult] = []
        if not skip_docker:
            results.append(self.check_docker())
            results.append(self.check_image())
        results.append(self.check_dockerfile())
        results.append(self.check_presets())
        return results
