"""Docker CLI implementation of the container runtime adapter."""

from __future__ import annotations

import asyncio
import getpass
import logging
import os
import re
from pathlib import Path

from codeforge.core.exceptions import MissingArgument, RuntimeCommandError
from codeforge.runtime.process import ProcessOutput, RunOptions, SubprocessContainerProcess

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Named constants
# ---------------------------------------------------------------------------

#: Default timeout (seconds) for short docker queries (ps, inspect, rm).
QUERY_TIMEOUT = 30

#: Docker names are limited; keep generated ones well below the limit.
MAX_CONTAINER_NAME_LENGTH = 100

#: Dockerfile location relative to the workspace root.
DOCKERFILE_RELPATH = Path(".codeforge") / "Dockerfile"

#: Label keys attached to every container codeforge launches.
WORKSPACE_LABEL = "codeforge.workspace"
CATEGORY_LABEL = "codeforge.category"

_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9._-]", re.IGNORECASE)


def generate_container_name(workspace_path: str | Path) -> str:
    """Derive a docker-safe name from a workspace path.

    ``/home/me/My Project`` becomes ``home_me_my_project``.
    """
    if not workspace_path:
        raise MissingArgument("Workspace path is required to generate a container name")
    name = str(workspace_path).lstrip("/")
    name = re.sub(r"[/\\:]", "_", name)
    name = _INVALID_NAME_CHARS.sub("_", name).lower()
    name = name.lstrip(".-")
    if not name:
        raise MissingArgument(f"Cannot derive a container name from {workspace_path!r}")
    return name[:MAX_CONTAINER_NAME_LENGTH]


def image_name_for_workspace(workspace_path: str | Path) -> str:
    """Image tag used for a workspace when none is configured."""
    return generate_container_name(workspace_path)


class DockerRuntime:
    """Drive the ``docker`` CLI through :mod:`asyncio` subprocesses."""

    def __init__(
        self,
        command: str = "docker",
        shell: str = "/bin/bash",
        additional_run_args: list[str] | None = None,
        image_build_timeout: float = 600.0,
    ) -> None:
        self._command = command
        self._shell = shell
        self._additional_run_args = list(additional_run_args or [])
        self._image_build_timeout = image_build_timeout

    @classmethod
    def from_config(cls, docker: object) -> DockerRuntime:
        """Build from a :class:`DockerConfigModel`-like object."""
        return cls(
            command=getattr(docker, "command"),
            shell=getattr(docker, "shell"),
            additional_run_args=getattr(docker, "additional_run_args"),
            image_build_timeout=getattr(docker, "image_build_timeout"),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _exec(self, *args: str, timeout: float = QUERY_TIMEOUT) -> ProcessOutput:
        """Run ``docker <args>`` to completion; spawn failures and timeouts raise."""
        cmd = [self._command, *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError, OSError) as e:
            raise RuntimeCommandError(cmd, None, str(e)) from e
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise RuntimeCommandError(cmd, None, f"timed out after {timeout:g}s") from None
        return ProcessOutput(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
        )

    async def _check(self, *args: str, timeout: float = QUERY_TIMEOUT) -> ProcessOutput:
        result = await self._exec(*args, timeout=timeout)
        if not result.ok:
            raise RuntimeCommandError([self._command, *args], result.exit_code, result.stderr)
        return result

    # ------------------------------------------------------------------
    # Launching
    # ------------------------------------------------------------------

    def build_run_args(
        self,
        workspace_root: Path,
        image: str,
        command: str | None,
        options: RunOptions,
    ) -> list[str]:
        """Full ``docker run`` argv mounting the workspace at the same path."""
        workspace = str(workspace_root)
        args = [self._command, "run"]
        if options.name:
            args += ["--name", options.name]
        if options.interactive:
            args.append("-i")
        if options.tty:
            args.append("-t")
        if options.remove:
            args.append("--rm")
        args += ["-v", f"{workspace}:{workspace}", "-w", options.working_dir or workspace]
        for key, value in options.labels.items():
            args += ["--label", f"{key}={value}"]
        args += self._additional_run_args
        args += options.extra_args
        args.append(image)
        if command:
            args += [self._shell, "-c", command]
        else:
            args.append(self._shell)
        return args

    async def start(
        self,
        workspace_root: Path,
        image: str,
        command: str | None,
        options: RunOptions,
    ) -> SubprocessContainerProcess:
        args = self.build_run_args(workspace_root, image, command, options)
        log.debug("Starting container: %s", " ".join(args))
        try:
            if options.inherit_stdio:
                proc = await asyncio.create_subprocess_exec(*args)
            else:
                proc = await asyncio.create_subprocess_exec(
                    *args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
        except (FileNotFoundError, PermissionError, OSError) as e:
            raise RuntimeCommandError(args, None, str(e)) from e
        return SubprocessContainerProcess(proc, options.name)

    # ------------------------------------------------------------------
    # Queries and lifecycle
    # ------------------------------------------------------------------

    async def _ps(self, filters: list[str], include_stopped: bool) -> list[str]:
        args = ["ps", "-q", "--no-trunc"]
        if include_stopped:
            args.append("-a")
        for f in filters:
            args += ["--filter", f]
        result = await self._check(*args)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def find_containers(
        self,
        *,
        container_id: str | None = None,
        name: str | None = None,
        include_stopped: bool = False,
    ) -> list[str]:
        found: list[str] = []
        if container_id:
            found += await self._ps([f"id={container_id}"], include_stopped)
        if name:
            for cid in await self._ps([f"name=^/?{re.escape(name)}$"], include_stopped):
                if cid not in found:
                    found.append(cid)
        return found

    async def list_labelled(self, label: str, include_stopped: bool = False) -> list[dict[str, str]]:
        args = ["ps", "--no-trunc", "--filter", f"label={label}", "--format", "{{.ID}}\t{{.Names}}\t{{.Image}}"]
        if include_stopped:
            args.insert(1, "-a")
        result = await self._check(*args)
        containers = []
        for line in result.stdout.splitlines():
            parts = line.strip().split("\t")
            if len(parts) == 3:
                containers.append({"id": parts[0], "name": parts[1], "image": parts[2]})
        return containers

    async def stop_container(self, ref: str, timeout: float) -> None:
        await self._check("stop", "-t", str(int(timeout)), ref, timeout=timeout + 5)

    async def kill_container(self, ref: str) -> None:
        await self._check("kill", ref)

    async def remove_container(self, ref: str) -> None:
        result = await self._exec("rm", "-f", ref)
        if not result.ok and "no such container" not in result.stderr.lower():
            raise RuntimeCommandError([self._command, "rm", "-f", ref], result.exit_code, result.stderr)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def image_exists(self, image: str) -> bool:
        try:
            result = await self._exec("image", "inspect", image)
        except RuntimeCommandError as e:
            log.debug("Image check for %s failed: %s", image, e)
            return False
        return result.ok

    async def build_image(self, workspace_root: Path, image: str) -> None:
        """Build ``image`` from ``.codeforge/Dockerfile`` with the host user's ids."""
        dockerfile = Path(workspace_root) / DOCKERFILE_RELPATH
        if not dockerfile.is_file():
            raise RuntimeCommandError(["docker", "build"], None, f"Dockerfile not found: {dockerfile}")
        uid = os.getuid() if hasattr(os, "getuid") else 1000
        gid = os.getgid() if hasattr(os, "getgid") else 1000
        log.info("Building image %s from %s", image, dockerfile)
        await self._check(
            "build",
            "-t", image,
            "--build-arg", f"USERNAME={getpass.getuser()}",
            "--build-arg", f"USERID={uid}",
            "--build-arg", f"GROUPID={gid}",
            "-f", str(dockerfile),
            str(workspace_root),
            timeout=self._image_build_timeout,
        )

    async def is_available(self) -> bool:
        try:
            result = await self._exec("--version", timeout=10)
        except RuntimeCommandError:
            return False
        return result.ok
