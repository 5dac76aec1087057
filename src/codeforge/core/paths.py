"""Host <-> container path translation.

The workspace is bind-mounted into every container at the same absolute
path, so mapping is mostly normalisation: a Windows drive path such as
``C:\\work\\proj\\crash`` becomes ``/work/proj/crash``.
"""

from __future__ import annotations

import os
import posixpath
import re
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath

from codeforge.core.exceptions import MissingArgument, PathOutsideWorkspace

_DRIVE_RE = re.compile(r"^[A-Za-z]:([\\/]|$)")


def _is_windows_style(path: str) -> bool:
    return bool(_DRIVE_RE.match(path)) or ("\\" in path and "/" not in path)


def _pure(path: str, windows: bool) -> PurePath:
    if windows:
        return PureWindowsPath(path)
    return PurePosixPath(posixpath.normpath(os.path.abspath(path)))


class PathMapper:
    """Translate paths between the host and a container with an identical workspace mount."""

    def host_to_container(self, host_path: str | Path | None, workspace_root: str | Path | None) -> str:
        """Return the container path for ``host_path``.

        Raises:
            MissingArgument: either argument is empty.
            PathOutsideWorkspace: ``host_path`` is not under ``workspace_root``.
        """
        if not host_path or not workspace_root:
            raise MissingArgument("Both host path and workspace root are required")
        host = str(host_path)
        root = str(workspace_root)
        windows = _is_windows_style(root) or _is_windows_style(host)

        pure_root = _pure(root, windows)
        pure_host = _pure(host, windows)
        if not pure_host.is_absolute() and windows:
            pure_host = pure_root / pure_host
        try:
            relative = pure_host.relative_to(pure_root)
        except ValueError:
            raise PathOutsideWorkspace(host, root) from None

        # Drop the drive/anchor and rebuild with forward slashes.
        root_parts = [p for p in pure_root.parts[1:] if p]
        return posixpath.join("/", *root_parts, *relative.parts)

    def container_to_host(self, container_path: str | Path) -> str:
        """Identity: the workspace is mounted at the same path on both sides."""
        if not container_path:
            raise MissingArgument("Container path is required")
        return str(container_path)

    def can_map(self, host_path: str | Path | None, workspace_root: str | Path | None) -> bool:
        """True if :meth:`host_to_container` would succeed."""
        try:
            self.host_to_container(host_path, workspace_root)
        except (MissingArgument, PathOutsideWorkspace):
            return False
        return True
