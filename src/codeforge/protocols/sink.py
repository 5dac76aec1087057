"""Protocol for output surfaces (terminal, log, output panel)."""

from __future__ import annotations

from typing import Callable, Protocol

#: Progress callback: (label, percentage 0-100).
ProgressCallback = Callable[[str, float], None]


class Sink(Protocol):
    """Line-oriented output target for live process output and status messages."""

    def append_line(self, text: str) -> None:
        """Append one line of output."""
        ...

    def reveal(self) -> None:
        """Bring the surface to the user's attention. May be a no-op."""
        ...
