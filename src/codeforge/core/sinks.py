"""Built-in :class:`~codeforge.protocols.Sink` implementations."""

from __future__ import annotations

import logging


class LoggingSink:
    """Sink that forwards every line to a logger.

    Used when live container output should land in the workflow log only,
    not on the terminal.
    """

    def __init__(self, logger: logging.Logger | None = None, level: int = logging.INFO) -> None:
        self._logger = logger or logging.getLogger("codeforge.output")
        self._level = level

    def append_line(self, text: str) -> None:
        for line in text.splitlines() or [""]:
            self._logger.log(self._level, "%s", line)

    def reveal(self) -> None:
        pass
