"""Per-run log file for the fuzzing workflow."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

LOGGER_NAME = "codeforge"

#: Default log file name, created inside the fuzzing directory.
DEFAULT_LOG_NAME = "codeforge-fuzz.log"


def get_logger() -> logging.Logger:
    """Return the package root logger."""
    return logging.getLogger(LOGGER_NAME)


@contextmanager
def fuzz_log_context(
    log_file: Path,
    verbose: bool = False,
) -> Generator[logging.Logger, None, None]:
    """
    Attach a file handler to the codeforge logger for the duration of the context.
    Log file is UTF-8; format: timestamp [LEVEL] logger: message.
    """
    logger = get_logger()
    level = logging.DEBUG if verbose else logging.INFO
    previous_level = logger.level
    if logger.level == logging.NOTSET or logger.level > level:
        logger.setLevel(level)

    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setLevel(level)
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    try:
        yield logger
    finally:
        logger.removeHandler(handler)
        handler.close()
        logger.setLevel(previous_level)
