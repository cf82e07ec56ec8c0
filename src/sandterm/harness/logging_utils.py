"""Logging helpers for the console host and its sandbox worker.

Both processes log under the ``sandterm`` logger tree. The host logs to
stderr or a file; the worker always logs to its real stderr, which the host
drains and keeps a tail of for channel-fault reports.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TextIO

HOST_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
WORKER_LOG_FORMAT = "%(asctime)s %(levelname)s worker[%(process)d] %(name)s: %(message)s"
LOG_LEVEL_ENV = "SANDTERM_LOG_LEVEL"
WORKER_DEFAULT_LEVEL = "WARNING"


def resolve_level(level_name: str) -> int:
    level = logging.getLevelName(level_name.upper())
    if isinstance(level, str):
        raise ValueError(f"Invalid log level: {level_name}")
    return level


def _install(handler: logging.Handler, level: int, fmt: str) -> None:
    handler.setFormatter(logging.Formatter(fmt))
    logging.getLogger().setLevel(logging.WARNING)

    logger = logging.getLogger("sandterm")
    logger.setLevel(level)
    logger.propagate = False
    logger.handlers = [handler]


def configure_logging(log_level: str | None = None, log_file: str | None = None) -> None:
    """Configure host logging from flags or ``SANDTERM_LOG_LEVEL``.

    Nothing is configured unless a level or file is given. An explicit level
    is exported through the environment so sandbox workers spawned later log
    at the same level.
    """
    level_name = log_level or os.getenv(LOG_LEVEL_ENV) or ""
    if not level_name and not log_file:
        return
    level = resolve_level(level_name or WORKER_DEFAULT_LEVEL)
    if log_level:
        os.environ[LOG_LEVEL_ENV] = log_level

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(path)
    else:
        handler = logging.StreamHandler()
    _install(handler, level, HOST_LOG_FORMAT)


def configure_worker_logging(stderr: TextIO) -> None:
    """Bind worker logging to ``stderr`` before user code can replace it.

    The handler holds the stream it was given, so records keep reaching the
    host after ``sys.stderr`` is swapped for a sink stream.
    """
    level = resolve_level(os.getenv(LOG_LEVEL_ENV) or WORKER_DEFAULT_LEVEL)
    _install(logging.StreamHandler(stderr), level, WORKER_LOG_FORMAT)


def abbreviate(text: str | None, limit: int = 200) -> str:
    """Return a single-line, truncated preview string."""
    if text is None:
        return ""
    flattened = text.replace("\n", "\\n")
    if len(flattened) <= limit:
        return flattened
    return f"{flattened[:limit]}..."
