"""Logging setup for the quillchat command line tools."""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["LOG_FILE_NAME", "setup_logging"]

LOG_FILE_NAME = "quillchat.log"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_QUIET_LOGGERS = ("asyncio", "tenacity")


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    force: bool = False,
) -> Path:
    """Send records to ``quillchat.log`` (rotated at 1 MB) and, optionally, stderr.

    The directory defaults to ``$QUILLCHAT_LOG_DIR`` or ``~/.quillchat/logs``. Once
    a log file is installed on the root logger, later calls return its path unless
    ``force`` is set.
    """

    installed = _installed_log_file()
    if installed is not None and not force:
        return installed

    directory = Path(log_dir or os.environ.get("QUILLCHAT_LOG_DIR") or Path.home() / ".quillchat" / "logs")
    directory = directory.expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / LOG_FILE_NAME

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(path, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    for handler in handlers:
        handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return path


def _installed_log_file() -> Path | None:
    for handler in logging.getLogger().handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler) and handler.baseFilename.endswith(LOG_FILE_NAME):
            return Path(handler.baseFilename)
    return None
