"""Logging configuration."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
import os

from tunnelgate.core.storage import get_logs_dir

LOG_FILE = "tunnelgate.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str | int | None = None) -> None:
    if level is None:
        level = os.environ.get("TUNNELGATE_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.strip().upper() or "INFO")
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    # stdout belongs to command output; keep the console quiet unless asked.
    stream.setLevel(max(level, logging.WARNING))
    root.addHandler(stream)

    logs_dir = get_logs_dir()
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            logs_dir / LOG_FILE,
            maxBytes=1_000_000,
            backupCount=3,
            encoding="utf-8",
        )
    except OSError:
        root.warning("File logging disabled; cannot write to %s", logs_dir)
        return
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
