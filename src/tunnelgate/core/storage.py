"""Locations and helpers for on-disk files (config, state, logs)."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import tempfile
from typing import Any

logger = logging.getLogger(__name__)

APP_NAME = "tunnelgate"


def _xdg_dir(env_name: str, fallback: str) -> Path:
    raw = os.environ.get(env_name, "").strip()
    base = Path(raw) if raw else Path.home() / fallback
    return base / APP_NAME


def get_config_dir() -> Path:
    return _xdg_dir("XDG_CONFIG_HOME", ".config")


def get_state_dir() -> Path:
    return _xdg_dir("XDG_STATE_HOME", ".local/state")


def get_logs_dir() -> Path:
    return get_state_dir() / "logs"


def ensure_dirs() -> None:
    for path in (get_config_dir(), get_state_dir(), get_logs_dir()):
        path.mkdir(parents=True, exist_ok=True)


def load_json(path: Path, default: Any) -> Any:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except OSError:
        logger.exception("Failed to read %s", path)
        return default

    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON in %s", path)
        return default


def save_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Write to a sibling temp file and rename so readers never see a partial file.
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
