# localfim/config.py
from __future__ import annotations

import contextlib
import json
import os
import tempfile
import time

APP_DIR = os.path.expanduser("~/.localfim")
CONFIG_PATH = os.path.join(APP_DIR, "config.json")

DEFAULTS = {
    "endpoint": "http://localhost:11434",
    "model": "codellama:7b-code",
    "temperature": 0.1,
    "top_p": 0.3,
    "request_timeout": 300,
    "ollama_binary": "ollama",
    "readiness_marker": "Listening on",
    "probe_timeout": 3,
    "restart_delay": 1.0,
    "max_restarts": None,
    "column_units": "utf-16",
    "fim_template": "<PRE>{prefix} <SUF>{suffix} <MID>",
    "eos_marker": "<EOT>",
    "font_family": "TkFixedFont",
    "font_size": 14,
    "fg": "#141414",
    "bg": "#d8d8d8",
    "pending_fg": "#808080",
    "log_level": "INFO",
}


class ConfigSaveError(Exception):
    """Raised when the configuration cannot be written to disk."""


def _backup_corrupt(path: str) -> None:
    stamp = time.strftime("%Y%m%d-%H%M%S")
    with contextlib.suppress(OSError):
        os.replace(path, f"{path}.corrupt-{stamp}")


def load_config() -> dict:
    deprecated_keys = {"fim_prefix", "fim_suffix", "fim_middle"}
    try:
        os.makedirs(APP_DIR, exist_ok=True)
    except OSError:
        return DEFAULTS.copy()

    if not os.path.exists(CONFIG_PATH):
        with contextlib.suppress(ConfigSaveError):
            save_config(DEFAULTS)
        return DEFAULTS.copy()

    try:
        with open(CONFIG_PATH, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        data = None

    if not isinstance(data, dict):
        _backup_corrupt(CONFIG_PATH)
        with contextlib.suppress(ConfigSaveError):
            save_config(DEFAULTS)
        return DEFAULTS.copy()

    changed = False
    for k in list(data):
        if k in deprecated_keys:
            data.pop(k, None)
            changed = True
    for k, v in DEFAULTS.items():
        if k not in data:
            data[k] = v
            changed = True
    if changed:
        with contextlib.suppress(ConfigSaveError):
            save_config(data)
    return data


def save_config(cfg: dict) -> None:
    os.makedirs(APP_DIR, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix="config.", suffix=".tmp", dir=APP_DIR)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(cfg, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, CONFIG_PATH)
    except Exception as exc:
        with contextlib.suppress(Exception):
            os.unlink(tmp_path)
        raise ConfigSaveError(f"Failed to save config to {CONFIG_PATH}: {exc}") from exc
