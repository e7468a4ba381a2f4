"""Server settings: JSON file in the data directory, overridden by environment."""

from __future__ import annotations

from typing import Any

import json
import os
import pathlib


APP_DIR = pathlib.Path(__file__).parent
DATA_DIR = pathlib.Path(os.environ.get("DATA_DIR") or APP_DIR / ".data")
SERVER_SETTINGS_FILE = DATA_DIR / "server_settings.json"

# env var -> (settings key, type)
_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "PORT": ("port", int),
    "BASE_URL": ("base_url", str),
    "STREAM_DIR": ("stream_dir", str),
    "STARTUP_TIMEOUT_SECS": ("startup_timeout_secs", float),
    "IDLE_TIMEOUT_SECS": ("idle_timeout_secs", float),
}

DEFAULTS: dict[str, Any] = {
    "port": 3000,
    "base_url": "",
    "stream_dir": "",
}


def _read_file() -> dict[str, Any]:
    if SERVER_SETTINGS_FILE.exists():
        return json.loads(SERVER_SETTINGS_FILE.read_text())
    return {}


def load_settings() -> dict[str, Any]:
    """Get merged settings (defaults < file < environment)."""
    settings = {**DEFAULTS, **_read_file()}
    for env_name, (key, cast) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            settings[key] = cast(value)
    return settings


def update_settings(**values: Any) -> None:
    """Persist keys into the settings file, leaving other keys untouched."""
    settings = _read_file()
    settings.update(values)
    SERVER_SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
    SERVER_SETTINGS_FILE.write_text(json.dumps(settings, indent=2))
