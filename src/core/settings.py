"""
Settings loader for the device panel.

Components read configuration with ``os.getenv(KEY, default)`` at the point of
use. This module makes a ``settings.toml`` file visible through the
environment, the same way CircuitPython exposes ``settings.toml`` to
``os.getenv``. Variables already present in the environment win.
"""

import os
import tomllib

from core.logging_helper import logger

DEFAULT_SETTINGS_FILE = "settings.toml"

DEFAULT_DEVICE_BASE_URL = "http://192.168.0.1"
DEFAULT_WIFI_CONNECT_MAX_POLLS = 25


def load_settings(path: str | None = None) -> dict[str, str]:
    """
    Load a settings.toml file into ``os.environ``.

    Only top-level scalar keys are used. Values are stored as strings so every
    reader treats them the same way regardless of their TOML type.

    Args:
        path: File to load. Defaults to $DEVPANEL_SETTINGS, then ./settings.toml

    Returns:
        dict: The keys that were applied to the environment
    """
    log = logger("devpanel.settings")
    path = path or os.getenv("DEVPANEL_SETTINGS", DEFAULT_SETTINGS_FILE)

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        log.debug(f"No settings file at {path}")
        return {}
    except (OSError, tomllib.TOMLDecodeError) as e:
        log.warning(f"Could not read settings file {path}: {e}")
        return {}

    applied = {}
    for key, value in data.items():
        if isinstance(value, dict | list):
            log.debug(f"Ignoring non-scalar setting '{key}'")
            continue
        if key in os.environ:
            continue
        text = str(value).lower() if isinstance(value, bool) else str(value)
        os.environ[key] = text
        applied[key] = text

    log.info(f"Loaded {len(applied)} setting(s) from {path}")
    return applied


def get_int(key: str, default: int) -> int:
    """Read an integer setting, falling back to ``default`` on bad values."""
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger("devpanel.settings").warning(f"Invalid integer for {key}: {raw!r}, using {default}")
        return default
