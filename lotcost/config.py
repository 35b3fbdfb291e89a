"""
Project configuration and constants.

Defaults live here; any key present in <data_dir>/settings.json overrides
the matching default at import time (see load_settings()).
"""
from pathlib import Path
import json
import logging
from typing import Any, Dict

from .utils.paths import get_data_dir, get_db_path, get_settings_path

logger = logging.getLogger(__name__)

DATA_DIR: Path = get_data_dir()
DATABASE_PATH: Path = get_db_path()
SETTINGS_FILE: Path = get_settings_path()

# Pricing
DEFAULT_PRICE_CACHE_CAPACITY = 200

# Valuation worker (seconds before falling back to last-known value)
DEFAULT_VALUATION_TIMEOUT_SECONDS = 10.0

# Sale integrity: max allowed difference between client total and computed total
DEFAULT_TOTAL_DRIFT_TOLERANCE = 0.05

# Quantities below this are treated as fully consumed
FLOAT_EPSILON = 1e-4

DEFAULTS: Dict[str, Any] = {
    "price_cache_capacity": DEFAULT_PRICE_CACHE_CAPACITY,
    "valuation_timeout_seconds": DEFAULT_VALUATION_TIMEOUT_SECONDS,
    "total_drift_tolerance": DEFAULT_TOTAL_DRIFT_TOLERANCE,
}


def load_settings(settings_file: Path = None) -> Dict[str, Any]:
    """
    Load settings.json merged over DEFAULTS.

    Args:
        settings_file: Path to settings file (default: SETTINGS_FILE)

    Returns:
        Settings dict (unknown keys are kept, malformed files are ignored)
    """
    path = settings_file or SETTINGS_FILE
    settings = dict(DEFAULTS)

    if path.exists():
        try:
            with open(path, 'r', encoding='utf-8') as f:
                stored = json.load(f)
            if isinstance(stored, dict):
                settings.update(stored)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Ignoring unreadable settings file {path}: {e}")

    return settings


def save_settings(updates: Dict[str, Any], settings_file: Path = None) -> bool:
    """
    Merge *updates* into settings.json.

    Returns:
        True if successful, False otherwise
    """
    path = settings_file or SETTINGS_FILE
    settings = {}
    if path.exists():
        try:
            with open(path, 'r', encoding='utf-8') as f:
                settings = json.load(f)
        except (json.JSONDecodeError, IOError):
            pass  # Start with empty settings

    settings.update(updates)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(settings, f, indent=2)
        return True
    except IOError as e:
        logger.error(f"Could not write settings file {path}: {e}")
        return False


def get_setting(key: str, default: Any = None) -> Any:
    """Read a single setting (settings.json value, else built-in default)."""
    return load_settings().get(key, default)


_settings = load_settings()

PRICE_CACHE_CAPACITY: int = int(_settings["price_cache_capacity"])
VALUATION_TIMEOUT_SECONDS: float = float(_settings["valuation_timeout_seconds"])
TOTAL_DRIFT_TOLERANCE: float = float(_settings["total_drift_tolerance"])
