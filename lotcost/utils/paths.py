"""
Path resolver for lotcost.

Rules
-----
* data_dir → $LOTCOST_DATA_DIR when set, else <project_root>/data;
             fallback ~/.lotcost/data when the project root is read-only
* logs_dir → sibling "logs" directory of data_dir
* db_path  → data_dir/lotcost.db

NEVER use os.getcwd() or relative Path("...") strings in runtime code;
always call one of the functions below.
"""

import os
from pathlib import Path

ENV_DATA_DIR = "LOTCOST_DATA_DIR"


def _get_base_dir() -> Path:
    # lotcost/utils/paths.py -> project root is three levels up
    return Path(__file__).resolve().parent.parent.parent


def _try_writable(path: Path) -> bool:
    """
    Return True if *path* can be created and used as a writable directory.

    Writes a canary file so permission issues are detected up front.
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
        canary = path / ".write_check"
        canary.touch()
        canary.unlink()
        return True
    except (OSError, PermissionError):
        return False


def _home_dir(sub: str) -> Path:
    return Path.home() / ".lotcost" / sub


def get_data_dir() -> Path:
    """
    Data directory.

    Priority:
      1. $LOTCOST_DATA_DIR
      2. <project_root>/data
      3. ~/.lotcost/data
    """
    override = os.environ.get(ENV_DATA_DIR)
    if override:
        path = Path(override).expanduser().resolve()
        path.mkdir(parents=True, exist_ok=True)
        return path

    primary = _get_base_dir() / "data"
    if _try_writable(primary):
        return primary
    fallback = _home_dir("data")
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


def get_logs_dir() -> Path:
    """Logs directory, next to the data directory."""
    logs = get_data_dir().parent / "logs"
    if _try_writable(logs):
        return logs
    fallback = _home_dir("logs")
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


def get_db_path() -> Path:
    """Full path to the SQLite database file."""
    return get_data_dir() / "lotcost.db"


def get_settings_path() -> Path:
    """Full path to settings.json."""
    return get_data_dir() / "settings.json"
