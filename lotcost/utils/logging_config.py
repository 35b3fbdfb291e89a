"""
Logging setup for lotcost processes.

Library modules only call ``logging.getLogger(__name__)``; an application
calls setup_logging() once so that records from every ``lotcost.*`` module
end up in a rotating log file under the data directory.
"""
import logging
import logging.handlers
from pathlib import Path
from datetime import datetime
from typing import Optional, Union

LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3
LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'


def setup_logging(
    log_dir: Optional[Union[str, Path]] = None,
    app_name: str = "lotcost",
    file_level: int = logging.WARNING,
) -> logging.Logger:
    """
    Attach file and console handlers to the *app_name* logger (once).

    Args:
        log_dir: Directory for log files (created if missing); default is
            utils.paths.get_logs_dir()
        app_name: Logger to configure; also the log file prefix
        file_level: Lowest level written to the file (cold-cache adjusts and
            worker fallbacks are WARNING, cascade failures ERROR)

    Returns:
        The configured logger (unchanged if it already has handlers)
    """
    if log_dir is None:
        from .paths import get_logs_dir  # noqa: PLC0415
        log_path = get_logs_dir()
    else:
        log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(app_name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG)

    file_handler = logging.handlers.RotatingFileHandler(
        log_path / f"{app_name}_{datetime.now().strftime('%Y%m%d')}.log",
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUP_COUNT,
        encoding='utf-8',
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    logger.addHandler(file_handler)

    # Console only for failures an operator must act on
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.CRITICAL)
    console_handler.setFormatter(logging.Formatter('CRITICAL: %(message)s'))
    logger.addHandler(console_handler)

    return logger
