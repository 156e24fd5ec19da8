"""Root logger setup for billing commands.

Every command logs to stdout and to settings.log_file at settings.log_level.
The file is an operator-readable trail of imports and penalty runs; the
authoritative trail is the audit_logs table.
"""

import logging
import sys
from pathlib import Path

from sntbilling.services.config import BillingSettings, get_settings

LOG_FORMAT = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_log_level(level_name: str | None) -> int:
    """Logging constant for a level name such as "warning"; INFO if unknown."""
    level = logging.getLevelName((level_name or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(settings: BillingSettings | None = None) -> Path:
    """Replace root logger handlers with stdout + file handlers.

    Args:
        settings: Source of log_file and log_level; process settings if None

    Returns:
        Path of the log file
    """
    settings = settings or get_settings()
    level = get_log_level(settings.log_level)
    log_path = Path(settings.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    for handler in (logging.StreamHandler(sys.stdout), logging.FileHandler(log_path)):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    return log_path


__all__ = ["get_log_level", "setup_logging"]
