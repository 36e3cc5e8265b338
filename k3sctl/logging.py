"""Logging configuration for the k3sctl package."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import Config


def configure_logging(debug_mode: bool = False, log_file: Optional[str] = None) -> None:
    """
    Configure root logging for a CLI run.

    Args:
        debug_mode: Log at DEBUG instead of the configured level
        log_file: Optional path of a rotating log file (defaults to K3SCTL_LOG_FILE)
    """
    level = logging.DEBUG if debug_mode else getattr(logging, Config.LOG_LEVEL, logging.INFO)
    handlers = [logging.StreamHandler(sys.stderr)]

    log_file = log_file or Config.LOG_FILE
    if log_file:
        path = Path(log_file).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            filename=path,
            maxBytes=Config.LOG_MAX_SIZE_MB * 1024 * 1024,
            backupCount=Config.LOG_BACKUP_COUNT,
        ))

    formatter = logging.Formatter(Config.LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # Disable debug logging for noisy libraries
    if not debug_mode:
        logging.getLogger('paramiko').setLevel(logging.WARNING)
