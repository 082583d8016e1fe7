"""
Logging setup - rotating file log plus console, noisy libraries quieted
"""
import logging
from logging.handlers import RotatingFileHandler
import os

from .config import settings

NOISY_LOGGERS = (
    "sqlalchemy",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "httpx",
    "httpcore",
    "apscheduler",
    "PIL",
)


def setup_logging(log_name: str = "canteen.log", level: str = None) -> None:
    """Configure the root logger (50MB per file, keep 7 files)"""
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    os.makedirs(settings.LOGS_PATH, exist_ok=True)
    file_handler = RotatingFileHandler(
        os.path.join(settings.LOGS_PATH, log_name),
        maxBytes=50 * 1024 * 1024,
        backupCount=7,
        encoding="utf-8",
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    ))

    # Disable noisy loggers BEFORE basicConfig
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.basicConfig(level=log_level, handlers=[file_handler, console_handler], force=True)
