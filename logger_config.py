"""Centralized logging configuration for MedLove Reminder Service.

Every service (API, MCP, worker) logs to its own rotating file under
LOG_DIR and to the console with the same format. The shared core modules
use plain module loggers; each service routes them into its own file with
setup_core_loggers().
"""

import logging
from logging.handlers import RotatingFileHandler
import os

from config import settings

LOG_DIR = settings.LOG_DIR
if not os.path.isabs(LOG_DIR):
    LOG_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), LOG_DIR)
os.makedirs(LOG_DIR, exist_ok=True)

LOG_FORMAT = '[%(asctime)s] %(levelname)s %(name)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logger(name: str, log_file: str = 'service.log') -> logging.Logger:
    """Setup logger with a rotating file handler and console output.

    Args:
        name: Logger name (usually __name__)
        log_file: Log file name (e.g., 'worker.log', 'api.log')

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    # File handler - 10MB max, keep 5 backups
    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, log_file),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


# Shared core modules log through whichever service imports them
CORE_LOGGERS = ('scheduler', 'notifier', 'store', 'streaks', 'events', 'ledger')


def setup_core_loggers(log_file: str = 'service.log', names=CORE_LOGGERS) -> None:
    """Send the shared core modules' logs to the calling service's file."""
    for name in names:
        setup_logger(name, log_file)


def configure_root_logger():
    """Reduce third-party library noise."""
    for noisy in ('uvicorn', 'uvicorn.access', 'fastapi', 'sqlalchemy', 'httpx', 'httpcore', 'mcp'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# Auto-configure on import
configure_root_logger()
