"""Centralized logging configuration module"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .paths import logs_dir, resolve_repo_path

# Whether already initialized
_initialized = False

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(
    level: str = "INFO",
    *,
    log_dir: Optional[Path] = None,
    log_to_file: bool = True,
) -> Optional[Path]:
    """Configure the logging system once per process.

    Returns the log file path when file logging is enabled.
    """
    global _initialized

    if _initialized:
        return None

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [console_handler]

    log_file = None
    if log_to_file:
        target_dir = resolve_repo_path(log_dir) if log_dir else logs_dir()
        target_dir.mkdir(parents=True, exist_ok=True)
        log_file = target_dir / "portfolio_rag.log"
        # max 10MB per file, keep 3 backups
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )

    # Reduce log level for third-party libraries
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('openai').setLevel(logging.WARNING)
    logging.getLogger('redis').setLevel(logging.WARNING)

    _initialized = True
    return log_file
