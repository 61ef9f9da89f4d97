"""
Logging Configuration Module

Centralized logging setup for the AgNW synthesis controller. Logs go to stdout
and to a rotating file so long autonomous campaigns leave a trace on disk.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Union


def configure_logging(
    app_name: str = "agnw_lab",
    log_level: Union[int, str] = logging.INFO,
    log_dir: str = "logs",
) -> logging.Logger:
    """
    Configure logging for the application.

    Args:
        app_name: Name of the application (used for log file naming)
        log_level: Logging level, as a number or a level name (default: INFO)
        log_dir: Directory for the rotating log file

    Returns:
        Logger: Configured root logger
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())

    log_path = Path(log_dir)
    log_path.mkdir(exist_ok=True, parents=True)
    log_file = log_path / f"{app_name}.log"

    logger = logging.getLogger()
    logger.setLevel(log_level)

    # Clear any existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # 10 MB per file, 5 backups
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    logger.info(f"Logging configured for {app_name} (level: {logging.getLevelName(log_level)})")
    logger.info(f"Log file: {log_file}")

    return logger
