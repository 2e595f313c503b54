import logging
import os
import sys
from pathlib import Path
from typing import Optional

LOGGER_NAME = "file_server"
LOG_DIR = os.getenv("FILE_SERVER_LOG_DIR", "logs")


def setup_logger(log_dir: Optional[Path] = None):
    logger = logging.getLogger(LOGGER_NAME)

    # Every module calls this; attach handlers only once
    if logger.handlers:
        return logger

    # Create logs directory if it doesn't exist
    log_dir = Path(log_dir or LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.setLevel(logging.DEBUG)

    # Create formatters
    file_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
    )
    console_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    )

    # File handler (for detailed logging)
    file_handler = logging.FileHandler(log_dir / "file_server.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_formatter)

    # Console handler (for basic logging)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(console_formatter)

    # Add handlers to logger
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger
