"""
Logging for the qa_manager backend.

Everything logs under the "qa" namespace through get_logger(__name__).
Handlers are attached once, on first use:

- console at QA_LOG_LEVEL (default INFO)
- rotating file at DEBUG in QA_LOG_FILE (default qa_manager.log); an empty
  value turns the file log off
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

ROOT_NAME = "qa"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """Attach the console/file handlers to the "qa" logger (idempotent)."""
    global _configured
    root = logging.getLogger(ROOT_NAME)
    if _configured:
        return root

    level_name = (level or os.environ.get("QA_LOG_LEVEL", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    root.setLevel(logging.DEBUG)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(formatter)
    root.addHandler(console)

    path = log_file if log_file is not None else os.environ.get("QA_LOG_FILE", "qa_manager.log")
    if path:
        try:
            file_handler = RotatingFileHandler(path, maxBytes=2 * 1024 * 1024, backupCount=3, encoding="utf-8")
        except OSError:
            root.warning("Could not open log file %s, logging to console only", path, exc_info=True)
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    _configured = True
    return root


def get_logger(name: str = ROOT_NAME) -> logging.Logger:
    configure_logging()
    if name == ROOT_NAME or name.startswith(ROOT_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_NAME}.{name}")
