from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import project_path, settings


LOG_FILE_NAME = "pipeline.log"
MAX_TAIL_LINES = 1000
_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Vendor client loggers that are chatty at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore")


def log_file_path() -> Path:
    return project_path(settings.log_dir) / LOG_FILE_NAME


def setup_logging() -> None:
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    log_file = log_file_path()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root_logger.setLevel(level)
    formatter = logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers: list[logging.Handler] = [
        logging.StreamHandler(),
        RotatingFileHandler(
            log_file,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding="utf-8",
        ),
    ]
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def tail_log(lines: int = 200) -> list[str]:
    """Last ``lines`` lines of the current pipeline log (rotated files are not read)."""
    log_file = log_file_path()
    if not log_file.exists():
        return []
    all_lines = log_file.read_text(encoding="utf-8", errors="ignore").splitlines()
    return all_lines[-max(1, min(lines, MAX_TAIL_LINES)) :]
