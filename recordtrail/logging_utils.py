from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import Optional

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATEFMT = "%Y-%m-%dT%H:%M:%S"

_logging_configured = False
_logging_lock = threading.Lock()

_logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Configure process logging once for a command-line entry point."""
    global _logging_configured

    from .settings import settings

    level_name = (level or settings.logging.get("level") or "INFO").upper()
    log_file = log_file if log_file is not None else settings.logging.get("file")

    handlers: list[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
    handlers.append(stream_handler)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
            handlers.append(file_handler)
        except OSError as exc:
            _logger.warning("Failed to open log file %s: %s", log_file, exc)

    with _logging_lock:
        logging.basicConfig(level=getattr(logging, level_name, logging.INFO), handlers=handlers, force=True)
        _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    # Library modules only fetch loggers; entry points call configure_logging()
    return logging.getLogger(name)
