from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
import os


ROOT_LOGGER = "buildgraph"
_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
_configured = False


def _ensure_base_logger() -> None:
    global _configured
    if _configured:
        return
    level = os.getenv("BUILD_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=_FORMAT)
    _configured = True


def configure(level: str | None = None, log_file: Path | None = None) -> logging.Logger:
    """Set the level of every ``buildgraph.*`` logger and optionally tee to a file."""
    _ensure_base_logger()
    root = logging.getLogger(ROOT_LOGGER)
    if level:
        root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # One rotating file per path, however often the CLI is re-entered.
    if log_file and not any(
        isinstance(h, RotatingFileHandler) and Path(h.baseFilename) == log_file.resolve()
        for h in root.handlers
    ):
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=3)
        handler.setFormatter(logging.Formatter(_FORMAT))
        root.addHandler(handler)
    return root


def get_logger(name: str) -> logging.Logger:
    _ensure_base_logger()
    return logging.getLogger(name)
