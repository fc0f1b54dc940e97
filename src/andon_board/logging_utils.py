"""Process-wide logging setup for the andon board."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from andon_board.config import LoggingSettings, load_settings

_logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# httpx logs every request line at INFO, signed CMMS URLs included.
QUIET_LOGGERS = ("httpx", "httpcore")


def _handlers(settings: LoggingSettings) -> list[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [stream_handler]

    if not settings.file:
        return handlers
    try:
        Path(settings.file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(settings.file)
    except OSError as exc:
        _logger.warning("Failed to open log file %s: %s", settings.file, exc)
        return handlers
    file_handler.setFormatter(formatter)
    handlers.append(file_handler)
    return handlers


def configure_logging() -> None:
    """Route root, uvicorn and library logs through one stderr/file setup."""
    settings = load_settings().logging
    level = getattr(logging, settings.level.upper(), logging.INFO)

    logging.basicConfig(level=level, handlers=_handlers(settings), force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
