"""Entrypoint for the andon board server."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

if __package__ in (None, ""):
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # pragma: no cover

from andon_board import __version__
from andon_board.config import load_settings
from andon_board.logging_utils import configure_logging

logger = logging.getLogger(__name__)


def run_entrypoint() -> None:
    """Configure logging and serve the HTTP app with uvicorn."""
    settings = load_settings()
    configure_logging()
    from andon_board.transport.http_server import create_http_app

    try:
        import uvicorn
    except ImportError as exc:
        raise RuntimeError("uvicorn is required to run the andon board server") from exc

    logger.info("Initializing andon board v%s", __version__)
    logger.info("Log file configured at: %s", settings.logging.file)
    app = create_http_app()
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()
