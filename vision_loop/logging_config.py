from __future__ import annotations

import logging

from vision_loop.config import LoggingSettings

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
NOISY_LOGGERS = ("httpx", "httpcore")


def configure_logging(settings: LoggingSettings) -> None:
    """Configure process-wide logging once at startup."""

    level = getattr(logging, settings.level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=DEFAULT_LOG_FORMAT,
        force=True,
    )
    # httpx logs one INFO line per request.
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
