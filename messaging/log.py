"""Process-wide logging setup."""

from __future__ import annotations

import logging

from .config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Configure the root logger once per service process."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)

    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
