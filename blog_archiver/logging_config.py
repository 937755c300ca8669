"""Logging setup for blog_archiver.

Logs go to stderr so the STDIO transport's stdout stays reserved for protocol
traffic.
"""

import logging
import sys
from typing import Optional

from blog_archiver.config import ServerConfig, get_config

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

logger = logging.getLogger("blog_archiver")

_configured = False


def setup_logging(config: Optional[ServerConfig] = None) -> None:
    """Configure the package logger once. Later calls only adjust the level."""
    global _configured

    if config is None:
        config = get_config()

    level = getattr(logging, config.log_level, logging.INFO)
    logger.setLevel(level)

    if _configured:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    _configured = True
