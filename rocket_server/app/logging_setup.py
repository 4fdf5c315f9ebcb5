from __future__ import annotations
import logging
import sys


LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s %(message)s"


def setup_logging(level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger("rocket_server")
    if not logger.handlers:
        h = logging.StreamHandler(sys.stdout)
        h.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(h)
    logger.setLevel(getattr(logging, (level or "INFO").upper(), logging.INFO))
    return logger
