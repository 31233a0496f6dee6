"""Logging setup shared by the API process and the auction sweeper."""

import logging

import config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = config.LOG_LEVEL) -> logging.Logger:
    """
    Attach a console handler to the root logger.

    Safe to call more than once; a second call only adjusts the level.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())

    if not any(getattr(h, "_auction_console", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._auction_console = True
        root.addHandler(handler)

    return root
