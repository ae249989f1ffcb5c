"""
Logger factory.

Usage:
    import marktrack.logger
    logger = marktrack.logger.get(__name__)
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
ROOT_NAME = "marktrack"

_configured = False


def _configure() -> None:
    global _configured
    root = logging.getLogger(ROOT_NAME)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    _configured = True


def get(name: str) -> logging.Logger:
    """Return a logger below the package root logger."""
    if not _configured:
        _configure()
    if name != ROOT_NAME and not name.startswith(ROOT_NAME + "."):
        name = f"{ROOT_NAME}.{name}"
    return logging.getLogger(name)


def set_level(level: int | str) -> None:
    """Set the level of every marktrack logger."""
    if not _configured:
        _configure()
    logging.getLogger(ROOT_NAME).setLevel(level)
