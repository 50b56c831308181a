"""Logger factory for the gridfill package.

All modules call ``get_logger(__name__)``.  A single stream handler is
attached to the ``gridfill`` root logger the first time a logger is
requested, so library users who configure logging themselves can still
override levels and handlers.
"""

from __future__ import annotations

import logging

ROOT_LOGGER_NAME = "gridfill"
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_configured = False


def _ensure_root_handler() -> None:
    global _configured
    if _configured:
        return
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``gridfill`` namespace."""
    _ensure_root_handler()
    return logging.getLogger(name)


def configure_logging(level: str | int = "INFO") -> None:
    """Set the level of the ``gridfill`` root logger.

    Args:
        level: Level name (``"DEBUG"``, ``"INFO"`` ...) or numeric level.
    """
    _ensure_root_handler()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(level)
