"""Logging helpers for the message gateway."""

import logging


def get_logger(name: str = "MessageGateway") -> logging.Logger:
    """Return a :class:`logging.Logger` bound to ``name``.

    Note: logging configuration is done once via logging.basicConfig()
    in the main entry point (main.py) to avoid duplicate handlers.
    """
    return logging.getLogger(name)
