"""Logging helpers for the mail scheduler."""

import logging


def get_logger(name: str = "MailScheduler") -> logging.Logger:
    """Return the named :class:`logging.Logger` used by the engine.

    Note: handlers and levels are configured once via ``logging.basicConfig()``
    in the entry point (main.py) to avoid duplicate handlers.
    """
    return logging.getLogger(name)
