"""Logging utilities for the fx_snapshot package."""

from __future__ import annotations

import logging
from typing import Optional

_LOGGER: Optional[logging.Logger] = None


def get_logger(name: str = "fx_snapshot") -> logging.Logger:
    """Return a module-level logger, configuring the root handler on first use."""
    global _LOGGER
    if _LOGGER is None:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
        _LOGGER = logging.getLogger("fx_snapshot")
    return logging.getLogger(name)


def set_level(level: str | int) -> None:
    """Adjust the package logger level (accepts names such as ``"DEBUG"``)."""

    get_logger().setLevel(level.upper() if isinstance(level, str) else level)
