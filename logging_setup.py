"""Logging configuration for the engine and its callers."""

from __future__ import annotations

import logging
from typing import Optional

from utils import env_flag


def configure_logging(level: Optional[int] = None) -> logging.Logger:
    if level is None:
        level = logging.DEBUG if env_flag("TEMPOPITCH_DEBUG") else logging.INFO
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )
    root.addHandler(console_handler)
    logging.captureWarnings(True)
    return root
