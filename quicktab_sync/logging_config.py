"""Logging setup for the command-line entry points."""

from __future__ import annotations

import logging
import os
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
LOG_DATEFMT = '%H:%M:%S'


def configure_logging(level: Optional[Union[str, int]] = None) -> None:
    """Configure root logging once; ``QUICKTABS_LOG_LEVEL`` overrides the default."""
    if level is None:
        level = os.getenv("QUICKTABS_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
