"""Logging setup for the comparison engine."""
from __future__ import annotations

import logging
import sys
from typing import Optional, Union

# Worker threads are named after their batch ("extract_0", "compare_3"), so the thread shows the phase
_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"

# Imaging libraries log per-file chatter at DEBUG
_NOISY_LOGGERS = ("PIL",)


def configure_logging(level: Union[int, str] = logging.INFO, logfile: Optional[str] = None) -> None:
    """Configure the root logger with a stdout handler and, optionally, a log file."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    handlers = [logging.StreamHandler(sys.stdout)]
    if logfile:
        handlers.append(logging.FileHandler(logfile))

    logging.basicConfig(level=level, format=_LOG_FORMAT, handlers=handlers)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))


logger = logging.getLogger("pdfcompare")
