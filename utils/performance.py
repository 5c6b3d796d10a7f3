"""Phase timings for comparisons and the per-page performance target."""
from __future__ import annotations

import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Deque, Generator, List, Optional

from config.settings import settings
from utils.logging import logger

# Long-running services keep only the most recent phases
_MAX_TIMINGS = 1000


@dataclass
class Timing:
    name: str
    duration: float = 0.0
    metadata: dict = field(default_factory=dict)


_timings: Deque[Timing] = deque(maxlen=_MAX_TIMINGS)
_timings_lock = threading.Lock()


@contextmanager
def track_time(name: str, **metadata) -> Generator[Timing, None, None]:
    """Measure the enclosed block and record it under ``name``; safe to use from worker threads."""
    timing = Timing(name=name, metadata=metadata)
    start = time.perf_counter()
    try:
        yield timing
    finally:
        timing.duration = time.perf_counter() - start
        with _timings_lock:
            _timings.append(timing)
        logger.debug("Timing: %s took %.3f seconds", name, timing.duration)


def get_timings(name: Optional[str] = None) -> List[Timing]:
    """Recorded timings, oldest first, optionally only those called ``name``."""
    with _timings_lock:
        timings = list(_timings)
    if name is not None:
        timings = [t for t in timings if t.name == name]
    return timings


def clear_timings() -> None:
    with _timings_lock:
        _timings.clear()


def check_performance_target(page_count: int, total_time: float) -> bool:
    """True when the comparison stayed under ``seconds_per_page_target`` per page."""
    if page_count <= 0:
        return True

    per_page = total_time / page_count
    target = settings.seconds_per_page_target
    if per_page < target:
        logger.info("Performance target met: %.2fs per page (target: %.2fs)", per_page, target)
        return True
    logger.warning("Performance target not met: %.2fs per page (target: %.2fs)", per_page, target)
    return False
