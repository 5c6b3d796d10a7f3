"""Severity classification of difference magnitudes."""
from __future__ import annotations

import math
from typing import Dict, Optional, Tuple

from comparison.models import Severity

SEVERITY_ORDER: Tuple[Severity, ...] = ("info", "minor", "major", "critical")

# (critical, major, minor) cut points per difference type
SEVERITY_THRESHOLDS: Dict[str, Tuple[float, float, float]] = {
    "text": (0.8, 0.4, 0.1),
    "image": (0.7, 0.3, 0.1),
    "font": (0.9, 0.5, 0.2),
    "style": (0.9, 0.6, 0.3),
    "metadata": (0.9, 0.7, 0.4),
}
DEFAULT_THRESHOLDS: Tuple[float, float, float] = (0.8, 0.5, 0.2)


def classify_severity(diff_type: str, magnitude: Optional[float]) -> Severity:
    """
    Map a magnitude in [0, 1] to a severity level using the per-type table.

    Unknown types use DEFAULT_THRESHOLDS. A missing or non-finite magnitude is
    treated as the maximum so that it never hides a difference.
    """
    if magnitude is None or not math.isfinite(magnitude):
        magnitude = 1.0
    magnitude = max(0.0, min(1.0, magnitude))

    critical, major, minor = SEVERITY_THRESHOLDS.get(diff_type, DEFAULT_THRESHOLDS)
    if magnitude >= critical:
        return "critical"
    if magnitude >= major:
        return "major"
    if magnitude >= minor:
        return "minor"
    return "info"


def severity_rank(severity: str) -> int:
    """Position of a severity in SEVERITY_ORDER (info=0 ... critical=3)."""
    return SEVERITY_ORDER.index(severity)
