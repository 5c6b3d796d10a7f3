"""Coordinate transforms between PDF space and display space.

PDF space has its origin in the bottom-left corner with Y increasing upward.
Display space has its origin in the top-left corner with Y increasing downward.
X is shared by both systems.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

MIN_VISIBLE_SIZE = 10.0


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle given by its top-left corner (display space) and size."""

    x: float
    y: float
    width: float
    height: float

    @property
    def left(self) -> float:
        return self.x

    @property
    def top(self) -> float:
        return self.y

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def as_tuple(self) -> Tuple[float, float, float, float]:
        """Return (x0, y0, x1, y1)."""
        return (self.left, self.top, self.right, self.bottom)


def pdf_to_display_point(x: float, y: float, page_height: float) -> Tuple[float, float]:
    """Transform a point from PDF space to display space."""
    return (x, page_height - y)


def display_to_pdf_point(x: float, y: float, page_height: float) -> Tuple[float, float]:
    """Transform a point from display space to PDF space (the flip is its own inverse)."""
    return (x, page_height - y)


def pdf_rect_to_display(
    x: float,
    y: float,
    width: float,
    height: float,
    page_height: float,
) -> Rect:
    """
    Transform a rectangle from PDF space to display space.

    Args:
        x: Left edge in PDF space
        y: Bottom edge in PDF space
        width: Rectangle width
        height: Rectangle height
        page_height: Height of the page the rectangle lives on

    Returns:
        Rect whose (x, y) is the top-left corner in display space
    """
    return Rect(x=x, y=page_height - (y + height), width=width, height=height)


def display_rect_to_pdf(rect: Rect, page_height: float) -> Tuple[float, float, float, float]:
    """Transform a display-space Rect back to PDF space as (x, bottom_y, width, height)."""
    return (rect.x, page_height - (rect.y + rect.height), rect.width, rect.height)


def union_rects(rects: Iterable[Optional[Rect]]) -> Optional[Rect]:
    """Smallest rectangle containing every given rectangle; None if there are none."""
    present = [r for r in rects if r is not None]
    if not present:
        return None
    x0 = min(r.left for r in present)
    y0 = min(r.top for r in present)
    x1 = max(r.right for r in present)
    y1 = max(r.bottom for r in present)
    return Rect(x=x0, y=y0, width=x1 - x0, height=y1 - y0)


def is_valid_rect(rect: Optional[Rect]) -> bool:
    """True when the rectangle is finite and non-degenerate."""
    if rect is None:
        return False
    values = (rect.x, rect.y, rect.width, rect.height)
    if not all(math.isfinite(v) for v in values):
        return False
    return rect.width > 0 and rect.height > 0


def clamp_rect_to_page(
    rect: Rect,
    page_width: float,
    page_height: float,
    min_size: float = MIN_VISIBLE_SIZE,
) -> Rect:
    """Keep a rectangle inside the page and at least ``min_size`` in each dimension."""
    x = max(0.0, min(rect.x, page_width))
    y = max(0.0, min(rect.y, page_height))
    width = min(rect.width, page_width - x)
    height = min(rect.height, page_height - y)

    width = max(width, min_size)
    height = max(height, min_size)
    return Rect(x=x, y=y, width=width, height=height)


def normalize_bbox(
    rect: Rect,
    page_width: float,
    page_height: float,
) -> Dict[str, float]:
    """
    Convert an absolute rectangle to normalized (0-1) range in {x, y, width, height} format.

    Args:
        rect: Rectangle in absolute display-space coordinates
        page_width: Width of the page in absolute units
        page_height: Height of the page in absolute units

    Returns:
        Normalized bounding box as {"x": x, "y": y, "width": w, "height": h} with values in [0.0, 1.0]
    """
    if page_width <= 0 or page_height <= 0:
        raise ValueError("Page dimensions must be positive")

    x = max(0.0, min(1.0, rect.x / page_width))
    y = max(0.0, min(1.0, rect.y / page_height))
    width = max(0.0, min(1.0, rect.width / page_width))
    height = max(0.0, min(1.0, rect.height / page_height))

    # Ensure width and height don't exceed bounds
    if x + width > 1.0:
        width = 1.0 - x
    if y + height > 1.0:
        height = 1.0 - y

    return {"x": x, "y": y, "width": width, "height": height}
