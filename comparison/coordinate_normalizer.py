"""Display-space placement of differences, with defaults and a repair pass."""
from __future__ import annotations

import math
from typing import Dict, Iterable, List, Tuple

from comparison.models import Difference, PageDetails
from utils.coordinates import MIN_VISIBLE_SIZE, Rect, clamp_rect_to_page, is_valid_rect
from utils.logging import logger

# Fallback page size (US Letter, points) when a page reports no dimensions
DEFAULT_PAGE_SIZE: Tuple[float, float] = (612.0, 792.0)

# (x, y, width, height) as fractions of the page size
DEFAULT_PLACEMENTS: Dict[str, Tuple[float, float, float, float]] = {
    "text": (0.1, 0.3, 0.8, 0.05),
    "style": (0.1, 0.3, 0.8, 0.05),
    "image": (0.2, 0.4, 0.6, 0.25),
    "font": (0.1, 0.1, 0.8, 0.03),
}
FALLBACK_PLACEMENT: Tuple[float, float, float, float] = (0.1, 0.2, 0.8, 0.04)


def _page_size(page_width: float, page_height: float) -> Tuple[float, float]:
    if not page_width or not page_height or page_width <= 0 or page_height <= 0:
        return DEFAULT_PAGE_SIZE
    return page_width, page_height


def default_rect(diff_type: str, page_width: float, page_height: float) -> Rect:
    """Type-specific placeholder location for a difference without coordinates."""
    page_width, page_height = _page_size(page_width, page_height)
    fx, fy, fw, fh = DEFAULT_PLACEMENTS.get(diff_type, FALLBACK_PLACEMENT)
    return Rect(
        x=fx * page_width,
        y=fy * page_height,
        width=max(fw * page_width, MIN_VISIBLE_SIZE),
        height=max(fh * page_height, MIN_VISIBLE_SIZE),
    )


def place_difference(diff: Difference, page_width: float, page_height: float) -> Difference:
    """Give ``diff`` a valid display position from its own location or a default."""
    page_width, page_height = _page_size(page_width, page_height)
    rect = diff.reported_rect()
    if is_valid_rect(rect):
        diff.set_position(clamp_rect_to_page(rect, page_width, page_height))
    else:
        diff.set_position(default_rect(diff.type, page_width, page_height))
    return diff


def place_differences(diffs: Iterable[Difference], page_width: float, page_height: float) -> List[Difference]:
    return [place_difference(diff, page_width, page_height) for diff in diffs]


def has_valid_position(diff: Difference) -> bool:
    return is_valid_rect(diff.position)


def find_invalid_differences(pages: Iterable[PageDetails]) -> List[Tuple[PageDetails, Difference]]:
    """Differences whose position or bounds are missing, degenerate or NaN."""
    invalid: List[Tuple[PageDetails, Difference]] = []
    for page in pages:
        for diff in page.unique_differences():
            if not has_valid_position(diff):
                invalid.append((page, diff))
    return invalid


def repair_differences(pages: Iterable[PageDetails]) -> int:
    """
    Single-threaded repair pass run after all page tasks have joined.

    Partial positions are kept where finite, clamped to the page and grown to
    the minimum visible size; anything else gets the type default.

    Returns:
        Number of differences repaired
    """
    repaired = 0
    for page, diff in find_invalid_differences(pages):
        page_width, page_height = _page_size(*page.page_size())
        values = (diff.x, diff.y, diff.width, diff.height)
        if all(v is not None and math.isfinite(v) for v in values):
            rect = Rect(x=diff.x, y=diff.y, width=abs(diff.width), height=abs(diff.height))
            diff.set_position(clamp_rect_to_page(rect, page_width, page_height))
        else:
            place_difference(diff, page_width, page_height)
        repaired += 1

    if repaired:
        logger.warning("Repaired coordinates of %d differences", repaired)
    return repaired
