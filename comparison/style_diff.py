"""Run-level style difference detection (font family, size, weight/slant, colour)."""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from comparison.font_diff import normalize_font_name
from comparison.models import StyleDifference
from comparison.severity import classify_severity
from config.settings import settings
from extraction.service import TextRun
from utils.logging import logger
from utils.text_normalization import normalize_text

_STYLE_ATTRIBUTES = 4


def compare_styles(
    base_runs: Sequence[TextRun],
    compare_runs: Sequence[TextRun],
    base_page_height: float,
    compare_page_height: float,
    min_magnitude: Optional[float] = None,
) -> List[StyleDifference]:
    """
    Compare styles of runs whose text is unchanged.

    Runs are paired by equal normalized text, nearest position first. Text
    changes are left to the text differ.

    Returns:
        One StyleDifference per paired run whose style changed
    """
    if min_magnitude is None:
        min_magnitude = settings.style_min_magnitude

    by_text: Dict[str, List[int]] = {}
    for idx, run in enumerate(compare_runs):
        key = normalize_text(run.text)
        if key:
            by_text.setdefault(key, []).append(idx)

    used = set()
    diffs: List[StyleDifference] = []
    for run in base_runs:
        key = normalize_text(run.text)
        candidates = [idx for idx in by_text.get(key, []) if idx not in used]
        if not key or not candidates:
            continue

        base_rect = run.display_rect(base_page_height)
        partner_idx = min(
            candidates,
            key=lambda idx: _center_distance(base_rect, compare_runs[idx].display_rect(compare_page_height)),
        )
        used.add(partner_idx)
        partner = compare_runs[partner_idx]

        changes = _style_changes(run, partner)
        if not changes:
            continue
        magnitude = len(changes) / float(_STYLE_ATTRIBUTES)
        if magnitude < min_magnitude:
            continue

        diffs.append(StyleDifference(
            change_type="modified",
            severity=classify_severity("style", magnitude),
            description=f'Style of "{_shorten(run.text)}" changed: {", ".join(changes)}',
            magnitude=magnitude,
            text=run.text,
            base_style=style_of(run),
            compare_style=style_of(partner),
            base_rect=base_rect,
            compare_rect=partner.display_rect(compare_page_height),
        ))

    logger.debug("Detected %d style differences", len(diffs))
    return diffs


def style_of(run: TextRun) -> dict:
    return {
        "font": run.font_name,
        "fontFamily": normalize_font_name(run.font_name),
        "size": run.font_size,
        "bold": run.bold,
        "italic": run.italic,
        "color": list(run.color) if run.color else None,
    }


def _style_changes(run_a: TextRun, run_b: TextRun) -> List[str]:
    changes: List[str] = []

    family_a = normalize_font_name(run_a.font_name).lower()
    family_b = normalize_font_name(run_b.font_name).lower()
    if family_a != family_b:
        changes.append(f"font {normalize_font_name(run_a.font_name)} -> {normalize_font_name(run_b.font_name)}")

    if run_a.font_size and run_b.font_size:
        if abs(run_a.font_size - run_b.font_size) >= settings.font_size_change_threshold_pt:
            changes.append(f"size {run_a.font_size:g}pt -> {run_b.font_size:g}pt")

    if run_a.bold != run_b.bold or run_a.italic != run_b.italic:
        changes.append(f"{_weight_slant(run_a)} -> {_weight_slant(run_b)}")

    if run_a.color and run_b.color:
        color_diff = sum(abs(a - b) for a, b in zip(run_a.color, run_b.color))
        if color_diff > settings.color_difference_threshold:
            changes.append(f"color {_hex(run_a.color)} -> {_hex(run_b.color)}")

    return changes


def _weight_slant(run: TextRun) -> str:
    weight = "bold" if run.bold else "regular"
    slant = "italic" if run.italic else "normal"
    return f"{weight}/{slant}"


def _hex(color) -> str:
    return "#%02x%02x%02x" % tuple(int(c) for c in color[:3])


def _center_distance(a, b) -> float:
    ax, ay = a.x + a.width / 2, a.y + a.height / 2
    bx, by = b.x + b.width / 2, b.y + b.height / 2
    return (ax - bx) ** 2 + (ay - by) ** 2


def _shorten(text: str, limit: int = 40) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."
