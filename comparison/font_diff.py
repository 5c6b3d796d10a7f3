"""Font inventory comparison between two pages."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from comparison.models import FontDifference, FontInfo
from comparison.severity import classify_severity
from config.settings import settings
from utils.logging import logger

_ADDED_OR_DELETED_MAGNITUDE = 0.6


@dataclass
class FontComparison:
    has_differences: bool
    font_differences: List[FontDifference] = field(default_factory=list)
    similarity_ratio: float = 1.0


def normalize_font_name(name: Optional[str]) -> str:
    """
    Strip subset prefix, style suffix and version suffix from a font name.

    Examples:
        >>> normalize_font_name("ABCDEF+Arial-Bold,Italic")
        'Arial'
        >>> normalize_font_name("TimesNewRoman,Bold")
        'TimesNewRoman'
    """
    if not name:
        return ""
    normalized = name.strip()
    if "+" in normalized:
        normalized = normalized.split("+", 1)[1]
    if "," in normalized:
        normalized = normalized.split(",", 1)[0]
    if "-" in normalized:
        normalized = normalized.split("-", 1)[0]
    return normalized.strip()


def font_info_from_name(
    name: str,
    embedded: bool = False,
    encoding: Optional[str] = None,
    bold: Optional[bool] = None,
    italic: Optional[bool] = None,
) -> FontInfo:
    """Build a FontInfo, inferring family and weight/slant from the name when not given."""
    lowered = (name or "").lower()
    if bold is None:
        bold = any(marker in lowered for marker in ("bold", "black", "heavy", "semibold"))
    if italic is None:
        italic = "italic" in lowered or "oblique" in lowered
    return FontInfo(
        font_name=name,
        font_family=normalize_font_name(name),
        embedded=embedded,
        bold=bold,
        italic=italic,
        encoding=encoding,
    )


def damaged_font_placeholder(name: str, encoding: Optional[str] = None) -> FontInfo:
    """Stand-in for a font the extraction layer could not decode."""
    return FontInfo(
        font_name=f"{name} (damaged)",
        font_family=normalize_font_name(name),
        embedded=False,
        encoding=encoding,
        damaged=True,
    )


def same_font(a: FontInfo, b: FontInfo) -> bool:
    """Normalized name or family equal, same bold/italic flags, same decode state."""
    if a.damaged != b.damaged:
        return False
    if a.bold != b.bold or a.italic != b.italic:
        return False
    return _names_match(a, b)


def _names_match(a: FontInfo, b: FontInfo) -> bool:
    name_a = normalize_font_name(_undamaged_name(a)).lower()
    name_b = normalize_font_name(_undamaged_name(b)).lower()
    if name_a and name_a == name_b:
        return True
    family_a = (a.font_family or "").lower()
    family_b = (b.font_family or "").lower()
    return bool(family_a) and family_a == family_b


def _undamaged_name(font: FontInfo) -> str:
    suffix = " (damaged)"
    if font.damaged and font.font_name.endswith(suffix):
        return font.font_name[: -len(suffix)]
    return font.font_name


def _match_fonts(
    base_fonts: Sequence[FontInfo],
    compare_fonts: Sequence[FontInfo],
) -> Tuple[List[Tuple[FontInfo, FontInfo]], List[FontInfo], List[FontInfo]]:
    unused = list(compare_fonts)
    pairs: List[Tuple[FontInfo, FontInfo]] = []
    unmatched_base: List[FontInfo] = []
    for font in base_fonts:
        partner = next((c for c in unused if same_font(font, c)), None)
        if partner is None:
            unmatched_base.append(font)
        else:
            unused.remove(partner)
            pairs.append((font, partner))
    return pairs, unmatched_base, unused


def compare_fonts(
    base_fonts: Iterable[FontInfo],
    compare_fonts: Iterable[FontInfo],
    similarity_threshold: Optional[float] = None,
) -> FontComparison:
    """
    Compare the font inventories of two pages.

    A page pair has font differences when the inventories differ in size, when
    fewer than ``similarity_threshold`` of the fonts match, or when a damaged
    font faces a decodable one. Per-font differences are produced only then.
    """
    threshold = settings.font_similarity_threshold if similarity_threshold is None else similarity_threshold
    base = list(base_fonts)
    compare = list(compare_fonts)
    if not base and not compare:
        return FontComparison(has_differences=False)

    pairs, unmatched_base, unmatched_compare = _match_fonts(base, compare)
    total = max(len(base), len(compare))
    ratio = len(pairs) / total

    has_differences = (
        len(base) != len(compare)
        or ratio < threshold
        or any(f.damaged for f in unmatched_base + unmatched_compare)
    )
    if not has_differences:
        return FontComparison(has_differences=False, similarity_ratio=ratio)

    differences: List[FontDifference] = []
    for base_font, compare_font in pairs:
        diff = _attribute_difference(base_font, compare_font)
        if diff is not None:
            differences.append(diff)

    # Same family on both sides but different weight, slant or decode state
    remaining_compare = list(unmatched_compare)
    for base_font in unmatched_base:
        partner = next((c for c in remaining_compare if _names_match(base_font, c)), None)
        if partner is not None:
            remaining_compare.remove(partner)
            differences.append(_variant_difference(base_font, partner))
        else:
            differences.append(_presence_difference(base_font, "deleted"))
    for compare_font in remaining_compare:
        differences.append(_presence_difference(compare_font, "added"))

    logger.debug(
        "Font comparison: %d vs %d fonts, ratio=%.2f, %d differences",
        len(base),
        len(compare),
        ratio,
        len(differences),
    )
    return FontComparison(has_differences=True, font_differences=differences, similarity_ratio=ratio)


def _attribute_difference(base_font: FontInfo, compare_font: FontInfo) -> Optional[FontDifference]:
    changes = []
    if base_font.embedded != compare_font.embedded:
        changes.append("embedded" if compare_font.embedded else "no longer embedded")
    if (base_font.encoding or "") != (compare_font.encoding or ""):
        changes.append(f"encoding {base_font.encoding or 'none'} -> {compare_font.encoding or 'none'}")
    if not changes:
        return None
    magnitude = 0.5 * len(changes)
    return FontDifference(
        change_type="modified",
        severity=classify_severity("font", magnitude),
        description=f"Font {compare_font.font_family or compare_font.font_name}: {', '.join(changes)}",
        magnitude=magnitude,
        base_font=base_font,
        compare_font=compare_font,
    )


def _variant_difference(base_font: FontInfo, compare_font: FontInfo) -> FontDifference:
    changes = []
    if base_font.damaged != compare_font.damaged:
        changes.append("damaged" if compare_font.damaged else "repaired")
    if base_font.bold != compare_font.bold:
        changes.append("bold" if compare_font.bold else "not bold")
    if base_font.italic != compare_font.italic:
        changes.append("italic" if compare_font.italic else "not italic")
    magnitude = 1.0 if base_font.damaged != compare_font.damaged else 0.5
    return FontDifference(
        change_type="modified",
        severity=classify_severity("font", magnitude),
        description=f"Font {base_font.font_family or base_font.font_name} changed: {', '.join(changes)}",
        magnitude=magnitude,
        base_font=base_font,
        compare_font=compare_font,
    )


def _presence_difference(font: FontInfo, change_type: str) -> FontDifference:
    verb = "added" if change_type == "added" else "removed"
    return FontDifference(
        change_type=change_type,
        severity=classify_severity("font", _ADDED_OR_DELETED_MAGNITUDE),
        description=f"Font {font.font_name} {verb}",
        magnitude=_ADDED_OR_DELETED_MAGNITUDE,
        base_font=font if change_type == "deleted" else None,
        compare_font=font if change_type == "added" else None,
    )
