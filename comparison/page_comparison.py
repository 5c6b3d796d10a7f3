"""Per-page differencing: one operation of a comparison.

Runs the text, style, font and image differs for one aligned page position,
places every difference in display space and packs the result in PageDetails.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from comparison.cache import AnalysisCache
from comparison.coordinate_normalizer import place_differences
from comparison.errors import AlgorithmError
from comparison.font_diff import compare_fonts, normalize_font_name
from comparison.image_diff import (
    decode_image,
    difference_regions,
    hash_to_hex,
    image_difference_score,
    perceptual_hash,
    rotation_invariant_similarity,
)
from comparison.models import Difference, FontInfo, ImageDifference, PageDetails, TextDifference
from comparison.severity import classify_severity
from comparison.style_diff import compare_styles
from comparison.text_diff import diff_text, effective_method, token_spans
from config.settings import settings
from extraction.service import EmbeddedImage, PageArtifacts, TextRun
from utils.coordinates import Rect, union_rects
from utils.logging import logger

_ROTATION_MAGNITUDE = 0.5
_POSITION_MATCH_IOU = 0.5


@dataclass(frozen=True)
class PageComparisonOptions:
    text_method: str = "smart"
    # Overrides the per-type minimum magnitudes for text, image and style differences
    difference_threshold: Optional[float] = None

    def min_magnitude(self, diff_type: str) -> float:
        if self.difference_threshold is not None:
            return self.difference_threshold
        if diff_type == "image":
            return settings.image_difference_threshold
        if diff_type == "style":
            return settings.style_min_magnitude
        return settings.text_min_magnitude


# =============================================================================
# Text layout: maps token indices back to run geometry
# =============================================================================

class TextLayout:
    """Page text as PageArtifacts.text builds it, with the run behind every character."""

    def __init__(self, artifacts: Optional[PageArtifacts]):
        self.runs: List[TextRun] = list(artifacts.runs) if artifacts else []
        self.page_height = artifacts.height if artifacts else 0.0
        index_of = {id(run): idx for idx, run in enumerate(self.runs)}

        parts: List[str] = []
        self._owners: List[Optional[Tuple[int, int]]] = []
        for line_no, line in enumerate(artifacts.lines() if artifacts else []):
            if line_no:
                parts.append("\n")
                self._owners.append(None)
            first = True
            for run in line:
                stripped = run.text.strip()
                if not stripped:
                    continue
                if not first:
                    parts.append(" ")
                    self._owners.append(None)
                first = False
                parts.append(stripped)
                run_idx = index_of[id(run)]
                self._owners.extend((run_idx, k) for k in range(len(stripped)))
        self.text = "".join(parts)

    def rect_for_chars(self, start: int, end: int) -> Optional[Rect]:
        """Display rect covering characters ``[start, end)``."""
        extents: Dict[int, List[int]] = {}
        for owner in self._owners[start:end]:
            if owner is None:
                continue
            run_idx, offset = owner
            bounds = extents.setdefault(run_idx, [offset, offset])
            bounds[0] = min(bounds[0], offset)
            bounds[1] = max(bounds[1], offset)

        rects = []
        for run_idx, (lo, hi) in extents.items():
            run = self.runs[run_idx]
            rect = run.display_rect(self.page_height)
            length = max(1, len(run.text.strip()))
            rects.append(Rect(
                x=rect.x + rect.width * lo / length,
                y=rect.y,
                width=rect.width * (hi - lo + 1) / length,
                height=rect.height,
            ))
        return union_rects(rects)

    def rect_for_tokens(self, method: str, start: Optional[int], end: Optional[int]) -> Optional[Rect]:
        if start is None or end is None or end <= start:
            return None
        spans = token_spans(self.text, method)[start:end]
        if not spans:
            return None
        return self.rect_for_chars(spans[0][0], spans[-1][1])


# =============================================================================
# Modality differs
# =============================================================================

def _text_differences(
    base: Optional[PageArtifacts],
    compare: Optional[PageArtifacts],
    options: PageComparisonOptions,
) -> List[TextDifference]:
    base_layout = TextLayout(base)
    compare_layout = TextLayout(compare)
    method = effective_method(base_layout.text, compare_layout.text, options.text_method)

    diffs = diff_text(base_layout.text, compare_layout.text, method, options.min_magnitude("text"))
    for diff in diffs:
        diff.base_rect = base_layout.rect_for_tokens(method, diff.start_index, diff.end_index)
        diff.compare_rect = compare_layout.rect_for_tokens(method, diff.compare_start_index, diff.compare_end_index)
    return diffs


def _cached_fonts(artifacts: PageArtifacts, cache: AnalysisCache) -> Tuple[FontInfo, ...]:
    key = cache.key(artifacts.document_id, artifacts.page_index, kind="fonts")
    return cache.get_or_compute(key, lambda: tuple(
        font if font.font_family else replace(font, font_family=normalize_font_name(font.font_name))
        for font in artifacts.fonts
    ))


def _runs_rect(artifacts: PageArtifacts, font: Optional[FontInfo]) -> Optional[Rect]:
    if font is None:
        return None
    family = (font.font_family or normalize_font_name(font.font_name)).lower()
    return union_rects(
        run.display_rect(artifacts.height)
        for run in artifacts.runs
        if normalize_font_name(run.font_name).lower() == family
    )


def _font_differences(base: PageArtifacts, compare: PageArtifacts, cache: AnalysisCache) -> List[Difference]:
    result = compare_fonts(_cached_fonts(base, cache), _cached_fonts(compare, cache))
    if not result.has_differences:
        return []
    for diff in result.font_differences:
        diff.base_rect = _runs_rect(base, diff.base_font)
        diff.compare_rect = _runs_rect(compare, diff.compare_font)
    return list(result.font_differences)


@dataclass(frozen=True, eq=False)
class _ImageAnalysis:
    image: EmbeddedImage
    content_hash: str
    pixels: Optional[np.ndarray]
    phash: Optional[int]


def _analyse_image(artifacts: PageArtifacts, image: EmbeddedImage, cache: AnalysisCache) -> _ImageAnalysis:
    def compute() -> _ImageAnalysis:
        content_hash = hashlib.sha1(image.data).hexdigest()
        try:
            pixels = decode_image(image.data)
            phash = perceptual_hash(pixels)
        except AlgorithmError as exc:
            logger.warning(
                "Image %s on page %d of %s could not be analysed: %s",
                image.image_id, artifacts.page_number, artifacts.document_id, exc,
            )
            pixels, phash = None, None
        return _ImageAnalysis(image=image, content_hash=content_hash, pixels=pixels, phash=phash)

    key = cache.key(artifacts.document_id, artifacts.page_index, image.image_id, kind="image")
    return cache.get_or_compute(key, compute)


def _iou(a: Rect, b: Rect) -> float:
    ix = max(0.0, min(a.right, b.right) - max(a.left, b.left))
    iy = max(0.0, min(a.bottom, b.bottom) - max(a.top, b.top))
    inter = ix * iy
    union = a.width * a.height + b.width * b.height - inter
    return inter / union if union > 0 else 0.0


def _image_differences(
    base: Optional[PageArtifacts],
    compare: Optional[PageArtifacts],
    options: PageComparisonOptions,
    cache: AnalysisCache,
) -> List[Difference]:
    base_images = [_analyse_image(base, img, cache) for img in base.images] if base else []
    compare_images = [_analyse_image(compare, img, cache) for img in compare.images] if compare else []
    min_magnitude = options.min_magnitude("image")
    diffs: List[Difference] = []

    # Byte-identical images are unchanged
    remaining_compare = list(compare_images)
    remaining_base: List[_ImageAnalysis] = []
    for analysis in base_images:
        twin = next((c for c in remaining_compare if c.content_hash == analysis.content_hash), None)
        if twin is None:
            remaining_base.append(analysis)
        else:
            remaining_compare.remove(twin)

    unmatched_base: List[_ImageAnalysis] = []
    for analysis in remaining_base:
        partner, rotation = _best_visual_match(analysis, remaining_compare)
        if partner is None:
            partner = next(
                (c for c in remaining_compare
                 if _iou(analysis.image.display_rect(base.height), c.image.display_rect(compare.height))
                 >= _POSITION_MATCH_IOU),
                None,
            )
            rotation = 0
        if partner is None:
            unmatched_base.append(analysis)
            continue
        remaining_compare.remove(partner)

        if analysis.pixels is None or partner.pixels is None:
            score = 1.0
        else:
            score = image_difference_score(analysis.pixels, np.rot90(partner.pixels, k=-(rotation // 90)))
        magnitude = max(score, _ROTATION_MAGNITUDE) if rotation else score
        if magnitude < min_magnitude:
            continue
        description = f"Image {analysis.image.image_id} rotated by {rotation} degrees" if rotation \
            else f"Image {analysis.image.image_id} modified ({score:.0%} different)"
        diffs.append(_image_difference(
            "modified", magnitude, description, analysis, partner, base, compare, score, rotation,
        ))

    for analysis in unmatched_base:
        diffs.append(_image_difference(
            "deleted", 1.0, f"Image {analysis.image.image_id} removed", analysis, None, base, compare, 1.0, 0,
        ))
    for analysis in remaining_compare:
        diffs.append(_image_difference(
            "added", 1.0, f"Image {analysis.image.image_id} added", None, analysis, base, compare, 1.0, 0,
        ))
    return diffs


def _best_visual_match(
    analysis: _ImageAnalysis,
    candidates: Sequence[_ImageAnalysis],
) -> Tuple[Optional[_ImageAnalysis], int]:
    if analysis.pixels is None or analysis.phash is None:
        return None, 0
    best: Optional[_ImageAnalysis] = None
    best_similarity, best_rotation = 0.0, 0
    for candidate in candidates:
        if candidate.pixels is None:
            continue
        similarity, rotation = rotation_invariant_similarity(analysis.pixels, candidate.pixels, analysis.phash)
        if similarity > best_similarity:
            best, best_similarity, best_rotation = candidate, similarity, rotation
    if best is None or best_similarity < settings.rotation_match_threshold:
        return None, 0
    return best, best_rotation


def _image_difference(
    change_type: str,
    magnitude: float,
    description: str,
    base_analysis: Optional[_ImageAnalysis],
    compare_analysis: Optional[_ImageAnalysis],
    base: Optional[PageArtifacts],
    compare: Optional[PageArtifacts],
    score: float,
    rotation: int,
) -> ImageDifference:
    image_id = (base_analysis or compare_analysis).image.image_id
    return ImageDifference(
        change_type=change_type,
        severity=classify_severity("image", magnitude),
        description=description,
        magnitude=magnitude,
        image_id=image_id,
        base_image_hash=hash_to_hex(base_analysis.phash) if base_analysis else None,
        compare_image_hash=hash_to_hex(compare_analysis.phash) if compare_analysis else None,
        base_rect=base_analysis.image.display_rect(base.height) if base_analysis else None,
        compare_rect=compare_analysis.image.display_rect(compare.height) if compare_analysis else None,
        visual_difference_score=score,
        rotation=rotation,
    )


def _scanned_page_differences(
    base: PageArtifacts,
    compare: PageArtifacts,
    options: PageComparisonOptions,
) -> List[Difference]:
    """Bitmap comparison for pages that carry no extractable text on either side."""
    if base.bitmap is None or compare.bitmap is None:
        return []
    score = image_difference_score(base.bitmap, compare.bitmap)
    if score < options.min_magnitude("image"):
        return []

    scale_x = base.width / float(base.bitmap.shape[1])
    scale_y = base.height / float(base.bitmap.shape[0])
    compare_scale_x = compare.width / float(base.bitmap.shape[1])
    compare_scale_y = compare.height / float(base.bitmap.shape[0])

    diffs: List[Difference] = []
    for region in difference_regions(base.bitmap, compare.bitmap):
        magnitude = max(region.score, score)
        diffs.append(ImageDifference(
            change_type="modified",
            severity=classify_severity("image", magnitude),
            description=f"Visual change in scanned page region ({region.score:.0%} of region changed)",
            magnitude=magnitude,
            base_rect=Rect(region.x * scale_x, region.y * scale_y, region.width * scale_x, region.height * scale_y),
            compare_rect=Rect(
                region.x * compare_scale_x,
                region.y * compare_scale_y,
                region.width * compare_scale_x,
                region.height * compare_scale_y,
            ),
            visual_difference_score=score,
        ))
    return diffs


def _one_sided_bitmap_difference(artifacts: PageArtifacts, change_type: str) -> List[Difference]:
    """Whole-page difference for an inserted or deleted page with nothing but pixels."""
    if artifacts.has_text or artifacts.images or artifacts.bitmap is None:
        return []
    rect = Rect(0.0, 0.0, artifacts.width, artifacts.height)
    verb = "added" if change_type == "added" else "removed"
    return [ImageDifference(
        change_type=change_type,
        severity=classify_severity("image", 1.0),
        description=f"Page {artifacts.page_number} {verb}",
        magnitude=1.0,
        base_rect=rect if change_type == "deleted" else None,
        compare_rect=rect if change_type == "added" else None,
        visual_difference_score=1.0,
    )]


# =============================================================================
# Public API
# =============================================================================

def compare_page(
    page_number: int,
    base: Optional[PageArtifacts],
    compare: Optional[PageArtifacts],
    options: Optional[PageComparisonOptions] = None,
    cache: Optional[AnalysisCache] = None,
) -> PageDetails:
    """
    Compare one aligned page position.

    Either side may be None for inserted or deleted pages; the present side is
    then compared against an empty page. Placeholder artifacts produce a
    placeholder result with no differences.
    """
    options = options or PageComparisonOptions()
    cache = cache or AnalysisCache()

    details = _empty_details(page_number, base, compare)
    if (base is not None and base.placeholder) or (compare is not None and compare.placeholder):
        reasons = [a.description for a in (base, compare) if a is not None and a.placeholder and a.description]
        details.placeholder = True
        details.description = "; ".join(reasons) or "Page content unavailable"
        return details

    diffs: List[Difference] = []
    diffs.extend(_text_differences(base, compare, options))
    diffs.extend(_image_differences(base, compare, options, cache))

    if base is not None and compare is not None:
        diffs.extend(compare_styles(
            base.runs, compare.runs, base.height, compare.height, options.min_magnitude("style"),
        ))
        diffs.extend(_font_differences(base, compare, cache))
        if not base.has_text and not compare.has_text and not base.images and not compare.images:
            diffs.extend(_scanned_page_differences(base, compare, options))
    elif base is not None:
        diffs.extend(_one_sided_bitmap_difference(base, "deleted"))
    elif compare is not None:
        diffs.extend(_one_sided_bitmap_difference(compare, "added"))

    for diff in diffs:
        diff.base_page_number = details.base_page_number if diff.change_type != "added" else None
        diff.compare_page_number = details.compare_page_number if diff.change_type != "deleted" else None

    page_width, page_height = details.page_size()
    place_differences(diffs, page_width, page_height)

    details.base_differences = [d for d in diffs if d.change_type in ("deleted", "modified")]
    details.compare_differences = [d for d in diffs if d.change_type in ("added", "modified")]
    logger.debug("Page %d: %d differences", page_number, len(diffs))
    return details


def _empty_details(page_number: int, base: Optional[PageArtifacts], compare: Optional[PageArtifacts]) -> PageDetails:
    return PageDetails(
        page_number=page_number,
        base_page_number=base.page_number if base else None,
        compare_page_number=compare.page_number if compare else None,
        page_exists_in_base=base is not None,
        page_exists_in_compare=compare is not None,
        base_width=base.width if base else None,
        base_height=base.height if base else None,
        compare_width=compare.width if compare else None,
        compare_height=compare.height if compare else None,
    )


def placeholder_page_details(
    page_number: int,
    base_page_number: Optional[int],
    compare_page_number: Optional[int],
    base_size: Optional[Tuple[float, float]],
    compare_size: Optional[Tuple[float, float]],
    reason: str,
    placeholder: bool = True,
    sampled: bool = True,
) -> PageDetails:
    """Stable stand-in for a page whose comparison could not be produced."""
    return PageDetails(
        page_number=page_number,
        base_page_number=base_page_number,
        compare_page_number=compare_page_number,
        page_exists_in_base=base_page_number is not None,
        page_exists_in_compare=compare_page_number is not None,
        base_width=base_size[0] if base_size else None,
        base_height=base_size[1] if base_size else None,
        compare_width=compare_size[0] if compare_size else None,
        compare_height=compare_size[1] if compare_size else None,
        placeholder=placeholder,
        sampled=sampled,
        description=reason,
    )
