from __future__ import annotations

import math
import threading

import pytest

from comparison.errors import InvalidTransitionError
from comparison.models import (
    Comparison,
    ComparisonResult,
    ComparisonStatus,
    ComparisonSummary,
    DocumentPair,
    ImageDifference,
    PageDetails,
    TextDifference,
)
from comparison.severity import SEVERITY_ORDER, SEVERITY_THRESHOLDS, classify_severity, severity_rank
from utils.coordinates import (
    Rect,
    clamp_rect_to_page,
    display_rect_to_pdf,
    display_to_pdf_point,
    is_valid_rect,
    normalize_bbox,
    pdf_rect_to_display,
    pdf_to_display_point,
    union_rects,
)


# =============================================================================
# Severity
# =============================================================================

@pytest.mark.parametrize("diff_type", sorted(SEVERITY_THRESHOLDS) + ["unknown"])
def test_severity_is_monotonic_in_magnitude(diff_type):
    ranks = [severity_rank(classify_severity(diff_type, m / 100.0)) for m in range(101)]

    assert ranks == sorted(ranks)
    assert ranks[0] == 0
    assert ranks[-1] == SEVERITY_ORDER.index("critical")


def test_severity_thresholds_are_inclusive():
    assert classify_severity("text", 0.8) == "critical"
    assert classify_severity("text", 0.4) == "major"
    assert classify_severity("text", 0.1) == "minor"
    assert classify_severity("text", 0.09) == "info"
    assert classify_severity("image", 0.3) == "major"


def test_missing_magnitude_is_treated_as_maximum():
    assert classify_severity("text", None) == "critical"
    assert classify_severity("font", math.nan) == "critical"


# =============================================================================
# Coordinates
# =============================================================================

def test_point_transform_round_trips():
    x, y = pdf_to_display_point(72.0, 700.0, 792.0)

    assert (x, y) == (72.0, 92.0)
    assert display_to_pdf_point(x, y, 792.0) == (72.0, 700.0)


def test_rect_transform_round_trips():
    rect = pdf_rect_to_display(72.0, 700.0, 100.0, 12.0, 792.0)

    assert rect == Rect(72.0, 80.0, 100.0, 12.0)
    assert display_rect_to_pdf(rect, 792.0) == pytest.approx((72.0, 700.0, 100.0, 12.0))


def test_union_and_validity():
    union = union_rects([Rect(0, 0, 10, 10), None, Rect(20, 5, 10, 10)])

    assert union == Rect(0, 0, 30, 15)
    assert union_rects([]) is None
    assert is_valid_rect(union)
    assert not is_valid_rect(Rect(0, 0, 0, 10))
    assert not is_valid_rect(Rect(math.nan, 0, 10, 10))
    assert not is_valid_rect(None)


def test_clamp_keeps_rect_on_page_and_visible():
    clamped = clamp_rect_to_page(Rect(-5, 780, 2, 40), 612, 792)

    assert clamped.x == 0
    assert clamped.y == 780
    assert clamped.width >= 10
    assert clamped.height >= 10


def test_normalize_bbox_is_in_unit_range():
    box = normalize_bbox(Rect(306, 396, 153, 198), 612, 792)

    assert box == pytest.approx({"x": 0.5, "y": 0.5, "width": 0.25, "height": 0.25})
    with pytest.raises(ValueError):
        normalize_bbox(Rect(0, 0, 1, 1), 0, 792)


# =============================================================================
# Comparison lifecycle
# =============================================================================

def _comparison() -> Comparison:
    return Comparison(comparison_id="cmp-1", base_document="a.pdf", compare_document="b.pdf")


def test_comparison_walks_the_state_machine():
    comparison = _comparison()
    for status in (
        ComparisonStatus.PROCESSING,
        ComparisonStatus.PROCESSING_DOCUMENTS,
        ComparisonStatus.DOCUMENT_MATCHING,
        ComparisonStatus.COMPARING,
        ComparisonStatus.COMPLETED,
    ):
        comparison.transition_to(status)

    assert comparison.status == ComparisonStatus.COMPLETED
    assert comparison.completed_at is not None
    with pytest.raises(InvalidTransitionError):
        comparison.fail("too late")


def test_comparison_cannot_skip_states():
    comparison = _comparison()

    with pytest.raises(InvalidTransitionError):
        comparison.transition_to(ComparisonStatus.COMPARING)
    assert comparison.status == ComparisonStatus.PENDING


def test_failed_is_reachable_from_any_active_state():
    comparison = _comparison()
    comparison.transition_to(ComparisonStatus.PROCESSING)

    comparison.fail("Cannot open base document")

    assert comparison.status == ComparisonStatus.FAILED
    assert comparison.status_message == "Cannot open base document"
    with pytest.raises(InvalidTransitionError):
        comparison.transition_to(ComparisonStatus.PROCESSING_DOCUMENTS)


def test_progress_counter_is_thread_safe():
    comparison = _comparison()
    comparison.set_total_operations(400)

    def work():
        for _ in range(100):
            comparison.record_completed_operation()

    threads = [threading.Thread(target=work) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert comparison.completed_operations == 400
    assert comparison.progress == 1.0


def test_warnings_are_joined_once():
    comparison = _comparison()
    comparison.add_warning("page 3 timed out")
    comparison.add_warning("page 3 timed out")
    comparison.add_warning("font data damaged")

    assert comparison.processing_warning == "page 3 timed out; font data damaged"


# =============================================================================
# Differences and results
# =============================================================================

def test_difference_bounds_follow_position():
    diff = TextDifference(change_type="added", compare_text="World")
    diff.set_position(Rect(10, 20, 30, 40))

    assert (diff.left, diff.top, diff.right, diff.bottom) == (10, 20, 40, 60)
    data = diff.to_dict()
    assert data["type"] == "text"
    assert data["changeType"] == "added"
    assert data["compareText"] == "World"
    assert data["right"] == 40


def test_reported_rect_depends_on_change_type():
    base_rect, compare_rect = Rect(0, 0, 10, 10), Rect(50, 50, 10, 10)

    assert TextDifference(change_type="added", base_rect=base_rect, compare_rect=compare_rect).reported_rect() \
        == compare_rect
    assert TextDifference(change_type="deleted", base_rect=base_rect, compare_rect=compare_rect).reported_rect() \
        == base_rect
    assert ImageDifference(change_type="modified", compare_rect=compare_rect).reported_rect() == compare_rect


def test_modified_difference_is_counted_once():
    modified = TextDifference(change_type="modified")
    added = ImageDifference(change_type="added")
    details = PageDetails(page_number=1, base_differences=[modified], compare_differences=[modified, added])

    assert details.difference_count == 2
    assert details.counts_by_type()["text"] == 1
    assert details.counts_by_type()["image"] == 1


def test_identical_result_requires_no_differences_and_matched_pairs():
    pair = DocumentPair(pair_index=0, matched=True, base_start_page=1, base_end_page=2,
                        compare_start_page=1, compare_end_page=2, similarity_score=1.0)
    summary = ComparisonSummary(total_differences=0, base_page_count=2, compare_page_count=2)
    result = ComparisonResult(comparison_id="cmp", document_pairs=[pair], summary=summary)

    assert result.are_documents_identical() is True
    assert result.to_dict()["identical"] is True
    assert pair.to_dict()["baseRange"] == {"start": 1, "end": 2, "count": 2}

    result.summary.total_differences = 1
    assert result.are_documents_identical() is False


@pytest.mark.parametrize("details", [
    PageDetails(page_number=1, placeholder=True, description="timed out"),
    PageDetails(page_number=1, sampled=False),
])
def test_uncompared_pages_are_not_identical(details):
    pair = DocumentPair(pair_index=0, matched=True, base_start_page=1, base_end_page=1,
                        compare_start_page=1, compare_end_page=1, similarity_score=1.0)
    summary = ComparisonSummary(total_differences=0, base_page_count=1, compare_page_count=1)
    result = ComparisonResult(comparison_id="cmp", document_pairs=[pair], page_details=[details], summary=summary)

    assert result.are_documents_identical() is False
