"""Shared data models for comparisons, alignment and differences."""
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from comparison.errors import InvalidTransitionError
from utils.coordinates import Rect

DifferenceType = Literal["text", "image", "font", "style", "metadata"]
ChangeType = Literal["added", "deleted", "modified"]
Severity = Literal["info", "minor", "major", "critical"]

DIFFERENCE_TYPES: Tuple[str, ...] = ("text", "image", "font", "style", "metadata")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _rect_dict(rect: Optional[Rect]) -> Optional[Dict[str, float]]:
    if rect is None:
        return None
    return {"x": rect.x, "y": rect.y, "width": rect.width, "height": rect.height}


# =============================================================================
# Comparison state machine
# =============================================================================

class ComparisonStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PROCESSING_DOCUMENTS = "PROCESSING_DOCUMENTS"
    DOCUMENT_MATCHING = "DOCUMENT_MATCHING"
    COMPARING = "COMPARING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ComparisonStatus.COMPLETED, ComparisonStatus.FAILED)


_NEXT_STATUS: Dict[ComparisonStatus, ComparisonStatus] = {
    ComparisonStatus.PENDING: ComparisonStatus.PROCESSING,
    ComparisonStatus.PROCESSING: ComparisonStatus.PROCESSING_DOCUMENTS,
    ComparisonStatus.PROCESSING_DOCUMENTS: ComparisonStatus.DOCUMENT_MATCHING,
    ComparisonStatus.DOCUMENT_MATCHING: ComparisonStatus.COMPARING,
    ComparisonStatus.COMPARING: ComparisonStatus.COMPLETED,
}


@dataclass
class Comparison:
    """
    One comparison request and its lifecycle.

    Only the orchestrator mutates a Comparison. Progress counters are guarded by
    a lock because page tasks report completion from worker threads.
    """

    comparison_id: str
    base_document: Any
    compare_document: Any
    options: Dict[str, str] = field(default_factory=dict)
    status: ComparisonStatus = ComparisonStatus.PENDING
    completed_operations: int = 0
    total_operations: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    status_message: Optional[str] = None
    processing_warning: Optional[str] = None
    result_path: Optional[str] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def transition_to(self, status: ComparisonStatus, message: Optional[str] = None) -> None:
        """Advance the state machine; FAILED is reachable from any non-terminal state."""
        with self._lock:
            if self.status.is_terminal:
                raise InvalidTransitionError(
                    f"Comparison {self.comparison_id} is already {self.status.value}"
                )
            allowed = status == ComparisonStatus.FAILED or _NEXT_STATUS.get(self.status) == status
            if not allowed:
                raise InvalidTransitionError(
                    f"Cannot move comparison {self.comparison_id} from {self.status.value} to {status.value}"
                )
            self.status = status
            self.updated_at = _utcnow()
            if message is not None:
                self.status_message = message
            if status.is_terminal:
                self.completed_at = self.updated_at

    def fail(self, message: str) -> None:
        self.transition_to(ComparisonStatus.FAILED, message)

    def set_total_operations(self, total: int) -> None:
        with self._lock:
            self.total_operations = total
            self.completed_operations = 0

    def record_completed_operation(self, count: int = 1) -> int:
        """Atomically bump the completed-operation counter and return the new value."""
        with self._lock:
            self.completed_operations += count
            self.updated_at = _utcnow()
            return self.completed_operations

    def add_warning(self, warning: str) -> None:
        """Attach a non-fatal processing warning (multiple warnings are joined)."""
        with self._lock:
            if self.processing_warning:
                if warning not in self.processing_warning:
                    self.processing_warning = f"{self.processing_warning}; {warning}"
            else:
                self.processing_warning = warning

    @property
    def progress(self) -> float:
        if self.total_operations <= 0:
            return 1.0 if self.status == ComparisonStatus.COMPLETED else 0.0
        return min(1.0, self.completed_operations / self.total_operations)


# =============================================================================
# Fonts
# =============================================================================

@dataclass(frozen=True)
class FontInfo:
    font_name: str
    font_family: str = ""
    embedded: bool = False
    bold: bool = False
    italic: bool = False
    encoding: Optional[str] = None
    damaged: bool = False

    def to_dict(self) -> dict:
        return {
            "fontName": self.font_name,
            "fontFamily": self.font_family,
            "embedded": self.embedded,
            "bold": self.bold,
            "italic": self.italic,
            "encoding": self.encoding,
            "damaged": self.damaged,
        }


# =============================================================================
# Differences
# =============================================================================

@dataclass
class Difference:
    """
    Base for all difference variants.

    Position is kept in display space. Bounds are derived from the position so
    the two can never disagree.
    """

    type: str = field(default="text", init=False)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    change_type: ChangeType = "modified"
    severity: Severity = "info"
    description: str = ""
    magnitude: float = 0.0
    x: Optional[float] = None
    y: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    base_rect: Optional[Rect] = None
    compare_rect: Optional[Rect] = None
    base_page_number: Optional[int] = None
    compare_page_number: Optional[int] = None

    @property
    def left(self) -> Optional[float]:
        return self.x

    @property
    def top(self) -> Optional[float]:
        return self.y

    @property
    def right(self) -> Optional[float]:
        if self.x is None or self.width is None:
            return None
        return self.x + self.width

    @property
    def bottom(self) -> Optional[float]:
        if self.y is None or self.height is None:
            return None
        return self.y + self.height

    @property
    def position(self) -> Optional[Rect]:
        if None in (self.x, self.y, self.width, self.height):
            return None
        return Rect(x=self.x, y=self.y, width=self.width, height=self.height)

    def set_position(self, rect: Rect) -> None:
        self.x = rect.x
        self.y = rect.y
        self.width = rect.width
        self.height = rect.height

    def reported_rect(self) -> Optional[Rect]:
        """Display-space location this difference reports, or None if it has none."""
        if self.change_type == "added":
            return self.compare_rect
        if self.change_type == "deleted":
            return self.base_rect
        return self.base_rect or self.compare_rect

    def _payload(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "type": self.type,
            "changeType": self.change_type,
            "severity": self.severity,
            "description": self.description,
            "magnitude": self.magnitude,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "left": self.left,
            "top": self.top,
            "right": self.right,
            "bottom": self.bottom,
            "baseCoordinates": _rect_dict(self.base_rect),
            "compareCoordinates": _rect_dict(self.compare_rect),
            "basePageNumber": self.base_page_number,
            "comparePageNumber": self.compare_page_number,
        }
        data.update(self._payload())
        return data


@dataclass
class TextDifference(Difference):
    type: str = field(default="text", init=False)
    base_text: Optional[str] = None
    compare_text: Optional[str] = None
    start_index: Optional[int] = None
    end_index: Optional[int] = None
    compare_start_index: Optional[int] = None
    compare_end_index: Optional[int] = None

    def _payload(self) -> dict:
        return {
            "baseText": self.base_text,
            "compareText": self.compare_text,
            "startIndex": self.start_index,
            "endIndex": self.end_index,
            "compareStartIndex": self.compare_start_index,
            "compareEndIndex": self.compare_end_index,
        }


@dataclass
class ImageDifference(Difference):
    type: str = field(default="image", init=False)
    image_id: Optional[str] = None
    base_image_hash: Optional[str] = None
    compare_image_hash: Optional[str] = None
    visual_difference_score: float = 0.0
    rotation: int = 0

    def _payload(self) -> dict:
        return {
            "imageId": self.image_id,
            "baseImageHash": self.base_image_hash,
            "compareImageHash": self.compare_image_hash,
            "visualDifferenceScore": self.visual_difference_score,
            "rotation": self.rotation,
        }


@dataclass
class FontDifference(Difference):
    type: str = field(default="font", init=False)
    base_font: Optional[FontInfo] = None
    compare_font: Optional[FontInfo] = None

    def reported_rect(self) -> Optional[Rect]:
        # Fonts are a page inventory; a location exists only when runs using the font were found.
        if self.change_type == "deleted":
            return self.base_rect
        return self.compare_rect or self.base_rect

    def _payload(self) -> dict:
        return {
            "baseFont": self.base_font.to_dict() if self.base_font else None,
            "compareFont": self.compare_font.to_dict() if self.compare_font else None,
        }


@dataclass
class StyleDifference(Difference):
    type: str = field(default="style", init=False)
    text: str = ""
    base_style: Dict[str, Any] = field(default_factory=dict)
    compare_style: Dict[str, Any] = field(default_factory=dict)

    def reported_rect(self) -> Optional[Rect]:
        return self.compare_rect or self.base_rect

    def _payload(self) -> dict:
        return {
            "text": self.text,
            "baseStyle": self.base_style,
            "compareStyle": self.compare_style,
        }


@dataclass
class MetadataDifference(Difference):
    type: str = field(default="metadata", init=False)
    key: str = ""
    base_value: Optional[str] = None
    compare_value: Optional[str] = None

    def reported_rect(self) -> Optional[Rect]:
        return None

    def _payload(self) -> dict:
        return {
            "key": self.key,
            "baseValue": self.base_value,
            "compareValue": self.compare_value,
        }


# =============================================================================
# Alignment
# =============================================================================

@dataclass(frozen=True)
class PageMapping:
    """Pairing of one base page with one compare page (1-based numbers; None when missing)."""

    base_page_number: Optional[int]
    compare_page_number: Optional[int]
    similarity_score: float = 0.0
    difference_count: int = 0

    def to_dict(self) -> dict:
        return {
            "basePageNumber": self.base_page_number,
            "comparePageNumber": self.compare_page_number,
            "similarityScore": self.similarity_score,
            "differenceCount": self.difference_count,
        }


def _range_dict(start: Optional[int], end: Optional[int]) -> Optional[dict]:
    if start is None or end is None:
        return None
    return {"start": start, "end": end, "count": end - start + 1}


@dataclass(frozen=True)
class DocumentPair:
    """One aligned segment of base pages against compare pages."""

    pair_index: int
    matched: bool
    base_start_page: Optional[int] = None
    base_end_page: Optional[int] = None
    compare_start_page: Optional[int] = None
    compare_end_page: Optional[int] = None
    has_base_document: bool = True
    has_compare_document: bool = True
    similarity_score: float = 0.0
    page_mappings: Tuple[PageMapping, ...] = ()
    total_differences: int = 0
    text_differences: int = 0
    image_differences: int = 0
    font_differences: int = 0
    style_differences: int = 0

    @property
    def base_page_count(self) -> int:
        if self.base_start_page is None or self.base_end_page is None:
            return 0
        return self.base_end_page - self.base_start_page + 1

    @property
    def compare_page_count(self) -> int:
        if self.compare_start_page is None or self.compare_end_page is None:
            return 0
        return self.compare_end_page - self.compare_start_page + 1

    def with_results(self, page_mappings: Tuple[PageMapping, ...], counts: Dict[str, int]) -> "DocumentPair":
        """Copy of this pair carrying per-page difference counts after comparison."""
        return replace(
            self,
            page_mappings=tuple(page_mappings),
            total_differences=sum(counts.get(t, 0) for t in DIFFERENCE_TYPES),
            text_differences=counts.get("text", 0),
            image_differences=counts.get("image", 0),
            font_differences=counts.get("font", 0),
            style_differences=counts.get("style", 0),
        )

    def to_dict(self) -> dict:
        return {
            "pairIndex": self.pair_index,
            "matched": self.matched,
            "baseRange": _range_dict(self.base_start_page, self.base_end_page),
            "compareRange": _range_dict(self.compare_start_page, self.compare_end_page),
            "hasBaseDocument": self.has_base_document,
            "hasCompareDocument": self.has_compare_document,
            "similarityScore": self.similarity_score,
            "totalDifferences": self.total_differences,
            "textDifferences": self.text_differences,
            "imageDifferences": self.image_differences,
            "fontDifferences": self.font_differences,
            "styleDifferences": self.style_differences,
            "pageMappings": [m.to_dict() for m in self.page_mappings],
        }


# =============================================================================
# Page and document results
# =============================================================================

@dataclass
class PageDetails:
    """Differences found on one aligned page position."""

    page_number: int
    base_page_number: Optional[int] = None
    compare_page_number: Optional[int] = None
    page_exists_in_base: bool = True
    page_exists_in_compare: bool = True
    base_width: Optional[float] = None
    base_height: Optional[float] = None
    compare_width: Optional[float] = None
    compare_height: Optional[float] = None
    base_differences: List[Difference] = field(default_factory=list)
    compare_differences: List[Difference] = field(default_factory=list)
    placeholder: bool = False
    sampled: bool = True
    description: str = ""

    def unique_differences(self) -> List[Difference]:
        """Differences on either side, each once (modified ones sit in both lists)."""
        seen = set()
        unique: List[Difference] = []
        for diff in self.base_differences + self.compare_differences:
            if diff.id in seen:
                continue
            seen.add(diff.id)
            unique.append(diff)
        return unique

    def counts_by_type(self) -> Dict[str, int]:
        counts = {t: 0 for t in DIFFERENCE_TYPES}
        for diff in self.unique_differences():
            counts[diff.type] = counts.get(diff.type, 0) + 1
        return counts

    @property
    def difference_count(self) -> int:
        return len(self.unique_differences())

    def page_size(self) -> Tuple[float, float]:
        """Dimensions used for display placement; compare side wins for compare-only pages."""
        if self.page_exists_in_base and self.base_width and self.base_height:
            return self.base_width, self.base_height
        if self.compare_width and self.compare_height:
            return self.compare_width, self.compare_height
        return self.base_width or 0.0, self.base_height or 0.0

    def to_dict(self) -> dict:
        counts = self.counts_by_type()
        return {
            "pageNumber": self.page_number,
            "basePageNumber": self.base_page_number,
            "comparePageNumber": self.compare_page_number,
            "pageExistsInBase": self.page_exists_in_base,
            "pageExistsInCompare": self.page_exists_in_compare,
            "baseDimensions": {"width": self.base_width, "height": self.base_height},
            "compareDimensions": {"width": self.compare_width, "height": self.compare_height},
            "baseDifferences": [d.to_dict() for d in self.base_differences],
            "compareDifferences": [d.to_dict() for d in self.compare_differences],
            "textDifferenceCount": counts["text"],
            "imageDifferenceCount": counts["image"],
            "fontDifferenceCount": counts["font"],
            "styleDifferenceCount": counts["style"],
            "placeholder": self.placeholder,
            "sampled": self.sampled,
            "description": self.description,
        }


@dataclass
class ComparisonSummary:
    overall_similarity_score: float = 1.0
    total_differences: int = 0
    counts_by_type: Dict[str, int] = field(default_factory=lambda: {t: 0 for t in DIFFERENCE_TYPES})
    base_page_count: int = 0
    compare_page_count: int = 0

    def to_dict(self) -> dict:
        return {
            "overallSimilarityScore": self.overall_similarity_score,
            "totalDifferences": self.total_differences,
            "countsByType": dict(self.counts_by_type),
            "basePageCount": self.base_page_count,
            "comparePageCount": self.compare_page_count,
        }


@dataclass
class ComparisonResult:
    comparison_id: str
    status: ComparisonStatus = ComparisonStatus.COMPLETED
    status_message: Optional[str] = None
    processing_warning: Optional[str] = None
    document_pairs: List[DocumentPair] = field(default_factory=list)
    page_details: List[PageDetails] = field(default_factory=list)
    metadata_differences: List[MetadataDifference] = field(default_factory=list)
    summary: ComparisonSummary = field(default_factory=ComparisonSummary)

    def are_documents_identical(self) -> bool:
        """True only when every page position was compared and nothing differs."""
        if self.summary.total_differences > 0:
            return False
        # Skipped and placeholder pages were never compared
        if any(details.placeholder or not details.sampled for details in self.page_details):
            return False
        if self.summary.base_page_count != self.summary.compare_page_count:
            return False
        return all(pair.matched and pair.has_base_document and pair.has_compare_document
                   for pair in self.document_pairs)

    def page(self, page_number: int) -> Optional[PageDetails]:
        for details in self.page_details:
            if details.page_number == page_number:
                return details
        return None

    def to_dict(self) -> dict:
        return {
            "comparisonId": self.comparison_id,
            "status": self.status.value,
            "statusMessage": self.status_message,
            "processingWarning": self.processing_warning,
            "documentPairs": [p.to_dict() for p in self.document_pairs],
            "pageDetails": [p.to_dict() for p in self.page_details],
            "metadataDifferences": [d.to_dict() for d in self.metadata_differences],
            "summary": self.summary.to_dict(),
            "identical": self.are_documents_identical(),
        }
