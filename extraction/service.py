"""Boundary with the PDF extraction layer.

The comparison engine never parses PDFs itself. It consumes page artifacts from
an ``ExtractionService``; any object implementing the protocol can be injected.
Geometry in these artifacts is in PDF space (origin bottom-left, Y up).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import numpy as np

from comparison.models import FontInfo
from utils.coordinates import Rect, pdf_rect_to_display


@dataclass(frozen=True)
class TextRun:
    """A run of text sharing one font; (x, y) is the bottom-left corner in PDF space."""

    text: str
    x: float
    y: float
    width: float
    height: float
    font_name: str = ""
    font_size: float = 0.0
    rotation: float = 0.0
    color: Optional[Tuple[int, int, int]] = None
    bold: bool = False
    italic: bool = False

    def display_rect(self, page_height: float) -> Rect:
        return pdf_rect_to_display(self.x, self.y, self.width, self.height, page_height)


@dataclass(frozen=True)
class EmbeddedImage:
    """Raw image bytes placed on a page; (x, y) is the bottom-left corner in PDF space."""

    image_id: str
    data: bytes
    x: float
    y: float
    width: float
    height: float

    def display_rect(self, page_height: float) -> Rect:
        return pdf_rect_to_display(self.x, self.y, self.width, self.height, page_height)


@dataclass(eq=False)
class PageArtifacts:
    """Everything the engine needs to compare one page."""

    document_id: str
    page_index: int
    width: float
    height: float
    runs: List[TextRun] = field(default_factory=list)
    images: List[EmbeddedImage] = field(default_factory=list)
    fonts: List[FontInfo] = field(default_factory=list)
    bitmap: Optional[np.ndarray] = None
    placeholder: bool = False
    description: str = ""

    @property
    def page_number(self) -> int:
        return self.page_index + 1

    @property
    def text(self) -> str:
        """Run text in reading order, one line per baseline."""
        return "\n".join(" ".join(run.text.strip() for run in line if run.text.strip())
                         for line in self.lines())

    def lines(self) -> List[List[TextRun]]:
        """Group consecutive runs that share a baseline."""
        lines: List[List[TextRun]] = []
        for run in self.runs:
            if lines:
                previous = lines[-1][-1]
                tolerance = max(previous.height, run.height, 1.0) / 2.0
                if abs(previous.y - run.y) <= tolerance:
                    lines[-1].append(run)
                    continue
            lines.append([run])
        return lines

    @property
    def has_text(self) -> bool:
        return any(run.text.strip() for run in self.runs)


@dataclass(frozen=True)
class DocumentInfo:
    document_id: str
    page_count: int
    page_sizes: List[Tuple[float, float]] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)

    def page_size(self, page_index: int) -> Tuple[float, float]:
        if 0 <= page_index < len(self.page_sizes):
            return self.page_sizes[page_index]
        if self.page_sizes:
            return self.page_sizes[-1]
        return (612.0, 792.0)


class ExtractionService(Protocol):
    """
    Supplier of per-page artifacts.

    ``load_document`` raises DocumentLoadError when a document cannot be opened.
    ``extract_page`` raises ExtractionError and ``render_page`` raises RenderError
    for per-page problems; the orchestrator recovers from both.
    """

    def load_document(self, document: Any) -> DocumentInfo: ...

    def extract_page(self, document: Any, page_index: int) -> PageArtifacts: ...

    def render_page(self, document: Any, page_index: int, dpi: int, grayscale: bool = False) -> np.ndarray: ...
