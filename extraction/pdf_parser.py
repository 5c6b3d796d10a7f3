"""Digital PDF extraction using PyMuPDF."""
from __future__ import annotations

import hashlib
import math
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from comparison.errors import DocumentLoadError, ExtractionError, RenderError
from comparison.font_diff import damaged_font_placeholder, font_info_from_name
from comparison.models import FontInfo
from extraction.service import DocumentInfo, EmbeddedImage, PageArtifacts, TextRun
from utils.logging import logger

# PyMuPDF span flags
_FLAG_ITALIC = 2
_FLAG_BOLD = 16


def _fitz():
    try:
        import fitz  # PyMuPDF
    except ImportError as exc:
        raise RuntimeError(
            "PyMuPDF is required for PDF parsing. Install via `pip install PyMuPDF`."
        ) from exc
    return fitz


def _rgb(color: Any) -> Optional[Tuple[int, int, int]]:
    """Convert PyMuPDF's packed sRGB integer to an (r, g, b) tuple."""
    if not isinstance(color, int):
        return None
    return (color >> 16) & 0xFF, (color >> 8) & 0xFF, color & 0xFF


class _OpenDocument:
    def __init__(self, doc: Any, document_id: str):
        self.doc = doc
        self.document_id = document_id
        # fitz documents are not thread-safe
        self.lock = threading.Lock()


class PyMuPDFExtractionService:
    """
    ExtractionService backed by PyMuPDF.

    Documents are referenced by file path or raw PDF bytes. Opened documents
    are cached per reference and every access to one document is serialised.
    Geometry is returned in PDF space (origin bottom-left).
    """

    def __init__(self) -> None:
        self._open: Dict[str, _OpenDocument] = {}
        self._registry_lock = threading.Lock()

    @staticmethod
    def _reference_key(document: Any) -> str:
        if isinstance(document, (bytes, bytearray)):
            return "sha1:" + hashlib.sha1(bytes(document)).hexdigest()[:16]
        return str(Path(document).resolve())

    def _get(self, document: Any) -> _OpenDocument:
        key = self._reference_key(document)
        with self._registry_lock:
            opened = self._open.get(key)
            if opened is not None:
                return opened
            fitz = _fitz()
            try:
                if isinstance(document, (bytes, bytearray)):
                    doc = fitz.open(stream=bytes(document), filetype="pdf")
                else:
                    doc = fitz.open(Path(document))
            except Exception as exc:
                raise DocumentLoadError(f"Cannot open PDF {key}: {exc}") from exc
            if doc.needs_pass:
                doc.close()
                raise DocumentLoadError(f"PDF {key} is encrypted")
            opened = _OpenDocument(doc, key)
            self._open[key] = opened
            return opened

    def close(self) -> None:
        with self._registry_lock:
            for opened in self._open.values():
                with opened.lock:
                    opened.doc.close()
            self._open.clear()

    # ------------------------------------------------------------------
    # ExtractionService
    # ------------------------------------------------------------------

    def load_document(self, document: Any) -> DocumentInfo:
        opened = self._get(document)
        with opened.lock:
            doc = opened.doc
            sizes = [(page.rect.width, page.rect.height) for page in doc]
            metadata = {
                key: str(value)
                for key, value in (doc.metadata or {}).items()
                if value not in (None, "") and key not in ("format", "encryption")
            }
        logger.info("Loaded PDF %s: %d pages", opened.document_id, len(sizes))
        return DocumentInfo(
            document_id=opened.document_id,
            page_count=len(sizes),
            page_sizes=sizes,
            metadata=metadata,
        )

    def extract_page(self, document: Any, page_index: int) -> PageArtifacts:
        opened = self._get(document)
        fitz = _fitz()
        with opened.lock:
            try:
                page = opened.doc[page_index]
                width, height = page.rect.width, page.rect.height
                runs = self._text_runs(page, height, fitz)
                images = self._images(opened.doc, page, height, fitz)
                fonts = self._fonts(opened.doc, page)
            except (IndexError, RuntimeError, ValueError) as exc:
                raise ExtractionError(
                    f"Cannot extract page {page_index + 1} of {opened.document_id}: {exc}",
                    page_index=page_index,
                ) from exc

        logger.debug(
            "Extracted page %d of %s: %d runs, %d images, %d fonts",
            page_index + 1, opened.document_id, len(runs), len(images), len(fonts),
        )
        return PageArtifacts(
            document_id=opened.document_id,
            page_index=page_index,
            width=width,
            height=height,
            runs=runs,
            images=images,
            fonts=fonts,
        )

    def render_page(self, document: Any, page_index: int, dpi: int, grayscale: bool = False) -> np.ndarray:
        opened = self._get(document)
        fitz = _fitz()
        with opened.lock:
            try:
                page = opened.doc[page_index]
                colorspace = fitz.csGRAY if grayscale else fitz.csRGB
                pix = page.get_pixmap(dpi=dpi, colorspace=colorspace, alpha=False)
                arr = np.frombuffer(pix.samples, dtype=np.uint8).reshape(pix.height, pix.width, pix.n).copy()
            except (IndexError, RuntimeError, ValueError, MemoryError) as exc:
                raise RenderError(
                    f"Cannot render page {page_index + 1} of {opened.document_id} at {dpi} dpi: {exc}",
                    page_index=page_index,
                    dpi=dpi,
                ) from exc
        return arr[:, :, 0] if grayscale else arr

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _text_runs(page: Any, height: float, fitz: Any) -> List[TextRun]:
        runs: List[TextRun] = []
        content = page.get_text("dict", flags=fitz.TEXT_PRESERVE_LIGATURES | fitz.TEXT_PRESERVE_WHITESPACE)
        for block in content.get("blocks", []):
            if block.get("type") != 0:  # Not text block
                continue
            for line in block.get("lines", []):
                cos, sin = line.get("dir", (1.0, 0.0))
                rotation = math.degrees(math.atan2(-sin, cos)) % 360.0
                for span in line.get("spans", []):
                    text = span.get("text", "")
                    if not text.strip():
                        continue
                    x0, y0, x1, y1 = span["bbox"]
                    flags = span.get("flags", 0)
                    runs.append(TextRun(
                        text=text,
                        x=x0,
                        y=height - y1,
                        width=x1 - x0,
                        height=y1 - y0,
                        font_name=span.get("font", ""),
                        font_size=float(span.get("size", 0.0)),
                        rotation=rotation,
                        color=_rgb(span.get("color")),
                        bold=bool(flags & _FLAG_BOLD),
                        italic=bool(flags & _FLAG_ITALIC),
                    ))
        return runs

    @staticmethod
    def _images(doc: Any, page: Any, height: float, fitz: Any) -> List[EmbeddedImage]:
        images: List[EmbeddedImage] = []
        for info in page.get_images(full=True):
            xref, name = info[0], info[7]
            try:
                pix = fitz.Pixmap(doc, xref)
                if pix.n - pix.alpha >= 4:
                    pix = fitz.Pixmap(fitz.csRGB, pix)
                data = pix.tobytes("png")
                rects = page.get_image_rects(xref)
            except (RuntimeError, ValueError) as exc:
                logger.warning("Skipping image xref %d on page %d: %s", xref, page.number + 1, exc)
                continue
            for k, rect in enumerate(rects):
                image_id = name or f"xref{xref}"
                if len(rects) > 1:
                    image_id = f"{image_id}#{k}"
                images.append(EmbeddedImage(
                    image_id=image_id,
                    data=data,
                    x=rect.x0,
                    y=height - rect.y1,
                    width=rect.width,
                    height=rect.height,
                ))
        return images

    @staticmethod
    def _fonts(doc: Any, page: Any) -> List[FontInfo]:
        fonts: List[FontInfo] = []
        for xref, ext, _font_type, basefont, _name, encoding, *_rest in page.get_fonts(full=True):
            embedded = ext not in ("", "n/a")
            encoding = encoding or None
            if embedded:
                try:
                    buffer = doc.extract_font(xref)[3]
                except (RuntimeError, ValueError) as exc:
                    logger.warning("Font %s could not be extracted: %s", basefont, exc)
                    buffer = b""
                if not buffer:
                    fonts.append(damaged_font_placeholder(basefont, encoding))
                    continue
            fonts.append(font_info_from_name(basefont, embedded=embedded, encoding=encoding))
        return fonts
