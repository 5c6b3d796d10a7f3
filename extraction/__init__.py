"""Page extraction boundary and the PyMuPDF-backed default service."""
from extraction.outcome import Outcome
from extraction.pdf_parser import PyMuPDFExtractionService
from extraction.service import DocumentInfo, EmbeddedImage, ExtractionService, PageArtifacts, TextRun

__all__ = [
    "DocumentInfo",
    "EmbeddedImage",
    "ExtractionService",
    "Outcome",
    "PageArtifacts",
    "PyMuPDFExtractionService",
    "TextRun",
]
