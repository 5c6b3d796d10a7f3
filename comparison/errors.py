"""Error taxonomy for the comparison engine.

Recoverable errors are absorbed per page or per algorithm and turned into
placeholders or conservative scores. Fatal errors fail the whole comparison.
"""
from __future__ import annotations

from typing import Optional


class ComparisonError(Exception):
    """Base class for all comparison engine errors."""


class ExtractionError(ComparisonError):
    """The extraction service could not produce artifacts for one page."""

    def __init__(self, message: str, page_index: Optional[int] = None):
        super().__init__(message)
        self.page_index = page_index


class RenderError(ComparisonError):
    """A page could not be rasterized with the requested parameters."""

    def __init__(self, message: str, page_index: Optional[int] = None, dpi: Optional[int] = None):
        super().__init__(message)
        self.page_index = page_index
        self.dpi = dpi


class AlgorithmError(ComparisonError):
    """Unexpected failure inside a numeric or diff routine."""


class ComparisonTimeoutError(ComparisonError):
    """A page task attempt or its batch ran out of time."""


class FatalComparisonError(ComparisonError):
    """Failure that aborts the comparison and marks it FAILED."""


class DocumentLoadError(FatalComparisonError):
    """A document cannot be opened by the extraction layer at all."""


class StorageError(FatalComparisonError):
    """The comparison result cannot be written to its output location."""


class InvalidTransitionError(ComparisonError):
    """A comparison status change that the state machine does not allow."""
