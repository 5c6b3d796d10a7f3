"""Text normalization used for fingerprints and run matching."""
from __future__ import annotations

import re
import unicodedata

_WHITESPACE = re.compile(r"\s+")
# Ligatures and typographic variants that extraction layers emit inconsistently
_CHARACTER_MAP = str.maketrans({
    "\u00a0": " ",
    "\u2018": "'",
    "\u2019": "'",
    "\u201c": '"',
    "\u201d": '"',
    "\u2013": "-",
    "\u2014": "-",
    "\ufb01": "fi",
    "\ufb02": "fl",
})


def normalize_text(text: str) -> str:
    """
    Normalize text for matching: NFC, lowercase, typographic variants, collapsed whitespace.

    Examples:
        >>> normalize_text("  Hello\\n  World ")
        'hello world'
        >>> normalize_text("“Quoted”")
        '"quoted"'
    """
    if not text:
        return ""

    normalized = unicodedata.normalize("NFC", text).translate(_CHARACTER_MAP).lower()
    return _WHITESPACE.sub(" ", normalized).strip()
