"""Cheap per-page signatures used to align documents.

A fingerprint combines:

1. Text checksum: MD5 of normalized page text, plus the normalized text itself
   for fuzzy similarity (rapidfuzz).
2. Visual hash: dHash of the rendered page (imagehash), which keeps scanned
   pages without extractable text comparable.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import List, Optional, Sequence

import imagehash
import numpy as np
from PIL import Image
from rapidfuzz import fuzz

from config.settings import settings
from extraction.service import PageArtifacts
from utils.logging import logger
from utils.text_normalization import normalize_text

_HASH_BITS = 64


@dataclass(frozen=True)
class PageFingerprint:
    page_index: int
    text_hash: str
    normalized_text: str = ""
    image_dhash: Optional[str] = None
    placeholder: bool = False

    @property
    def has_text(self) -> bool:
        return bool(self.normalized_text)

    def similarity(self, other: "PageFingerprint", text_weight: Optional[float] = None) -> float:
        """Similarity score (0.0 - 1.0) between two page fingerprints."""
        if text_weight is None:
            text_weight = settings.page_text_weight

        visual = None
        if self.image_dhash and other.image_dhash:
            visual = 1.0 - _hamming_distance(self.image_dhash, other.image_dhash) / float(_HASH_BITS)

        if not self.has_text and not other.has_text:
            return 1.0 if visual is None else visual
        if self.text_hash == other.text_hash and (visual is None or visual == 1.0):
            return 1.0

        text = fuzz.ratio(self.normalized_text, other.normalized_text) / 100.0
        if visual is None:
            return text
        return text_weight * text + (1.0 - text_weight) * visual


def _hamming_distance(hash1: str, hash2: str) -> int:
    """Hamming distance between two hex hash strings (max distance on mismatch)."""
    if len(hash1) != len(hash2):
        return _HASH_BITS
    try:
        xor = int(hash1, 16) ^ int(hash2, 16)
    except ValueError:
        return _HASH_BITS
    return bin(xor).count("1")


def text_checksum(normalized: str) -> str:
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()[:12]


def compute_image_dhash(bitmap: np.ndarray, hash_size: int = 8) -> Optional[str]:
    """dHash of a rendered page as a hex string; None when the bitmap is unusable."""
    if bitmap is None or bitmap.size == 0:
        return None
    try:
        image = Image.fromarray(np.ascontiguousarray(bitmap))
        return str(imagehash.dhash(image, hash_size=hash_size))
    except (ValueError, TypeError) as exc:
        logger.warning("Could not hash page bitmap: %s", exc)
        return None


def compute_fingerprint(artifacts: PageArtifacts) -> PageFingerprint:
    normalized = normalize_text(artifacts.text)
    return PageFingerprint(
        page_index=artifacts.page_index,
        text_hash=text_checksum(normalized),
        normalized_text=normalized,
        image_dhash=None if artifacts.placeholder else compute_image_dhash(artifacts.bitmap),
        placeholder=artifacts.placeholder,
    )


def compute_fingerprints(pages: Sequence[PageArtifacts]) -> List[PageFingerprint]:
    return [compute_fingerprint(page) for page in pages]
