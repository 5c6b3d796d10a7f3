from __future__ import annotations

from collections import Counter

import numpy as np
import pytest

from comparison.alignment import align_documents, align_pages
from comparison.fingerprint import PageFingerprint, compute_fingerprint, text_checksum
from extraction.service import PageArtifacts, TextRun
from utils.text_normalization import normalize_text


def _fp(index: int, text: str, dhash: str | None = None, placeholder: bool = False) -> PageFingerprint:
    normalized = normalize_text(text)
    return PageFingerprint(
        page_index=index,
        text_hash=text_checksum(normalized),
        normalized_text=normalized,
        image_dhash=dhash,
        placeholder=placeholder,
    )


def _doc(*letters: str) -> list[PageFingerprint]:
    # Pages made of distinct characters are mutually dissimilar
    return [_fp(idx, letter * 60) for idx, letter in enumerate(letters)]


def _covered(pairs, attr_start: str, attr_end: str) -> Counter:
    pages = Counter()
    for pair in pairs:
        start, end = getattr(pair, attr_start), getattr(pair, attr_end)
        if start is not None:
            pages.update(range(start, end + 1))
    return pages


def test_identical_documents_form_one_matched_pair():
    pairs = align_documents(_doc("a", "b", "c"), _doc("a", "b", "c"))

    assert len(pairs) == 1
    pair = pairs[0]
    assert pair.matched
    assert (pair.base_start_page, pair.base_end_page) == (1, 3)
    assert (pair.compare_start_page, pair.compare_end_page) == (1, 3)
    assert pair.similarity_score == pytest.approx(1.0)


def test_inserted_pages_become_compare_only_pair():
    base = _doc("a", "b", "c", "d", "e")
    compare = _doc("a", "b", "x", "y", "c", "d", "e")

    pairs = align_documents(base, compare)

    assert [p.matched for p in pairs] == [True, False, True]
    inserted = pairs[1]
    assert inserted.has_base_document is False
    assert (inserted.compare_start_page, inserted.compare_end_page) == (3, 4)
    assert (pairs[2].base_start_page, pairs[2].compare_start_page) == (3, 5)

    # every page appears exactly once
    assert _covered(pairs, "base_start_page", "base_end_page") == Counter(range(1, 6))
    assert _covered(pairs, "compare_start_page", "compare_end_page") == Counter(range(1, 8))


def test_deleted_page_becomes_base_only_pair():
    pairs = align_documents(_doc("a", "b", "c", "d"), _doc("a", "c", "d"))

    assert [p.matched for p in pairs] == [True, False, True]
    assert pairs[1].has_compare_document is False
    assert (pairs[1].base_start_page, pairs[1].base_end_page) == (2, 2)


def test_replaced_page_is_low_similarity_pair():
    steps = align_pages(_doc("a", "b", "c"), _doc("a", "z", "c"))

    assert [s.kind for s in steps] == ["pair", "pair", "pair"]
    assert steps[1].similarity < 0.5


def test_no_similar_pages_reports_documents_unmatched():
    pairs = align_documents(_doc("a", "b"), _doc("x", "y", "z"))

    assert len(pairs) == 2
    assert pairs[0].has_base_document and not pairs[0].has_compare_document
    assert pairs[1].has_compare_document and not pairs[1].has_base_document
    assert pairs[0].base_page_count == 2
    assert pairs[1].compare_page_count == 3


def test_positional_matching_without_smart_matching():
    steps = align_pages(_doc("a", "b", "c"), _doc("a", "x", "b", "c"), smart_matching=False)

    assert [(s.base_index, s.compare_index) for s in steps[:3]] == [(0, 0), (1, 1), (2, 2)]
    assert steps[3].kind == "compare_only"


def test_placeholder_keeps_its_index_counterpart():
    base = _doc("a", "b", "c")
    base[1] = _fp(1, "", placeholder=True)

    steps = align_pages(base, _doc("a", "b", "c"))

    assert [(s.kind, s.base_index, s.compare_index) for s in steps] == [
        ("pair", 0, 0), ("pair", 1, 1), ("pair", 2, 2),
    ]


def test_page_mappings_carry_one_based_numbers():
    pairs = align_documents(_doc("a", "b"), _doc("a", "b", "c"))

    mappings = [m for p in pairs for m in p.page_mappings]
    assert [(m.base_page_number, m.compare_page_number) for m in mappings] == [(1, 1), (2, 2), (None, 3)]


def test_fingerprint_similarity_blends_text_and_visual():
    same_text_a = _fp(0, "Quarterly report", dhash="0000000000000000")
    same_text_b = _fp(0, "Quarterly report", dhash="0000000000000000")
    other = _fp(0, "Quarterly report", dhash="ffffffffffffffff")

    assert same_text_a.similarity(same_text_b) == 1.0
    assert same_text_a.similarity(other, text_weight=0.7) == pytest.approx(0.7)
    assert _fp(0, "").similarity(_fp(1, "")) == 1.0


def test_compute_fingerprint_from_artifacts():
    artifacts = PageArtifacts(
        document_id="doc",
        page_index=2,
        width=612.0,
        height=792.0,
        runs=[TextRun("Hello", 72, 700, 30, 12), TextRun("World", 110, 700, 30, 12)],
        bitmap=np.full((40, 30, 3), 255, dtype=np.uint8),
    )

    fingerprint = compute_fingerprint(artifacts)

    assert fingerprint.page_index == 2
    assert fingerprint.normalized_text == "hello world"
    assert fingerprint.image_dhash is not None
    assert fingerprint.placeholder is False
