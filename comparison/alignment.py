"""Document alignment: pairs base pages with compare pages under insertions and deletions."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Literal, Optional, Sequence, Tuple

from comparison.fingerprint import PageFingerprint
from comparison.models import DocumentPair, PageMapping
from config.settings import settings
from utils.logging import logger

StepKind = Literal["pair", "base_only", "compare_only"]


@dataclass(frozen=True)
class AlignmentStep:
    kind: StepKind
    base_index: Optional[int]
    compare_index: Optional[int]
    similarity: float = 0.0


class _SimilarityMatrix:
    """Lazily computed, memoized fingerprint similarities."""

    def __init__(self, base: Sequence[PageFingerprint], compare: Sequence[PageFingerprint]):
        self._base = base
        self._compare = compare
        self._scores: Dict[Tuple[int, int], float] = {}

    def __call__(self, i: int, j: int) -> float:
        key = (i, j)
        if key not in self._scores:
            self._scores[key] = self._base[i].similarity(self._compare[j])
        return self._scores[key]


def align_pages(
    base: Sequence[PageFingerprint],
    compare: Sequence[PageFingerprint],
    threshold: Optional[float] = None,
    lookahead: Optional[int] = None,
    smart_matching: bool = True,
) -> List[AlignmentStep]:
    """
    Walk both documents in order and decide, page by page, how they correspond.

    Index-aligned pages are paired while their similarity reaches ``threshold``.
    On a mismatch (smart matching only) the next pair at or above the threshold
    is searched within ``lookahead`` pages on both sides; the candidate with the
    fewest skipped pages wins, then the most similar one. Pages skipped on one
    side only become deletions or insertions; equal skips on both sides are
    paired as low-similarity matches.
    """
    threshold = settings.page_similarity_threshold if threshold is None else threshold
    lookahead = settings.page_lookahead_window if lookahead is None else lookahead
    similarity = _SimilarityMatrix(base, compare)

    steps: List[AlignmentStep] = []
    i = j = 0
    n, m = len(base), len(compare)

    while i < n and j < m:
        if base[i].placeholder or compare[j].placeholder:
            # Degraded pages keep their index counterpart so alignment does not shift
            steps.append(AlignmentStep("pair", i, j, 0.0))
            i += 1
            j += 1
            continue

        score = similarity(i, j)
        if score >= threshold or not smart_matching:
            steps.append(AlignmentStep("pair", i, j, score))
            i += 1
            j += 1
            continue

        skip = _find_resync(similarity, base, compare, i, j, threshold, lookahead)
        if skip is None:
            steps.append(AlignmentStep("pair", i, j, score))
            i += 1
            j += 1
            continue

        di, dj = skip
        if di == dj:
            for k in range(di):
                steps.append(AlignmentStep("pair", i + k, j + k, similarity(i + k, j + k)))
        else:
            steps.extend(AlignmentStep("base_only", i + k, None) for k in range(di))
            steps.extend(AlignmentStep("compare_only", None, j + k) for k in range(dj))
        i += di
        j += dj

    steps.extend(AlignmentStep("base_only", k, None) for k in range(i, n))
    steps.extend(AlignmentStep("compare_only", None, k) for k in range(j, m))
    return steps


def _find_resync(
    similarity: _SimilarityMatrix,
    base: Sequence[PageFingerprint],
    compare: Sequence[PageFingerprint],
    i: int,
    j: int,
    threshold: float,
    lookahead: int,
) -> Optional[Tuple[int, int]]:
    best: Optional[Tuple[int, float, int, int]] = None
    for di in range(0, lookahead + 1):
        if i + di >= len(base):
            break
        for dj in range(0, lookahead + 1):
            if (di, dj) == (0, 0):
                continue
            if j + dj >= len(compare):
                break
            if base[i + di].placeholder or compare[j + dj].placeholder:
                continue
            score = similarity(i + di, j + dj)
            if score < threshold:
                continue
            candidate = (di + dj, -score, di, dj)
            if best is None or candidate < best:
                best = candidate
    if best is None:
        return None
    return best[2], best[3]


def align_documents(
    base: Sequence[PageFingerprint],
    compare: Sequence[PageFingerprint],
    threshold: Optional[float] = None,
    lookahead: Optional[int] = None,
    smart_matching: bool = True,
) -> List[DocumentPair]:
    """
    Align two documents into DocumentPairs covering every page exactly once.

    Runs of paired pages form matched pairs; runs of base-only or compare-only
    pages form unmatched pairs with the missing side flagged. When no page pair
    reaches ``threshold`` the documents are reported as one base-only and one
    compare-only pair instead of forcing a low-quality pairing.
    """
    threshold = settings.page_similarity_threshold if threshold is None else threshold
    logger.info("Aligning %d base pages with %d compare pages (smart=%s)", len(base), len(compare), smart_matching)

    steps = align_pages(base, compare, threshold, lookahead, smart_matching)

    real_pairs = [s for s in steps if s.kind == "pair"
                  and not base[s.base_index].placeholder and not compare[s.compare_index].placeholder]
    if real_pairs and all(s.similarity < threshold for s in real_pairs):
        logger.warning("No page pair reached similarity %.2f; documents treated as unmatched", threshold)
        steps = (
            [AlignmentStep("base_only", k, None) for k in range(len(base))]
            + [AlignmentStep("compare_only", None, k) for k in range(len(compare))]
        )

    pairs = _group_steps(steps)
    logger.info(
        "Alignment produced %d document pairs (%d matched)",
        len(pairs),
        sum(1 for p in pairs if p.matched),
    )
    return pairs


def _group_steps(steps: Sequence[AlignmentStep]) -> List[DocumentPair]:
    groups: List[List[AlignmentStep]] = []
    for step in steps:
        if groups and groups[-1][0].kind == step.kind:
            groups[-1].append(step)
        else:
            groups.append([step])
    return [_build_pair(idx, group) for idx, group in enumerate(groups)]


def _build_pair(pair_index: int, group: Sequence[AlignmentStep]) -> DocumentPair:
    kind = group[0].kind
    base_pages = [s.base_index + 1 for s in group if s.base_index is not None]
    compare_pages = [s.compare_index + 1 for s in group if s.compare_index is not None]
    mappings = tuple(
        PageMapping(
            base_page_number=s.base_index + 1 if s.base_index is not None else None,
            compare_page_number=s.compare_index + 1 if s.compare_index is not None else None,
            similarity_score=s.similarity,
        )
        for s in group
    )
    similarity = sum(s.similarity for s in group) / len(group) if kind == "pair" else 0.0
    return DocumentPair(
        pair_index=pair_index,
        matched=kind == "pair",
        base_start_page=min(base_pages) if base_pages else None,
        base_end_page=max(base_pages) if base_pages else None,
        compare_start_page=min(compare_pages) if compare_pages else None,
        compare_end_page=max(compare_pages) if compare_pages else None,
        has_base_document=bool(base_pages),
        has_compare_document=bool(compare_pages),
        similarity_score=similarity,
        page_mappings=mappings,
    )
