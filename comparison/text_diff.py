"""Word, line and character level text differencing.

Line ("exact") and word ("smart") methods use a bounded-lookahead greedy scan
that stays linear in practice. The character method runs a full LCS table and
is meant for short strings.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from comparison.models import ChangeType, TextDifference
from comparison.severity import classify_severity
from config.settings import settings
from utils.logging import logger

TEXT_METHODS = ("exact", "smart", "word", "character")

_JOINERS = {"exact": "\n", "smart": " ", "character": ""}
_WORD = re.compile(r"\S+")


@dataclass(frozen=True)
class TextEdit:
    """Raw edit over token streams; ``*_end`` indices are exclusive."""

    change_type: ChangeType
    base_start: int
    base_end: int
    compare_start: int
    compare_end: int


def normalize_method(method: Optional[str]) -> str:
    """Canonical method name; ``word`` is an alias of ``smart``."""
    method = (method or settings.default_text_method).strip().lower()
    if method == "word":
        return "smart"
    if method not in TEXT_METHODS:
        logger.warning("Unknown text comparison method %r, using 'smart'", method)
        return "smart"
    return method


def tokenize(text: Optional[str], method: str) -> List[str]:
    """Split text into the tokens the given method compares."""
    if not text:
        return []
    method = normalize_method(method)
    if method == "exact":
        return [line.rstrip("\r") for line in text.split("\n")]
    if method == "character":
        return list(text)
    return text.split()


def token_spans(text: Optional[str], method: str) -> List[Tuple[int, int]]:
    """Character offsets ``[start, end)`` of every token ``tokenize`` returns for ``text``."""
    if not text:
        return []
    method = normalize_method(method)
    if method == "character":
        return [(k, k + 1) for k in range(len(text))]
    if method == "exact":
        spans = []
        start = 0
        for line in text.split("\n"):
            spans.append((start, start + len(line)))
            start += len(line) + 1
        return spans
    return [match.span() for match in _WORD.finditer(text)]


def join_tokens(tokens: Sequence[str], method: str) -> str:
    return _JOINERS[normalize_method(method)].join(tokens)


# =============================================================================
# Edit scripts
# =============================================================================

def greedy_edits(
    base: Sequence[str],
    compare: Sequence[str],
    lookahead: Optional[int] = None,
    max_span: Optional[int] = None,
) -> List[TextEdit]:
    """
    Bounded-lookahead greedy diff.

    On a mismatch both streams are searched up to ``lookahead`` tokens ahead for
    the token the other side is waiting on. The closer resynchronisation point
    wins and the skipped tokens become an added or deleted span. When both are
    equally far (or neither is found) the mismatch is reported as one modified
    span of at most ``max_span`` tokens.
    """
    if lookahead is None:
        lookahead = settings.text_lookahead_window
    if max_span is None:
        max_span = settings.text_max_modified_span
    max_span = max(1, max_span)

    edits: List[TextEdit] = []
    i = j = 0
    n, m = len(base), len(compare)

    while i < n and j < m:
        if base[i] == compare[j]:
            i += 1
            j += 1
            continue

        skip_compare = _find_ahead(compare, j, base[i], lookahead)
        skip_base = _find_ahead(base, i, compare[j], lookahead)

        if skip_compare is not None and (skip_base is None or skip_compare < skip_base):
            edits.append(TextEdit("added", i, i, j, j + skip_compare))
            j += skip_compare
        elif skip_base is not None and (skip_compare is None or skip_base < skip_compare):
            edits.append(TextEdit("deleted", i, i + skip_base, j, j))
            i += skip_base
        else:
            span = 1
            while (
                span < max_span
                and i + span < n
                and j + span < m
                and base[i + span] != compare[j + span]
            ):
                span += 1
            edits.append(TextEdit("modified", i, i + span, j, j + span))
            i += span
            j += span

    if i < n:
        edits.append(TextEdit("deleted", i, n, j, j))
    if j < m:
        edits.append(TextEdit("added", i, i, j, m))
    return edits


def _find_ahead(tokens: Sequence[str], start: int, target: str, lookahead: int) -> Optional[int]:
    """Distance from ``start`` to the next ``target`` within the window, or None."""
    limit = min(len(tokens), start + lookahead + 1)
    for k in range(start + 1, limit):
        if tokens[k] == target:
            return k - start
    return None


def lcs_edits(base: Sequence[str], compare: Sequence[str]) -> List[TextEdit]:
    """Minimal added/deleted runs from a full LCS table (O(n*m) time and memory)."""
    n, m = len(base), len(compare)
    table = [[0] * (m + 1) for _ in range(n + 1)]
    for i in range(n - 1, -1, -1):
        row, below = table[i], table[i + 1]
        bi = base[i]
        for j in range(m - 1, -1, -1):
            if bi == compare[j]:
                row[j] = below[j + 1] + 1
            else:
                row[j] = below[j] if below[j] >= row[j + 1] else row[j + 1]

    edits: List[TextEdit] = []
    i = j = 0
    while i < n or j < m:
        if i < n and j < m and base[i] == compare[j]:
            i += 1
            j += 1
            continue
        if j < m and (i == n or table[i][j + 1] >= table[i + 1][j]):
            start = j
            while j < m and (i == n or (base[i] != compare[j] and table[i][j + 1] >= table[i + 1][j])):
                j += 1
            edits.append(TextEdit("added", i, i, start, j))
        else:
            start = i
            while i < n and (j == m or (base[i] != compare[j] and table[i + 1][j] > table[i][j + 1])):
                i += 1
            edits.append(TextEdit("deleted", start, i, j, j))
    return edits


# =============================================================================
# Public API
# =============================================================================

def effective_method(base_text: Optional[str], compare_text: Optional[str], method: Optional[str]) -> str:
    """Method actually used for a pair of strings; oversized character diffs fall back to words."""
    method = normalize_method(method)
    cells = len(base_text or "") * len(compare_text or "")
    if method == "character" and cells > settings.character_diff_max_cells:
        logger.warning(
            "Character diff of %d x %d characters exceeds %d cells, falling back to word diff",
            len(base_text or ""),
            len(compare_text or ""),
            settings.character_diff_max_cells,
        )
        return "smart"
    return method


def diff_text(
    base_text: Optional[str],
    compare_text: Optional[str],
    method: Optional[str] = None,
    min_magnitude: Optional[float] = None,
) -> List[TextDifference]:
    """
    Compare two strings and return the differences in order.

    Args:
        base_text: Text of the base page (None is treated as empty)
        compare_text: Text of the compare page (None is treated as empty)
        method: 'exact' (lines), 'smart'/'word' (words) or 'character'
        min_magnitude: Differences below this magnitude are dropped

    Returns:
        List of TextDifference objects carrying token indices on both sides
    """
    base_text = base_text or ""
    compare_text = compare_text or ""
    method = effective_method(base_text, compare_text, method)
    if min_magnitude is None:
        min_magnitude = settings.text_min_magnitude

    if base_text == compare_text:
        return []
    base_blank = _is_blank(base_text, method)
    compare_blank = _is_blank(compare_text, method)
    if base_blank and compare_blank:
        return []
    if base_blank or compare_blank:
        return [_whole_text_difference(base_text, compare_text, method, base_blank)]

    base_tokens = tokenize(base_text, method)
    compare_tokens = tokenize(compare_text, method)
    if method == "character":
        edits = lcs_edits(base_tokens, compare_tokens)
    else:
        edits = greedy_edits(base_tokens, compare_tokens)

    total_length = max(len(base_text), len(compare_text), 1)
    differences: List[TextDifference] = []
    for edit in edits:
        base_fragment = join_tokens(base_tokens[edit.base_start:edit.base_end], method)
        compare_fragment = join_tokens(compare_tokens[edit.compare_start:edit.compare_end], method)
        magnitude = min(1.0, max(len(base_fragment), len(compare_fragment)) / total_length)
        if magnitude < min_magnitude:
            continue
        differences.append(
            TextDifference(
                change_type=edit.change_type,
                severity=classify_severity("text", magnitude),
                description=_describe(edit.change_type, base_fragment, compare_fragment),
                magnitude=magnitude,
                base_text=base_fragment if edit.change_type != "added" else None,
                compare_text=compare_fragment if edit.change_type != "deleted" else None,
                start_index=edit.base_start,
                end_index=edit.base_end,
                compare_start_index=edit.compare_start,
                compare_end_index=edit.compare_end,
            )
        )

    logger.debug("Text diff (%s): %d tokens vs %d tokens -> %d differences",
                 method, len(base_tokens), len(compare_tokens), len(differences))
    return differences


def apply_text_differences(
    base_text: Optional[str],
    differences: Iterable[TextDifference],
    method: Optional[str] = None,
) -> str:
    """Rebuild the compare text by applying ``differences`` (in emitted order) to ``base_text``."""
    method = normalize_method(method)
    base_tokens = tokenize(base_text, method)
    output: List[str] = []
    position = 0
    for diff in differences:
        start = diff.start_index if diff.start_index is not None else position
        end = diff.end_index if diff.end_index is not None else start
        output.extend(base_tokens[position:start])
        if diff.change_type in ("added", "modified"):
            output.extend(tokenize(diff.compare_text, method))
        position = max(position, end)
    output.extend(base_tokens[position:])
    return join_tokens(output, method)


def _is_blank(text: str, method: str) -> bool:
    # Whitespace is content for character diffs
    if method == "character":
        return not text
    return not text.strip()


def _whole_text_difference(
    base_text: str, compare_text: str, method: str, base_blank: bool
) -> TextDifference:
    if not base_blank:
        base_count = len(tokenize(base_text, method))
        return TextDifference(
            change_type="deleted",
            severity="major",
            description=_describe("deleted", base_text, ""),
            magnitude=1.0,
            base_text=base_text,
            start_index=0,
            end_index=base_count,
            compare_start_index=0,
            compare_end_index=0,
        )
    compare_count = len(tokenize(compare_text, method))
    return TextDifference(
        change_type="added",
        severity="major",
        description=_describe("added", "", compare_text),
        magnitude=1.0,
        compare_text=compare_text,
        start_index=0,
        end_index=0,
        compare_start_index=0,
        compare_end_index=compare_count,
    )


def _shorten(text: str, limit: int = 50) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _describe(change_type: str, base_fragment: str, compare_fragment: str) -> str:
    if change_type == "added":
        return f'Added text: "{_shorten(compare_fragment)}"'
    if change_type == "deleted":
        return f'Deleted text: "{_shorten(base_fragment)}"'
    return f'Changed "{_shorten(base_fragment)}" to "{_shorten(compare_fragment)}"'
