from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple

import numpy as np
import pytest

from comparison.errors import DocumentLoadError, ExtractionError, RenderError, StorageError
from comparison.models import ComparisonStatus, FontInfo
from extraction.service import DocumentInfo, PageArtifacts, TextRun
from pipeline.compare_pdfs import ComparisonPipeline, PipelineConfig, compare_documents, worker_count
from pipeline.policy import Deadline, RetryPolicy

_FAST_POLICY = RetryPolicy(max_attempts=3, per_attempt_timeout=5.0, aggregate_deadline=30.0, backoff_seconds=0.0)


class FakeExtractionService:
    """In-memory documents: each document is a list of page texts."""

    def __init__(
        self,
        documents: Dict[str, List[str]],
        metadata: Optional[Dict[str, Dict[str, str]]] = None,
        block: Optional[Tuple[str, int]] = None,
        failing_pages: Optional[Dict[Tuple[str, int], int]] = None,
        broken_renders: bool = False,
    ):
        self.documents = documents
        self.metadata = metadata or {}
        self.block = block
        self.release = threading.Event()
        self.failing_pages = dict(failing_pages or {})
        self.broken_renders = broken_renders
        self.render_calls: List[Tuple[int, bool]] = []
        self._lock = threading.Lock()

    def load_document(self, document):
        if document not in self.documents:
            raise DocumentLoadError(f"No such document: {document}")
        pages = self.documents[document]
        return DocumentInfo(
            document_id=document,
            page_count=len(pages),
            page_sizes=[(612.0, 792.0)] * len(pages),
            metadata=self.metadata.get(document, {"title": "Quarterly report"}),
        )

    def extract_page(self, document, page_index):
        if self.block == (document, page_index):
            self.release.wait(10)
        with self._lock:
            remaining = self.failing_pages.get((document, page_index), 0)
            if remaining:
                self.failing_pages[(document, page_index)] = remaining - 1
                raise ExtractionError("transient parse failure", page_index=page_index)
        text = self.documents[document][page_index]
        runs = [TextRun(text=text, x=72.0, y=700.0, width=6.0 * len(text), height=12.0,
                        font_name="Helvetica", font_size=12.0, color=(0, 0, 0))] if text else []
        return PageArtifacts(
            document_id=document,
            page_index=page_index,
            width=612.0,
            height=792.0,
            runs=runs,
            fonts=[FontInfo("Helvetica", "Helvetica")],
        )

    def render_page(self, document, page_index, dpi, grayscale=False):
        with self._lock:
            self.render_calls.append((dpi, grayscale))
        if self.broken_renders:
            raise RenderError("renderer crashed", page_index=page_index, dpi=dpi)
        shape = (40, 30) if grayscale else (40, 30, 3)
        return np.full(shape, 255, dtype=np.uint8)


_PAGES = ["Introduction and scope", "Financial overview", "Hello", "Risks and outlook", "Appendix"]


def _compare_pages() -> List[str]:
    pages = list(_PAGES)
    pages[2] = "Hello World"
    return pages


@pytest.fixture
def many_workers(monkeypatch):
    monkeypatch.setattr("pipeline.compare_pdfs.os.cpu_count", lambda: 8)


# =============================================================================
# End-to-end through the orchestrator
# =============================================================================

def test_added_word_on_page_three(many_workers):
    service = FakeExtractionService({"base": _PAGES, "compare": _compare_pages()})
    pipeline = ComparisonPipeline(service=service, policy=_FAST_POLICY)
    comparison = pipeline.create_comparison("base", "compare", "cmp-hello")

    result = pipeline.run(comparison)

    assert comparison.status == ComparisonStatus.COMPLETED
    assert result.status == ComparisonStatus.COMPLETED
    assert result.summary.total_differences == 1
    assert result.summary.counts_by_type["text"] == 1
    assert result.are_documents_identical() is False

    page = result.page(3)
    diff = page.unique_differences()[0]
    assert diff.change_type == "added"
    assert diff.compare_text == "World"
    assert comparison.completed_operations == comparison.total_operations == 5
    assert comparison.progress == 1.0

    assert len(result.document_pairs) == 1
    pair = result.document_pairs[0]
    assert pair.total_differences == 1
    assert [m.difference_count for m in pair.page_mappings] == [0, 0, 1, 0, 0]


def test_identical_documents(many_workers):
    service = FakeExtractionService({"base": _PAGES, "compare": list(_PAGES)})

    result = compare_documents("base", "compare", options={}, service=service)

    assert result.are_documents_identical() is True
    assert result.summary.total_differences == 0
    assert result.summary.overall_similarity_score == pytest.approx(1.0)


def test_metadata_differences_are_counted(many_workers):
    service = FakeExtractionService(
        {"base": _PAGES, "compare": list(_PAGES)},
        metadata={"base": {"title": "Draft"}, "compare": {"title": "Final"}},
    )

    result = compare_documents("base", "compare", service=service)

    assert result.summary.total_differences == 1
    assert result.summary.counts_by_type["metadata"] == 1
    assert result.metadata_differences[0].key == "title"
    assert result.metadata_differences[0].position is not None


def test_inserted_page_is_unmatched_pair(many_workers):
    compare = list(_PAGES)
    compare.insert(2, "Brand new executive summary page")
    service = FakeExtractionService({"base": _PAGES, "compare": compare})

    result = compare_documents("base", "compare", service=service)

    assert [p.matched for p in result.document_pairs] == [True, False, True]
    inserted = result.page(3)
    assert inserted.page_exists_in_base is False
    assert inserted.compare_page_number == 3
    assert [d.change_type for d in inserted.unique_differences()] == ["added"]
    assert result.summary.base_page_count == 5
    assert result.summary.compare_page_count == 6


def test_unloadable_document_fails_comparison():
    service = FakeExtractionService({"base": _PAGES})
    pipeline = ComparisonPipeline(service=service, policy=_FAST_POLICY)
    comparison = pipeline.create_comparison("base", "missing.pdf")

    with pytest.raises(DocumentLoadError):
        pipeline.run(comparison)

    assert comparison.status == ComparisonStatus.FAILED
    assert "missing.pdf" in comparison.status_message
    assert pipeline.get_comparison(comparison.comparison_id) is comparison


def test_timed_out_page_becomes_placeholder(many_workers):
    service = FakeExtractionService({"base": _PAGES, "compare": list(_PAGES)}, block=("base", 2))
    policy = RetryPolicy(max_attempts=1, per_attempt_timeout=5.0, aggregate_deadline=0.5, backoff_seconds=0.0)
    pipeline = ComparisonPipeline(service=service, policy=policy)
    comparison = pipeline.create_comparison("base", "compare")

    try:
        result = pipeline.run(comparison)
    finally:
        service.release.set()

    assert comparison.status == ComparisonStatus.COMPLETED
    assert comparison.processing_warning
    assert "placeholder" in comparison.processing_warning
    assert result.processing_warning == comparison.processing_warning
    assert "warning" in result.status_message

    page = result.page(3)
    assert page.placeholder is True
    assert page.difference_count == 0
    assert "timed out" in page.description.lower()
    assert len(result.page_details) == 5


def test_transient_extraction_failure_is_retried(many_workers):
    service = FakeExtractionService(
        {"base": _PAGES, "compare": list(_PAGES)},
        failing_pages={("compare", 1): 2},
    )
    pipeline = ComparisonPipeline(service=service, policy=_FAST_POLICY)

    result = pipeline.run(pipeline.create_comparison("base", "compare"))

    assert result.page(2).placeholder is False
    assert result.are_documents_identical() is True


def test_exhausted_retries_give_placeholder(many_workers):
    service = FakeExtractionService(
        {"base": _PAGES, "compare": list(_PAGES)},
        failing_pages={("compare", 1): 10},
    )
    pipeline = ComparisonPipeline(service=service, policy=_FAST_POLICY)

    result = pipeline.run(pipeline.create_comparison("base", "compare"))

    page = result.page(2)
    assert page.placeholder is True
    assert "3 attempts" in page.description
    assert result.status == ComparisonStatus.COMPLETED


def test_render_failures_fall_back_to_blank_bitmap(many_workers):
    service = FakeExtractionService({"base": ["Only page"], "compare": ["Only page"]}, broken_renders=True)

    result = compare_documents("base", "compare", service=service)

    assert result.are_documents_identical() is True
    # full dpi, reduced dpi, grayscale for each side
    assert len(service.render_calls) == 6
    assert (72, True) in service.render_calls


def test_large_documents_are_sampled(many_workers, monkeypatch):
    from config.settings import settings

    monkeypatch.setattr(settings, "sampling_page_threshold", 10)
    monkeypatch.setattr(settings, "sampling_edge_pages", 2)
    monkeypatch.setattr(settings, "sampling_stride", 5)
    pages = [f"Section {n} " + chr(ord("a") + n) * 30 for n in range(20)]
    service = FakeExtractionService({"base": pages, "compare": list(pages)})
    pipeline = ComparisonPipeline(service=service, policy=_FAST_POLICY)
    comparison = pipeline.create_comparison("base", "compare")

    result = pipeline.run(comparison)

    sampled = [d.page_number for d in result.page_details if d.sampled]
    assert sampled == [1, 2, 6, 11, 16, 19, 20]
    skipped = result.page(3)
    assert skipped.sampled is False and skipped.placeholder is False
    assert comparison.total_operations == 7


def test_sampled_result_is_never_reported_identical(many_workers, monkeypatch):
    from config.settings import settings

    monkeypatch.setattr(settings, "sampling_page_threshold", 10)
    monkeypatch.setattr(settings, "sampling_edge_pages", 2)
    monkeypatch.setattr(settings, "sampling_stride", 5)
    pages = [f"Section {n} " + chr(ord("a") + n) * 30 for n in range(20)]
    compare = list(pages)
    # page 3 is not in the sample, so this change goes unseen
    compare[2] += " amended"
    service = FakeExtractionService({"base": pages, "compare": compare})
    pipeline = ComparisonPipeline(service=service, policy=_FAST_POLICY)
    comparison = pipeline.create_comparison("base", "compare")

    result = pipeline.run(comparison)

    assert result.page(3).sampled is False
    assert result.summary.total_differences == 0
    assert result.are_documents_identical() is False
    assert "sampled" in comparison.processing_warning
    assert result.processing_warning == comparison.processing_warning


def test_placeholder_page_prevents_identical_verdict(many_workers):
    service = FakeExtractionService(
        {"base": _PAGES, "compare": list(_PAGES)},
        failing_pages={("compare", 1): 10},
    )
    pipeline = ComparisonPipeline(service=service, policy=_FAST_POLICY)

    result = pipeline.run(pipeline.create_comparison("base", "compare"))

    assert result.page(2).placeholder is True
    assert result.summary.total_differences == 0
    assert result.are_documents_identical() is False


def test_timed_out_page_comparison_becomes_placeholder(many_workers, monkeypatch):
    import pipeline.compare_pdfs as compare_pdfs

    gate = threading.Event()
    real_compare_page = compare_pdfs.compare_page

    def slow_compare_page(page_number, *args, **kwargs):
        if page_number == 3:
            gate.wait(10)
        return real_compare_page(page_number, *args, **kwargs)

    monkeypatch.setattr(compare_pdfs, "compare_page", slow_compare_page)
    service = FakeExtractionService({"base": _PAGES, "compare": list(_PAGES)})
    policy = RetryPolicy(max_attempts=1, per_attempt_timeout=5.0, aggregate_deadline=0.5, backoff_seconds=0.0)
    pipeline = ComparisonPipeline(service=service, policy=policy)
    comparison = pipeline.create_comparison("base", "compare")

    try:
        result = pipeline.run(comparison)
    finally:
        gate.set()

    assert comparison.status == ComparisonStatus.COMPLETED
    assert comparison.processing_warning
    page = result.page(3)
    assert page.placeholder is True
    assert page.base_differences == [] and page.compare_differences == []
    assert "timed out" in page.description.lower()
    assert len(result.page_details) == 5
    assert result.page(2).placeholder is False
    assert result.are_documents_identical() is False


def test_exhaustive_option_disables_sampling(many_workers, monkeypatch):
    from config.settings import settings

    monkeypatch.setattr(settings, "sampling_page_threshold", 2)
    service = FakeExtractionService({"base": _PAGES, "compare": list(_PAGES)})

    result = compare_documents("base", "compare", options={"exhaustiveProcessing": "true"}, service=service)

    assert all(d.sampled for d in result.page_details)


def test_result_is_exported(many_workers, tmp_path):
    service = FakeExtractionService({"base": _PAGES, "compare": _compare_pages()})
    pipeline = ComparisonPipeline(service=service, policy=_FAST_POLICY, output_dir=tmp_path)
    comparison = pipeline.create_comparison("base", "compare", "cmp-export")

    pipeline.run(comparison)

    path = tmp_path / "cmp-export.json"
    assert comparison.result_path == str(path)
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["comparisonId"] == "cmp-export"
    assert data["summary"]["totalDifferences"] == 1
    diff = data["pageDetails"][2]["compareDifferences"][0]
    assert 0.0 <= diff["normalizedBbox"]["x"] <= 1.0


def test_storage_failure_is_fatal(many_workers, tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    service = FakeExtractionService({"base": _PAGES, "compare": list(_PAGES)})
    pipeline = ComparisonPipeline(service=service, policy=_FAST_POLICY, output_dir=blocker)
    comparison = pipeline.create_comparison("base", "compare")

    with pytest.raises(StorageError):
        pipeline.run(comparison)
    assert comparison.status == ComparisonStatus.FAILED


# =============================================================================
# Options
# =============================================================================

def test_options_are_parsed():
    config = PipelineConfig.from_options({
        "textComparisonMethod": "Character",
        "differenceThreshold": "0.25",
        "smartMatching": "false",
        "exhaustiveProcessing": "yes",
        "renderDpi": "96",
    })

    assert config.text_method == "character"
    assert config.difference_threshold == 0.25
    assert config.smart_matching is False
    assert config.exhaustive_processing is True
    assert config.render_dpi == 96
    assert config.warnings == []
    assert config.page_options().min_magnitude("image") == 0.25


def test_invalid_options_fall_back_with_warnings():
    config = PipelineConfig.from_options({
        "textComparisonMethod": "fuzzy",
        "differenceThreshold": "high",
        "smartMatching": "maybe",
    })

    assert config.text_method == "smart"
    assert config.difference_threshold is None
    assert config.smart_matching is True
    assert len(config.warnings) == 3


def test_word_method_is_alias_for_smart():
    assert PipelineConfig.from_options({"textComparisonMethod": "word"}).text_method == "smart"


def test_worker_count_is_bounded(monkeypatch):
    from config.settings import settings

    monkeypatch.setattr("pipeline.compare_pdfs.os.cpu_count", lambda: 16)
    monkeypatch.setattr(settings, "max_workers", 4)

    assert worker_count(100) == 4
    assert worker_count(2) == 2
    assert worker_count(0) == 1


# =============================================================================
# Retry policy
# =============================================================================

def test_policy_retries_until_success():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ExtractionError("not yet")
        return "ok"

    with ThreadPoolExecutor(max_workers=1) as executor:
        outcome = _FAST_POLICY.run(flaky, executor, "flaky work")

    assert outcome.is_ok
    assert outcome.value == "ok"
    assert outcome.attempts == 3


def test_policy_degrades_after_last_attempt():
    def broken():
        raise RenderError("still broken")

    with ThreadPoolExecutor(max_workers=1) as executor:
        outcome = _FAST_POLICY.run(broken, executor, "broken work")

    assert not outcome.is_ok
    assert outcome.attempts == 3
    assert "still broken" in outcome.reason
    assert outcome.unwrap_or(lambda reason: "fallback") == "fallback"


def test_policy_propagates_fatal_errors():
    def fatal():
        raise StorageError("disk full")

    with ThreadPoolExecutor(max_workers=1) as executor:
        with pytest.raises(StorageError):
            _FAST_POLICY.run(fatal, executor, "fatal work")


def test_policy_times_out_slow_attempts():
    gate = threading.Event()
    policy = RetryPolicy(max_attempts=2, per_attempt_timeout=0.1, aggregate_deadline=5.0, backoff_seconds=0.0)

    with ThreadPoolExecutor(max_workers=2) as executor:
        try:
            outcome = policy.run(lambda: gate.wait(5), executor, "slow work")
        finally:
            gate.set()

    assert not outcome.is_ok
    assert "timed out" in outcome.reason


def test_attempt_pool_leaves_room_for_abandoned_attempts(many_workers):
    gate = threading.Event()
    calls = []
    lock = threading.Lock()
    policy = RetryPolicy(max_attempts=3, per_attempt_timeout=0.3, aggregate_deadline=10.0, backoff_seconds=0.0)

    def hangs_twice():
        with lock:
            calls.append(1)
            attempt = len(calls)
        if attempt < 3:
            gate.wait(5)
        return attempt

    pool = ComparisonPipeline._attempt_pool(1, policy.max_attempts, "test-attempt")
    try:
        outcome = policy.run(hangs_twice, pool, "hanging work")
    finally:
        gate.set()
        pool.shutdown(wait=False)

    # the third attempt runs at once even though two earlier attempts still hold threads
    assert outcome.is_ok
    assert outcome.value == 3
    assert outcome.attempts == 3


def test_policy_respects_expired_deadline():
    deadline = Deadline(0.0)

    with ThreadPoolExecutor(max_workers=1) as executor:
        outcome = _FAST_POLICY.run(lambda: "never", executor, "late work", deadline=deadline)

    assert not outcome.is_ok
    assert "deadline" in outcome.reason
    assert deadline.expired


def test_backoff_doubles():
    policy = RetryPolicy(backoff_seconds=0.1)

    assert [policy.backoff(n) for n in (1, 2, 3)] == pytest.approx([0.1, 0.2, 0.4])


# =============================================================================
# Timings and logging
# =============================================================================

def test_run_records_phase_timings(many_workers):
    from utils.performance import clear_timings, get_timings

    clear_timings()
    service = FakeExtractionService({"base": _PAGES, "compare": _PAGES})
    compare_documents("base", "compare", "cmp-timings", service=service)

    names = [timing.name for timing in get_timings()]
    assert {"comparison", "extraction", "alignment", "page_comparison"} <= set(names)
    comparison_timing = next(t for t in get_timings() if t.name == "comparison")
    assert comparison_timing.metadata == {"comparison_id": "cmp-timings"}

    clear_timings()
    assert get_timings() == []


def test_configure_logging_adds_file_handler(monkeypatch, tmp_path):
    import logging

    from utils.logging import configure_logging

    captured = {}
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: captured.update(kwargs))

    configure_logging(logging.DEBUG, logfile=str(tmp_path / "compare.log"))

    assert captured["level"] == logging.DEBUG
    assert "%(threadName)s" in captured["format"]
    assert any(isinstance(h, logging.FileHandler) for h in captured["handlers"])
    for handler in captured["handlers"]:
        handler.close()


def test_timings_can_be_filtered_by_phase():
    from utils.performance import clear_timings, get_timings, track_time

    clear_timings()
    with track_time("extraction"):
        pass
    with track_time("alignment", pages=3):
        pass

    assert [t.name for t in get_timings("alignment")] == ["alignment"]
    assert get_timings("alignment")[0].metadata == {"pages": 3}
    assert len(get_timings()) == 2
    clear_timings()
