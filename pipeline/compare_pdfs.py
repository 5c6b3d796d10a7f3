"""
Main orchestrator: end-to-end PDF comparison pipeline.

Drives one comparison through its lifecycle:
1. Loads both documents and compares their metadata
2. Extracts every page concurrently (retries, render fallbacks, placeholders)
3. Fingerprints and aligns pages into DocumentPairs
4. Compares aligned pages concurrently under an aggregate deadline
5. Repairs coordinates, builds the summary and optionally exports JSON
"""
from __future__ import annotations

import os
import threading
import uuid
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from comparison.alignment import align_documents
from comparison.cache import AnalysisCache
from comparison.coordinate_normalizer import place_differences, repair_differences
from comparison.errors import DocumentLoadError, FatalComparisonError
from comparison.fingerprint import compute_fingerprints
from comparison.metadata_diff import compare_metadata
from comparison.models import (
    DIFFERENCE_TYPES,
    Comparison,
    ComparisonResult,
    ComparisonStatus,
    ComparisonSummary,
    DocumentPair,
    MetadataDifference,
    PageDetails,
    PageMapping,
)
from comparison.page_comparison import PageComparisonOptions, compare_page, placeholder_page_details
from comparison.text_diff import TEXT_METHODS
from config.settings import settings
from export.json_exporter import export_json
from extraction.pdf_parser import PyMuPDFExtractionService
from extraction.service import DocumentInfo, ExtractionService, PageArtifacts
from pipeline.policy import Deadline, RetryPolicy
from utils.logging import logger
from utils.performance import check_performance_target, track_time

_TRUE_VALUES = frozenset({"true", "1", "yes", "on"})
_FALSE_VALUES = frozenset({"false", "0", "no", "off"})
# Attempts in the render fallback chain (full DPI, reduced DPI, grayscale)
_RENDER_STEPS = 3


@dataclass
class PipelineConfig:
    """Per-comparison options parsed from the request's string options."""

    text_method: str = "smart"
    difference_threshold: Optional[float] = None
    smart_matching: bool = True
    exhaustive_processing: bool = False
    render_dpi: int = field(default_factory=lambda: settings.render_dpi)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_options(cls, options: Optional[Mapping[str, Any]]) -> "PipelineConfig":
        """
        Parse request options; invalid values fall back to defaults with a warning.

        Recognised keys: textComparisonMethod, differenceThreshold, smartMatching,
        exhaustiveProcessing and renderDpi.
        """
        options = options or {}
        config = cls(text_method=settings.default_text_method)

        method = options.get("textComparisonMethod")
        if method is not None:
            method = str(method).strip().lower()
            if method in TEXT_METHODS:
                config.text_method = "smart" if method == "word" else method
            else:
                config._warn("textComparisonMethod", method)

        threshold = options.get("differenceThreshold")
        if threshold is not None:
            try:
                value = float(threshold)
            except (TypeError, ValueError):
                config._warn("differenceThreshold", threshold)
            else:
                if 0.0 <= value <= 1.0:
                    config.difference_threshold = value
                else:
                    config._warn("differenceThreshold", threshold)

        config.smart_matching = config._flag(options, "smartMatching", True)
        config.exhaustive_processing = config._flag(options, "exhaustiveProcessing", False)

        dpi = options.get("renderDpi")
        if dpi is not None:
            try:
                value = int(dpi)
            except (TypeError, ValueError):
                config._warn("renderDpi", dpi)
            else:
                if value > 0:
                    config.render_dpi = value
                else:
                    config._warn("renderDpi", dpi)
        return config

    def _flag(self, options: Mapping[str, Any], key: str, default: bool) -> bool:
        raw = options.get(key)
        if raw is None:
            return default
        if isinstance(raw, bool):
            return raw
        value = str(raw).strip().lower()
        if value in _TRUE_VALUES:
            return True
        if value in _FALSE_VALUES:
            return False
        self._warn(key, raw)
        return default

    def _warn(self, key: str, value: Any) -> None:
        message = f"Ignoring invalid option {key}={value!r}"
        logger.warning(message)
        self.warnings.append(message)

    def page_options(self) -> PageComparisonOptions:
        return PageComparisonOptions(
            text_method=self.text_method,
            difference_threshold=self.difference_threshold,
        )


@dataclass
class PipelineMetrics:
    """Performance metrics from pipeline execution."""

    total_time: float = 0.0
    extraction_time: float = 0.0
    alignment_time: float = 0.0
    comparison_time: float = 0.0
    pages_processed: int = 0
    pages_compared: int = 0
    placeholder_pages: int = 0
    diffs_found: int = 0

    @property
    def time_per_page(self) -> float:
        return self.total_time / max(1, self.pages_processed)

    def to_dict(self) -> dict:
        return {
            "total_time": self.total_time,
            "extraction_time": self.extraction_time,
            "alignment_time": self.alignment_time,
            "comparison_time": self.comparison_time,
            "pages_processed": self.pages_processed,
            "pages_compared": self.pages_compared,
            "placeholder_pages": self.placeholder_pages,
            "diffs_found": self.diffs_found,
            "time_per_page": self.time_per_page,
        }


@dataclass
class _BatchOutcome:
    results: Dict[Hashable, Any]
    timed_out: List[Hashable]
    failed: Dict[Hashable, str]


def worker_count(task_count: int) -> int:
    """Worker threads for a batch: half the CPUs, capped by settings and by the work available."""
    cpus = os.cpu_count() or 2
    return max(1, min(cpus // 2, settings.max_workers, task_count))


class ComparisonPipeline:
    """
    End-to-end document comparison pipeline.

    Usage:
        pipeline = ComparisonPipeline()
        comparison = pipeline.create_comparison("v1.pdf", "v2.pdf")
        result = pipeline.run(comparison)

        # Or in one call:
        result = compare_documents("v1.pdf", "v2.pdf")
    """

    def __init__(
        self,
        service: Optional[ExtractionService] = None,
        policy: Optional[RetryPolicy] = None,
        output_dir: Optional[str | Path] = None,
    ):
        self.service = service or PyMuPDFExtractionService()
        self.policy = policy or RetryPolicy.from_settings()
        self.output_dir = Path(output_dir) if output_dir is not None else None
        self.metrics = PipelineMetrics()
        self._comparisons: Dict[str, Comparison] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Comparison registry
    # ------------------------------------------------------------------

    def create_comparison(
        self,
        base_document: Any,
        compare_document: Any,
        comparison_id: Optional[str] = None,
        options: Optional[Mapping[str, str]] = None,
    ) -> Comparison:
        comparison = Comparison(
            comparison_id=comparison_id or str(uuid.uuid4()),
            base_document=base_document,
            compare_document=compare_document,
            options=dict(options or {}),
        )
        with self._registry_lock:
            self._comparisons[comparison.comparison_id] = comparison
        logger.info("Created comparison %s", comparison.comparison_id)
        return comparison

    def get_comparison(self, comparison_id: str) -> Optional[Comparison]:
        with self._registry_lock:
            return self._comparisons.get(comparison_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self, comparison: Comparison) -> ComparisonResult:
        """
        Run ``comparison`` to a terminal state.

        Returns the result on COMPLETED. Fatal errors move the comparison to
        FAILED and are re-raised; page-level problems only degrade the result.
        """
        config = PipelineConfig.from_options(comparison.options)
        for warning in config.warnings:
            comparison.add_warning(warning)
        cache = AnalysisCache()

        logger.info("=== Starting comparison %s ===", comparison.comparison_id)
        try:
            with track_time("comparison", comparison_id=comparison.comparison_id) as total:
                comparison.transition_to(ComparisonStatus.PROCESSING, "Loading documents")
                base_info = self._load(comparison.base_document, "base")
                compare_info = self._load(comparison.compare_document, "compare")
                metadata_diffs = compare_metadata(base_info.metadata, compare_info.metadata)
                place_differences(metadata_diffs, *base_info.page_size(0))

                comparison.transition_to(ComparisonStatus.PROCESSING_DOCUMENTS, "Extracting pages")
                with track_time("extraction") as timing:
                    base_pages, compare_pages = self._extract_documents(comparison, base_info, compare_info, config)
                self.metrics.extraction_time = timing.duration

                comparison.transition_to(ComparisonStatus.DOCUMENT_MATCHING, "Matching pages")
                with track_time("alignment") as timing:
                    pairs = align_documents(
                        compute_fingerprints(base_pages),
                        compute_fingerprints(compare_pages),
                        smart_matching=config.smart_matching,
                    )
                self.metrics.alignment_time = timing.duration

                comparison.transition_to(ComparisonStatus.COMPARING, "Comparing pages")
                with track_time("page_comparison") as timing:
                    page_details = self._compare_pages(comparison, pairs, base_pages, compare_pages, config, cache)
                self.metrics.comparison_time = timing.duration

                repair_differences(page_details)
                result = self._build_result(comparison, pairs, page_details, metadata_diffs, base_info, compare_info)

                message = "Comparison completed"
                if comparison.processing_warning:
                    message = f"Comparison completed with warnings: {comparison.processing_warning}"
                result.status = ComparisonStatus.COMPLETED
                result.status_message = message
                result.processing_warning = comparison.processing_warning
                # Storage failure is fatal, so the file is written before the terminal transition
                if self.output_dir is not None:
                    comparison.result_path = str(self._export(result))
                comparison.transition_to(ComparisonStatus.COMPLETED, message)
        except FatalComparisonError as exc:
            logger.error("Comparison %s failed: %s", comparison.comparison_id, exc)
            comparison.fail(str(exc))
            raise
        except Exception as exc:
            logger.exception("Comparison %s failed unexpectedly", comparison.comparison_id)
            if not comparison.status.is_terminal:
                comparison.fail(f"Unexpected error: {exc}")
            raise

        self.metrics.total_time = total.duration
        self.metrics.pages_processed = max(base_info.page_count, compare_info.page_count)
        self.metrics.diffs_found = result.summary.total_differences
        logger.info("=== Comparison %s complete ===", comparison.comparison_id)
        logger.info("Time: %.2fs (%.2fs/page)", self.metrics.total_time, self.metrics.time_per_page)
        logger.info("Diffs: %d", self.metrics.diffs_found)
        check_performance_target(self.metrics.pages_processed, self.metrics.total_time)
        return result

    def _load(self, document: Any, side: str) -> DocumentInfo:
        try:
            info = self.service.load_document(document)
        except FatalComparisonError:
            raise
        except Exception as exc:
            raise DocumentLoadError(f"Could not load {side} document: {exc}") from exc
        logger.info("Loaded %s document %s (%d pages)", side, info.document_id, info.page_count)
        return info

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def _extract_documents(
        self,
        comparison: Comparison,
        base_info: DocumentInfo,
        compare_info: DocumentInfo,
        config: PipelineConfig,
    ) -> Tuple[List[PageArtifacts], List[PageArtifacts]]:
        sides = {"base": (comparison.base_document, base_info), "compare": (comparison.compare_document, compare_info)}
        keys = [(side, idx) for side, (_, info) in sides.items() for idx in range(info.page_count)]
        if not keys:
            return [], []

        cancel = threading.Event()
        deadline = self.policy.start_deadline()
        attempt_pool = self._attempt_pool(len(keys), self.policy.max_attempts + _RENDER_STEPS, "extract-attempt")
        tasks = {
            key: self._extraction_task(sides[key[0]][0], sides[key[0]][1], key[1], config,
                                       attempt_pool, deadline, cancel)
            for key in keys
        }
        try:
            batch = self._run_batch(tasks, deadline, cancel, "extract")
        finally:
            attempt_pool.shutdown(wait=False, cancel_futures=True)

        if batch.timed_out:
            comparison.add_warning(
                f"Page extraction exceeded {deadline.seconds:g}s deadline; "
                f"{len(batch.timed_out)} page(s) replaced by placeholders"
            )

        pages: Dict[str, List[PageArtifacts]] = {"base": [], "compare": []}
        for side, idx in keys:
            info = sides[side][1]
            artifacts = batch.results.get((side, idx))
            if artifacts is None:
                reason = "Extraction timed out" if (side, idx) in batch.timed_out \
                    else batch.failed.get((side, idx), "Extraction failed")
                artifacts = self._placeholder_artifacts(info, idx, reason)
            pages[side].append(artifacts)

        failed = sum(1 for side in pages.values() for page in side if page.placeholder)
        if failed:
            comparison.add_warning(f"{failed} page(s) could not be extracted and were replaced by placeholders")
        return pages["base"], pages["compare"]

    def _extraction_task(
        self,
        document: Any,
        info: DocumentInfo,
        page_index: int,
        config: PipelineConfig,
        attempt_pool: ThreadPoolExecutor,
        deadline: Deadline,
        cancel: threading.Event,
    ) -> Callable[[], PageArtifacts]:
        def task() -> PageArtifacts:
            outcome = self.policy.run(
                lambda: self.service.extract_page(document, page_index),
                attempt_pool,
                f"Extracting page {page_index + 1} of {info.document_id}",
                deadline=deadline,
                cancel=cancel,
            )
            artifacts = outcome.unwrap_or(lambda reason: self._placeholder_artifacts(info, page_index, reason))
            if not artifacts.placeholder and artifacts.bitmap is None:
                artifacts.bitmap = self._render(document, info, page_index, config, attempt_pool, deadline, cancel)
            return artifacts

        return task

    def _render(
        self,
        document: Any,
        info: DocumentInfo,
        page_index: int,
        config: PipelineConfig,
        attempt_pool: ThreadPoolExecutor,
        deadline: Deadline,
        cancel: threading.Event,
    ) -> np.ndarray:
        """Render with decreasing fidelity: full DPI, reduced DPI, grayscale, then a blank page."""
        chain = [
            (config.render_dpi, False),
            (settings.reduced_render_dpi, False),
            (settings.reduced_render_dpi, True),
        ]
        for dpi, grayscale in chain:
            outcome = self.policy.run(
                lambda dpi=dpi, grayscale=grayscale: self.service.render_page(document, page_index, dpi, grayscale),
                attempt_pool,
                f"Rendering page {page_index + 1} of {info.document_id} at {dpi} dpi"
                + (" (grayscale)" if grayscale else ""),
                deadline=deadline,
                cancel=cancel,
                max_attempts=1,
            )
            if outcome.is_ok and outcome.value is not None:
                return outcome.value
        logger.warning("Page %d of %s could not be rendered; using a blank bitmap",
                       page_index + 1, info.document_id)
        return _blank_bitmap(info.page_size(page_index), settings.reduced_render_dpi)

    def _placeholder_artifacts(self, info: DocumentInfo, page_index: int, reason: str) -> PageArtifacts:
        width, height = info.page_size(page_index)
        logger.warning("Page %d of %s replaced by placeholder: %s", page_index + 1, info.document_id, reason)
        return PageArtifacts(
            document_id=info.document_id,
            page_index=page_index,
            width=width,
            height=height,
            bitmap=_blank_bitmap((width, height), settings.reduced_render_dpi),
            placeholder=True,
            description=f"Page {page_index + 1} of {info.document_id} could not be processed: {reason}",
        )

    # ------------------------------------------------------------------
    # Page comparison
    # ------------------------------------------------------------------

    def _compare_pages(
        self,
        comparison: Comparison,
        pairs: Sequence[DocumentPair],
        base_pages: Sequence[PageArtifacts],
        compare_pages: Sequence[PageArtifacts],
        config: PipelineConfig,
        cache: AnalysisCache,
    ) -> List[PageDetails]:
        mappings = [mapping for pair in pairs for mapping in pair.page_mappings]
        sampled = _sampled_positions(len(mappings), len(base_pages), len(compare_pages), config.exhaustive_processing)
        sampled_set = set(sampled)
        comparison.set_total_operations(len(sampled))
        if len(sampled) < len(mappings):
            comparison.add_warning(
                f"Large document sampled: compared {len(sampled)} of {len(mappings)} page positions; "
                f"request exhaustiveProcessing to compare every page"
            )

        def artifacts_for(pages: Sequence[PageArtifacts], page_number: Optional[int]) -> Optional[PageArtifacts]:
            return pages[page_number - 1] if page_number is not None else None

        options = config.page_options()
        degraded_positions: List[int] = []
        cancel = threading.Event()
        deadline = self.policy.start_deadline()
        attempt_pool = self._attempt_pool(len(sampled), self.policy.max_attempts, "compare-attempt")

        def make_task(position: int, mapping: PageMapping) -> Callable[[], PageDetails]:
            base = artifacts_for(base_pages, mapping.base_page_number)
            compare = artifacts_for(compare_pages, mapping.compare_page_number)

            def task() -> PageDetails:
                outcome = self.policy.run(
                    lambda: compare_page(position + 1, base, compare, options, cache),
                    attempt_pool,
                    f"Comparing page position {position + 1}",
                    deadline=deadline,
                    cancel=cancel,
                )
                if not outcome.is_ok:
                    degraded_positions.append(position)
                details = outcome.unwrap_or(
                    lambda reason: self._placeholder_details(position, mapping, base_pages, compare_pages, reason)
                )
                done = comparison.record_completed_operation()
                logger.debug("Comparison %s: %d/%d pages done", comparison.comparison_id, done,
                             comparison.total_operations)
                return details

            return task

        tasks = {position: make_task(position, mappings[position]) for position in sampled}
        try:
            batch = self._run_batch(tasks, deadline, cancel, "compare")
        finally:
            attempt_pool.shutdown(wait=False, cancel_futures=True)

        if batch.timed_out:
            comparison.add_warning(
                f"Page comparison exceeded {deadline.seconds:g}s deadline; "
                f"{len(batch.timed_out)} page(s) replaced by placeholders"
            )

        details: List[PageDetails] = []
        for position, mapping in enumerate(mappings):
            if position not in sampled_set:
                details.append(self._placeholder_details(
                    position, mapping, base_pages, compare_pages,
                    "Not compared (sparse sampling of a large document)",
                    placeholder=False, sampled=False,
                ))
                continue
            page = batch.results.get(position)
            if page is None:
                reason = (
                    f"Page comparison timed out after {deadline.seconds:g}s"
                    if position in batch.timed_out
                    else batch.failed.get(position, "Page comparison failed")
                )
                page = self._placeholder_details(position, mapping, base_pages, compare_pages, reason)
            details.append(page)

        degraded = len(degraded_positions) + len(batch.timed_out) + len(batch.failed)
        if degraded:
            comparison.add_warning(f"{degraded} page comparison(s) could not be completed and were replaced by placeholders")

        self.metrics.pages_compared = sum(1 for d in details if d.sampled and not d.placeholder)
        self.metrics.placeholder_pages = sum(1 for d in details if d.placeholder)
        return details

    @staticmethod
    def _placeholder_details(
        position: int,
        mapping: PageMapping,
        base_pages: Sequence[PageArtifacts],
        compare_pages: Sequence[PageArtifacts],
        reason: str,
        placeholder: bool = True,
        sampled: bool = True,
    ) -> PageDetails:
        def size(pages: Sequence[PageArtifacts], number: Optional[int]) -> Optional[Tuple[float, float]]:
            if number is None:
                return None
            page = pages[number - 1]
            return page.width, page.height

        return placeholder_page_details(
            page_number=position + 1,
            base_page_number=mapping.base_page_number,
            compare_page_number=mapping.compare_page_number,
            base_size=size(base_pages, mapping.base_page_number),
            compare_size=size(compare_pages, mapping.compare_page_number),
            reason=reason,
            placeholder=placeholder,
            sampled=sampled,
        )

    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------

    @staticmethod
    def _attempt_pool(task_count: int, attempts_per_task: int, name: str) -> ThreadPoolExecutor:
        """
        Executor for individual attempts.

        A timed-out attempt cannot be interrupted and keeps its thread until it
        returns, so each task may leave up to ``attempts_per_task`` threads
        behind. The pool is sized for that so a retry never queues behind an
        abandoned attempt.
        """
        workers = worker_count(task_count) * max(1, attempts_per_task)
        return ThreadPoolExecutor(max_workers=workers, thread_name_prefix=name)

    def _run_batch(
        self,
        tasks: Mapping[Hashable, Callable[[], Any]],
        deadline: Deadline,
        cancel: threading.Event,
        name: str,
    ) -> _BatchOutcome:
        """
        Run ``tasks`` on a bounded pool and wait at most until ``deadline``.

        Tasks still running at the deadline are cancelled and reported as timed
        out. A fatal error from any task aborts the whole batch.
        """
        outcome = _BatchOutcome(results={}, timed_out=[], failed={})
        if not tasks:
            return outcome

        executor = ThreadPoolExecutor(max_workers=worker_count(len(tasks)), thread_name_prefix=name)
        futures = {executor.submit(fn): key for key, fn in tasks.items()}
        try:
            pending = set(futures)
            while pending:
                done, pending = wait(pending, timeout=deadline.remaining(), return_when=FIRST_EXCEPTION)
                for future in done:
                    key = futures[future]
                    try:
                        outcome.results[key] = future.result()
                    except FatalComparisonError:
                        raise
                    except Exception as exc:
                        logger.warning("%s task %s failed: %s", name, key, exc)
                        outcome.failed[key] = f"{type(exc).__name__}: {exc}"
                if pending and deadline.expired:
                    break
        finally:
            cancel.set()
            for future, key in futures.items():
                if not future.done():
                    future.cancel()
                    outcome.timed_out.append(key)
            executor.shutdown(wait=False, cancel_futures=True)

        if outcome.timed_out:
            logger.warning("%s batch: %d task(s) did not finish before the deadline", name, len(outcome.timed_out))
        return outcome

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    def _build_result(
        self,
        comparison: Comparison,
        pairs: Sequence[DocumentPair],
        page_details: Sequence[PageDetails],
        metadata_diffs: List[MetadataDifference],
        base_info: DocumentInfo,
        compare_info: DocumentInfo,
    ) -> ComparisonResult:
        position = 0
        updated_pairs: List[DocumentPair] = []
        for pair in pairs:
            mappings: List[PageMapping] = []
            counts = {t: 0 for t in DIFFERENCE_TYPES}
            for mapping in pair.page_mappings:
                details = page_details[position]
                position += 1
                for diff_type, count in details.counts_by_type().items():
                    counts[diff_type] = counts.get(diff_type, 0) + count
                mappings.append(PageMapping(
                    base_page_number=mapping.base_page_number,
                    compare_page_number=mapping.compare_page_number,
                    similarity_score=mapping.similarity_score,
                    difference_count=details.difference_count,
                ))
            updated_pairs.append(pair.with_results(tuple(mappings), counts))

        counts_by_type = {t: 0 for t in DIFFERENCE_TYPES}
        for details in page_details:
            for diff_type, count in details.counts_by_type().items():
                counts_by_type[diff_type] = counts_by_type.get(diff_type, 0) + count
        counts_by_type["metadata"] += len(metadata_diffs)

        all_mappings = [m for pair in pairs for m in pair.page_mappings]
        similarity = (
            sum(m.similarity_score for m in all_mappings) / len(all_mappings)
            if all_mappings else 1.0
        )
        summary = ComparisonSummary(
            overall_similarity_score=similarity,
            total_differences=sum(counts_by_type.values()),
            counts_by_type=counts_by_type,
            base_page_count=base_info.page_count,
            compare_page_count=compare_info.page_count,
        )
        logger.info(
            "Comparison %s: %d differences across %d page positions (similarity %.2f)",
            comparison.comparison_id, summary.total_differences, len(page_details), similarity,
        )
        return ComparisonResult(
            comparison_id=comparison.comparison_id,
            status=comparison.status,
            processing_warning=comparison.processing_warning,
            document_pairs=updated_pairs,
            page_details=list(page_details),
            metadata_differences=metadata_diffs,
            summary=summary,
        )

    def _export(self, result: ComparisonResult) -> Path:
        return export_json(result, self.output_dir / f"{result.comparison_id}.json")


def _sampled_positions(
    mapping_count: int, base_page_count: int, compare_page_count: int, exhaustive: bool,
) -> List[int]:
    """Page positions to compare; large documents keep the edges plus every Nth position."""
    positions = list(range(mapping_count))
    if exhaustive or max(base_page_count, compare_page_count) <= settings.sampling_page_threshold:
        return positions
    edge = settings.sampling_edge_pages
    stride = max(1, settings.sampling_stride)
    return [
        p for p in positions
        if p < edge or p >= mapping_count - edge or p % stride == 0
    ]


def _blank_bitmap(page_size: Tuple[float, float], dpi: int) -> np.ndarray:
    width, height = page_size
    scale = dpi / 72.0
    return np.full((max(1, int(round(height * scale))), max(1, int(round(width * scale))), 3), 255, dtype=np.uint8)


def compare_documents(
    base_document: Any,
    compare_document: Any,
    comparison_id: Optional[str] = None,
    options: Optional[Mapping[str, str]] = None,
    *,
    service: Optional[ExtractionService] = None,
    output_dir: Optional[str | Path] = None,
) -> ComparisonResult:
    """
    Compare two PDF documents end-to-end.

    This is the main entrypoint for programmatic usage.

    Args:
        base_document: Base document (a path for the default PyMuPDF service)
        compare_document: Document compared against the base
        comparison_id: Identifier for the comparison (generated when omitted)
        options: String options such as textComparisonMethod or smartMatching
        service: Extraction service; defaults to PyMuPDFExtractionService
        output_dir: When set, the result is written to <output_dir>/<id>.json

    Returns:
        ComparisonResult with document pairs, page details and summary

    Example:
        from pipeline import compare_documents

        result = compare_documents("doc_v1.pdf", "doc_v2.pdf")
        print(f"Found {result.summary.total_differences} differences")
    """
    pipeline = ComparisonPipeline(service=service, output_dir=output_dir)
    comparison = pipeline.create_comparison(base_document, compare_document, comparison_id, options)
    return pipeline.run(comparison)
