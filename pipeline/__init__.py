"""Pipeline module - orchestrates end-to-end document comparison."""
from pipeline.compare_pdfs import (
    compare_documents,
    ComparisonPipeline,
    PipelineConfig,
    PipelineMetrics,
)
from pipeline.policy import Deadline, RetryPolicy

__all__ = [
    "compare_documents",
    "ComparisonPipeline",
    "Deadline",
    "PipelineConfig",
    "PipelineMetrics",
    "RetryPolicy",
]
