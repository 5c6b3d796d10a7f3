"""Export comparison results as JSON."""
from __future__ import annotations

import json
from pathlib import Path

from comparison.errors import StorageError
from comparison.models import ComparisonResult, PageDetails
from utils.coordinates import normalize_bbox
from utils.logging import logger


def result_payload(result: ComparisonResult) -> dict:
    """
    Result dictionary with normalized (0-1) boxes added to every placed difference.

    Absolute display coordinates stay in x/y/width/height; ``normalizedBbox`` is
    relative to the page size used for placement.
    """
    payload = result.to_dict()
    for details, page_dict in zip(result.page_details, payload["pageDetails"]):
        _add_normalized(details, page_dict["baseDifferences"], details.base_differences)
        _add_normalized(details, page_dict["compareDifferences"], details.compare_differences)
    payload["coordinateSystem"] = {
        "origin": "top-left",
        "units": "points",
        "description": (
            "Difference positions are in display space (origin top-left, Y down) in PDF points. "
            "normalizedBbox holds the same box relative to the page size."
        ),
    }
    return payload


def _add_normalized(details: PageDetails, dicts: list, diffs: list) -> None:
    page_width, page_height = details.page_size()
    if page_width <= 0 or page_height <= 0:
        return
    for diff_dict, diff in zip(dicts, diffs):
        position = diff.position
        diff_dict["normalizedBbox"] = normalize_bbox(position, page_width, page_height) if position else None


def export_json(result: ComparisonResult, output_path: str | Path) -> Path:
    """
    Write ``result`` to ``output_path`` as JSON.

    Raises:
        StorageError: If the file cannot be written
    """
    output = Path(output_path)
    logger.info("Writing comparison result to %s", output)
    try:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps(result_payload(result), ensure_ascii=False, indent=2), encoding="utf-8")
    except OSError as exc:
        raise StorageError(f"Could not write comparison result to {output}: {exc}") from exc
    return output
