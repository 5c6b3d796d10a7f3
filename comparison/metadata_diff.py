"""Document information (metadata) comparison."""
from __future__ import annotations

from typing import Dict, List, Mapping, Optional

from comparison.models import MetadataDifference
from comparison.severity import classify_severity
from utils.logging import logger

# Keys that change on every save and carry no content meaning
IGNORED_KEYS = frozenset({"modDate", "ModDate", "moddate"})

# Document-info changes are minor regardless of which key changed
_METADATA_MAGNITUDE = 0.5


def compare_metadata(
    base_metadata: Optional[Mapping[str, object]],
    compare_metadata: Optional[Mapping[str, object]],
    ignored_keys: frozenset = IGNORED_KEYS,
) -> List[MetadataDifference]:
    """
    Compare two document-info dictionaries.

    Keys only in the base become ``deleted``, keys only in the compare document
    become ``added`` and keys with different values become ``modified``. Empty
    values count as absent. All metadata differences are minor.
    """
    base = _clean(base_metadata, ignored_keys)
    compare = _clean(compare_metadata, ignored_keys)

    diffs: List[MetadataDifference] = []
    for key in sorted(set(base) | set(compare)):
        base_value = base.get(key)
        compare_value = compare.get(key)
        if base_value == compare_value:
            continue
        if compare_value is None:
            change_type, description = "deleted", f"Metadata '{key}' removed (was '{base_value}')"
        elif base_value is None:
            change_type, description = "added", f"Metadata '{key}' added: '{compare_value}'"
        else:
            change_type = "modified"
            description = f"Metadata '{key}' changed from '{base_value}' to '{compare_value}'"
        diffs.append(MetadataDifference(
            change_type=change_type,
            severity=classify_severity("metadata", _METADATA_MAGNITUDE),
            description=description,
            magnitude=_METADATA_MAGNITUDE,
            key=key,
            base_value=base_value,
            compare_value=compare_value,
            base_page_number=1 if base_value is not None else None,
            compare_page_number=1 if compare_value is not None else None,
        ))

    if diffs:
        logger.info("Detected %d metadata differences", len(diffs))
    return diffs


def _clean(metadata: Optional[Mapping[str, object]], ignored_keys: frozenset) -> Dict[str, str]:
    cleaned: Dict[str, str] = {}
    for key, value in (metadata or {}).items():
        if key in ignored_keys or value is None:
            continue
        text = str(value).strip()
        if text:
            cleaned[key] = text
    return cleaned
