"""Export module for JSON comparison reports."""
from export.json_exporter import export_json, result_payload

__all__ = ["export_json", "result_payload"]
