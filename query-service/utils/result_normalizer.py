import json
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List

from bson import Decimal128, Int64, ObjectId

ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T")


def stringify_ids(data: Any) -> Any:
    """Convert ObjectId, datetime and numeric BSON wrappers to JSON-safe values."""
    if isinstance(data, list):
        return [stringify_ids(item) for item in data]
    if isinstance(data, dict):
        return {k: stringify_ids(v) for k, v in data.items()}
    if isinstance(data, ObjectId):
        return str(data)
    if isinstance(data, (datetime, date)):
        return data.isoformat()
    if isinstance(data, Decimal128):
        return float(data.to_decimal())
    if isinstance(data, Decimal):
        return float(data)
    if isinstance(data, Int64):
        return int(data)
    if isinstance(data, bytes):
        return data.hex()
    return data


def _looks_like_json(value: str) -> bool:
    stripped = value.strip()
    return stripped.startswith("{") or stripped.startswith("[")


def normalize_document(doc: Dict[str, Any], parse_embedded_json: bool = False) -> Dict[str, Any]:
    """
    Normalize one result document.

    A scalar identity field (ObjectId, UUID, ...) is stringified; compound
    ``_id`` values such as ``$group`` keys keep their structure. When
    ``parse_embedded_json`` is set, top-level string fields that look like
    serialized JSON are re-parsed; strings that fail to parse are kept
    verbatim.
    """
    normalized = dict(doc)

    if parse_embedded_json:
        for key, value in normalized.items():
            if isinstance(value, str) and _looks_like_json(value):
                try:
                    normalized[key] = json.loads(value)
                except ValueError:
                    pass

    normalized = stringify_ids(normalized)

    identity = normalized.get("_id")
    if identity is not None and not isinstance(identity, (str, int, float, bool, dict, list)):
        normalized["_id"] = str(identity)

    return normalized


def normalize_documents(docs: List[Any], parse_embedded_json: bool = False) -> List[Any]:
    return [
        normalize_document(doc, parse_embedded_json) if isinstance(doc, dict) else stringify_ids(doc)
        for doc in docs
    ]


# Dataset conversion for the analysis/reporting consumers

def _flatten_one_level(row: Dict[str, Any]) -> Dict[str, Any]:
    flat = {}
    for key, value in row.items():
        if isinstance(value, dict) and value:
            for inner_key, inner_value in value.items():
                flat[f"{key}.{inner_key}"] = inner_value
        else:
            flat[key] = value
    return flat


def _value_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "date" if ISO_DATE_PATTERN.match(value) else "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "mixed"


def infer_field_type(values: List[Any]) -> str:
    present = [v for v in values if v is not None]
    if not present:
        return "null"
    types = {_value_type(v) for v in present}
    return types.pop() if len(types) == 1 else "mixed"


def result_to_dataset(docs: List[Any]) -> Dict[str, Any]:
    """
    Convert query results into the tabular dataset shape used downstream.

    Returns:
        ``{"schema": {"fields": [{"name", "type"}]}, "rows": [...], "sampleRows": [...]}``
    """
    if not docs:
        return {"schema": {"fields": []}, "rows": [], "sampleRows": []}

    rows = [
        _flatten_one_level(stringify_ids(doc)) if isinstance(doc, dict) else {"value": stringify_ids(doc)}
        for doc in docs
    ]

    field_names: List[str] = []
    for row in rows:
        for name in row:
            if name not in field_names:
                field_names.append(name)

    fields = [
        {"name": name, "type": infer_field_type([row.get(name) for row in rows])}
        for name in field_names
    ]

    sample_size = min(10, max(5, len(rows)))
    return {
        "schema": {"fields": fields},
        "rows": rows,
        "sampleRows": rows[:sample_size],
    }
