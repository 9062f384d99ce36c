from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId


def ensure_pipeline_limit(pipeline: List[Dict[str, Any]], max_results: int) -> List[Dict[str, Any]]:
    """
    Append a ``$limit`` stage when the pipeline has none.

    Args:
        pipeline: Aggregation stages
        max_results: Limit to apply if no stage limits the output

    Returns:
        A new pipeline list; the input is left untouched
    """
    stages = list(pipeline)
    if not any(isinstance(stage, dict) and "$limit" in stage for stage in stages):
        stages.append({"$limit": max_results})
    return stages


def clamp_limit(requested: Optional[int], max_results: int) -> int:
    """Cap a requested find limit. Zero or missing means 'as many as allowed'."""
    if not requested:
        return max_results
    return min(requested, max_results)


def sort_spec(sort: Any) -> Optional[List[Any]]:
    """Convert a sort document into the key/direction list pymongo expects."""
    if not sort:
        return None
    if isinstance(sort, dict):
        return list(sort.items())
    if isinstance(sort, list):
        return [tuple(item) if isinstance(item, list) else item for item in sort]
    return sort


def _parse_date(value: Any) -> Optional[datetime]:
    if isinstance(value, dict) and "$numberLong" in value:
        value = int(value["$numberLong"])
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        # Handle ISO 8601 with Z suffix
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


def to_bson(obj: Any, key: str = "") -> Any:
    """
    Prepare LLM-generated JSON for the driver.

    Extended JSON wrappers ``{"$oid": ...}`` and ``{"$date": ...}`` become
    ObjectId and datetime, and ObjectId-shaped strings under ``_id`` keys
    (including ``$in`` lists) become ObjectIds. Anything else is left as is.
    """
    if isinstance(obj, dict):
        if len(obj) == 1 and "$oid" in obj and ObjectId.is_valid(obj["$oid"]):
            return ObjectId(obj["$oid"])
        if len(obj) == 1 and "$date" in obj:
            parsed = _parse_date(obj["$date"])
            return parsed if parsed is not None else obj
        return {
            k: to_bson(v, key if str(k).startswith("$") else str(k))
            for k, v in obj.items()
        }
    if isinstance(obj, list):
        return [to_bson(item, key) for item in obj]
    if isinstance(obj, str) and key.split(".")[-1] == "_id" and ObjectId.is_valid(obj):
        return ObjectId(obj)
    return obj
