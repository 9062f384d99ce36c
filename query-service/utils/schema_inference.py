import logging
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


def runtime_type_name(value: Any) -> str:
    """
    Coarse type name of a document value, in the vocabulary the prompt uses.

    Scalars map to ``string``, ``number`` and ``boolean``; everything else
    (null, arrays, sub-documents, ObjectId, dates) is an ``object``.
    """
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return "object"


def summary_type_name(value: Any) -> str:
    """Type name used by the schema summary, which distinguishes null and arrays."""
    if value is None:
        return "null"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return runtime_type_name(value)


def _sample(db, collection_name: str, sample_size: int) -> List[Dict[str, Any]]:
    return list(db[collection_name].find({}).limit(sample_size))


def infer_collection_schema(db, collection_name: str, sample_size: int = 5) -> Dict[str, str]:
    """
    Map each field seen in the sampled documents to a type name.

    Each field keeps the type of the last sampled document carrying it.
    Read errors propagate to the caller.
    """
    schema: Dict[str, str] = {}
    for doc in _sample(db, collection_name, sample_size):
        for field, value in doc.items():
            schema[field] = runtime_type_name(value)
    return schema


def infer_schema(db, collection_names: Optional[Iterable[str]] = None, sample_size: int = 5) -> Dict[str, Dict[str, str]]:
    """Infer field types for the given collections, or every collection in the database."""
    names = list(collection_names) if collection_names is not None else db.list_collection_names()
    logger.info("🧠 Inferring schema for %d collections (sample size %d)", len(names), sample_size)
    return {name: infer_collection_schema(db, name, sample_size) for name in names}


def summarize_schema(db, sample_size: int = 5) -> Dict[str, Dict[str, List[str]]]:
    """
    Collect the set of types observed per field across the sampled documents.

    Returns:
        ``{collection: {field: [type, ...]}}`` with types in first-seen order
    """
    summary: Dict[str, Dict[str, List[str]]] = {}
    for name in db.list_collection_names():
        field_types: Dict[str, List[str]] = {}
        for doc in _sample(db, name, sample_size):
            for field, value in doc.items():
                seen = field_types.setdefault(field, [])
                type_name = summary_type_name(value)
                if type_name not in seen:
                    seen.append(type_name)
        summary[name] = field_types
    return summary
