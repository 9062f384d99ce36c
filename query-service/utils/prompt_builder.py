import threading
from collections import OrderedDict
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from langchain_core.prompts import PromptTemplate

from agents.query_models import OPERATIONS
from utils.errors import ErrorCode, QueryServiceError

OUTPUT_SHAPE = """{
  "operation": "find|aggregate|insertOne|insertMany|updateOne|updateMany|deleteOne|deleteMany|countDocuments",
  "collection": "string",
  "query": {}
}"""

ERROR_SHAPES = """{"error": "Field 'xyz' not in schema"}
{"error": "Cannot delete without filter"}
{"error": "Ambiguous: specify collection"}
{"error": "Collection 'xyz' not in schema"}"""

QUERY_PATTERNS = """find:
{ "operation": "find", "collection": "users", "query": {
  "filter": {"age": {"$gt": 25}},
  "projection": {"name": 1},
  "sort": {"name": 1}, "limit": 10, "skip": 0
}}

aggregate (grouping/joins/calculations):
{ "operation": "aggregate", "collection": "orders", "query": [
  {"$match": {"status": "completed"}},
  {"$group": {"_id": "$userId", "total": {"$sum": "$amount"}}},
  {"$sort": {"total": -1}},
  {"$limit": 5}
]}

lookup (join):
{ "operation": "aggregate", "collection": "orders", "query": [
  {"$lookup": {"from": "users", "localField": "userId", "foreignField": "_id", "as": "user"}},
  {"$unwind": "$user"}
]}

insertOne:
{ "operation": "insertOne", "collection": "users", "query": {
  "document": {"name": "John", "email": "john@test.com"}
}}

insertMany:
{ "operation": "insertMany", "collection": "users", "query": {
  "documents": [{"name": "John"}, {"name": "Jane"}]
}}

updateOne:
{ "operation": "updateOne", "collection": "products", "query": {
  "filter": {"_id": "product123"},
  "update": {"$set": {"status": "active"}}
}}

updateMany:
{ "operation": "updateMany", "collection": "products", "query": {
  "filter": {"stock": {"$lt": 10}},
  "update": {"$set": {"status": "low"}}
}}

deleteOne:
{ "operation": "deleteOne", "collection": "users", "query": {
  "filter": {"_id": "user123"}
}}

deleteMany:
{ "operation": "deleteMany", "collection": "users", "query": {
  "filter": {"status": "inactive"}
}}

countDocuments:
{ "operation": "countDocuments", "collection": "users", "query": {
  "filter": {"age": {"$gte": 18}}
}}"""

FEW_SHOT_EXAMPLES = """Schema: users: {name: string, age: number, city: string}
Request: "Users over 30 in Boston"
{"operation": "find", "collection": "users", "query": {"filter": {"age": {"$gt": 30}, "city": "Boston"}}}

Schema: orders: {userId: string, amount: number, status: string}
Request: "Average order by status"
{"operation": "aggregate", "collection": "orders", "query": [{"$group": {"_id": "$status", "avg": {"$avg": "$amount"}}}]}

Schema: users: {_id: ObjectId, name: string}, orders: {userId: ObjectId, amount: number}
Request: "Top 3 spenders"
{"operation": "aggregate", "collection": "orders", "query": [{"$group": {"_id": "$userId", "total": {"$sum": "$amount"}}}, {"$sort": {"total": -1}}, {"$limit": 3}, {"$lookup": {"from": "users", "localField": "_id", "foreignField": "_id", "as": "user"}}, {"$unwind": "$user"}, {"$project": {"name": "$user.name", "total": 1}}]}

Schema: users: {name: string, tags: [string], address: {city: string}}
Request: "Users tagged 'premium' in Boston"
{"operation": "find", "collection": "users", "query": {"filter": {"tags": "premium", "address.city": "Boston"}}}"""

MONGO_PROMPT_TEMPLATE = """Convert natural language to MongoDB queries.

SUPPORTED OPERATIONS: {operations}

DATABASE SCHEMA:
{schema}

USER REQUEST:
"{input}"

OUTPUT (JSON only, no markdown/text):
{output_shape}

RULES:
1. All fields must exist in schema
2. Never update or delete many documents without a filter
3. Limit unbounded queries to 100
4. Today is {current_date}, the user's timezone is {user_tz}
5. Nested fields: use dot notation ("address.city")
6. Arrays: match values directly or use $elemMatch for objects
7. Always validate collection names against schema

ERRORS (return these if applicable):
{error_shapes}

PATTERNS:

{patterns}

OPERATORS:
Compare: $gt $gte $lt $lte $eq $ne $in $nin
Logic: $and $or $not $nor
Element: $exists $type
Array: $all $elemMatch $size
Text: $regex (with "$options": "i")
Aggregate: $sum $avg $min $max $count $first $last
Date: $year $month $dayOfMonth $dayOfWeek $hour $minute $second

EXAMPLES:

{examples}

Generate query. Return JSON only.
"""


class PromptBuilder:
    """
    Renders the natural-language-to-query prompt.

    Template objects are cached per trimmed schema in insertion order; a hit
    moves the entry to the most-recently-used end, and the oldest entry is
    evicted once the cache is full.
    """

    def __init__(self, max_cache_size: int = 50, max_schema_length: int = 50_000, timezone: str = "UTC"):
        self.max_cache_size = max_cache_size
        self.max_schema_length = max_schema_length
        self.timezone = timezone
        self._cache: "OrderedDict[str, PromptTemplate]" = OrderedDict()
        self._lock = threading.Lock()

    def _new_template(self) -> PromptTemplate:
        return PromptTemplate(
            template=MONGO_PROMPT_TEMPLATE,
            input_variables=["schema", "input", "current_date", "user_tz"],
            partial_variables={
                "operations": " | ".join(OPERATIONS),
                "output_shape": OUTPUT_SHAPE,
                "error_shapes": ERROR_SHAPES,
                "patterns": QUERY_PATTERNS,
                "examples": FEW_SHOT_EXAMPLES,
            },
        )

    def _get_template(self, schema: str) -> PromptTemplate:
        with self._lock:
            template = self._cache.get(schema)
            if template is not None:
                self._cache.move_to_end(schema)
                return template

            if len(self._cache) >= self.max_cache_size:
                self._cache.popitem(last=False)
            template = self._new_template()
            self._cache[schema] = template
            return template

    def build(self, schema: str, user_request: str, current_date: Optional[str] = None, timezone: Optional[str] = None) -> str:
        """
        Render the prompt for a schema and request.

        Raises:
            QueryServiceError: VALIDATION_ERROR for empty inputs or an oversized schema
        """
        if not schema or not schema.strip() or not user_request or not user_request.strip():
            raise QueryServiceError(ErrorCode.VALIDATION_ERROR, "Schema and user request are required")

        trimmed_schema = schema.strip()
        if len(trimmed_schema) > self.max_schema_length:
            raise QueryServiceError(
                ErrorCode.VALIDATION_ERROR,
                f"Schema too large ({len(trimmed_schema)} chars). Maximum allowed: {self.max_schema_length} chars"
            )

        tz = timezone or self.timezone
        if current_date is None:
            tzinfo = dt_timezone.utc if tz.upper() == "UTC" else ZoneInfo(tz)
            current_date = datetime.now(tzinfo).isoformat()

        template = self._get_template(trimmed_schema)
        return template.format(
            schema=trimmed_schema,
            input=user_request.strip(),
            current_date=current_date,
            user_tz=tz,
        )

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._cache),
            "maxSize": self.max_cache_size,
            "maxSchemaSize": self.max_schema_length,
        }
