import logging
import time
from typing import Any, Dict, List, Tuple

import pymongo
from pymongo.errors import ExecutionTimeout, OperationFailure, PyMongoError

from agents.query_models import (
    AggregateOperation,
    CountDocumentsOperation,
    DeleteManyOperation,
    DeleteOneOperation,
    FindOperation,
    GeneratedQuery,
    InsertManyOperation,
    InsertOneOperation,
    UpdateManyOperation,
    UpdateOneOperation,
)
from utils.errors import ErrorCode, QueryServiceError
from utils.query_optimizer import clamp_limit, ensure_pipeline_limit, sort_spec, to_bson
from utils.result_normalizer import normalize_documents, stringify_ids

logger = logging.getLogger(__name__)

# MongoDB server error code for MaxTimeMSExpired
MAX_TIME_MS_EXPIRED = 50


class QueryExecutor:
    """
    Runs a validated query against a database handle.

    Every operation runs under a client-side operation timeout, which the
    driver also sends to the server as ``maxTimeMS``. Array results are
    capped at ``max_result_size`` and normalized for JSON output.
    """

    def __init__(self, query_timeout_ms: int = 30_000, max_result_size: int = 10_000, parse_embedded_json: bool = False):
        self.query_timeout_ms = query_timeout_ms
        self.max_result_size = max_result_size
        self.parse_embedded_json = parse_embedded_json
        self._handlers = {
            "find": self._find,
            "aggregate": self._aggregate,
            "insertOne": self._insert_one,
            "insertMany": self._insert_many,
            "updateOne": self._update_one,
            "updateMany": self._update_many,
            "deleteOne": self._delete_one,
            "deleteMany": self._delete_many,
            "countDocuments": self._count_documents,
        }

    def execute(self, db, query: GeneratedQuery, dry_run: bool = False) -> Tuple[Any, Dict[str, Any]]:
        """
        Execute ``query`` and return ``(result, metadata)``.

        A dry run issues nothing and returns a stub result.

        Raises:
            QueryServiceError: TIMEOUT_ERROR or QUERY_EXECUTION_ERROR for database failures
        """
        if dry_run:
            return None, {
                "executionTimeMs": 0,
                "operation": query.operation,
                "collection": query.collection,
                "dryRun": True,
                "message": "Dry run - query not executed",
            }

        handler = self._handlers[query.operation]
        collection = db[query.collection]
        start = time.perf_counter()

        try:
            with pymongo.timeout(self.query_timeout_ms / 1000):
                result, affected = handler(collection, query)
        except ExecutionTimeout as e:
            raise self._timeout_error() from e
        except OperationFailure as e:
            if e.code == MAX_TIME_MS_EXPIRED:
                raise self._timeout_error() from e
            raise QueryServiceError(
                ErrorCode.QUERY_EXECUTION_ERROR,
                f"MongoDB error ({e.code}): {e.details.get('errmsg', str(e)) if e.details else e}"
            ) from e
        except PyMongoError as e:
            if e.timeout:
                raise self._timeout_error() from e
            raise QueryServiceError(ErrorCode.QUERY_EXECUTION_ERROR, f"MongoDB error: {e}") from e

        execution_time_ms = int((time.perf_counter() - start) * 1000)

        if isinstance(result, list):
            result = normalize_documents(result, self.parse_embedded_json)

        return result, {
            "executionTimeMs": execution_time_ms,
            "operation": query.operation,
            "collection": query.collection,
            "affectedDocuments": affected,
        }

    def _timeout_error(self) -> QueryServiceError:
        return QueryServiceError(
            ErrorCode.TIMEOUT_ERROR,
            f"Query exceeded maximum execution time of {self.query_timeout_ms}ms"
        )

    # Operation handlers: each returns (result, affected_documents)

    def _find(self, collection, query: FindOperation) -> Tuple[List[Dict[str, Any]], int]:
        body = query.query
        options = {**(query.options or {}), **(body.options or {})}

        projection = body.projection if body.projection is not None else options.get("projection")
        sort = body.sort if body.sort is not None else options.get("sort")
        skip = body.skip if body.skip is not None else options.get("skip")
        limit = body.limit if body.limit is not None else options.get("limit")

        cursor = collection.find(to_bson(body.filter), projection)
        sort_keys = sort_spec(sort)
        if sort_keys:
            cursor = cursor.sort(sort_keys)
        if skip:
            cursor = cursor.skip(int(skip))
        cursor = cursor.limit(clamp_limit(limit, self.max_result_size))

        results = list(cursor)[:self.max_result_size]
        return results, len(results)

    def _aggregate(self, collection, query: AggregateOperation) -> Tuple[List[Dict[str, Any]], int]:
        pipeline = ensure_pipeline_limit(to_bson(query.pipeline), self.max_result_size)
        results = list(collection.aggregate(pipeline, **(query.options or {})))[:self.max_result_size]
        return results, len(results)

    def _insert_one(self, collection, query: InsertOneOperation) -> Tuple[Dict[str, Any], int]:
        result = collection.insert_one(to_bson(query.query.document))
        return {
            "acknowledged": result.acknowledged,
            "insertedId": stringify_ids(result.inserted_id),
        }, 1 if result.acknowledged else 0

    def _insert_many(self, collection, query: InsertManyOperation) -> Tuple[Dict[str, Any], int]:
        result = collection.insert_many(to_bson(query.query.documents))
        inserted_ids = stringify_ids(list(result.inserted_ids))
        return {
            "acknowledged": result.acknowledged,
            "insertedIds": inserted_ids,
            "insertedCount": len(inserted_ids),
        }, len(inserted_ids)

    def _update(self, collection, query, many: bool) -> Tuple[Dict[str, Any], int]:
        method = collection.update_many if many else collection.update_one
        result = method(to_bson(query.query.filter), to_bson(query.query.update))
        return {
            "acknowledged": result.acknowledged,
            "matchedCount": result.matched_count,
            "modifiedCount": result.modified_count,
            "upsertedId": stringify_ids(result.upserted_id),
        }, result.modified_count

    def _update_one(self, collection, query: UpdateOneOperation):
        return self._update(collection, query, many=False)

    def _update_many(self, collection, query: UpdateManyOperation):
        return self._update(collection, query, many=True)

    def _delete(self, collection, query, many: bool) -> Tuple[Dict[str, Any], int]:
        method = collection.delete_many if many else collection.delete_one
        result = method(to_bson(query.query.filter))
        return {
            "acknowledged": result.acknowledged,
            "deletedCount": result.deleted_count,
        }, result.deleted_count

    def _delete_one(self, collection, query: DeleteOneOperation):
        return self._delete(collection, query, many=False)

    def _delete_many(self, collection, query: DeleteManyOperation):
        return self._delete(collection, query, many=True)

    def _count_documents(self, collection, query: CountDocumentsOperation) -> Tuple[int, int]:
        count = collection.count_documents(to_bson(query.query.filter))
        return count, count
