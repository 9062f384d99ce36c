import json
from datetime import datetime, timezone

import pytest
from bson import ObjectId
from pymongo.errors import ExecutionTimeout, NetworkTimeout, OperationFailure

from agents.query_executor import QueryExecutor
from conftest import FakeDatabase
from utils.errors import ErrorCode, QueryServiceError
from utils.validators import parse_generated_query


def _query(operation, collection="users", **body):
    payload = {"operation": operation, "collection": collection, "query": body}
    return parse_generated_query(json.dumps(payload))


def test_find_returns_matching_documents(fake_db):
    result, metadata = QueryExecutor().execute(fake_db, _query("find", filter={"city": "Boston"}, sort={"age": -1}))

    assert [doc["name"] for doc in result] == ["Grace", "Ada"]
    assert metadata["operation"] == "find"
    assert metadata["collection"] == "users"
    assert metadata["affectedDocuments"] == 2
    assert metadata["executionTimeMs"] >= 0


def test_find_is_capped_at_max_result_size():
    db = FakeDatabase(collections={"events": [{"_id": i, "n": i} for i in range(25)]})
    executor = QueryExecutor(max_result_size=10)

    result, metadata = executor.execute(db, _query("find", collection="events", limit=500))

    assert len(result) == 10
    assert metadata["affectedDocuments"] == 10


def test_aggregate_appends_limit_and_caps_results():
    db = FakeDatabase(collections={"events": [{"_id": i, "kind": "click"} for i in range(25)]})
    executor = QueryExecutor(max_result_size=10)

    result, metadata = executor.execute(db, parse_generated_query(json.dumps({
        "operation": "aggregate",
        "collection": "events",
        "query": [{"$match": {"kind": "click"}}],
    })))

    assert db["events"].last_pipeline[-1] == {"$limit": 10}
    assert len(result) == 10
    assert metadata["affectedDocuments"] == 10


def test_aggregate_keeps_existing_limit(fake_db):
    executor = QueryExecutor()
    executor.execute(fake_db, parse_generated_query(json.dumps({
        "operation": "aggregate", "collection": "orders", "query": [{"$limit": 1}],
    })))

    assert fake_db["orders"].last_pipeline == [{"$limit": 1}]


def test_insert_one_and_many(fake_db):
    executor = QueryExecutor()

    result, metadata = executor.execute(fake_db, _query("insertOne", document={"name": "Alan"}))
    assert result["acknowledged"] is True
    assert metadata["affectedDocuments"] == 1

    result, metadata = executor.execute(fake_db, _query("insertMany", documents=[{"name": "Barbara"}, {"name": "Ken"}]))
    assert result["insertedCount"] == 2
    assert metadata["affectedDocuments"] == 2
    assert fake_db["users"].count_documents({}) == 6


def test_update_reports_modified_count(fake_db):
    result, metadata = QueryExecutor().execute(fake_db, _query(
        "updateMany", filter={"city": "Boston"}, update={"$set": {"vip": True}},
    ))

    assert result["matchedCount"] == 2
    assert metadata["affectedDocuments"] == 2


def test_delete_one_removes_document(fake_db):
    result, metadata = QueryExecutor().execute(fake_db, _query("deleteOne", filter={"_id": "abc"}))

    assert metadata["affectedDocuments"] == 1
    assert result["deletedCount"] == 1
    assert fake_db["users"].count_documents({"_id": "abc"}) == 0


def test_count_documents(fake_db):
    result, metadata = QueryExecutor().execute(fake_db, _query("countDocuments", filter={"city": "Boston"}))

    assert result == 2
    assert metadata["affectedDocuments"] == 2


@pytest.mark.parametrize("query", [
    ("deleteOne", {"filter": {"_id": "abc"}}),
    ("deleteMany", {"filter": {"city": "Boston"}}),
    ("updateOne", {"filter": {"_id": "abc"}, "update": {"$set": {"age": 1}}}),
    ("insertOne", {"document": {"name": "Alan"}}),
])
def test_dry_run_never_touches_the_collection(fake_db, query):
    operation, body = query
    before = [dict(d) for d in fake_db["users"].docs]

    result, metadata = QueryExecutor().execute(fake_db, _query(operation, **body), dry_run=True)

    assert result is None
    assert metadata["dryRun"] is True
    assert metadata["executionTimeMs"] == 0
    assert fake_db["users"].calls == []
    assert fake_db["users"].docs == before


@pytest.mark.parametrize("error", [
    ExecutionTimeout("operation exceeded time limit", code=50),
    OperationFailure("operation exceeded time limit", code=50),
    NetworkTimeout("timed out"),
])
def test_timeouts_map_to_timeout_error(fake_db, error):
    fake_db["users"].error = error

    with pytest.raises(QueryServiceError) as exc:
        QueryExecutor(query_timeout_ms=30_000).execute(fake_db, _query("find"))

    assert exc.value.code == ErrorCode.TIMEOUT_ERROR
    assert exc.value.status_code == 504
    assert "30000ms" in exc.value.message


def test_database_errors_map_to_execution_error(fake_db):
    fake_db["users"].error = OperationFailure("unknown operator: $foo", code=2)

    with pytest.raises(QueryServiceError) as exc:
        QueryExecutor().execute(fake_db, _query("find", filter={"age": {"$foo": 1}}))

    assert exc.value.code == ErrorCode.QUERY_EXECUTION_ERROR
    assert exc.value.status_code == 400
    assert "(2)" in exc.value.message
    assert "unknown operator" in exc.value.message


def test_results_are_normalized():
    oid = ObjectId()
    created = datetime(2024, 5, 1, tzinfo=timezone.utc)
    db = FakeDatabase(collections={"logs": [
        {"_id": oid, "createdAt": created, "payload": '{"a": 1}', "note": "{not json"},
    ]})

    result, _ = QueryExecutor(parse_embedded_json=True).execute(db, _query("find", collection="logs"))

    assert result == [{
        "_id": str(oid),
        "createdAt": created.isoformat(),
        "payload": {"a": 1},
        "note": "{not json",
    }]


def test_embedded_json_is_left_alone_by_default():
    db = FakeDatabase(collections={"logs": [{"_id": "x", "payload": '{"a": 1}'}]})

    result, _ = QueryExecutor().execute(db, _query("find", collection="logs"))

    assert result[0]["payload"] == '{"a": 1}'
