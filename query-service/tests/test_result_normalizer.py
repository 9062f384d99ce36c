import uuid
from datetime import datetime

from bson import Decimal128, ObjectId

from utils.query_optimizer import clamp_limit, ensure_pipeline_limit, sort_spec, to_bson
from utils.result_normalizer import infer_field_type, normalize_document, normalize_documents, result_to_dataset


def test_normalize_document_stringifies_identity():
    oid = ObjectId()

    doc = normalize_document({"_id": oid, "price": Decimal128("9.99"), "owner": {"ref": oid}})

    assert doc == {"_id": str(oid), "price": 9.99, "owner": {"ref": str(oid)}}


def test_compound_group_key_stays_structured():
    docs = normalize_documents([
        {"_id": {"year": 2024, "city": "Boston"}, "total": 3},
        {"_id": {"year": 2023, "city": "Paris"}, "total": 5},
    ])

    assert docs[0] == {"_id": {"year": 2024, "city": "Boston"}, "total": 3}

    dataset = result_to_dataset(docs)
    fields = {f["name"]: f["type"] for f in dataset["schema"]["fields"]}
    assert fields == {"_id.year": "number", "_id.city": "string", "total": "number"}
    assert dataset["rows"][1]["_id.city"] == "Paris"


def test_scalar_identities_are_json_safe():
    docs = normalize_documents([
        {"_id": datetime(2024, 3, 1, 12, 30)},
        {"_id": uuid.UUID("12345678-1234-5678-1234-567812345678")},
        {"_id": [ObjectId("65f1c2a9e4b0a1b2c3d4e5f6")]},
    ])

    assert docs[0]["_id"] == "2024-03-01T12:30:00"
    assert docs[1]["_id"] == "12345678-1234-5678-1234-567812345678"
    assert docs[2]["_id"] == ["65f1c2a9e4b0a1b2c3d4e5f6"]


def test_dataset_flattens_one_level_and_infers_types():
    dataset = result_to_dataset([
        {"_id": "a", "name": "Ada", "address": {"city": "Boston", "geo": {"lat": 1}}, "joined": "2024-01-02T00:00:00"},
        {"_id": "b", "name": None, "address": {"city": "Paris"}, "score": 3},
        {"_id": "c", "name": 7, "tags": ["x"]},
    ])

    fields = {f["name"]: f["type"] for f in dataset["schema"]["fields"]}
    assert fields["address.city"] == "string"
    assert fields["address.geo"] == "object"
    assert fields["joined"] == "date"
    assert fields["name"] == "mixed"
    assert fields["score"] == "number"
    assert fields["tags"] == "array"
    assert dataset["rows"][1]["address.city"] == "Paris"
    assert len(dataset["sampleRows"]) == 3


def test_dataset_sample_rows_are_bounded():
    dataset = result_to_dataset([{"n": i} for i in range(40)])

    assert len(dataset["rows"]) == 40
    assert len(dataset["sampleRows"]) == 10


def test_empty_dataset():
    assert result_to_dataset([]) == {"schema": {"fields": []}, "rows": [], "sampleRows": []}


def test_field_type_of_missing_values_is_null():
    assert infer_field_type([None, None]) == "null"


def test_pipeline_limit_helpers():
    pipeline = [{"$match": {}}]

    assert ensure_pipeline_limit(pipeline, 100) == [{"$match": {}}, {"$limit": 100}]
    assert pipeline == [{"$match": {}}]
    assert clamp_limit(None, 100) == 100
    assert clamp_limit(0, 100) == 100
    assert clamp_limit(5, 100) == 5
    assert clamp_limit(500, 100) == 100
    assert sort_spec({"age": -1, "name": 1}) == [("age", -1), ("name", 1)]


def test_to_bson_converts_extended_json_and_ids():
    oid = "65f1c2a9e4b0a1b2c3d4e5f6"

    converted = to_bson({
        "_id": {"$in": [oid, "not-an-id"]},
        "owner": {"$oid": oid},
        "createdAt": {"$gte": {"$date": "2024-01-01T00:00:00Z"}},
        "note": oid,
    })

    assert converted["_id"]["$in"] == [ObjectId(oid), "not-an-id"]
    assert converted["owner"] == ObjectId(oid)
    assert converted["createdAt"]["$gte"].year == 2024
    assert converted["createdAt"]["$gte"].tzinfo is not None
    assert converted["note"] == oid
