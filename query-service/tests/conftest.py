import copy
import json
from contextlib import contextmanager
from types import SimpleNamespace

import pytest

from agents.mongodb_agent import MongoQueryAgent
from agents.query_executor import QueryExecutor
from services.cache import QueryCache, RateLimiter
from utils.prompt_builder import PromptBuilder


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _matches(doc, query_filter):
    for key, expected in (query_filter or {}).items():
        actual = doc.get(key)
        if isinstance(expected, dict) and expected and all(k.startswith("$") for k in expected):
            for op, operand in expected.items():
                if op == "$gt" and not (actual is not None and actual > operand):
                    return False
                if op == "$gte" and not (actual is not None and actual >= operand):
                    return False
                if op == "$lt" and not (actual is not None and actual < operand):
                    return False
                if op == "$in" and actual not in operand:
                    return False
        elif actual != expected:
            return False
    return True


class FakeCursor:
    def __init__(self, docs):
        self._docs = list(docs)
        self.applied_limit = None

    def sort(self, keys):
        for key, direction in reversed(keys):
            self._docs.sort(key=lambda d: d.get(key), reverse=direction == -1)
        return self

    def skip(self, count):
        self._docs = self._docs[count:]
        return self

    def limit(self, count):
        self.applied_limit = count
        if count:
            self._docs = self._docs[:count]
        return self

    def __iter__(self):
        return iter(copy.deepcopy(self._docs))


class FakeCollection:
    """In-memory stand-in for pymongo's Collection covering what the executor calls."""

    def __init__(self, name, docs=None):
        self.name = name
        self.docs = [dict(d) for d in (docs or [])]
        self.calls = []
        self.error = None
        self.last_pipeline = None
        self._next_id = 1

    def _record(self, method):
        self.calls.append(method)
        if self.error is not None:
            raise self.error

    def find(self, query_filter=None, projection=None):
        self._record("find")
        return FakeCursor(d for d in self.docs if _matches(d, query_filter))

    def aggregate(self, pipeline, **kwargs):
        self._record("aggregate")
        self.last_pipeline = pipeline
        docs = list(self.docs)
        for stage in pipeline:
            if "$match" in stage:
                docs = [d for d in docs if _matches(d, stage["$match"])]
            elif "$limit" in stage:
                docs = docs[:stage["$limit"]]
        return iter(copy.deepcopy(docs))

    def insert_one(self, document):
        self._record("insert_one")
        doc = dict(document)
        doc.setdefault("_id", f"generated-{self._next_id}")
        self._next_id += 1
        self.docs.append(doc)
        return SimpleNamespace(acknowledged=True, inserted_id=doc["_id"])

    def insert_many(self, documents):
        self._record("insert_many")
        ids = [self.insert_one(d).inserted_id for d in documents]
        return SimpleNamespace(acknowledged=True, inserted_ids=ids)

    def _update(self, query_filter, update, many):
        matched = [d for d in self.docs if _matches(d, query_filter)]
        if not many:
            matched = matched[:1]
        modified = 0
        for doc in matched:
            changes = update.get("$set", {})
            if any(doc.get(k) != v for k, v in changes.items()):
                doc.update(changes)
                modified += 1
        return SimpleNamespace(acknowledged=True, matched_count=len(matched), modified_count=modified, upserted_id=None)

    def update_one(self, query_filter, update):
        self._record("update_one")
        return self._update(query_filter, update, many=False)

    def update_many(self, query_filter, update):
        self._record("update_many")
        return self._update(query_filter, update, many=True)

    def _delete(self, query_filter, many):
        matched = [d for d in self.docs if _matches(d, query_filter)]
        if not many:
            matched = matched[:1]
        for doc in matched:
            self.docs.remove(doc)
        return SimpleNamespace(acknowledged=True, deleted_count=len(matched))

    def delete_one(self, query_filter):
        self._record("delete_one")
        return self._delete(query_filter, many=False)

    def delete_many(self, query_filter):
        self._record("delete_many")
        return self._delete(query_filter, many=True)

    def count_documents(self, query_filter):
        self._record("count_documents")
        return sum(1 for d in self.docs if _matches(d, query_filter))

    @property
    def mutating_calls(self):
        return [c for c in self.calls if c.startswith(("insert", "update", "delete"))]


class FakeDatabase:
    def __init__(self, name="shop", collections=None):
        self.name = name
        self.collections = {
            coll_name: FakeCollection(coll_name, docs)
            for coll_name, docs in (collections or {}).items()
        }

    def __getitem__(self, name):
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    def list_collection_names(self):
        return list(self.collections)


class FakeClient:
    def __init__(self, db):
        self.db = db
        self.closed = False

    def get_default_database(self, default=None):
        return self.db

    def close(self):
        self.closed = True


class FakeConnector:
    """Records every connection a request opens and whether it was closed."""

    def __init__(self, db):
        self.db = db
        self.clients = []

    @contextmanager
    def __call__(self, connection_string):
        client = FakeClient(self.db)
        self.clients.append(client)
        try:
            yield client
        finally:
            client.close()


class FakeLLM:
    """Returns canned completions and counts how often it was asked."""

    def __init__(self, response):
        self.response = response
        self.calls = 0
        self.prompts = []

    def invoke(self, messages):
        self.calls += 1
        self.prompts.append(messages[-1].content)
        text = self.response if isinstance(self.response, str) else json.dumps(self.response)
        return SimpleNamespace(content=text)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_db():
    return FakeDatabase(collections={
        "users": [
            {"_id": "abc", "name": "Ada", "age": 36, "city": "Boston"},
            {"_id": "def", "name": "Linus", "age": 28, "city": "Portland"},
            {"_id": "ghi", "name": "Grace", "age": 45, "city": "Boston"},
        ],
        "orders": [
            {"_id": "o1", "userId": "abc", "amount": 120.5, "status": "completed"},
            {"_id": "o2", "userId": "def", "amount": 30, "status": "pending"},
        ],
    })


@pytest.fixture
def build_agent(fake_db, clock):
    """Factory for an agent wired to in-memory collaborators."""

    def _build(llm_response, **overrides):
        llm = FakeLLM(llm_response)
        connector = FakeConnector(fake_db)
        agent = MongoQueryAgent(
            llm=llm,
            llm_metadata={"provider": "fake", "model": "fake-model"},
            prompt_builder=overrides.get("prompt_builder", PromptBuilder()),
            result_cache=overrides.get("result_cache", QueryCache(clock=clock)),
            rate_limiter=overrides.get("rate_limiter", RateLimiter(clock=clock)),
            executor=overrides.get("executor", QueryExecutor()),
            connector=connector,
        )
        return agent, llm, connector

    return _build


def make_payload(**overrides):
    payload = {
        "schema": "users: {name: string, age: number, city: string}",
        "userRequest": "Users over 30 in Boston",
        "connectionString": "mongodb://localhost:27017/shop",
    }
    payload.update(overrides)
    return payload
