"""
Shared fixtures for the token wallet tests.

FakeDatabase is an in-memory stand-in for the motor database object. Each
operation yields to the event loop once and then runs without further
awaits, so it is atomic the way a single-document MongoDB write is, while
concurrent tasks still interleave between operations.
"""

import asyncio
import copy
import os
from types import SimpleNamespace

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "token_wallet_test")
os.environ.setdefault("JWT_SECRET", "test-secret")

from token_wallet.config import WalletSettings
from token_wallet.db_init import REQUIRED_INDEXES

_MISSING = object()


def _equals(value, target):
    if target is None:
        return value is _MISSING or value is None
    if value is _MISSING:
        return False
    if isinstance(value, list) and not isinstance(target, list):
        return target in value
    return value == target


def _match_value(value, condition):
    if not (isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition)):
        return _equals(value, condition)

    for op, arg in condition.items():
        present = value is not _MISSING and value is not None
        if op == "$ne":
            if _equals(value, arg):
                return False
        elif op == "$in":
            if not any(_equals(value, a) for a in arg):
                return False
        elif op == "$gte":
            if not (present and value >= arg):
                return False
        elif op == "$gt":
            if not (present and value > arg):
                return False
        elif op == "$lte":
            if not (present and value <= arg):
                return False
        elif op == "$lt":
            if not (present and value < arg):
                return False
        elif op == "$exists":
            if (value is not _MISSING) != bool(arg):
                return False
        elif op == "$type":
            if arg != "string" or not isinstance(value, str):
                return False
        else:
            raise NotImplementedError(f"FakeCollection does not support {op}")
    return True


def matches(doc, query):
    for key, condition in (query or {}).items():
        if key == "$and":
            if not all(matches(doc, q) for q in condition):
                return False
        elif key == "$or":
            if not any(matches(doc, q) for q in condition):
                return False
        elif not _match_value(doc.get(key, _MISSING), condition):
            return False
    return True


def project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc

    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        out = {k: doc[k] for k in included if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            out["_id"] = doc["_id"]
        return out

    for key, value in projection.items():
        if not value:
            doc.pop(key, None)
    return doc


def apply_update(doc, update, inserting=False):
    for op, fields in update.items():
        if op == "$set":
            doc.update(copy.deepcopy(fields))
        elif op == "$setOnInsert":
            if inserting:
                doc.update(copy.deepcopy(fields))
        elif op == "$inc":
            for key, amount in fields.items():
                doc[key] = doc.get(key, 0) + amount
        elif op == "$push":
            for key, value in fields.items():
                array = doc.setdefault(key, [])
                if isinstance(value, dict) and "$each" in value:
                    array.extend(copy.deepcopy(value["$each"]))
                    if "$slice" in value:
                        size = value["$slice"]
                        array[:] = array[size:] if size < 0 else array[:size]
                else:
                    array.append(copy.deepcopy(value))
        else:
            raise NotImplementedError(f"FakeCollection does not support {op}")


class FakeCursor:
    def __init__(self, docs, projection=None):
        self._docs = docs
        self._projection = projection
        self._limit = 0

    def sort(self, key, direction=1):
        self._docs.sort(
            key=lambda d: (d.get(key) is not None, d.get(key) if d.get(key) is not None else ""),
            reverse=direction == -1
        )
        return self

    def limit(self, count):
        self._limit = count
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        docs = self._docs
        for bound in (self._limit, length):
            if bound:
                docs = docs[:bound]
        return [project(d, self._projection) for d in docs]


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.unique_indexes = []
        self.indexes = {"_id_": {"key": [("_id", 1)]}}
        self.fail_inserts_with = None

    # ---- indexes ----

    def add_index(self, keys, **options):
        if isinstance(keys, str):
            keys = [(keys, 1)]
        name = options.get("name") or "_".join(f"{k}_{d}" for k, d in keys)
        self.indexes[name] = {"key": list(keys), **options}
        if options.get("unique"):
            self.unique_indexes.append(([k for k, _ in keys], options.get("partialFilterExpression")))
        return name

    async def create_index(self, keys, **options):
        await asyncio.sleep(0)
        return self.add_index(keys, **options)

    async def index_information(self):
        await asyncio.sleep(0)
        return copy.deepcopy(self.indexes)

    def _check_unique(self, candidate, ignore=None):
        for fields, partial in self.unique_indexes:
            if partial and not matches(candidate, partial):
                continue
            key = tuple(candidate.get(f) for f in fields)
            for other in self.docs:
                if other is ignore:
                    continue
                if partial and not matches(other, partial):
                    continue
                if tuple(other.get(f) for f in fields) == key:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} key: {dict(zip(fields, key))}",
                        11000
                    )

    # ---- reads ----

    def _first(self, query):
        for doc in self.docs:
            if matches(doc, query):
                return doc
        return None

    async def find_one(self, query=None, projection=None):
        await asyncio.sleep(0)
        doc = self._first(query)
        return project(doc, projection) if doc is not None else None

    def find(self, query=None, projection=None):
        return FakeCursor([d for d in self.docs if matches(d, query)], projection)

    async def count_documents(self, query):
        await asyncio.sleep(0)
        return sum(1 for d in self.docs if matches(d, query))

    # ---- writes ----

    async def insert_one(self, document):
        await asyncio.sleep(0)
        if self.fail_inserts_with is not None:
            raise self.fail_inserts_with
        document.setdefault("_id", ObjectId())
        stored = copy.deepcopy(document)
        self._check_unique(stored)
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"], acknowledged=True)

    def _seed_from_query(self, query):
        return {
            k: copy.deepcopy(v)
            for k, v in query.items()
            if not k.startswith("$") and not (isinstance(v, dict) and any(x.startswith("$") for x in v))
        }

    def _update(self, query, update, upsert):
        doc = self._first(query)
        if doc is None:
            if not upsert:
                return None, None, False, None
            new_doc = self._seed_from_query(query)
            apply_update(new_doc, update, inserting=True)
            new_doc.setdefault("_id", ObjectId())
            self._check_unique(new_doc)
            self.docs.append(new_doc)
            return None, new_doc, True, new_doc["_id"]

        before = copy.deepcopy(doc)
        updated = copy.deepcopy(doc)
        apply_update(updated, update)
        self._check_unique(updated, ignore=doc)
        doc.clear()
        doc.update(updated)
        return before, doc, before != doc, None

    async def update_one(self, query, update, upsert=False):
        await asyncio.sleep(0)
        before, after, modified, upserted_id = self._update(query, update, upsert)
        matched = 1 if before is not None else 0
        return SimpleNamespace(
            matched_count=matched,
            modified_count=1 if (matched and modified) else 0,
            upserted_id=upserted_id,
            acknowledged=True
        )

    async def find_one_and_update(self, query, update, projection=None, upsert=False, return_document=False):
        await asyncio.sleep(0)
        before, after, _, _ = self._update(query, update, upsert)
        if after is None:
            return None
        result = after if return_document else before
        return project(result, projection) if result is not None else None


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


@pytest.fixture
def fake_db():
    """In-memory database with the wallet's indexes in place."""
    db = FakeDatabase()
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        db[collection_name].add_index(index_spec, **options)
    return db


@pytest.fixture
def wallet_settings():
    return WalletSettings(
        paypal_client_id="client",
        paypal_secret="secret",
        paypal_webhook_id="WH-1",
        nowpayments_api_key="np-key",
        nowpayments_ipn_secret="ipn-secret",
        generation_timeout_seconds=1.0,
        reservation_grace_seconds=1.0,
        uncredited_grace_seconds=300.0
    )


@pytest.fixture
def seed_balance(fake_db):
    """Write a balance document directly, bypassing the ledger."""

    async def _seed(user_id, tokens):
        await fake_db.token_balances.insert_one({
            "user_id": user_id,
            "tokens": tokens,
            "applied_refs": []
        })

    return _seed


@pytest.fixture
def empty_db():
    """In-memory database without any indexes."""
    return FakeDatabase()
