"""
Pytest configuration and shared test helpers for backend tests.

FakeDatabase is an in-memory stand-in for the Motor database covering the
operations the order engine uses (find/find_one with projection, sort, skip,
limit, to_list, async iteration, insert_one, update_one/update_many with
$set/$inc/$push/$pull/$setOnInsert and upsert, delete_one, count_documents) and
transaction() with rollback on error.
"""
import copy
import os
import sys
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

# Skip heavy server startup (scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest

from database import database

MISSING = object()


# ============================================================================
# Query matching
# ============================================================================

def _get(doc, key):
    cur = doc
    for part in key.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return MISSING
    return cur


def _eq(value, target):
    if value is MISSING:
        return target is None
    if isinstance(value, list) and not isinstance(target, list):
        return target in value
    return value == target


def _compare(value, op, arg):
    if value is MISSING or value is None:
        return False
    try:
        if op == "$lt":
            return value < arg
        if op == "$lte":
            return value <= arg
        if op == "$gt":
            return value > arg
        return value >= arg
    except TypeError:
        return False


def _apply_operator(value, op, arg):
    if op == "$eq":
        return _eq(value, arg)
    if op == "$ne":
        return not _eq(value, arg)
    if op == "$in":
        return any(_eq(value, a) for a in arg)
    if op == "$nin":
        return not any(_eq(value, a) for a in arg)
    if op == "$exists":
        return (value is not MISSING) == bool(arg)
    if op in ("$lt", "$lte", "$gt", "$gte"):
        return _compare(value, op, arg)
    raise NotImplementedError(f"FakeDatabase does not support {op}")


def _is_operator_dict(cond):
    return isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond)


def matches(doc, query):
    for key, cond in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, q) for q in cond):
                return False
        elif key == "$and":
            if not all(matches(doc, q) for q in cond):
                return False
        elif _is_operator_dict(cond):
            value = _get(doc, key)
            if not all(_apply_operator(value, op, arg) for op, arg in cond.items()):
                return False
        elif not _eq(_get(doc, key), cond):
            return False
    return True


def project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    include = [k for k, v in projection.items() if v and k != "_id"]
    if include:
        out = {k: doc[k] for k in include if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            out["_id"] = doc["_id"]
        return out
    for key, flag in projection.items():
        if not flag:
            doc.pop(key, None)
    return doc


def _sort_key(field):
    def key(doc):
        value = _get(doc, field)
        missing = value is MISSING or value is None
        return (missing, value if not missing else 0)
    return key


# ============================================================================
# Fake Motor objects
# ============================================================================

class FakeCursor:
    def __init__(self, docs, projection=None):
        self._docs = list(docs)
        self._projection = projection
        self._skip = 0
        self._limit = 0
        self._iter = None

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        for field, dirn in reversed(keys):
            self._docs.sort(key=_sort_key(field), reverse=dirn == -1)
        return self

    def skip(self, n):
        self._skip = n
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _results(self):
        docs = self._docs[self._skip:]
        if self._limit:
            docs = docs[:self._limit]
        return [project(d, self._projection) for d in docs]

    async def to_list(self, length=None):
        docs = self._results()
        return docs[:length] if length else docs

    def __aiter__(self):
        self._iter = iter(self._results())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        # op name -> exception raised by the next call of that op
        self.failures = {}
        # op name -> callable run (once) before the next call of that op
        self.before = {}

    def _hooks(self, op):
        hook = self.before.pop(op, None)
        if hook is not None:
            hook(self)
        exc = self.failures.pop(op, None)
        if exc is not None:
            raise exc

    async def create_index(self, *args, **kwargs):
        return "index"

    async def find_one(self, query=None, projection=None, session=None, sort=None):
        self._hooks("find_one")
        docs = [d for d in self.docs if matches(d, query)]
        if sort:
            cursor = FakeCursor(docs).sort(sort)
            docs = cursor._docs
        return project(docs[0], projection) if docs else None

    def find(self, query=None, projection=None, session=None):
        self._hooks("find")
        return FakeCursor([d for d in self.docs if matches(d, query)], projection)

    async def insert_one(self, doc, session=None):
        self._hooks("insert_one")
        doc.setdefault("_id", str(uuid.uuid4()))
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"], acknowledged=True)

    async def count_documents(self, query=None, session=None):
        return len([d for d in self.docs if matches(d, query)])

    async def update_one(self, query, update, upsert=False, session=None):
        self._hooks("update_one")
        for doc in self.docs:
            if matches(doc, query):
                changed = _apply_update(doc, update, inserting=False)
                return SimpleNamespace(matched_count=1, modified_count=int(changed), upserted_id=None)
        if upsert:
            new_doc = {k: v for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
            _apply_update(new_doc, update, inserting=True)
            new_doc.setdefault("_id", str(uuid.uuid4()))
            self.docs.append(new_doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=new_doc["_id"])
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_many(self, query, update, session=None):
        self._hooks("update_many")
        matched = modified = 0
        for doc in self.docs:
            if matches(doc, query):
                matched += 1
                modified += int(_apply_update(doc, update, inserting=False))
        return SimpleNamespace(matched_count=matched, modified_count=modified)

    async def delete_one(self, query, session=None):
        self._hooks("delete_one")
        for i, doc in enumerate(self.docs):
            if matches(doc, query):
                del self.docs[i]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)


def _apply_update(doc, update, inserting):
    before = copy.deepcopy(doc)
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
                doc.setdefault(key, []).append(copy.deepcopy(value))
        elif op == "$pull":
            for key, value in fields.items():
                doc[key] = [v for v in doc.get(key, []) if v != value]
        elif op == "$unset":
            for key in fields:
                doc.pop(key, None)
        else:
            raise NotImplementedError(f"FakeDatabase does not support {op}")
    return doc != before


class FakeDatabase:
    def __init__(self):
        self._collections = {}
        self.transactions = 0
        self.rollbacks = 0

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    @asynccontextmanager
    async def transaction(self):
        snapshot = {name: copy.deepcopy(c.docs) for name, c in self._collections.items()}
        self.transactions += 1
        try:
            yield SimpleNamespace(in_transaction=True)
        except BaseException:
            self.rollbacks += 1
            for name, coll in self._collections.items():
                coll.docs = snapshot.get(name, [])
            raise


# ============================================================================
# Ports
# ============================================================================

class RecordingHub:
    """Realtime port double: records emits, optionally failing the next N."""

    def __init__(self):
        self.emitted = []
        self.evicted = []
        self.fail_next = 0

    async def emit(self, channel, event, payload):
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("socket send failed")
        self.emitted.append((channel, event, payload))
        return 1

    async def evict(self, channel, user_id, reason=None):
        self.evicted.append((channel, user_id))
        return 1

    def channels(self):
        return [c for c, _, _ in self.emitted]


class RecordingEmail:
    """Mail port double."""

    def __init__(self):
        self.sent = []
        self.fail_next = 0

    async def send(self, to, subject, html):
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("mail provider unavailable")
        self.sent.append({"to": to, "subject": subject, "html": html})
        return f"msg-{len(self.sent)}"


# ============================================================================
# Fixtures
# ============================================================================

USERS = [
    {"user_id": "client-1", "role": "client", "name": "Cara Client", "email": "cara@example.com"},
    {"user_id": "bde-1", "role": "bde", "name": "Ben Bde", "email": "ben@example.com"},
    {"user_id": "writer-1", "role": "writer", "name": "Wes Writer", "email": "wes@example.com"},
    {"user_id": "writer-2", "role": "writer", "name": "Wren Writer", "email": "wren@example.com"},
    {"user_id": "admin-1", "role": "admin", "name": "Ada Admin", "email": "ada@example.com"},
    {"user_id": "admin-2", "role": "admin", "name": "Abe Admin", "email": "abe@example.com"},
    {"user_id": "admin-off", "role": "admin", "name": "Old Admin", "email": "old@example.com",
     "status": "DISABLED"},
]


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDatabase()
    for user in USERS:
        db.users.docs.append({"status": "ACTIVE", **user})
    monkeypatch.setattr(database, "get_db", lambda: db)
    monkeypatch.setattr(database, "transaction", db.transaction)
    return db


@pytest.fixture
def hub():
    return RecordingHub()


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def engine(fake_db, hub, email):
    from services.engine import build_engine, set_engine
    built = build_engine(email_service=email, hub=hub)
    set_engine(built)
    yield built
    set_engine(None)


@pytest.fixture
def make_order(fake_db):
    """Insert an order document; returns it."""
    def _make(status, order_id="ORD-1", **fields):
        doc = {
            "order_id": order_id,
            "query_code": f"QRY_{order_id}",
            "paper_topic": "Supply chains",
            "client_id": "client-1",
            "bde_id": "bde-1",
            "writer_id": None,
            "currency": "GBP",
            "amount": 200,
            "status": int(status),
            "created_at": datetime.now(timezone.utc),
        }
        doc.update(fields)
        fake_db.orders.docs.append(doc)
        return doc
    return _make


@pytest.fixture
def actors():
    from models import Actor
    return {
        "client": Actor(user_id="client-1", role="client", name="Cara Client"),
        "bde": Actor(user_id="bde-1", role="bde", name="Ben Bde"),
        "writer": Actor(user_id="writer-1", role="writer", name="Wes Writer"),
        "admin": Actor(user_id="admin-1", role="admin", name="Ada Admin"),
    }


def token_for(user_id, role, **extra):
    from auth import create_access_token
    return create_access_token({"user_id": user_id, "role": role, **extra})


@pytest.fixture
def client(engine):
    """TestClient for server:app with the engine on app.state (lifespan is not run)."""
    from fastapi.testclient import TestClient
    from server import app
    app.state.engine = engine
    return TestClient(app)


@pytest.fixture
def auth_headers():
    def _headers(user_id, role):
        return {"Authorization": f"Bearer {token_for(user_id, role)}"}
    return _headers
