"""
Shared fixtures for the token allowance test suite.

FakeDatabase mimics the subset of the Motor API the service uses
(find_one/find/update_one/find_one_and_update/insert_one with the
$lte/$lt/$gt/$gte/$in operators and $set/$setOnInsert/$inc updates) so
the resolver can be exercised end to end without a MongoDB server.
Failure injection is done by replacing a collection method with an
AsyncMock.
"""

import copy
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from token_allowance.allowance_service import AllowanceService
from token_allowance.admin_service import AdminAllowanceService


# ==================== IN-MEMORY MOTOR FAKE ====================

_MISSING = object()


def _compare(op, actual, expected):
    if op == "$in":
        return actual in expected
    if op == "$ne":
        return actual != expected
    if actual is _MISSING or actual is None:
        return False
    if op == "$lte":
        return actual <= expected
    if op == "$lt":
        return actual < expected
    if op == "$gt":
        return actual > expected
    if op == "$gte":
        return actual >= expected
    raise NotImplementedError(op)


def _matches(doc, query):
    for field, condition in query.items():
        actual = doc.get(field, _MISSING)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if not all(_compare(op, actual, value) for op, value in condition.items()):
                return False
        elif actual != condition:
            return False
    return True


def _sorted(docs, sort):
    docs = list(docs)
    for key, direction in reversed(sort or []):
        docs.sort(key=lambda d: d.get(key) or "", reverse=direction < 0)
    return docs


def _public(doc):
    return {k: copy.deepcopy(v) for k, v in doc.items() if k != "_id"}


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs
        self._sort = []
        self._limit = None

    def sort(self, key, direction=1):
        self._sort.append((key, direction))
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        docs = _sorted(self._docs, self._sort)
        cap = self._limit if self._limit else length
        if cap:
            docs = docs[:cap]
        return [_public(d) for d in docs]


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []

    def seed(self, *docs):
        for doc in docs:
            self.docs.append({"_id": str(uuid.uuid4()), **copy.deepcopy(doc)})

    async def find_one(self, query=None, projection=None, sort=None):
        found = _sorted([d for d in self.docs if _matches(d, query or {})], sort)
        return _public(found[0]) if found else None

    def find(self, query=None, projection=None):
        return FakeCursor([d for d in self.docs if _matches(d, query or {})])

    async def count_documents(self, query):
        return sum(1 for d in self.docs if _matches(d, query))

    async def insert_one(self, doc):
        doc.setdefault("_id", str(uuid.uuid4()))
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    async def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(copy.deepcopy(update.get("$set", {})))
                for field, amount in update.get("$inc", {}).items():
                    doc[field] = doc.get(field, 0) + amount
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)

        if not upsert:
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

        new_doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
        new_doc.update(copy.deepcopy(update.get("$setOnInsert", {})))
        new_doc.update(copy.deepcopy(update.get("$set", {})))
        new_doc.update(update.get("$inc", {}))
        new_doc["_id"] = str(uuid.uuid4())
        self.docs.append(new_doc)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=new_doc["_id"])

    async def find_one_and_update(self, query, update, upsert=False, projection=None, return_document=None):
        """Always returns the post-update document (ReturnDocument.AFTER)"""
        result = await self.update_one(query, update, upsert=upsert)
        if result.upserted_id is not None:
            return await self.find_one({"_id": result.upserted_id})
        return await self.find_one(query)

    async def create_index(self, *args, **kwargs):
        return kwargs.get("name", "index")

    async def index_information(self):
        return {}


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


# ==================== FIXTURES ====================

FIXED_NOW = datetime(2024, 3, 15, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def service(fake_db, now):
    return AllowanceService(fake_db, now_fn=lambda: now)


@pytest.fixture
def admin_service(fake_db, now):
    return AdminAllowanceService(fake_db, now_fn=lambda: now)


@pytest.fixture
def add_profile(fake_db):
    """Insert a profile: add_profile("u1", plan_type="premium", role="admin")"""
    def _add(user_id, plan_type="free", role="user"):
        fake_db.profiles.seed({"id": user_id, "plan_type": plan_type, "role": role})
        return user_id
    return _add


@pytest.fixture
def add_period(fake_db):
    """Insert a ledger row with ISO timestamps"""
    def _add(user_id, start, end, tokens_granted=0, tokens_used=0, source="free_tier", period_id=None):
        period = {
            "id": period_id or str(uuid.uuid4()),
            "user_id": user_id,
            "period_start": start.isoformat(),
            "period_end": end.isoformat(),
            "tokens_granted": tokens_granted,
            "tokens_used": tokens_used,
            "source": source,
            "metadata": {}
        }
        fake_db.ai_allowance_periods.seed(period)
        return period
    return _add


@pytest.fixture
def settings(fake_db):
    """Seed credit settings; returns a setter for individual keys"""
    def _set(**values):
        for key, value in values.items():
            fake_db.ai_credit_settings.seed({"key": key, "value_int": value})
    return _set
