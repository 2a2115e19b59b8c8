"""
Shared fixtures: in-memory doubles for the Motor database and the
redis.asyncio client, plus a fully wired pipeline on top of them.
"""

import fnmatch
import itertools
from types import SimpleNamespace

import pytest
from pymongo.errors import BulkWriteError, OperationFailure
from redis.exceptions import ConnectionError as RedisConnectionError

from linkpulse.cache import uid_cache
from linkpulse.config import Settings
from linkpulse.pipeline import AnalyticsPipeline
from linkpulse.redis_store import RedisStore
from linkpulse.storage_mongodb import MongoStorage

LT_ID = "11111111-1111-4111-8111-111111111111"
LT_ID_2 = "22222222-2222-4222-8222-222222222222"
LINK_ID = "aaaaaaaa-aaaa-4aaa-8aaa-aaaaaaaaaaaa"
LINK_ID_2 = "bbbbbbbb-bbbb-4bbb-8bbb-bbbbbbbbbbbb"


# =============================================================================
# REDIS DOUBLE
# =============================================================================

class FakeLock:
    def __init__(self, redis, name):
        self.redis = redis
        self.name = name

    async def acquire(self):
        self.redis._check()
        if self.name in self.redis.locks:
            return False
        self.redis.locks.add(self.name)
        return True

    async def release(self):
        self.redis.locks.discard(self.name)


def _bounds(n, start, stop):
    s = start if start >= 0 else max(n + start, 0)
    e = stop if stop >= 0 else n + stop
    return s, e + 1


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.lists = {}
        self.ttls = {}
        self.locks = set()
        self.broken = False

    def _check(self):
        if self.broken:
            raise RedisConnectionError("connection refused")

    async def rpush(self, key, *values):
        self._check()
        lst = self.lists.setdefault(key, [])
        lst.extend(values)
        return len(lst)

    async def lrange(self, key, start, stop):
        self._check()
        lst = self.lists.get(key, [])
        s, e = _bounds(len(lst), start, stop)
        return lst[s:e]

    async def ltrim(self, key, start, stop):
        self._check()
        lst = self.lists.get(key, [])
        s, e = _bounds(len(lst), start, stop)
        self.lists[key] = lst[s:e]
        return True

    async def llen(self, key):
        self._check()
        return len(self.lists.get(key, []))

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        deleted = 0
        for k in keys:
            if self.data.pop(k, None) is not None or self.lists.pop(k, None) is not None:
                deleted += 1
        return deleted

    async def scan_iter(self, match=None, count=None):
        self._check()
        for k in list(self.data) + list(self.lists):
            if match is None or fnmatch.fnmatchcase(k, match):
                yield k

    def lock(self, name, timeout=None, blocking=True):
        return FakeLock(self, name)

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        pass


# =============================================================================
# MONGO DOUBLE
# =============================================================================

def _matches(doc, flt):
    for field, cond in (flt or {}).items():
        value = doc.get(field)
        if isinstance(cond, dict) and "$in" in cond:
            if value not in cond["$in"]:
                return False
        elif value != cond:
            return False
    return True


def _project(doc, projection):
    if not projection:
        return dict(doc)
    included = [k for k, v in projection.items() if v]
    out = {k: doc[k] for k in included if k in doc}
    if projection.get("_id", 1) and "_id" in doc:
        out["_id"] = doc["_id"]
    return out


class FakeCursor:
    def __init__(self, docs):
        self.docs = docs

    def sort(self, key, direction=1):
        self.docs = sorted(self.docs, key=lambda d: d.get(key), reverse=direction < 0)
        return self

    def limit(self, n):
        self.docs = self.docs[:n]
        return self

    async def to_list(self, length=None):
        return self.docs if length is None else self.docs[:length]


class FakeCollection:
    _ids = itertools.count(1)

    def __init__(self, name, unique=None):
        self.name = name
        self.unique = unique
        self.docs = []
        self.indexes = []
        self.fail_with = None
        # batch index -> write error code, for rows the server should reject
        self.reject = {}

    def _duplicate(self, doc):
        if not self.unique:
            return False
        key = tuple(doc.get(f) for f in self.unique)
        return any(tuple(d.get(f) for f in self.unique) == key for d in self.docs)

    async def insert_many(self, docs, ordered=True):
        if self.fail_with is not None:
            raise self.fail_with
        errors = []
        for i, doc in enumerate(docs):
            if i in self.reject:
                errors.append({"index": i, "code": self.reject[i], "errmsg": "Document failed validation"})
                continue
            if self._duplicate(doc):
                errors.append({"index": i, "code": 11000, "errmsg": "E11000 duplicate key error"})
                continue
            stored = dict(doc)
            stored.setdefault("_id", next(self._ids))
            self.docs.append(stored)
        if errors:
            raise BulkWriteError({"writeErrors": errors, "nInserted": len(docs) - len(errors)})
        return SimpleNamespace(inserted_ids=[])

    async def insert_one(self, doc):
        stored = dict(doc)
        stored.setdefault("_id", next(self._ids))
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"])

    def find(self, flt=None, projection=None):
        return FakeCursor([_project(d, projection) for d in self.docs if _matches(d, flt)])

    async def find_one(self, flt=None, projection=None):
        for d in self.docs:
            if _matches(d, flt):
                return _project(d, projection)
        return None

    async def count_documents(self, flt):
        return sum(1 for d in self.docs if _matches(d, flt))

    async def distinct(self, field, flt=None):
        out = []
        for d in self.docs:
            if _matches(d, flt) and field in d and d[field] not in out:
                out.append(d[field])
        return out

    async def delete_many(self, flt):
        if self.fail_with is not None:
            raise self.fail_with
        keep = [d for d in self.docs if not _matches(d, flt)]
        deleted = len(self.docs) - len(keep)
        self.docs = keep
        return SimpleNamespace(deleted_count=deleted)

    async def update_many(self, flt, update):
        for d in self.docs:
            if _matches(d, flt):
                d.update(update.get("$set", {}))
        return SimpleNamespace()

    async def bulk_write(self, ops, ordered=True):
        for op in ops:
            for d in self.docs:
                if _matches(d, op._filter):
                    for field, n in op._doc.get("$inc", {}).items():
                        d[field] = d.get(field, 0) + n
                    break
        return SimpleNamespace()

    async def create_index(self, keys, unique=False, name=None, **kwargs):
        self.indexes.append({"keys": keys, "unique": unique, "name": name})
        return name


class FakeDatabase:
    UNIQUE = {
        "page_views": ("linktree_id", "ip_address", "session_id", "viewed_at"),
        "link_clicks": ("link_id", "ip_address", "session_id", "clicked_at"),
    }

    def __init__(self):
        self.collections = {}
        self.down = False

    def __getitem__(self, name):
        if name not in self.collections:
            self.collections[name] = FakeCollection(name, self.UNIQUE.get(name))
        return self.collections[name]

    async def command(self, cmd):
        if self.down:
            raise OperationFailure("not reachable")
        return {"ok": 1}


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def _clear_uid_cache():
    uid_cache.clear()
    yield
    uid_cache.clear()


@pytest.fixture
def settings():
    return Settings(admin_api_key="s3cret", batch_size=1000, flush_interval=30, cache_ttl=120)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(fake_redis):
    return RedisStore(fake_redis, prefix="test:")


@pytest.fixture
def fake_db():
    db = FakeDatabase()
    db["linktrees"].docs.extend([
        {"_id": LT_ID, "uid": "ari"},
        {"_id": LT_ID_2, "uid": "bo"},
    ])
    db["links"].docs.extend([
        {"_id": LINK_ID, "linktree_id": LT_ID, "click_count": 0},
        {"_id": LINK_ID_2, "linktree_id": LT_ID_2, "click_count": 0},
    ])
    return db


@pytest.fixture
def storage(settings, store, fake_db):
    return MongoStorage(settings, store, db=fake_db)


@pytest.fixture
def pipeline(settings, store, storage):
    return AnalyticsPipeline(settings, store, storage)
