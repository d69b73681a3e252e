"""
Document repository for ETS Dispatch.

MongoRepository talks to MongoDB through pymongo. MemoryRepository keeps the
same contract in-process for local runs without a database and for tests.
Both return documents as plain dicts with the primary key exposed as "id".

compare_and_set is the only primitive allowed for guarded writes: the
expected fields are part of the match, so the check and the write happen in
one step on the store.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import PyMongoError

from errors import Internal

logger = logging.getLogger(__name__)

Sort = Sequence[Tuple[str, int]]
DESCENDING = -1


class DocumentRepository(Protocol):
    backend: str

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]: ...

    def get_many(self, collection: str, ids: Iterable[str]) -> List[Dict[str, Any]]: ...

    def find(
        self,
        collection: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    def insert(self, collection: str, data: Dict[str, Any]) -> str: ...

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> bool: ...

    def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected: Dict[str, Any],
        set_fields: Optional[Dict[str, Any]] = None,
        push_fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]: ...

    def ping(self) -> bool: ...


def to_str_id(doc):
    if doc is None:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def _object_id(doc_id) -> Optional[ObjectId]:
    try:
        return ObjectId(doc_id)
    except (InvalidId, TypeError):
        return None


def _strip_id(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k not in ("id", "_id")}


class MongoRepository:
    backend = "mongo"

    def __init__(self, db):
        self.db = db

    @classmethod
    def from_url(cls, url: str, name: str) -> "MongoRepository":
        client = MongoClient(url, tz_aware=True, serverSelectionTimeoutMS=5000)
        return cls(client[name])

    @contextmanager
    def _guard(self, action: str):
        try:
            yield
        except PyMongoError as e:
            logger.error(f"MongoDB error during {action}: {e}")
            raise Internal("Database error") from e

    def get(self, collection, doc_id):
        oid = _object_id(doc_id)
        if oid is None:
            return None
        with self._guard(f"get {collection}"):
            return to_str_id(self.db[collection].find_one({"_id": oid}))

    def get_many(self, collection, ids):
        oids = [oid for oid in (_object_id(i) for i in ids) if oid is not None]
        if not oids:
            return []
        with self._guard(f"get_many {collection}"):
            return [to_str_id(d) for d in self.db[collection].find({"_id": {"$in": oids}})]

    def find(self, collection, filter_dict=None, sort=None, limit=None):
        with self._guard(f"find {collection}"):
            cursor = self.db[collection].find(filter_dict or {})
            if sort:
                cursor = cursor.sort(list(sort))
            if limit:
                cursor = cursor.limit(limit)
            return [to_str_id(d) for d in cursor]

    def insert(self, collection, data):
        with self._guard(f"insert {collection}"):
            result = self.db[collection].insert_one(_strip_id(data))
            return str(result.inserted_id)

    def update(self, collection, doc_id, fields):
        oid = _object_id(doc_id)
        if oid is None:
            return False
        with self._guard(f"update {collection}"):
            res = self.db[collection].update_one({"_id": oid}, {"$set": fields})
            return res.matched_count > 0

    def compare_and_set(self, collection, doc_id, expected, set_fields=None, push_fields=None):
        oid = _object_id(doc_id)
        if oid is None:
            return None
        update: Dict[str, Any] = {}
        if set_fields:
            update["$set"] = set_fields
        if push_fields:
            update["$push"] = push_fields
        if not update:
            raise ValueError("compare_and_set needs set_fields or push_fields")
        with self._guard(f"compare_and_set {collection}"):
            doc = self.db[collection].find_one_and_update(
                {"_id": oid, **expected},
                update,
                return_document=ReturnDocument.AFTER,
            )
            return to_str_id(doc)

    def ping(self):
        try:
            self.db.client.admin.command("ping")
            return True
        except PyMongoError:
            return False


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

def _path_values(doc: Any, path: List[str]) -> List[Any]:
    """Values reachable along a dotted path, descending into arrays like MongoDB does."""
    if not path:
        if isinstance(doc, list):
            return list(doc) + [doc]
        return [doc]
    if isinstance(doc, list):
        out = []
        for item in doc:
            out.extend(_path_values(item, path))
        return out
    if isinstance(doc, dict) and path[0] in doc:
        return _path_values(doc[path[0]], path[1:])
    return []


def _compare(op: str, value: Any, operand: Any) -> bool:
    try:
        if op == "$gte":
            return value >= operand
        if op == "$lte":
            return value <= operand
        if op == "$gt":
            return value > operand
        if op == "$lt":
            return value < operand
    except TypeError:
        return False
    raise ValueError(f"Unsupported query operator: {op}")


def _field_matches(values: List[Any], cond: Any) -> bool:
    if not values:
        values = [None]
    if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
        for op, operand in cond.items():
            if op == "$in":
                ok = any(v in operand for v in values)
            elif op == "$nin":
                ok = not any(v in operand for v in values)
            elif op == "$ne":
                ok = all(v != operand for v in values)
            else:
                ok = any(v is not None and _compare(op, v, operand) for v in values)
            if not ok:
                return False
        return True
    return any(v == cond for v in values)


def _matches(doc: Dict[str, Any], filter_dict: Dict[str, Any]) -> bool:
    for key, cond in filter_dict.items():
        field = "id" if key == "_id" else key
        if not _field_matches(_path_values(doc, field.split(".")), cond):
            return False
    return True


def _set_path(doc: Dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


class MemoryRepository:
    """Thread-safe in-process document store. Every write holds one lock."""

    backend = "memory"

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _coll(self, collection):
        return self._collections.setdefault(collection, {})

    def get(self, collection, doc_id):
        with self._lock:
            doc = self._coll(collection).get(doc_id)
            return copy.deepcopy(doc)

    def get_many(self, collection, ids):
        wanted = set(ids)
        with self._lock:
            return [copy.deepcopy(d) for i, d in self._coll(collection).items() if i in wanted]

    def find(self, collection, filter_dict=None, sort=None, limit=None):
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._coll(collection).values()
                    if _matches(d, filter_dict or {})]
        for field, direction in reversed(list(sort or [])):
            docs.sort(
                key=lambda d: (d.get(field) is not None, d.get(field)),
                reverse=direction == DESCENDING,
            )
        if limit:
            docs = docs[:limit]
        return docs

    def insert(self, collection, data):
        doc_id = str(ObjectId())
        doc = copy.deepcopy(_strip_id(data))
        doc["id"] = doc_id
        with self._lock:
            self._coll(collection)[doc_id] = doc
        return doc_id

    def update(self, collection, doc_id, fields):
        with self._lock:
            doc = self._coll(collection).get(doc_id)
            if doc is None:
                return False
            for key, value in fields.items():
                _set_path(doc, key, copy.deepcopy(value))
            return True

    def compare_and_set(self, collection, doc_id, expected, set_fields=None, push_fields=None):
        if not set_fields and not push_fields:
            raise ValueError("compare_and_set needs set_fields or push_fields")
        with self._lock:
            doc = self._coll(collection).get(doc_id)
            if doc is None or not _matches(doc, expected):
                return None
            for key, value in (set_fields or {}).items():
                _set_path(doc, key, copy.deepcopy(value))
            for key, value in (push_fields or {}).items():
                doc.setdefault(key, []).append(copy.deepcopy(value))
            return copy.deepcopy(doc)

    def ping(self):
        return True


def create_repository(backend: str, url: Optional[str] = None, name: Optional[str] = None):
    """Pick the repository implementation named by DATABASE_BACKEND."""
    if backend == "mongo":
        if not url:
            raise RuntimeError("DATABASE_URL is required for the mongo backend")
        logger.info(f"Using MongoDB database '{name}'")
        return MongoRepository.from_url(url, name)
    if backend == "memory":
        logger.warning("Using in-memory document store; data is lost on restart")
        return MemoryRepository()
    raise RuntimeError(f"Unknown DATABASE_BACKEND: {backend}")
