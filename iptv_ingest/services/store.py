"""
Document Store

Typed collection access used by every ingestion component.

Documents are plain dicts keyed by a string ``_id``. Queries use a small
Mongo-style subset (equality on dotted paths, ``$in``, ``$nin``, ``$ne``,
``$exists``, ``$gt``/``$gte``/``$lt``/``$lte``). Two backends:

- MemoryDocumentStore: process-local dicts (tests, local development)
- FirestoreDocumentStore: Firebase Admin Firestore client
"""

import asyncio
import copy
import json
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..config import Settings
from ..core.exceptions import StoreUnavailable
from ..core.logging import get_logger

logger = get_logger(__name__)


# Persisted collection names (read surfaces depend on them)
PROVIDER_TITLES = "provider_titles"
TITLES = "titles"
CHANNELS = "channels"
PROGRAMS = "programs"
IPTV_PROVIDERS = "iptv_providers"
PROVIDER_CATEGORIES = "provider_categories"
SETTINGS = "settings"
USERS = "users"
JOB_HISTORY = "job_history"

_MISSING = object()


# =============================================================================
# BULK OPERATIONS
# =============================================================================

@dataclass
class UpsertOne:
    """Replace (or create) the whole document ``doc["_id"]``."""
    doc: Dict[str, Any]


@dataclass
class UpdateOne:
    """Set top-level fields on one document."""
    id: str
    set_fields: Dict[str, Any]
    upsert: bool = False


@dataclass
class DeleteOne:
    id: str


BulkOp = Union[UpsertOne, UpdateOne, DeleteOne]


@dataclass
class BulkWriteResult:
    upserted: int = 0
    updated: int = 0
    deleted: int = 0


# =============================================================================
# QUERY MATCHING
# =============================================================================

def _resolve(value: Any, parts: List[str]) -> List[Any]:
    """All values reachable at a dotted path, traversing lists like Mongo does."""
    if not parts:
        return [value]
    if isinstance(value, list):
        out = []
        for item in value:
            out.extend(_resolve(item, parts))
        return out
    if isinstance(value, dict):
        child = value.get(parts[0], _MISSING)
        if child is _MISSING:
            return []
        return _resolve(child, parts[1:])
    return []


def _equals(candidates: List[Any], expected: Any) -> bool:
    if expected is None and not candidates:
        return True
    for candidate in candidates:
        if candidate == expected:
            return True
        if isinstance(candidate, list) and expected in candidate:
            return True
    return False


def _compare(candidates: List[Any], op: str, expected: Any) -> bool:
    for candidate in candidates:
        if candidate is None:
            continue
        try:
            if op == "$gt" and candidate > expected:
                return True
            if op == "$gte" and candidate >= expected:
                return True
            if op == "$lt" and candidate < expected:
                return True
            if op == "$lte" and candidate <= expected:
                return True
        except TypeError:
            continue
    return False


def _match_condition(candidates: List[Any], condition: Any) -> bool:
    is_operator = isinstance(condition, dict) and condition and all(
        str(k).startswith("$") for k in condition
    )
    if not is_operator:
        return _equals(candidates, condition)

    for op, expected in condition.items():
        if op == "$in":
            if not any(_equals(candidates, v) for v in expected):
                return False
        elif op == "$nin":
            if any(_equals(candidates, v) for v in expected):
                return False
        elif op == "$ne":
            if _equals(candidates, expected):
                return False
        elif op == "$exists":
            if bool(candidates) != bool(expected):
                return False
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            if not _compare(candidates, op, expected):
                return False
        else:
            raise ValueError(f"Unsupported query operator: {op}")
    return True


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    """Evaluate a query against a document."""
    if not query:
        return True
    for path, condition in query.items():
        if not _match_condition(_resolve(doc, path.split(".")), condition):
            return False
    return True


def _apply_update(
    doc: Dict[str, Any],
    set_fields: Optional[Dict[str, Any]] = None,
    inc: Optional[Dict[str, int]] = None,
) -> Dict[str, Any]:
    for key, value in (set_fields or {}).items():
        doc[key] = value
    for key, amount in (inc or {}).items():
        doc[key] = (doc.get(key) or 0) + amount
    return doc


# =============================================================================
# COLLECTION INTERFACE
# =============================================================================

class Collection:
    """Async operations on one named collection."""

    name: str

    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def find(self, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def find_one(self, query: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        docs = await self.find(query)
        return docs[0] if docs else None

    async def count(self, query: Optional[Dict[str, Any]] = None) -> int:
        return len(await self.find(query))

    async def insert_many(self, docs: List[Dict[str, Any]]) -> int:
        result = await self.bulk_write([UpsertOne(doc) for doc in docs])
        return result.upserted

    async def upsert(self, doc: Dict[str, Any]):
        await self.bulk_write([UpsertOne(doc)])

    async def update_one(
        self,
        doc_id: str,
        set_fields: Dict[str, Any],
        set_on_insert: Optional[Dict[str, Any]] = None,
        inc: Optional[Dict[str, int]] = None,
        upsert: bool = False,
    ) -> bool:
        raise NotImplementedError

    async def update_if(
        self,
        doc_id: str,
        query: Dict[str, Any],
        set_fields: Dict[str, Any],
        set_on_insert: Optional[Dict[str, Any]] = None,
        upsert: bool = False,
    ) -> bool:
        """
        Atomically apply ``set_fields`` only when the document matches ``query``.

        A missing document is evaluated as ``{"_id": doc_id}`` when ``upsert``
        is set, and created if that matches.
        """
        raise NotImplementedError

    async def update_many(self, query: Dict[str, Any], set_fields: Dict[str, Any]) -> int:
        docs = await self.find(query)
        if not docs:
            return 0
        result = await self.bulk_write([UpdateOne(d["_id"], set_fields) for d in docs])
        return result.updated

    async def delete_many(self, query: Optional[Dict[str, Any]] = None) -> int:
        docs = await self.find(query)
        if not docs:
            return 0
        result = await self.bulk_write([DeleteOne(d["_id"]) for d in docs])
        return result.deleted

    async def bulk_write(self, ops: List[BulkOp]) -> BulkWriteResult:
        raise NotImplementedError

    async def group_max(
        self,
        query: Optional[Dict[str, Any]],
        group_by: List[str],
        field_name: str,
    ) -> Dict[Tuple, Any]:
        """
        Aggregate ``max(field_name)`` per distinct ``group_by`` tuple.

        Every group present in the result set gets a key; its value is None
        when no document of the group carries the field.
        """
        out: Dict[Tuple, Any] = {}
        for doc in await self.find(query):
            key = tuple(doc.get(g) for g in group_by)
            value = doc.get(field_name)
            current = out.get(key)
            if key not in out or (value is not None and (current is None or value > current)):
                out[key] = value
        return out


class DocumentStore:
    """Named-collection access plus a reachability check."""

    async def ping(self):
        raise NotImplementedError

    def collection(self, name: str) -> Collection:
        raise NotImplementedError

    async def close(self):
        pass


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================

class MemoryCollection(Collection):
    """
    Dict-backed collection.

    Every operation completes without awaiting, so each call is atomic with
    respect to other coroutines on the loop.
    """

    def __init__(self, name: str):
        self.name = name
        self._docs: Dict[str, Dict[str, Any]] = {}

    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find(self, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return [copy.deepcopy(d) for d in self._docs.values() if matches(d, query)]

    async def update_one(
        self,
        doc_id: str,
        set_fields: Dict[str, Any],
        set_on_insert: Optional[Dict[str, Any]] = None,
        inc: Optional[Dict[str, int]] = None,
        upsert: bool = False,
    ) -> bool:
        doc = self._docs.get(doc_id)
        if doc is None:
            if not upsert:
                return False
            doc = {"_id": doc_id, **copy.deepcopy(set_on_insert or {})}
            self._docs[doc_id] = doc
        _apply_update(doc, copy.deepcopy(set_fields), inc)
        return True

    async def update_if(
        self,
        doc_id: str,
        query: Dict[str, Any],
        set_fields: Dict[str, Any],
        set_on_insert: Optional[Dict[str, Any]] = None,
        upsert: bool = False,
    ) -> bool:
        doc = self._docs.get(doc_id)
        if doc is None:
            if not upsert or not matches({"_id": doc_id}, query):
                return False
            doc = {"_id": doc_id, **copy.deepcopy(set_on_insert or {})}
            self._docs[doc_id] = doc
        elif not matches(doc, query):
            return False
        _apply_update(doc, copy.deepcopy(set_fields))
        return True

    async def bulk_write(self, ops: List[BulkOp]) -> BulkWriteResult:
        result = BulkWriteResult()
        for op in ops:
            if isinstance(op, UpsertOne):
                self._docs[op.doc["_id"]] = copy.deepcopy(op.doc)
                result.upserted += 1
            elif isinstance(op, UpdateOne):
                doc = self._docs.get(op.id)
                if doc is None:
                    if not op.upsert:
                        continue
                    doc = {"_id": op.id}
                    self._docs[op.id] = doc
                _apply_update(doc, copy.deepcopy(op.set_fields))
                result.updated += 1
            elif isinstance(op, DeleteOne):
                if self._docs.pop(op.id, None) is not None:
                    result.deleted += 1
        return result


class MemoryDocumentStore(DocumentStore):
    def __init__(self):
        self._collections: Dict[str, MemoryCollection] = {}

    async def ping(self):
        return True

    def collection(self, name: str) -> MemoryCollection:
        if name not in self._collections:
            self._collections[name] = MemoryCollection(name)
        return self._collections[name]


# =============================================================================
# FIRESTORE BACKEND
# =============================================================================

# Firestore rejects batches with more than 500 writes
FIRESTORE_BATCH_LIMIT = 500
# Upper bound on values for an "in" filter
FIRESTORE_IN_LIMIT = 30


def initialize_firebase(settings: Settings):
    """
    Initialize Firebase Admin SDK with credentials from multiple sources.

    Priority:
    1. Local file path (FIREBASE_CREDENTIALS_PATH)
    2. JSON from environment variable (GOOGLE_APPLICATION_CREDENTIALS_JSON)
    3. Default credentials (for Google Cloud environments)
    """
    import firebase_admin
    from firebase_admin import credentials

    if firebase_admin._apps:
        return

    options = {"projectId": settings.firestore_project_id} if settings.firestore_project_id else None
    cred_path = settings.firebase_credentials_path

    if cred_path and os.path.exists(cred_path):
        logger.info("firebase_credentials_file", path=cred_path)
        firebase_admin.initialize_app(credentials.Certificate(cred_path), options)
        return

    creds_json = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS_JSON")
    if creds_json:
        logger.info("firebase_credentials_env")
        firebase_admin.initialize_app(credentials.Certificate(json.loads(creds_json)), options)
        return

    logger.info("firebase_default_credentials")
    firebase_admin.initialize_app(options=options)


class FirestoreCollection(Collection):
    """
    Firestore-backed collection.

    Top-level scalar equality and small ``$in`` filters are pushed down to
    Firestore; the full query is then re-checked locally. Client calls are
    blocking and run on worker threads.
    """

    def __init__(self, db, name: str):
        self.db = db
        self.name = name
        self._ref = db.collection(name)

    def _build_query(self, query: Optional[Dict[str, Any]]):
        from google.cloud.firestore_v1.base_query import FieldFilter

        ref = self._ref
        for path, condition in (query or {}).items():
            if "." in path or path == "_id":
                continue
            if isinstance(condition, (str, int, float, bool)):
                ref = ref.where(filter=FieldFilter(path, "==", condition))
            elif (
                isinstance(condition, dict)
                and set(condition) == {"$in"}
                and 0 < len(condition["$in"]) <= FIRESTORE_IN_LIMIT
                and None not in condition["$in"]
            ):
                ref = ref.where(filter=FieldFilter(path, "in", list(condition["$in"])))
        return ref

    def _to_doc(self, snapshot) -> Dict[str, Any]:
        data = snapshot.to_dict() or {}
        data["_id"] = snapshot.id
        return data

    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        snapshot = await asyncio.to_thread(self._ref.document(doc_id).get)
        return self._to_doc(snapshot) if snapshot.exists else None

    async def find(self, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        def _run():
            return [self._to_doc(s) for s in self._build_query(query).stream()]

        docs = await asyncio.to_thread(_run)
        return [d for d in docs if matches(d, query)]

    def _transactional(self, doc_id: str, mutate: Callable[[Optional[Dict[str, Any]]], Optional[Dict[str, Any]]]) -> bool:
        from firebase_admin import firestore

        doc_ref = self._ref.document(doc_id)

        @firestore.transactional
        def _apply(transaction):
            snapshot = doc_ref.get(transaction=transaction)
            current = self._to_doc(snapshot) if snapshot.exists else None
            updated = mutate(current)
            if updated is None:
                return False
            transaction.set(doc_ref, updated)
            return True

        return _apply(self.db.transaction())

    async def update_one(
        self,
        doc_id: str,
        set_fields: Dict[str, Any],
        set_on_insert: Optional[Dict[str, Any]] = None,
        inc: Optional[Dict[str, int]] = None,
        upsert: bool = False,
    ) -> bool:
        def mutate(current):
            if current is None:
                if not upsert:
                    return None
                current = {"_id": doc_id, **(set_on_insert or {})}
            return _apply_update(current, set_fields, inc)

        return await asyncio.to_thread(self._transactional, doc_id, mutate)

    async def update_if(
        self,
        doc_id: str,
        query: Dict[str, Any],
        set_fields: Dict[str, Any],
        set_on_insert: Optional[Dict[str, Any]] = None,
        upsert: bool = False,
    ) -> bool:
        def mutate(current):
            if current is None:
                if not upsert or not matches({"_id": doc_id}, query):
                    return None
                current = {"_id": doc_id, **(set_on_insert or {})}
            elif not matches(current, query):
                return None
            return _apply_update(current, set_fields)

        return await asyncio.to_thread(self._transactional, doc_id, mutate)

    async def bulk_write(self, ops: List[BulkOp]) -> BulkWriteResult:
        def _run() -> BulkWriteResult:
            result = BulkWriteResult()
            for start in range(0, len(ops), FIRESTORE_BATCH_LIMIT):
                batch = self.db.batch()
                for op in ops[start:start + FIRESTORE_BATCH_LIMIT]:
                    if isinstance(op, UpsertOne):
                        batch.set(self._ref.document(op.doc["_id"]), op.doc)
                        result.upserted += 1
                    elif isinstance(op, UpdateOne):
                        ref = self._ref.document(op.id)
                        if op.upsert:
                            batch.set(ref, op.set_fields, merge=True)
                        else:
                            batch.update(ref, op.set_fields)
                        result.updated += 1
                    elif isinstance(op, DeleteOne):
                        batch.delete(self._ref.document(op.id))
                        result.deleted += 1
                batch.commit()
            return result

        if not ops:
            return BulkWriteResult()
        return await asyncio.to_thread(_run)


class FirestoreDocumentStore(DocumentStore):
    def __init__(self, settings: Settings):
        from firebase_admin import firestore

        initialize_firebase(settings)
        self.db = firestore.client()
        self.prefix = settings.store_collection_prefix
        self._collections: Dict[str, FirestoreCollection] = {}

    async def ping(self):
        def _ping():
            return list(self.db.collection(f"{self.prefix}{SETTINGS}").limit(1).stream())

        try:
            await asyncio.to_thread(_ping)
        except Exception as e:
            raise StoreUnavailable(str(e)) from e
        return True

    def collection(self, name: str) -> FirestoreCollection:
        if name not in self._collections:
            self._collections[name] = FirestoreCollection(self.db, f"{self.prefix}{name}")
        return self._collections[name]

    async def close(self):
        await asyncio.to_thread(self.db.close)


def create_document_store(settings: Settings) -> DocumentStore:
    """Build the configured backend. Raises StoreUnavailable when it cannot be created."""
    if settings.store_backend == "memory":
        logger.warning("store_memory_backend")
        return MemoryDocumentStore()
    if settings.store_backend == "firestore":
        try:
            return FirestoreDocumentStore(settings)
        except Exception as e:
            raise StoreUnavailable(str(e)) from e
    raise StoreUnavailable(f"unknown store backend '{settings.store_backend}'")
