"""
DOCUMENT STORE ADAPTER

Uniform async persistence interface consumed by the engine:
- find_one / find_many / count
- insert_one / update_one / delete_one
- transaction(): one all-or-nothing boundary per engine operation

update_one() takes a full match query, so callers express per-row
compare-and-set ("only if status is still SUBMITTED") and learn from the
matched count whether they won a race.

Implementations:
- MotorDocumentStore: MongoDB via Motor (replica set required for transactions)
- InMemoryDocumentStore: process-local, snapshot/rollback transactions
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Dict, Any, List, Optional, Tuple, AsyncIterator
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError
import asyncio
import copy
import logging

from funding_engine.money import to_storage, from_storage

logger = logging.getLogger(__name__)

Sort = List[Tuple[str, int]]


class DuplicateDocumentError(Exception):
    """Raised when an insert violates a unique key."""
    def __init__(self, collection: str, key: Dict[str, Any]):
        self.collection = collection
        self.key = key
        super().__init__(f"Duplicate key in {collection}: {key}")


class DocumentStore(ABC):
    """Abstract persistence used by the repositories and services."""

    @abstractmethod
    def transaction(self):
        """Async context manager yielding a session for a multi-document write."""

    @abstractmethod
    async def ensure_unique(self, collection: str, fields: List[str]) -> None: ...

    @abstractmethod
    async def find_one(self, collection: str, query: Dict[str, Any], session=None) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def find_many(
        self,
        collection: str,
        query: Dict[str, Any],
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
        skip: int = 0,
        session=None
    ) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def count(self, collection: str, query: Dict[str, Any], session=None) -> int: ...

    @abstractmethod
    async def insert_one(self, collection: str, doc: Dict[str, Any], session=None) -> str: ...

    @abstractmethod
    async def update_one(self, collection: str, query: Dict[str, Any], fields: Dict[str, Any], session=None) -> int:
        """Set `fields` on the first document matching `query`. Returns matched count."""

    @abstractmethod
    async def delete_one(self, collection: str, query: Dict[str, Any], session=None) -> int: ...


# =============================================================================
# MONGODB
# =============================================================================

def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return to_storage(value)
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return from_storage(value)


class MotorDocumentStore(DocumentStore):
    """
    MongoDB-backed store.

    Amounts are written as Decimal128 and read back as Decimal. Document ids
    are string UUIDs assigned by the repositories.
    """

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    async def ensure_unique(self, collection: str, fields: List[str]) -> None:
        name = "uniq_" + "_".join(fields)
        await self.db[collection].create_index([(f, 1) for f in fields], unique=True, name=name)
        logger.info(f"[STORE] Ensured unique index {collection}.{name}")

    async def find_one(self, collection, query, session=None):
        doc = await self.db[collection].find_one(_encode(query), session=session)
        return _decode(doc) if doc else None

    async def find_many(self, collection, query, sort=None, limit=None, skip=0, session=None):
        cursor = self.db[collection].find(_encode(query), session=session)
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=limit)
        return [_decode(doc) for doc in docs]

    async def count(self, collection, query, session=None):
        return await self.db[collection].count_documents(_encode(query), session=session)

    async def insert_one(self, collection, doc, session=None):
        try:
            result = await self.db[collection].insert_one(_encode(doc), session=session)
        except DuplicateKeyError as e:
            raise DuplicateDocumentError(collection, e.details.get("keyValue", {}) if e.details else {})
        return str(result.inserted_id)

    async def update_one(self, collection, query, fields, session=None):
        result = await self.db[collection].update_one(
            _encode(query),
            {"$set": _encode(fields)},
            session=session
        )
        return result.matched_count

    async def delete_one(self, collection, query, session=None):
        result = await self.db[collection].delete_one(_encode(query), session=session)
        return result.deleted_count


# =============================================================================
# IN-MEMORY
# =============================================================================

def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for field, condition in query.items():
        value = doc.get(field)
        if isinstance(condition, dict):
            for op, operand in condition.items():
                if op == "$in" and value not in operand:
                    return False
                if op == "$nin" and value in operand:
                    return False
                if op == "$ne" and value == operand:
                    return False
                if op == "$exists" and (field in doc) != bool(operand):
                    return False
        elif value != condition:
            return False
    return True


class _MemorySession:
    """Token identifying the transaction that currently holds the store lock."""


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store with the same semantics as MotorDocumentStore.

    A transaction holds the store lock for its whole duration and restores a
    snapshot if the block raises, so concurrent writers are serialized and a
    failed batch leaves no partial writes.
    """

    def __init__(self):
        self._collections: Dict[str, List[Dict[str, Any]]] = {}
        self._unique: Dict[str, List[List[str]]] = {}
        self._lock = asyncio.Lock()
        self._active: Optional[_MemorySession] = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_MemorySession]:
        async with self._lock:
            snapshot = copy.deepcopy(self._collections)
            session = _MemorySession()
            self._active = session
            try:
                yield session
            except BaseException:
                self._collections = snapshot
                logger.debug("[STORE] In-memory transaction rolled back")
                raise
            finally:
                self._active = None

    @asynccontextmanager
    async def _guard(self, session):
        if session is not None and session is self._active:
            yield
        else:
            async with self._lock:
                yield

    def _docs(self, collection: str) -> List[Dict[str, Any]]:
        return self._collections.setdefault(collection, [])

    async def ensure_unique(self, collection, fields):
        constraints = self._unique.setdefault(collection, [])
        if list(fields) not in constraints:
            constraints.append(list(fields))

    async def find_one(self, collection, query, session=None):
        async with self._guard(session):
            for doc in self._docs(collection):
                if _matches(doc, query):
                    return copy.deepcopy(doc)
            return None

    async def find_many(self, collection, query, sort=None, limit=None, skip=0, session=None):
        async with self._guard(session):
            docs = [copy.deepcopy(d) for d in self._docs(collection) if _matches(d, query)]
        for field, direction in reversed(sort or []):
            docs.sort(key=lambda d: (d.get(field) is None, d.get(field)), reverse=direction < 0)
        docs = docs[skip:]
        if limit:
            docs = docs[:limit]
        return docs

    async def count(self, collection, query, session=None):
        async with self._guard(session):
            return sum(1 for d in self._docs(collection) if _matches(d, query))

    async def insert_one(self, collection, doc, session=None):
        async with self._guard(session):
            docs = self._docs(collection)
            for fields in self._unique.get(collection, []):
                key = {f: doc.get(f) for f in fields}
                if any(_matches(existing, key) for existing in docs):
                    raise DuplicateDocumentError(collection, key)
            docs.append(copy.deepcopy(doc))
            return str(doc["_id"])

    async def update_one(self, collection, query, fields, session=None):
        async with self._guard(session):
            for doc in self._docs(collection):
                if _matches(doc, query):
                    doc.update(copy.deepcopy(fields))
                    return 1
            return 0

    async def delete_one(self, collection, query, session=None):
        async with self._guard(session):
            docs = self._docs(collection)
            for i, doc in enumerate(docs):
                if _matches(doc, query):
                    del docs[i]
                    return 1
            return 0
