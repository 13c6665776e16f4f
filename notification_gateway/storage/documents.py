"""
Generic document store used by the priority queue, the webhook registry and
the dead-letter sink.

Documents are JSON-compatible dicts with a string ``id``. Filters are
equality matches on top-level fields, except that a list-valued field
matches when it contains the filter value. Every write is atomic at the
document level; ``update(..., expected=...)`` is a compare-and-set on the
given fields.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple
from uuid import uuid4

from sqlalchemy import select, delete as sql_delete

from .database import Database
from .models import DocumentRow

logger = logging.getLogger(__name__)

Filters = Optional[Dict[str, Any]]
Sort = Optional[Sequence[Tuple[str, int]]]


class DocumentStore(Protocol):
    async def insert(self, collection: str, doc: Dict[str, Any]) -> Dict[str, Any]: ...
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]: ...
    async def find(
        self,
        collection: str,
        filters: Filters = None,
        sort: Sort = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]: ...
    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Dict[str, Any],
        expected: Filters = None,
    ) -> Optional[Dict[str, Any]]: ...
    async def upsert(self, collection: str, doc: Dict[str, Any]) -> Dict[str, Any]: ...
    async def delete(self, collection: str, doc_id: str) -> bool: ...
    async def count(self, collection: str, filters: Filters = None) -> int: ...


def matches(doc: Dict[str, Any], filters: Filters) -> bool:
    for key, want in (filters or {}).items():
        have = doc.get(key)
        if isinstance(have, list) and not isinstance(want, list):
            if want not in have:
                return False
        elif have != want:
            return False
    return True


def apply_query(
    docs: Iterable[Dict[str, Any]],
    filters: Filters = None,
    sort: Sort = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    out = [d for d in docs if matches(d, filters)]
    # Stable sorts applied from the last key to the first
    for key, direction in reversed(list(sort or [])):
        out.sort(
            key=lambda d: (d.get(key) is None, d.get(key) if d.get(key) is not None else 0),
            reverse=direction < 0,
        )
    if offset:
        out = out[offset:]
    if limit is not None:
        out = out[:limit]
    return out


def _with_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = copy.deepcopy(doc)
    if not doc.get("id"):
        doc["id"] = str(uuid4())
    return doc


class DuplicateDocumentError(KeyError):
    pass


class InMemoryDocumentStore:
    """Process-local store. Safe for concurrent coroutines; no persistence."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(name, {})

    async def insert(self, collection: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = _with_id(doc)
        async with self._lock:
            col = self._collection(collection)
            if doc["id"] in col:
                raise DuplicateDocumentError(f"{collection}/{doc['id']} already exists")
            col[doc["id"]] = doc
        return copy.deepcopy(doc)

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self._collection(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find(
        self,
        collection: str,
        filters: Filters = None,
        sort: Sort = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        docs = apply_query(self._collection(collection).values(), filters, sort, limit, offset)
        return copy.deepcopy(docs)

    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Dict[str, Any],
        expected: Filters = None,
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None or not matches(doc, expected):
                return None
            doc.update(copy.deepcopy(changes))
            doc["id"] = doc_id
            return copy.deepcopy(doc)

    async def upsert(self, collection: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = _with_id(doc)
        async with self._lock:
            self._collection(collection)[doc["id"]] = doc
        return copy.deepcopy(doc)

    async def delete(self, collection: str, doc_id: str) -> bool:
        async with self._lock:
            return self._collection(collection).pop(doc_id, None) is not None

    async def count(self, collection: str, filters: Filters = None) -> int:
        return sum(1 for d in self._collection(collection).values() if matches(d, filters))


class SqlDocumentStore:
    """SQLAlchemy-backed store: one JSON row per document.

    Filtering happens in Python after loading a collection, which keeps the
    store portable across SQLite and Postgres JSON dialects.
    """

    def __init__(self, database: Database):
        self.db = database

    @classmethod
    def from_url(cls, url: str) -> "SqlDocumentStore":
        return cls(Database(url))

    async def start(self) -> None:
        await self.db.start()

    async def stop(self) -> None:
        await self.db.dispose()

    async def _rows(self, collection: str) -> List[Dict[str, Any]]:
        async with self.db.session() as session:
            result = await session.execute(
                select(DocumentRow.body).where(DocumentRow.collection == collection)
            )
            return [dict(body) for body in result.scalars().all()]

    async def insert(self, collection: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = _with_id(doc)
        async with self.db.session() as session:
            async with session.begin():
                if await session.get(DocumentRow, (collection, doc["id"])) is not None:
                    raise DuplicateDocumentError(f"{collection}/{doc['id']} already exists")
                now = datetime.utcnow()
                session.add(
                    DocumentRow(
                        collection=collection,
                        id=doc["id"],
                        body=doc,
                        created_at=now,
                        updated_at=now,
                    )
                )
        return copy.deepcopy(doc)

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        async with self.db.session() as session:
            row = await session.get(DocumentRow, (collection, doc_id))
            return dict(row.body) if row is not None else None

    async def find(
        self,
        collection: str,
        filters: Filters = None,
        sort: Sort = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        return apply_query(await self._rows(collection), filters, sort, limit, offset)

    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Dict[str, Any],
        expected: Filters = None,
    ) -> Optional[Dict[str, Any]]:
        async with self.db.session() as session:
            async with session.begin():
                row = await session.get(DocumentRow, (collection, doc_id))
                if row is None:
                    return None
                body = dict(row.body)
                if not matches(body, expected):
                    return None
                body.update(copy.deepcopy(changes))
                body["id"] = doc_id
                row.body = body
                row.updated_at = datetime.utcnow()
        return copy.deepcopy(body)

    async def upsert(self, collection: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = _with_id(doc)
        async with self.db.session() as session:
            async with session.begin():
                row = await session.get(DocumentRow, (collection, doc["id"]))
                now = datetime.utcnow()
                if row is None:
                    session.add(
                        DocumentRow(
                            collection=collection,
                            id=doc["id"],
                            body=doc,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                else:
                    row.body = doc
                    row.updated_at = now
        return copy.deepcopy(doc)

    async def delete(self, collection: str, doc_id: str) -> bool:
        async with self.db.session() as session:
            async with session.begin():
                result = await session.execute(
                    sql_delete(DocumentRow).where(
                        DocumentRow.collection == collection, DocumentRow.id == doc_id
                    )
                )
        return bool(result.rowcount)

    async def count(self, collection: str, filters: Filters = None) -> int:
        return sum(1 for d in await self._rows(collection) if matches(d, filters))


def select_store(settings: Any) -> DocumentStore:
    if getattr(settings, "store_backend", "memory") == "sql":
        logger.info("Using SQL document store at %s", settings.database_url)
        return SqlDocumentStore.from_url(settings.database_url)
    return InMemoryDocumentStore()
