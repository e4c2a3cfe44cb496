"""Document store adapter consumed by the user-data layer.

Documents live at slash-separated paths with an even number of segments
(``users/u1/quizzes/q1``); collections have an odd number
(``users/u1/quizzes``). The store offers atomic single-document writes,
atomic multi-document batches bounded by ``max_batch_size`` and a
``SERVER_TIMESTAMP`` sentinel resolved when a write commits.

``SqlDocumentStore`` implements the contract on top of one SQLAlchemy
``documents`` table; every batch is a single database transaction.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional, Protocol, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import get_settings
from .db.models import DocumentModel
from .db.monitoring import instrument_engine
from .db.session import get_engine, get_session_factory

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_SIZE = 500
_WRITE_ATTEMPTS = 3


class DocumentStoreError(RuntimeError):
    """Base class for store failures."""


class DocumentNotFoundError(DocumentStoreError, LookupError):
    pass


class BatchLimitExceededError(DocumentStoreError):
    pass


class PreconditionFailedError(DocumentStoreError):
    """A batch precondition no longer held when the batch committed."""


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    def __copy__(self) -> "_ServerTimestamp":
        return self

    def __deepcopy__(self, memo: Dict[int, Any]) -> "_ServerTimestamp":
        return self


SERVER_TIMESTAMP = _ServerTimestamp()


def split_document_path(path: str) -> Tuple[str, str]:
    segments = path.strip("/").split("/")
    if len(segments) < 2 or len(segments) % 2 or not all(segments):
        raise ValueError(f"'{path}' is not a document path.")
    return "/".join(segments[:-1]), segments[-1]


def _check_collection_path(path: str) -> str:
    segments = path.strip("/").split("/")
    if len(segments) % 2 == 0 or not all(segments):
        raise ValueError(f"'{path}' is not a collection path.")
    return "/".join(segments)


def _resolve_timestamps(value: Any, now: datetime) -> Any:
    if value is SERVER_TIMESTAMP:
        return now.isoformat()
    if isinstance(value, dict):
        return {key: _resolve_timestamps(item, now) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve_timestamps(item, now) for item in value]
    return value


@dataclass(frozen=True)
class StoredDocument:
    id: str
    data: Dict[str, Any]
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class WriteOperation:
    kind: Literal["set", "update", "delete", "require"]
    path: str
    data: Optional[Dict[str, Any]] = None
    merge: bool = False


class DocumentStore(Protocol):
    """Interface the user-data layer needs from a document database."""

    max_batch_size: int

    async def get(self, path: str) -> Optional[Dict[str, Any]]:  # pragma: no cover - protocol definition
        ...

    async def set(self, path: str, data: Mapping[str, Any], *, merge: bool = False) -> None:  # pragma: no cover
        ...

    async def update(self, path: str, fields: Mapping[str, Any]) -> None:  # pragma: no cover
        ...

    async def delete(self, path: str) -> None:  # pragma: no cover
        ...

    async def list(
        self,
        collection: str,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        start_after: Optional[str] = None,
    ) -> List[StoredDocument]:  # pragma: no cover
        ...

    async def count(self, collection: str) -> int:  # pragma: no cover
        ...

    def batch(self) -> "WriteBatch":  # pragma: no cover
        ...

    async def commit_batch(self, operations: Sequence[WriteOperation]) -> None:  # pragma: no cover
        ...


class WriteBatch:
    """Collects writes and applies them atomically on ``commit``."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._operations: List[WriteOperation] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._operations)

    def set(self, path: str, data: Mapping[str, Any], *, merge: bool = False) -> "WriteBatch":
        return self._stage(WriteOperation("set", path, copy.deepcopy(dict(data)), merge))

    def update(self, path: str, fields: Mapping[str, Any]) -> "WriteBatch":
        return self._stage(WriteOperation("update", path, copy.deepcopy(dict(fields))))

    def delete(self, path: str) -> "WriteBatch":
        return self._stage(WriteOperation("delete", path))

    def require(self, path: str, field: str, expected: Any) -> "WriteBatch":
        """Abort the batch unless ``field`` at ``path`` still equals ``expected``.

        A missing document or field compares as ``None``. The check runs in
        the same transaction as the writes.
        """
        return self._stage(WriteOperation("require", path, {field: copy.deepcopy(expected)}))

    def _stage(self, operation: WriteOperation) -> "WriteBatch":
        if self._committed:
            raise DocumentStoreError("Cannot add writes to a batch that was already committed.")
        split_document_path(operation.path)
        if len(self._operations) >= self._store.max_batch_size:
            raise BatchLimitExceededError(
                f"Batch already holds {len(self._operations)} writes (limit {self._store.max_batch_size})."
            )
        self._operations.append(operation)
        return self

    async def commit(self) -> None:
        if self._committed:
            raise DocumentStoreError("Batch has already been committed.")
        if self._operations:
            await self._store.commit_batch(list(self._operations))
        self._committed = True


class SqlDocumentStore:
    """SQLAlchemy asyncio implementation of ``DocumentStore``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be positive.")
        self._session_factory = session_factory
        self.max_batch_size = max_batch_size

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        collection, doc_id = split_document_path(path)
        async with self._session_factory() as session:
            model = await self._load(session, collection, doc_id)
            return copy.deepcopy(model.data) if model is not None else None

    async def set(self, path: str, data: Mapping[str, Any], *, merge: bool = False) -> None:
        await self.commit_batch([WriteOperation("set", path, copy.deepcopy(dict(data)), merge)])

    async def update(self, path: str, fields: Mapping[str, Any]) -> None:
        await self.commit_batch([WriteOperation("update", path, copy.deepcopy(dict(fields)))])

    async def delete(self, path: str) -> None:
        await self.commit_batch([WriteOperation("delete", path)])

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def list(
        self,
        collection: str,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        start_after: Optional[str] = None,
    ) -> List[StoredDocument]:
        """List a collection, optionally ordered by a top-level field.

        Documents missing ``order_by`` sort last in either direction.
        ``start_after`` is the id of the last document of the previous page;
        an id that is no longer in the collection yields an empty page.
        """
        collection = _check_collection_path(collection)
        stmt = (
            select(DocumentModel)
            .where(DocumentModel.collection == collection)
            .order_by(DocumentModel.doc_id.asc())
        )
        async with self._session_factory() as session:
            models = (await session.execute(stmt)).scalars().all()
            documents = [
                StoredDocument(id=model.doc_id, data=copy.deepcopy(model.data), updated_at=model.updated_at)
                for model in models
            ]

        if order_by:
            present = [doc for doc in documents if doc.data.get(order_by) is not None]
            missing = [doc for doc in documents if doc.data.get(order_by) is None]
            present.sort(key=lambda doc: _sort_key(doc.data[order_by]), reverse=descending)
            documents = present + missing

        if start_after is not None:
            ids = [doc.id for doc in documents]
            documents = documents[ids.index(start_after) + 1 :] if start_after in ids else []

        if limit is not None:
            documents = documents[: max(limit, 0)]
        return documents

    async def count(self, collection: str) -> int:
        collection = _check_collection_path(collection)
        stmt = select(func.count()).select_from(DocumentModel).where(DocumentModel.collection == collection)
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def commit_batch(self, operations: Sequence[WriteOperation]) -> None:
        if len(operations) > self.max_batch_size:
            raise BatchLimitExceededError(
                f"Batch of {len(operations)} writes exceeds the limit of {self.max_batch_size}."
            )
        for attempt in range(1, _WRITE_ATTEMPTS + 1):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        now = datetime.now(timezone.utc)
                        for operation in operations:
                            await self._apply(session, operation, now)
                return
            except IntegrityError:
                # Another transaction inserted one of our documents first.
                if attempt == _WRITE_ATTEMPTS:
                    raise
                logger.warning(
                    "Concurrent insert while committing %d writes; retrying (attempt %d)",
                    len(operations),
                    attempt,
                )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(
        self,
        session: AsyncSession,
        collection: str,
        doc_id: str,
        *,
        for_update: bool = False,
    ) -> Optional[DocumentModel]:
        stmt = select(DocumentModel).where(
            DocumentModel.collection == collection,
            DocumentModel.doc_id == doc_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _apply(self, session: AsyncSession, operation: WriteOperation, now: datetime) -> None:
        collection, doc_id = split_document_path(operation.path)
        model = await self._load(session, collection, doc_id, for_update=operation.kind == "require")

        if operation.kind == "require":
            current = model.data if model is not None else {}
            for field, expected in (operation.data or {}).items():
                if current.get(field) != expected:
                    raise PreconditionFailedError(
                        f"'{operation.path}' has {field}={current.get(field)!r}, expected {expected!r}."
                    )
            return

        if operation.kind == "delete":
            if model is not None:
                await session.delete(model)
                await session.flush()
            return

        fields = _resolve_timestamps(operation.data or {}, now)
        if operation.kind == "update":
            if model is None:
                raise DocumentNotFoundError(f"No document at '{operation.path}' to update.")
            model.data = {**model.data, **fields}
            model.updated_at = now
            return

        if model is None:
            session.add(
                DocumentModel(
                    collection=collection,
                    doc_id=doc_id,
                    data=fields,
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.flush()
            return

        model.data = {**model.data, **fields} if operation.merge else fields
        model.updated_at = now


def _sort_key(value: Any) -> Tuple[int, Any]:
    if isinstance(value, bool):
        return (0, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    return (3, str(value))


_store: Optional[SqlDocumentStore] = None


def get_document_store() -> SqlDocumentStore:
    global _store
    if _store is None:
        settings = get_settings()
        instrument_engine(get_engine())
        _store = SqlDocumentStore(get_session_factory(), max_batch_size=settings.store_max_batch_size)
    return _store


def reset_document_store() -> None:
    global _store
    _store = None


__all__ = [
    "BatchLimitExceededError",
    "DEFAULT_MAX_BATCH_SIZE",
    "DocumentNotFoundError",
    "DocumentStore",
    "DocumentStoreError",
    "PreconditionFailedError",
    "SERVER_TIMESTAMP",
    "SqlDocumentStore",
    "StoredDocument",
    "WriteBatch",
    "WriteOperation",
    "get_document_store",
    "reset_document_store",
    "split_document_path",
]
