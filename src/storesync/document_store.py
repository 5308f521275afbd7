"""Document store for storesync.

A schemaless, path-addressed store laid out like a hosted document database:
collections contain documents, documents may own sub-collections
(``users/{uid}/cart/{doc_id}``). The store supports:

- single-document reads and writes (last writer wins);
- ``WriteBatch``: several writes committed all-or-nothing;
- ``run_transaction``: read-then-write under a per-namespace single-writer
  lock, committed all-or-nothing;
- ``subscribe``: a live feed that pushes a full collection snapshot after
  every commit touching that collection.

``DocumentStore`` keeps everything in memory. ``JsonDocumentStore`` also
persists every commit to a JSON file.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, TypeVar

from .errors import DocumentNotFoundError, StoreWriteError
from .utils import KeyedLocks

log = logging.getLogger(__name__)

SCHEMA_VERSION = 1

T = TypeVar("T")


def user_collection(user_id: str, family: str) -> str:
    """Path of a per-user collection, e.g. ``users/u1/cart``."""
    return f"users/{user_id}/{family}"


def _split_document_path(path: str) -> tuple[str, str]:
    """
    Split a document path into (collection path, document id).

    Raises:
        ValueError: If the path doesn't address a document.
    """
    segments = [s for s in path.split("/") if s]
    if len(segments) < 2 or len(segments) % 2 != 0:
        raise ValueError(f"Not a document path: {path!r}")
    return "/".join(segments[:-1]), segments[-1]


def _check_collection_path(path: str) -> str:
    segments = [s for s in path.split("/") if s]
    if not segments or len(segments) % 2 != 1:
        raise ValueError(f"Not a collection path: {path!r}")
    return "/".join(segments)


@dataclass(frozen=True)
class DocumentSnapshot:
    """A point-in-time copy of one document."""

    id: str
    path: str
    data: dict[str, Any]


@dataclass(frozen=True)
class CollectionSnapshot:
    """A point-in-time copy of a collection, as delivered by the live feed."""

    collection: str
    documents: list[DocumentSnapshot]
    version: int  # store commit counter at the time the snapshot was taken


@dataclass(frozen=True)
class _Write:
    kind: str  # "set" | "merge" | "update" | "delete"
    path: str
    data: dict[str, Any] | None = None


SnapshotCallback = Callable[[CollectionSnapshot], None]
ErrorCallback = Callable[[Exception], None]


class _Listener:
    def __init__(self, collection: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback | None):
        self.collection = collection
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True


class _WriteStager:
    """Collects writes for an atomic commit."""

    def __init__(self) -> None:
        self._writes: list[_Write] = []

    def set(self, path: str, data: dict[str, Any], merge: bool = False) -> None:
        _split_document_path(path)
        self._writes.append(_Write("merge" if merge else "set", path, copy.deepcopy(data)))

    def update(self, path: str, fields: dict[str, Any]) -> None:
        _split_document_path(path)
        self._writes.append(_Write("update", path, copy.deepcopy(fields)))

    def delete(self, path: str) -> None:
        _split_document_path(path)
        self._writes.append(_Write("delete", path))

    def __len__(self) -> int:
        return len(self._writes)


class WriteBatch(_WriteStager):
    """Blind writes to several documents, committed all-or-nothing."""

    def __init__(self, store: "DocumentStore"):
        super().__init__()
        self._store = store
        self._committed = False

    async def commit(self) -> int:
        """
        Apply all staged writes atomically and return the commit version.

        Raises:
            DocumentNotFoundError: If an ``update`` targets a missing document.
            StoreWriteError: If the store fails to persist the commit.
        """
        if self._committed:
            raise StoreWriteError("<batch>", "batch already committed")
        self._committed = True
        return await self._store._commit(self._writes)


class Transaction(_WriteStager):
    """
    Read-then-write unit of work.

    Reads observe committed state. Writes are staged and applied together
    when the transaction function returns.
    """

    def __init__(self, store: "DocumentStore"):
        super().__init__()
        self._store = store
        self.committed_version: int | None = None

    async def get(self, path: str) -> dict[str, Any] | None:
        return await self._store.get(path)

    async def list(self, collection: str) -> list[DocumentSnapshot]:
        return await self._store.list(collection)


class DocumentStore:
    """In-memory document store."""

    def __init__(self) -> None:
        # collection path -> {document id -> data}
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._listeners: list[_Listener] = []
        self._locks = KeyedLocks()
        self.version = 0

    # --- Reads ---

    async def get(self, path: str) -> dict[str, Any] | None:
        """Return a copy of the document at ``path``, or None if absent."""
        collection, doc_id = _split_document_path(path)
        await asyncio.sleep(0)
        data = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def list(self, collection: str) -> list[DocumentSnapshot]:
        """Return copies of every document in ``collection``."""
        collection = _check_collection_path(collection)
        await asyncio.sleep(0)
        return self._snapshot_documents(collection)

    async def list_snapshot(self, collection: str) -> CollectionSnapshot:
        """Like ``list``, but with the commit version the documents reflect."""
        collection = _check_collection_path(collection)
        await asyncio.sleep(0)
        return self._collection_snapshot(collection)

    # --- Writes ---

    async def set(self, path: str, data: dict[str, Any], merge: bool = False) -> int:
        """Create or overwrite a document; returns the commit version."""
        return await self._commit([_Write("merge" if merge else "set", path, copy.deepcopy(data))])

    async def update(self, path: str, fields: dict[str, Any]) -> int:
        """
        Merge ``fields`` into an existing document; returns the commit version.

        Raises:
            DocumentNotFoundError: If the document doesn't exist.
        """
        return await self._commit([_Write("update", path, copy.deepcopy(fields))])

    async def delete(self, path: str) -> int:
        """Delete a document (missing documents are a no-op); returns the commit version."""
        return await self._commit([_Write("delete", path)])

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Create a document with a generated id and return the id."""
        collection = _check_collection_path(collection)
        doc_id = uuid.uuid4().hex
        await self.set(f"{collection}/{doc_id}", data)
        return doc_id

    def new_document_id(self) -> str:
        return uuid.uuid4().hex

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def run_transaction(
        self, namespace: str, fn: Callable[[Transaction], Awaitable[T]]
    ) -> T:
        """
        Run ``fn`` with exclusive access to ``namespace`` and commit its writes.

        Transactions sharing a namespace (one per user) run one at a time, in
        arrival order. If ``fn`` raises, nothing is written.
        """
        async with self._locks.get(namespace):
            txn = Transaction(self)
            result = await fn(txn)
            if len(txn):
                txn.committed_version = await self._commit(txn._writes)
            return result

    # --- Live feed ---

    def subscribe(
        self,
        collection: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]:
        """
        Push a snapshot of ``collection`` now and after every commit touching it.

        Must be called from a running event loop; delivery is scheduled on
        that loop, never inline with the write that caused it.

        Returns:
            A callable that stops delivery.
        """
        collection = _check_collection_path(collection)
        listener = _Listener(collection, on_snapshot, on_error)
        self._listeners.append(listener)
        self._schedule(listener, self._collection_snapshot(collection))

        def unsubscribe() -> None:
            listener.active = False
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- Internals ---

    def _snapshot_documents(self, collection: str) -> list[DocumentSnapshot]:
        docs = self._collections.get(collection, {})
        return [
            DocumentSnapshot(id=doc_id, path=f"{collection}/{doc_id}", data=copy.deepcopy(data))
            for doc_id, data in docs.items()
        ]

    def _collection_snapshot(self, collection: str) -> CollectionSnapshot:
        return CollectionSnapshot(
            collection=collection,
            documents=self._snapshot_documents(collection),
            version=self.version,
        )

    def _apply(self, collections: dict[str, dict[str, dict[str, Any]]], writes: list[_Write]) -> set[str]:
        touched: set[str] = set()
        for write in writes:
            collection, doc_id = _split_document_path(write.path)
            docs = collections.setdefault(collection, {})
            if write.kind == "set":
                docs[doc_id] = copy.deepcopy(write.data or {})
            elif write.kind == "merge":
                docs.setdefault(doc_id, {}).update(copy.deepcopy(write.data or {}))
            elif write.kind == "update":
                if doc_id not in docs:
                    raise DocumentNotFoundError(write.path)
                docs[doc_id].update(copy.deepcopy(write.data or {}))
            elif write.kind == "delete":
                docs.pop(doc_id, None)
            touched.add(collection)
        return touched

    async def _commit(self, writes: list[_Write]) -> int:
        await asyncio.sleep(0)
        if not writes:
            return self.version

        staged = copy.deepcopy(self._collections)
        touched = self._apply(staged, writes)

        previous, previous_version = self._collections, self.version
        self._collections = staged
        self.version += 1
        try:
            self._persist()
        except Exception as e:
            self._collections, self.version = previous, previous_version
            if isinstance(e, StoreWriteError):
                raise
            raise StoreWriteError(writes[0].path, str(e)) from e

        for listener in list(self._listeners):
            if listener.collection in touched:
                self._schedule(listener, self._collection_snapshot(listener.collection))
        return self.version

    def _persist(self) -> None:
        """Hook for durable stores; called after a commit is applied in memory."""

    def _schedule(self, listener: _Listener, snapshot: CollectionSnapshot) -> None:
        asyncio.get_running_loop().call_soon(self._deliver, listener, snapshot)

    def _deliver(self, listener: _Listener, snapshot: CollectionSnapshot) -> None:
        if not listener.active:
            return
        try:
            listener.on_snapshot(snapshot)
        except Exception as e:
            if listener.on_error is None:
                log.exception(f"Unhandled error in snapshot listener for {listener.collection}")
                return
            listener.on_error(e)

    def iter_documents(self) -> Iterator[tuple[str, dict[str, Any]]]:
        """Yield (path, data) for every document, for inspection and export."""
        for collection, docs in self._collections.items():
            for doc_id, data in docs.items():
                yield f"{collection}/{doc_id}", copy.deepcopy(data)


class JsonDocumentStore(DocumentStore):
    """Document store persisted to a single JSON file after every commit."""

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        version = data.get("schema_version", 0)
        if version != SCHEMA_VERSION:
            raise StoreWriteError(
                str(self.path), f"unsupported schema version {version} (expected {SCHEMA_VERSION})"
            )
        self._collections = data.get("collections", {})
        self.version = data.get("version", 0)

    def _persist(self) -> None:
        """
        Save the whole store to disk atomically.

        Uses write-to-temp-then-rename for atomicity.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "schema_version": SCHEMA_VERSION,
            "version": self.version,
            "collections": self._collections,
        }
        fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".documents_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(temp_path, self.path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
