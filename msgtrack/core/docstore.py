import abc
import asyncio
import copy
import json
import os
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import NotFoundError, TransientStoreError, ValidationError
from ..utils.logger import setup_logger

logger = setup_logger('msgtrack.docstore')

OPERATORS = ("==", "!=", "<", "<=", ">", ">=", "array-contains", "array-contains-any", "in")


class ArrayUnion:
    """Field transform: add values to an array field, skipping ones already present."""

    def __init__(self, *values):
        self.values = list(values)

    def apply(self, current):
        result = list(current) if isinstance(current, list) else []
        for v in self.values:
            if v not in result:
                result.append(v)
        return result


class ArrayRemove:
    """Field transform: remove every occurrence of the values from an array field."""

    def __init__(self, *values):
        self.values = list(values)

    def apply(self, current):
        if not isinstance(current, list):
            return []
        return [v for v in current if v not in self.values]


class _DeleteField:
    def __repr__(self):
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()


def _get_path(data: dict, path: str):
    node = data
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return None, False
        node = node[part]
    return node, True


def _apply_updates(data: dict, updates: Dict[str, Any]) -> dict:
    """Apply a field update map (dotted paths, transforms) to a copy of `data`."""
    result = copy.deepcopy(data)
    for path, value in updates.items():
        parts = path.split(".")
        node = result
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        leaf = parts[-1]
        if value is DELETE_FIELD:
            node.pop(leaf, None)
        elif isinstance(value, (ArrayUnion, ArrayRemove)):
            node[leaf] = value.apply(node.get(leaf))
        else:
            node[leaf] = copy.deepcopy(value)
    return result


@dataclass(frozen=True)
class Filter:
    """Single query predicate, e.g. Filter('participants', 'array-contains', 'u1')."""
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ValidationError(f"Unsupported filter operator: {self.op}")

    def matches(self, data: dict) -> bool:
        current, present = _get_path(data, self.field)
        if self.op == "==":
            return present and current == self.value
        if not present:
            return False
        if self.op == "!=":
            return current != self.value
        if self.op == "array-contains":
            return isinstance(current, list) and self.value in current
        if self.op == "array-contains-any":
            return isinstance(current, list) and any(v in current for v in self.value)
        if self.op == "in":
            return current in self.value
        try:
            if self.op == "<":
                return current < self.value
            if self.op == "<=":
                return current <= self.value
            if self.op == ">":
                return current > self.value
            return current >= self.value
        except TypeError:
            return False


def where(field_path: str, op: str, value) -> Filter:
    return Filter(field_path, op, value)


@dataclass(frozen=True)
class DocumentSnapshot:
    id: str
    data: dict


@dataclass(frozen=True)
class QuerySnapshot:
    """Full result set of a live query at one point in time."""
    collection: str
    documents: Tuple[DocumentSnapshot, ...] = ()

    @property
    def ids(self) -> List[str]:
        return [d.id for d in self.documents]


class Listener:
    """Live query subscription.

    Async-iterates QuerySnapshots: the current result set first, then a new
    snapshot after each change to a matching document. cancel() releases the
    subscription; iteration then stops.
    """

    def __init__(self, store: "DocumentStore", collection: str, filters: Sequence[Filter]):
        self.store = store
        self.collection = collection
        self.filters = tuple(filters)
        self.loop = asyncio.get_running_loop()
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def matches(self, data: Optional[dict]) -> bool:
        return data is not None and all(f.matches(data) for f in self.filters)

    def push(self, snapshot: Optional[QuerySnapshot]):
        if self.closed and snapshot is not None:
            return
        try:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, snapshot)
        except RuntimeError:
            # event loop already closed
            self.closed = True

    def cancel(self):
        if self.closed:
            return
        self.closed = True
        self.store._remove_listener(self)
        self.push(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> QuerySnapshot:
        if self.closed:
            raise StopAsyncIteration
        snapshot = await self.queue.get()
        if snapshot is None:
            raise StopAsyncIteration
        return snapshot

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.cancel()


class WriteBatch:
    """Atomic multi-document write; nothing is applied until commit()."""

    def __init__(self, store: "DocumentStore"):
        self.store = store
        self.ops: List[tuple] = []

    def set(self, collection: str, doc_id: str, data: dict) -> "WriteBatch":
        self.ops.append(("set", collection, doc_id, copy.deepcopy(data)))
        return self

    def update(self, collection: str, doc_id: str, updates: Dict[str, Any]) -> "WriteBatch":
        self.ops.append(("update", collection, doc_id, updates))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self.ops.append(("delete", collection, doc_id, None))
        return self

    def __len__(self):
        return len(self.ops)

    async def commit(self):
        if self.ops:
            await self.store._commit(self.ops)


class DocumentStore(abc.ABC):
    """Contract of the external document database (users, chats, messages).

    All calls may raise TransientStoreError when the backend is unreachable.
    """

    @abc.abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        """Return a copy of the document, or None if it does not exist."""

    @abc.abstractmethod
    async def query(self, collection: str, filters: Iterable[Filter] = (),
                    order_by: Optional[str] = None) -> List[DocumentSnapshot]:
        """Return documents matching every filter."""

    @abc.abstractmethod
    async def transaction(self, collection: str, doc_id: str,
                          fn: Callable[[Optional[dict]], Optional[Dict[str, Any]]]) -> Optional[dict]:
        """Atomically read one document and apply the updates `fn` returns.

        `fn` receives the current data (None if missing) and returns a field
        update map, or None to leave the document unchanged. Updates for a
        missing document create it. Returns the document data after the
        transaction (None if it still does not exist).
        """

    @abc.abstractmethod
    async def _commit(self, ops: List[tuple]):
        """Apply batched operations atomically."""

    @abc.abstractmethod
    def listen(self, collection: str, filters: Iterable[Filter] = ()) -> Listener:
        """Open a live query; must be called from a running event loop."""

    @abc.abstractmethod
    def _remove_listener(self, listener: Listener):
        pass

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def set(self, collection: str, doc_id: str, data: dict):
        await self.batch().set(collection, doc_id, data).commit()

    async def update(self, collection: str, doc_id: str, updates: Dict[str, Any]):
        """Update fields of an existing document.

        Raises:
            NotFoundError: If the document does not exist
        """
        await self.batch().update(collection, doc_id, updates).commit()

    async def delete(self, collection: str, doc_id: str):
        await self.batch().delete(collection, doc_id).commit()


class MemoryDocumentStore(DocumentStore):
    """In-process document store shared by any number of simulated devices.

    Thread-safe; live listeners are notified on their own event loops.
    Setting `offline` makes every call raise TransientStoreError.
    """

    def __init__(self):
        self._docs: Dict[str, Dict[str, dict]] = {}
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()
        self.offline = False
        self._outage = 0

    @property
    def active_listeners(self) -> int:
        with self._lock:
            return len(self._listeners)

    def simulate_outage(self, calls: int):
        """Make the next `calls` store calls fail with TransientStoreError."""
        with self._lock:
            self._outage = calls

    def _check_online(self):
        if self.offline:
            raise TransientStoreError("document store unreachable (offline)")
        if self._outage > 0:
            self._outage -= 1
            raise TransientStoreError("document store unreachable")

    def _run_query(self, collection: str, filters: Sequence[Filter],
                   order_by: Optional[str] = None) -> List[DocumentSnapshot]:
        docs = self._docs.get(collection, {})
        hits = [
            DocumentSnapshot(doc_id, copy.deepcopy(data))
            for doc_id, data in docs.items()
            if all(f.matches(data) for f in filters)
        ]
        if order_by:
            def key(d):
                value = _get_path(d.data, order_by)[0]
                return (value is None, value if value is not None else 0, d.id)
            hits.sort(key=key)
        else:
            hits.sort(key=lambda d: d.id)
        return hits

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock:
            self._check_online()
            data = self._docs.get(collection, {}).get(doc_id)
            return copy.deepcopy(data) if data is not None else None

    async def query(self, collection: str, filters: Iterable[Filter] = (),
                    order_by: Optional[str] = None) -> List[DocumentSnapshot]:
        with self._lock:
            self._check_online()
            return self._run_query(collection, tuple(filters), order_by)

    async def transaction(self, collection, doc_id, fn):
        with self._lock:
            self._check_online()
            current = self._docs.get(collection, {}).get(doc_id)
            updates = fn(copy.deepcopy(current) if current is not None else None)
            if not updates:
                return copy.deepcopy(current) if current is not None else None
            new = _apply_updates(current if current is not None else {}, updates)
            self._docs.setdefault(collection, {})[doc_id] = new
            self._changed({collection: [(doc_id, current, new)]})
            return copy.deepcopy(new)

    async def _commit(self, ops):
        with self._lock:
            self._check_online()
            staged: Dict[Tuple[str, str], Optional[dict]] = {}

            def current(collection, doc_id):
                key = (collection, doc_id)
                if key in staged:
                    return staged[key]
                return self._docs.get(collection, {}).get(doc_id)

            for kind, collection, doc_id, payload in ops:
                if kind == "set":
                    staged[(collection, doc_id)] = copy.deepcopy(payload)
                elif kind == "update":
                    existing = current(collection, doc_id)
                    if existing is None:
                        raise NotFoundError("document", f"{collection}/{doc_id}")
                    staged[(collection, doc_id)] = _apply_updates(existing, payload)
                else:
                    staged[(collection, doc_id)] = None

            changes: Dict[str, list] = {}
            for (collection, doc_id), new in staged.items():
                docs = self._docs.setdefault(collection, {})
                old = docs.get(doc_id)
                if new is None:
                    docs.pop(doc_id, None)
                else:
                    docs[doc_id] = new
                changes.setdefault(collection, []).append((doc_id, old, new))
            self._changed(changes)

    def _changed(self, changes: Dict[str, list]):
        """Persist and notify listeners; called with the lock held."""
        for collection, items in changes.items():
            self._persist(collection, items)
            for listener in list(self._listeners):
                if listener.collection != collection:
                    continue
                if any(listener.matches(old) or listener.matches(new) for _, old, new in items):
                    listener.push(QuerySnapshot(collection, tuple(self._run_query(collection, listener.filters))))

    def _persist(self, collection: str, items: list):
        pass

    def listen(self, collection: str, filters: Iterable[Filter] = ()) -> Listener:
        listener = Listener(self, collection, tuple(filters))
        with self._lock:
            self._check_online()
            self._listeners.append(listener)
            listener.push(QuerySnapshot(collection, tuple(self._run_query(collection, listener.filters))))
        logger.debug(f"Listener opened on {collection} ({len(self._listeners)} active)")
        return listener

    def _remove_listener(self, listener: Listener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
        logger.debug(f"Listener closed on {listener.collection} ({self.active_listeners} active)")


class JsonlDocumentStore(MemoryDocumentStore):
    """MemoryDocumentStore persisted to one JSONL file per collection.

    New documents are appended; updates and deletes rewrite the whole
    collection file. Every write is fsync'ed.
    """

    def __init__(self, directory: str):
        super().__init__()
        os.makedirs(directory, exist_ok=True)
        self.directory = directory
        self._load()

    def _path(self, collection: str) -> str:
        return os.path.join(self.directory, f"{collection}.jsonl")

    def _load(self):
        """Load every <collection>.jsonl file in the directory.

        Side Effects:
            - Populates the in-memory collections
            - Later lines for the same id win
        """
        for name in sorted(os.listdir(self.directory)):
            if not name.endswith(".jsonl"):
                continue
            collection = name[:-len(".jsonl")]
            docs = self._docs.setdefault(collection, {})
            with open(os.path.join(self.directory, name), "r", encoding="utf-8") as f:
                for line in f:
                    if not line.strip():
                        continue
                    rec = json.loads(line)
                    docs[rec["id"]] = rec["data"]
            logger.debug(f"Loaded {len(docs)} documents from {collection}")

    def _persist(self, collection: str, items: list):
        path = self._path(collection)
        if all(old is None and new is not None for _, old, new in items):
            with open(path, "a", encoding="utf-8") as f:
                for doc_id, _, new in items:
                    f.write(json.dumps({"id": doc_id, "data": new}, ensure_ascii=False) + "\n")
                f.flush()
                os.fsync(f.fileno())
            return
        # Rewrite the entire file
        with open(path, "w", encoding="utf-8") as f:
            for doc_id, data in self._docs.get(collection, {}).items():
                f.write(json.dumps({"id": doc_id, "data": data}, ensure_ascii=False) + "\n")
            f.flush()
            os.fsync(f.fileno())
