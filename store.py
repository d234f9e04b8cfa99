"""
Document store contract used by the core, plus an in-process implementation.

The core never talks to a database driver directly. It needs live
subscriptions to a collection or a single document, point reads and writes,
an insert-if-absent primitive (for id allocation) and an array-union update
(for the activity log). ``MemoryDocumentStore`` implements all of it in
process; ``database.MongoDocumentStore`` implements it on MongoDB.

Snapshots are delivered as ``[(doc_id, data), ...]`` for collections and as
``data`` (or ``None`` when the document does not exist) for documents.
"""
import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from errors import DocumentExists, DocumentNotFound

logger = logging.getLogger("tasktrack")

Snapshot = List[Tuple[str, Dict[str, Any]]]
OnCollection = Callable[[Snapshot], None]
OnDocument = Callable[[Optional[Dict[str, Any]]], None]
OnError = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


class DocumentStore(ABC):

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def list(self, collection: str, order_by: Optional[str] = None, descending: bool = False) -> Snapshot:
        ...

    @abstractmethod
    def find(self, collection: str, **equals: Any) -> Snapshot:
        ...

    @abstractmethod
    def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Insert only if absent; raises DocumentExists otherwise."""

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        ...

    @abstractmethod
    def update(
        self,
        collection: str,
        doc_id: str,
        fields: Dict[str, Any],
        array_union: Optional[Dict[str, List[Any]]] = None,
    ) -> None:
        """
        Partial update of an existing document.

        ``fields`` are written last-write-wins; every list in ``array_union``
        is unioned into the named array field in the same write.
        Raises DocumentNotFound when the document is missing.
        """

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> None:
        ...

    @abstractmethod
    def subscribe_collection(
        self,
        collection: str,
        on_change: OnCollection,
        on_error: OnError,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Unsubscribe:
        ...

    @abstractmethod
    def subscribe_document(self, collection: str, doc_id: str, on_change: OnDocument, on_error: OnError) -> Unsubscribe:
        ...


# -----------------------------
# Helpers
# -----------------------------
def deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``patch`` into a copy of ``base``; nested mappings merge, everything else replaces."""
    out = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = deep_merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def _sort_value(data: Any, order_by: str) -> Any:
    return data.get(order_by) if isinstance(data, dict) else None


def sort_snapshot(snapshot: Snapshot, order_by: Optional[str], descending: bool) -> Snapshot:
    """Sort on one field; documents without it (or unreadable ones) go last."""
    if not order_by:
        return snapshot
    present = [item for item in snapshot if _sort_value(item[1], order_by) is not None]
    missing = [item for item in snapshot if _sort_value(item[1], order_by) is None]
    try:
        present.sort(key=lambda item: item[1][order_by], reverse=descending)
    except TypeError:
        present.sort(key=lambda item: str(item[1][order_by]), reverse=descending)
    return present + missing


class _Subscription:
    def __init__(self, collection: str, doc_id: Optional[str], on_change, on_error, order_by=None, descending=False):
        self.collection = collection
        self.doc_id = doc_id
        self.on_change = on_change
        self.on_error = on_error
        self.order_by = order_by
        self.descending = descending
        self.active = True


# -----------------------------
# In-memory store
# -----------------------------
class MemoryDocumentStore(DocumentStore):
    """
    Thread-safe in-process store.

    Listeners are called synchronously on the writer's thread, after the write
    is applied and outside the store lock, so a listener may write back.
    Change notifications are serialized by a separate delivery lock: a
    snapshot is taken and handed out before the next writer takes its own,
    so listeners never see an older snapshot after a newer one.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._delivery = threading.RLock()
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._subs: List[_Subscription] = []

    def _docs(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def _snapshot_unlocked(self, collection: str, order_by=None, descending=False) -> Snapshot:
        items = [(doc_id, copy.deepcopy(data)) for doc_id, data in self._docs(collection).items()]
        return sort_snapshot(items, order_by, descending)

    def _notify(self, collection: str, doc_id: str) -> None:
        with self._delivery:
            with self._lock:
                pending = []
                for sub in self._subs:
                    if not sub.active or sub.collection != collection:
                        continue
                    if sub.doc_id is None:
                        pending.append((sub, self._snapshot_unlocked(collection, sub.order_by, sub.descending)))
                    elif sub.doc_id == doc_id:
                        pending.append((sub, copy.deepcopy(self._docs(collection).get(doc_id))))
            for sub, payload in pending:
                if sub.active:
                    sub.on_change(payload)

    # --- reads ---------------------------------------------------------------
    def get(self, collection, doc_id):
        with self._lock:
            data = self._docs(collection).get(doc_id)
            return copy.deepcopy(data) if data is not None else None

    def list(self, collection, order_by=None, descending=False):
        with self._lock:
            return self._snapshot_unlocked(collection, order_by, descending)

    def find(self, collection, **equals):
        with self._lock:
            return [
                (doc_id, copy.deepcopy(data))
                for doc_id, data in self._docs(collection).items()
                if all(data.get(k) == v for k, v in equals.items())
            ]

    # --- writes --------------------------------------------------------------
    def create(self, collection, doc_id, data):
        with self._lock:
            docs = self._docs(collection)
            if doc_id in docs:
                raise DocumentExists(collection, doc_id)
            docs[doc_id] = copy.deepcopy(data)
        self._notify(collection, doc_id)

    def set(self, collection, doc_id, data, merge=False):
        with self._lock:
            docs = self._docs(collection)
            if merge and doc_id in docs:
                docs[doc_id] = deep_merge(docs[doc_id], data)
            else:
                docs[doc_id] = copy.deepcopy(data)
        self._notify(collection, doc_id)

    def update(self, collection, doc_id, fields, array_union=None):
        with self._lock:
            docs = self._docs(collection)
            if doc_id not in docs:
                raise DocumentNotFound(collection, doc_id)
            doc = docs[doc_id]
            for key, value in fields.items():
                doc[key] = copy.deepcopy(value)
            for field, items in (array_union or {}).items():
                current = doc.get(field)
                if not isinstance(current, list):
                    current = []
                for item in items:
                    if item not in current:
                        current.append(copy.deepcopy(item))
                doc[field] = current
        self._notify(collection, doc_id)

    def delete(self, collection, doc_id):
        with self._lock:
            self._docs(collection).pop(doc_id, None)
        self._notify(collection, doc_id)

    # --- subscriptions -------------------------------------------------------
    def _subscribe(self, sub: _Subscription, first_payload) -> Unsubscribe:
        with self._lock:
            self._subs.append(sub)
            payload = first_payload()
        sub.on_change(payload)

        def unsubscribe() -> None:
            with self._lock:
                sub.active = False
                if sub in self._subs:
                    self._subs.remove(sub)

        return unsubscribe

    def subscribe_collection(self, collection, on_change, on_error, order_by=None, descending=False):
        sub = _Subscription(collection, None, on_change, on_error, order_by, descending)
        return self._subscribe(sub, lambda: self._snapshot_unlocked(collection, order_by, descending))

    def subscribe_document(self, collection, doc_id, on_change, on_error):
        sub = _Subscription(collection, doc_id, on_change, on_error)
        return self._subscribe(sub, lambda: self.get(collection, doc_id))

    def break_subscriptions(self, collection: str, error: Exception) -> int:
        """Report ``error`` to every live listener on ``collection`` and drop them."""
        with self._lock:
            broken = [s for s in self._subs if s.active and s.collection == collection]
            for sub in broken:
                sub.active = False
                self._subs.remove(sub)
        for sub in broken:
            sub.on_error(error)
        return len(broken)

    def listener_count(self, collection: Optional[str] = None) -> int:
        with self._lock:
            return len([s for s in self._subs if collection is None or s.collection == collection])
