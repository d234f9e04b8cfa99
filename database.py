"""
MongoDB connection and the Mongo-backed document store.

Connection settings come from the environment (``DATABASE_URL``,
``DATABASE_NAME``). Without ``DATABASE_URL`` the service runs on the
in-memory store, which is what local mode and the tests use.

Live subscriptions are built on change streams, so the Mongo deployment must
be a replica set (a single-node replica set is enough). Each subscription
runs one watcher thread; listeners are called on that thread.
"""
import logging
import os
import threading
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import DocumentExists, DocumentNotFound
from store import DocumentStore, MemoryDocumentStore

load_dotenv()

logger = logging.getLogger("tasktrack")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "tasktrack")
IS_LOCAL_DB = not DATABASE_URL

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def _strip_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    d = dict(doc)
    d.pop("_id", None)
    return d


def _flatten(data: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """{"customFields": {"Label": [...]}} -> {"customFields.Label": [...]} for merge writes."""
    out: Dict[str, Any] = {}
    for key, value in data.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict) and value:
            out.update(_flatten(value, path + "."))
        else:
            out[path] = value
    return out


class _ChangeWatcher(threading.Thread):
    """Re-reads the watched target on every change event and hands the result to ``on_change``."""

    def __init__(self, target, pipeline, load, on_change, on_error, name: str):
        super().__init__(daemon=True, name=f"watch-{name}")
        self._target = target
        self._pipeline = pipeline
        self._load = load
        self._on_change = on_change
        self._on_error = on_error
        self._stopped = threading.Event()

    def run(self):
        try:
            with self._target.watch(self._pipeline, max_await_time_ms=1000) as stream:
                # first snapshot is read after the stream is open so no change falls in between
                self._emit()
                while not self._stopped.is_set() and stream.alive:
                    change = stream.try_next()
                    if change is None or self._stopped.is_set():
                        continue
                    self._emit()
        except PyMongoError as e:
            if not self._stopped.is_set():
                logger.warning("Change stream on %s failed: %s", self.name, e)
                self._on_error(e)

    def _emit(self):
        payload = self._load()
        if not self._stopped.is_set():
            self._on_change(payload)

    def stop(self):
        self._stopped.set()


class MongoDocumentStore(DocumentStore):

    def __init__(self, database: Database):
        self.db = database

    def get(self, collection, doc_id):
        return _strip_id(self.db[collection].find_one({"_id": doc_id}))

    def list(self, collection, order_by=None, descending=False):
        cursor = self.db[collection].find()
        if order_by:
            cursor = cursor.sort(order_by, DESCENDING if descending else ASCENDING)
        return [(str(d["_id"]), _strip_id(d)) for d in cursor]

    def find(self, collection, **equals):
        return [(str(d["_id"]), _strip_id(d)) for d in self.db[collection].find(equals)]

    def create(self, collection, doc_id, data):
        try:
            self.db[collection].insert_one({**data, "_id": doc_id})
        except DuplicateKeyError:
            raise DocumentExists(collection, doc_id)

    def set(self, collection, doc_id, data, merge=False):
        if merge:
            flat = _flatten(data)
            if flat:
                self.db[collection].update_one({"_id": doc_id}, {"$set": flat}, upsert=True)
            return
        self.db[collection].replace_one({"_id": doc_id}, data, upsert=True)

    def update(self, collection, doc_id, fields, array_union=None):
        ops: Dict[str, Any] = {}
        if fields:
            ops["$set"] = dict(fields)
        if array_union:
            ops["$addToSet"] = {field: {"$each": list(items)} for field, items in array_union.items()}
        if not ops:
            if self.db[collection].count_documents({"_id": doc_id}, limit=1) == 0:
                raise DocumentNotFound(collection, doc_id)
            return
        res = self.db[collection].update_one({"_id": doc_id}, ops)
        if res.matched_count == 0:
            raise DocumentNotFound(collection, doc_id)

    def delete(self, collection, doc_id):
        self.db[collection].delete_one({"_id": doc_id})

    def subscribe_collection(self, collection, on_change, on_error, order_by=None, descending=False):
        watcher = _ChangeWatcher(
            self.db[collection],
            [],
            lambda: self.list(collection, order_by=order_by, descending=descending),
            on_change,
            on_error,
            collection,
        )
        watcher.start()
        return watcher.stop

    def subscribe_document(self, collection, doc_id, on_change, on_error):
        watcher = _ChangeWatcher(
            self.db[collection],
            [{"$match": {"documentKey._id": doc_id}}],
            lambda: self.get(collection, doc_id),
            on_change,
            on_error,
            f"{collection}/{doc_id}",
        )
        watcher.start()
        return watcher.stop


def get_store() -> DocumentStore:
    if db is None:
        logger.info("[DB] DATABASE_URL not set, using in-memory store")
        return MemoryDocumentStore()
    logger.info("[DB] Using MongoDB database %s", DATABASE_NAME)
    return MongoDocumentStore(db)
