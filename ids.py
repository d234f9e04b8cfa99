"""
Sequential, human-readable task ids: T-001, T-002, ... T-999, T-1000.

``next_task_id`` is the plain scan (max numeric suffix + 1). Two callers that
scan before either writes compute the same id, so ``TaskIdAllocator.create``
claims the id with an insert-if-absent write and rescans on conflict.
"""
import logging
import os
import re
from typing import Any, Callable, Dict, Iterable, Tuple

from errors import AllocationFailure, DocumentExists
from schemas import COLLECTION_TASKS
from store import DocumentStore

logger = logging.getLogger("tasktrack")

TASK_ID_PREFIX = "T-"
TASK_ID_PATTERN = re.compile(r"^T-(\d+)$")
ID_ALLOCATION_ATTEMPTS = int(os.getenv("ID_ALLOCATION_ATTEMPTS", 5))


def format_task_id(number: int) -> str:
    return f"{TASK_ID_PREFIX}{number:03d}"


def next_task_id(existing_ids: Iterable[str]) -> str:
    best = 0
    for doc_id in existing_ids:
        m = TASK_ID_PATTERN.match(str(doc_id))
        if m:
            best = max(best, int(m.group(1)))
    return format_task_id(best + 1)


class TaskIdAllocator:

    def __init__(self, store: DocumentStore, collection: str = COLLECTION_TASKS, attempts: int = ID_ALLOCATION_ATTEMPTS):
        self.store = store
        self.collection = collection
        self.attempts = max(1, attempts)

    def next_id(self) -> str:
        """Scan the collection and return the next id. Raises AllocationFailure if the scan fails."""
        try:
            snapshot = self.store.list(self.collection)
        except Exception as e:
            raise AllocationFailure(f"Could not scan '{self.collection}' for task ids: {e}") from e
        return next_task_id(doc_id for doc_id, _ in snapshot)

    def create(self, build: Callable[[str], Dict[str, Any]]) -> Tuple[str, Dict[str, Any]]:
        """
        Allocate an id and write ``build(task_id)`` under it atomically.

        On a concurrent claim of the same id the scan is repeated. Nothing is
        ever written under an id that was not successfully claimed.
        """
        for attempt in range(1, self.attempts + 1):
            task_id = self.next_id()
            payload = build(task_id)
            try:
                self.store.create(self.collection, task_id, payload)
            except DocumentExists:
                logger.info("Task id %s taken concurrently (attempt %d/%d), rescanning", task_id, attempt, self.attempts)
                continue
            return task_id, payload
        raise AllocationFailure(f"Could not claim a task id after {self.attempts} attempts")
