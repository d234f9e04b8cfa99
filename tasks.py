"""
tasks.py - task write primitives

Provides:
- TaskService.create(data, user): allocate the next T-### id and write the task
  with its initial two-entry activity log
- TaskService.update(task_id, patch, user): merge-patch plus activity entries, one write
- TaskService.set_status / add_comment / add_files / remove_file / delete

Merge-patch rules:
* Only keys present in the patch are written; last write wins per field.
* id, creatorId, createdAt, activity, updatedAt and files are never patched.
* None clears an optional field; required scalars ignore None.
* Amounts are coerced to numbers and dates to UTC instants before writing.

Permission checks are the caller's job (see permissions.PermissionResolver).
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from activity import (
    ActivityLog,
    activity_document,
    build_activity,
    change_entries,
    creation_entries,
    snapshot_user,
    utcnow,
)
from errors import DocumentNotFound, InvalidTaskDates, MalformedRecord
from ids import TaskIdAllocator
from normalize import AMOUNT_FIELDS, normalize_task, to_amount, to_instant
from schemas import COLLECTION_TASKS, Activity, Task, User
from store import DocumentStore

logger = logging.getLogger("tasktrack")

INPUT_DATE_FIELDS = ("receivedDate", "entryDate", "dueDate")
PROTECTED_FIELDS = {"id", "creatorId", "createdAt", "activity", "updatedAt", "files"}
REQUIRED_FIELDS = {
    "title",
    "status",
    "priority",
    "period",
    "initialDemandCurrency",
    "officialSettlementCurrency",
    "motivationCurrency",
}


def check_dates(received: Optional[datetime], entry: Optional[datetime]) -> None:
    """Posted (entry) date may not fall on a day before the received date."""
    if received is not None and entry is not None and entry.date() < received.date():
        raise InvalidTaskDates(
            f"Entry date {entry.date().isoformat()} is before received date {received.date().isoformat()}"
        )


def _user_doc(user: Optional[User]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return snapshot_user(user).model_dump()


def _prepare(data: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce an incoming create/patch payload to stored form."""
    out: Dict[str, Any] = {}
    for key, value in data.items():
        if key in PROTECTED_FIELDS:
            continue
        if value is None and key in REQUIRED_FIELDS:
            continue
        if key in INPUT_DATE_FIELDS:
            value = to_instant(value)
        elif key in AMOUNT_FIELDS:
            value = to_amount(value)
        elif key == "assignee":
            value = _user_doc(value if isinstance(value, User) else (User.model_validate(value) if value else None))
        elif key == "viewers":
            value = [_user_doc(v if isinstance(v, User) else User.model_validate(v)) for v in (value or [])]
        out[key] = value
    return out


class TaskService:

    def __init__(
        self,
        store: DocumentStore,
        allocator: Optional[TaskIdAllocator] = None,
        activity_log: Optional[ActivityLog] = None,
        collection: str = COLLECTION_TASKS,
    ):
        self.store = store
        self.collection = collection
        self.allocator = allocator or TaskIdAllocator(store, collection)
        self.activity_log = activity_log or ActivityLog(store, collection)

    # --- reads ---------------------------------------------------------------
    def get(self, task_id: str) -> Optional[Task]:
        data = self.store.get(self.collection, task_id)
        if data is None:
            return None
        return normalize_task(task_id, data)

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise DocumentNotFound(self.collection, task_id)
        return task

    def list(self) -> List[Task]:
        """All readable tasks, newest first; malformed documents are skipped."""
        out = []
        for doc_id, data in self.store.list(self.collection, order_by="createdAt", descending=True):
            try:
                out.append(normalize_task(doc_id, data))
            except MalformedRecord as e:
                logger.warning("Skipping task: %s", e)
        return out

    def next_id(self) -> str:
        return self.allocator.next_id()

    # --- writes --------------------------------------------------------------
    def create(self, data: Dict[str, Any], user: User) -> Task:
        """
        Create a task under a freshly allocated id.

        Raises InvalidTaskDates before anything is written, and
        AllocationFailure when no id could be claimed.
        """
        payload = _prepare(data)
        now = utcnow()
        payload.setdefault("entryDate", now)
        if payload["entryDate"] is None:
            payload["entryDate"] = now
        check_dates(payload.get("receivedDate"), payload["entryDate"])

        assignee = User.model_validate(payload["assignee"]) if payload.get("assignee") else None
        payload.setdefault("status", "Pending")
        payload.setdefault("priority", "Medium")
        payload.setdefault("viewers", [])
        payload.update(
            creatorId=user.id,
            files=[],
            activity=[activity_document(e) for e in creation_entries(user, assignee)],
            createdAt=now,
            updatedAt=now,
        )
        for field in AMOUNT_FIELDS:
            payload.setdefault(field, 0.0)

        task_id, doc = self.allocator.create(lambda _task_id: dict(payload))
        logger.info("Task %s created by %s", task_id, user.id)
        return normalize_task(task_id, doc)

    def update(self, task_id: str, patch: Dict[str, Any], user: User) -> Task:
        before = self.require(task_id)
        fields = _prepare(patch)
        if not fields:
            return before

        received = fields["receivedDate"] if "receivedDate" in fields else before.receivedDate
        entry = fields["entryDate"] if "entryDate" in fields else before.entryDate
        check_dates(received, entry)

        entries = change_entries(before, fields, user)
        self.activity_log.append(task_id, *entries, fields=fields)
        return self.require(task_id)

    def set_status(self, task_id: str, status: str, user: User) -> Task:
        return self.update(task_id, {"status": status}, user)

    def add_comment(self, task_id: str, text: str, user: User) -> Activity:
        entry = build_activity(user, "commented", details=text)
        self.activity_log.append(task_id, entry)
        return entry

    def add_files(self, task_id: str, files: List[Dict[str, Any]], user: User) -> Task:
        now = utcnow()
        entries = [build_activity(user, "added a file", details=f["name"], at=now, tag="file") for f in files]
        self.activity_log.append(task_id, *entries, union={"files": list(files)})
        return self.require(task_id)

    def remove_file(self, task_id: str, name: str, user: User) -> Task:
        task = self.require(task_id)
        remaining = [f.model_dump(exclude_none=True) for f in task.files if f.name != name]
        if len(remaining) == len(task.files):
            raise DocumentNotFound(f"{self.collection}/{task_id}/files", name)
        entry = build_activity(user, "deleted a file", details=name)
        self.activity_log.append(task_id, entry, fields={"files": remaining})
        return self.require(task_id)

    def delete(self, task_id: str) -> None:
        self.require(task_id)
        self.store.delete(self.collection, task_id)
        logger.info("Task %s deleted", task_id)
