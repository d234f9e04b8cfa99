"""
Activity log: the append-only audit trail embedded in every task.

Entries are appended with the store's array-union update, never by rewriting
the whole list from a possibly stale copy, so concurrent comments and status
changes from different clients all survive. Timestamps are set by the writer,
so display order comes from sorting on ``timestamp``, not from list order.
"""
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from schemas import COLLECTION_TASKS, Activity, Task, User
from store import DocumentStore

logger = logging.getLogger("tasktrack")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_activity_id(tag: Optional[str] = None) -> str:
    """act-<epoch ms>[-tag]-<random>; the random tail keeps ids distinct within one tick."""
    ms = int(time.time() * 1000)
    tail = secrets.token_hex(4)
    return f"act-{ms}-{tag}-{tail}" if tag else f"act-{ms}-{tail}"


def snapshot_user(user: User) -> User:
    """
    Copy of the canonical user fields as they are right now.

    Snapshots are not refreshed later: renaming or deleting a user leaves
    historical entries as they were written.
    """
    return User.model_validate(user.model_dump())


def build_activity(
    user: User,
    action: str,
    details: Optional[str] = None,
    at: Optional[datetime] = None,
    tag: Optional[str] = None,
) -> Activity:
    return Activity(
        id=new_activity_id(tag),
        user=snapshot_user(user),
        action=action,
        details=details,
        timestamp=at or utcnow(),
    )


def activity_document(entry: Activity) -> Dict[str, Any]:
    """Stored form of an entry; unset optional fields are left out."""
    return entry.model_dump(exclude_none=True)


def creation_entries(user: User, assignee: Optional[User]) -> List[Activity]:
    now = utcnow()
    return [
        build_activity(user, "created task", at=now, tag="create"),
        build_activity(user, "assigned to", details=assignee.name if assignee else "Unassigned", at=now, tag="assign"),
    ]


def change_entries(before: Task, patch: Dict[str, Any], user: User) -> List[Activity]:
    """Entries describing a merge-patch: assignee and status changes, plus a generic entry for anything else."""
    now = utcnow()
    entries = []
    if set(patch) - {"assignee", "status"}:
        entries.append(build_activity(user, "updated task details", at=now))

    if "assignee" in patch:
        new = patch["assignee"]
        new_id = new.get("id") if isinstance(new, dict) else None
        old_id = before.assignee.id if before.assignee else None
        if new_id != old_id:
            name = new.get("name") if isinstance(new, dict) else "Unassigned"
            entries.append(build_activity(user, "assigned to", details=name, at=now, tag="assign"))

    if "status" in patch and patch["status"] != before.status:
        entries.append(build_activity(user, "changed status to", details=patch["status"], at=now, tag="status"))

    return entries


def sorted_activity(entries: Iterable[Activity]) -> List[Activity]:
    """Oldest first; entries without a readable timestamp go to the top."""
    return sorted(entries, key=lambda a: a.timestamp or _EPOCH)


class ActivityLog:

    def __init__(self, store: DocumentStore, collection: str = COLLECTION_TASKS):
        self.store = store
        self.collection = collection

    def append(
        self,
        task_id: str,
        *entries: Activity,
        fields: Optional[Dict[str, Any]] = None,
        union: Optional[Dict[str, List[Any]]] = None,
    ) -> None:
        """
        Append ``entries`` to the task's activity list in one write.

        ``fields`` (a merge-patch of scalar fields), any other array unions
        and the ``updatedAt`` bump go into the same write. Raises
        DocumentNotFound for a missing task and ValueError when two entries
        in the batch share an id.
        """
        ids = [e.id for e in entries]
        if len(set(ids)) != len(ids):
            raise ValueError("Activity ids must be unique within a batch")

        update = dict(fields or {})
        update["updatedAt"] = utcnow()
        array_union = dict(union or {})
        if entries:
            array_union["activity"] = [activity_document(e) for e in entries]

        self.store.update(self.collection, task_id, update, array_union=array_union or None)
        logger.debug("Appended %d activity entries to %s", len(entries), task_id)


def recent_activity(tasks: Iterable[Task], exclude_user_id: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
    """
    Activity across ``tasks``, newest first, for a dashboard feed.

    Pass the current user's id as ``exclude_user_id`` to hide their own actions.
    """
    items = []
    for task in tasks:
        for entry in task.activity:
            if exclude_user_id is not None and entry.user.id == exclude_user_id:
                continue
            items.append({"taskId": task.id, "taskTitle": task.title, "activity": entry})
    items.sort(key=lambda item: item["activity"].timestamp or _EPOCH, reverse=True)
    return items[:limit]
