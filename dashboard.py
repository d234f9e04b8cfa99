"""
Dashboard and documents aggregates over a set of (already visible) tasks.

Everything here is a pure function of the task list, so the same numbers come
out of the HTTP routes and of anything holding a live TaskView.
"""
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, get_args

from pydantic import BaseModel, Field

from normalize import to_instant
from schemas import Task, TaskPriority, TaskStatus

STATUSES = get_args(TaskStatus)
PRIORITIES = get_args(TaskPriority)
UPCOMING_LIMIT = 10


class TaskStats(BaseModel):
    total: int = 0
    byStatus: Dict[str, int] = Field(default_factory=dict)
    byPriority: Dict[str, int] = Field(default_factory=dict)


class WorkloadEntry(BaseModel):
    id: str
    name: str
    avatarUrl: Optional[str] = None
    tasks: int = 0
    # share of the busiest person's load, 0-100
    load: float = 0.0


class DocumentEntry(BaseModel):
    id: str
    name: str
    url: str
    taskId: str
    fileType: str
    fileSize: int = 0
    uploadDate: Optional[datetime] = None


class DocumentIndex(BaseModel):
    tasks: List[Dict[str, Any]] = Field(default_factory=list)
    totalDocuments: int = 0
    documentTypes: Dict[str, int] = Field(default_factory=dict)
    totalSizeBytes: int = 0


def task_stats(tasks: Iterable[Task]) -> TaskStats:
    """Counts per status and per priority; every known value is present, zero or not."""
    stats = TaskStats(byStatus={s: 0 for s in STATUSES}, byPriority={p: 0 for p in PRIORITIES})
    for t in tasks:
        stats.total += 1
        stats.byStatus[t.status] = stats.byStatus.get(t.status, 0) + 1
        priority = t.priority or "Medium"
        stats.byPriority[priority] = stats.byPriority.get(priority, 0) + 1
    return stats


def upcoming_deadlines(tasks: Iterable[Task], today: Optional[date] = None, limit: int = UPCOMING_LIMIT) -> List[Task]:
    """Open tasks due today or later, nearest first."""
    today = today or datetime.now(timezone.utc).date()
    start = to_instant(today)
    due = [t for t in tasks if t.status != "Completed" and t.dueDate is not None and to_instant(t.dueDate) >= start]
    due.sort(key=lambda t: to_instant(t.dueDate))
    return due[:limit]


def days_left(task: Task, now: Optional[datetime] = None) -> Optional[int]:
    if task.dueDate is None:
        return None
    now = now or datetime.now(timezone.utc)
    return (to_instant(task.dueDate) - to_instant(now)).days


def team_workload(tasks: Iterable[Task]) -> List[WorkloadEntry]:
    """Tasks per assignee, busiest first; unassigned tasks are counted as their own row."""
    rows: Dict[str, WorkloadEntry] = {}
    for t in tasks:
        key = t.assignee.id if t.assignee and t.assignee.id else "unassigned"
        if key not in rows:
            rows[key] = WorkloadEntry(
                id=key,
                name=t.assignee.name if key != "unassigned" else "Unassigned",
                avatarUrl=t.assignee.avatarUrl if key != "unassigned" else None,
            )
        rows[key].tasks += 1

    ordered = sorted(rows.values(), key=lambda r: r.tasks, reverse=True)
    busiest = ordered[0].tasks if ordered else 0
    for row in ordered:
        row.load = row.tasks / busiest * 100 if busiest else 0.0
    return ordered


def _file_type(name: str, declared: Optional[str]) -> str:
    if declared:
        return declared
    if "." in name:
        return name.rsplit(".", 1)[1].upper()
    return "FILE"


def document_index(tasks: Iterable[Task]) -> DocumentIndex:
    """Every attachment across ``tasks``, grouped by task, with type and size totals."""
    index = DocumentIndex()
    for t in tasks:
        uploaded = t.receivedDate or t.entryDate or t.createdAt
        documents = [
            DocumentEntry(
                id=f"{t.id}-{i}",
                name=f.name,
                url=f.url,
                taskId=t.id,
                fileType=_file_type(f.name, f.type),
                fileSize=f.size or 0,
                uploadDate=uploaded,
            )
            for i, f in enumerate(t.files)
        ]
        if not documents:
            continue
        index.tasks.append({"taskId": t.id, "taskTitle": t.title, "status": t.status, "documents": documents})
        for doc in documents:
            index.totalDocuments += 1
            index.documentTypes[doc.fileType] = index.documentTypes.get(doc.fileType, 0) + 1
            index.totalSizeBytes += doc.fileSize
    return index
