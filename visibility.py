"""
Task visibility: which tasks a user may observe.

Admins and Managers see everything. Everyone else sees a task only when they
are its assignee, its creator, or one of its viewers.

The filter runs after the store's own access rules and only ever narrows
what the store delivered.
"""
from typing import Any, Iterable, List, Mapping, Optional

from permissions import is_privileged
from schemas import User


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _ref_id(ref: Any) -> Optional[str]:
    value = _field(ref, "id")
    return str(value) if value is not None else None


def can_see(task: Any, user: Optional[User]) -> bool:
    """Works on Task models and raw task dicts; absent fields never match."""
    if user is None:
        return False
    if is_privileged(user.role):
        return True
    uid = str(user.id) if user.id else None
    if not uid:
        return False

    if _ref_id(_field(task, "assignee")) == uid:
        return True
    creator = _field(task, "creatorId")
    if creator is not None and str(creator) == uid:
        return True
    viewers = _field(task, "viewers") or []
    return any(_ref_id(v) == uid for v in viewers)


def visible_tasks(tasks: Iterable[Any], user: Optional[User]) -> List[Any]:
    """Stable filter: input order is kept, nothing is re-sorted."""
    if user is None:
        return []
    tasks = list(tasks)
    if is_privileged(user.role):
        return tasks
    return [t for t in tasks if can_see(t, user)]
