"""
permissions.py - role-based access control for the task tracker

Rules are rows of (action -> {admin, manager, member}) kept in the settings
document. ``RuleStore`` holds the currently loaded rows; it is owned by
whoever runs the settings subscription and is injected into
``PermissionResolver``, which answers ``can(role, action)``.

Resolution, first match wins:
  1) an Admin can always Manage Settings (otherwise an Admin could switch off
     the very checkbox needed to undo the change);
  2) an explicit rule for the action, read from the lower-cased role column;
  3) fallback: Admin and Manager allowed, everyone else denied.

Usage:
    resolver = PermissionResolver(rule_store)
    if not resolver.can(user.role, CREATE_TASKS):
        raise HTTPException(status_code=403, detail="...")
"""
import threading
from typing import Dict, Iterable, List, Optional

from schemas import PermissionRule, User

VIEW_TASKS = "View Tasks"
CREATE_TASKS = "Create Tasks"
EDIT_TASKS = "Edit Tasks"
DELETE_TASKS = "Delete Tasks"
MANAGE_USERS = "Manage Users"
MANAGE_SETTINGS = "Manage Settings"
VIEW_FINANCIALS = "View Financials"
MANAGE_TEAM = "Manage Team"

ACTIONS = (
    VIEW_TASKS,
    CREATE_TASKS,
    EDIT_TASKS,
    DELETE_TASKS,
    MANAGE_USERS,
    MANAGE_SETTINGS,
    VIEW_FINANCIALS,
    MANAGE_TEAM,
)

ROLE_COLUMNS = ("admin", "manager", "member")
PRIVILEGED_ROLES = {"admin", "manager"}

# Shown in settings while nothing is stored, and used to seed the table the
# first time a checkbox is toggled on an empty table.
DEFAULT_RULES: List[PermissionRule] = [
    PermissionRule(permission=VIEW_TASKS, admin=True, manager=True, member=True),
    PermissionRule(permission=CREATE_TASKS, admin=True, manager=True, member=True),
    PermissionRule(permission=EDIT_TASKS, admin=True, manager=True, member=False),
    PermissionRule(permission=DELETE_TASKS, admin=True, manager=False, member=False),
    PermissionRule(permission=MANAGE_USERS, admin=True, manager=False, member=False),
    PermissionRule(permission=MANAGE_SETTINGS, admin=True, manager=False, member=False),
    PermissionRule(permission=MANAGE_TEAM, admin=True, manager=True, member=False),
    PermissionRule(permission=VIEW_FINANCIALS, admin=True, manager=True, member=False),
]


def role_key(role) -> str:
    """Case-insensitive comparison key for a role string."""
    if role is None:
        return ""
    return str(role).strip().lower()


def is_privileged(role) -> bool:
    return role_key(role) in PRIVILEGED_ROLES


class RuleStore:
    """Loaded permission rules, at most one per permission name."""

    def __init__(self, rules: Optional[Iterable[PermissionRule]] = None):
        self._lock = threading.Lock()
        self._rules: Dict[str, PermissionRule] = {}
        self.loaded = False
        if rules is not None:
            self.load(rules)

    def load(self, rules: Iterable[PermissionRule]) -> None:
        table: Dict[str, PermissionRule] = {}
        for rule in rules:
            table.setdefault(rule.permission, rule)
        with self._lock:
            self._rules = table
            self.loaded = True

    def clear(self) -> None:
        with self._lock:
            self._rules = {}
            self.loaded = False

    def get(self, permission: str) -> Optional[PermissionRule]:
        with self._lock:
            return self._rules.get(permission)

    def rules(self) -> List[PermissionRule]:
        with self._lock:
            return list(self._rules.values())

    def effective_rules(self) -> List[PermissionRule]:
        """Stored rules, or the defaults while none are stored; sorted by name."""
        rules = self.rules() or [r.model_copy() for r in DEFAULT_RULES]
        return sorted(rules, key=lambda r: r.permission)


class PermissionResolver:

    def __init__(self, rule_store: RuleStore):
        self.rule_store = rule_store

    def can(self, role, action: str) -> bool:
        """
        Return True if ``role`` may perform ``action``.

        Never raises and never waits on the store: before the first settings
        load it simply answers from the fallback defaults.
        """
        key = role_key(role)

        if key == "admin" and action == MANAGE_SETTINGS:
            return True

        rule = self.rule_store.get(action)
        if rule is not None and key in ROLE_COLUMNS:
            return getattr(rule, key) is True

        return key in PRIVILEGED_ROLES

    def user_can(self, user: Optional[User], action: str) -> bool:
        if user is None:
            return False
        return self.can(user.role, action)

    def capabilities(self, role) -> Dict[str, bool]:
        return {action: self.can(role, action) for action in ACTIONS}


def toggle_rule(rules: Iterable[PermissionRule], permission: str, role: str, allowed: bool) -> List[PermissionRule]:
    """
    Return a copy of ``rules`` with one role column of one permission changed.

    An empty table starts from the full default table, the one shown while
    nothing is stored. A permission missing from a non-empty table is added
    from its default row (admin-only for permissions without one).
    """
    column = role_key(role)
    if column not in ROLE_COLUMNS:
        raise ValueError(f"Unknown role column '{role}'. Use one of {list(ROLE_COLUMNS)}.")

    out = [r.model_copy() for r in rules] or [r.model_copy() for r in DEFAULT_RULES]
    for i, rule in enumerate(out):
        if rule.permission == permission:
            out[i] = rule.model_copy(update={column: allowed})
            return out

    seed = next((r for r in DEFAULT_RULES if r.permission == permission), None)
    if seed is None:
        seed = PermissionRule(permission=permission, admin=True, manager=False, member=False)
    out.append(seed.model_copy(update={column: allowed}))
    return out
