"""
Realtime sync: live subscriptions republished as filtered, normalized views.

TaskSyncController
    Owns one subscription to the task collection for one consumer.
    States: idle -> subscribing -> live -> (error | torn_down).
    Every push is normalized, run through the permission resolver and the
    visibility filter, then published as a TaskView.

SettingsFeed
    Owns the subscription to the settings singleton, keeps the injected
    RuleStore current and notifies listeners (task controllers re-check
    their View Tasks capability).

TaskWatcher
    Subscription to a single task document for a detail view.

Listeners from the store may be called on another thread (Mongo change
streams), so every controller serializes its state behind a lock and tags
each subscription with a generation number: a push carrying an old
generation, or arriving after teardown, is dropped.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from errors import MalformedRecord, TransientSyncError
from normalize import normalize_settings, normalize_task
from permissions import DEFAULT_RULES, VIEW_TASKS, PermissionResolver, RuleStore, toggle_rule
from schemas import COLLECTION_SETTINGS, COLLECTION_TASKS, SETTINGS_DOC_ID, AppSettings, PermissionRule, Task, User
from store import DocumentStore, Snapshot
from visibility import can_see, visible_tasks

logger = logging.getLogger("tasktrack")

SYNC_STALE_AFTER_SECONDS = float(os.getenv("SYNC_STALE_AFTER_SECONDS", 300))

DEFAULT_CUSTOM_FIELDS: Dict[str, List[str]] = {
    "Priority": ["Low", "Medium", "High", "Urgent"],
    "Status": ["Pending", "In Progress", "Completed", "To hold", "Overdue"],
    "Label": ["Personal", "Work", "Urgent"],
    "Department": ["General", "Finance", "IT", "Marketing", "Operations"],
    "Currency": ["USD", "EUR", "GBP", "AED"],
    "Sender Location": ["Headquarters", "Branch NY", "Branch LDN"],
    "Receiver Location": ["Warehouse A", "Client Site", "Remote"],
}


class SyncState(str, Enum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    ERROR = "error"
    TORN_DOWN = "torn_down"


@dataclass
class TaskView:
    tasks: List[Task] = field(default_factory=list)
    loading: bool = True
    error: Optional[str] = None
    state: SyncState = SyncState.IDLE


@dataclass
class SettingsView:
    settings: AppSettings = field(default_factory=AppSettings)
    loading: bool = True
    error: Optional[str] = None


@dataclass
class TaskDetailView:
    task: Optional[Task] = None
    loading: bool = True
    error: Optional[str] = None


def _normalize_snapshot(snapshot: Snapshot) -> List[Task]:
    tasks = []
    for doc_id, data in snapshot:
        try:
            tasks.append(normalize_task(doc_id, data))
        except MalformedRecord as e:
            logger.warning("Excluding task from feed: %s", e)
    return tasks


# -----------------------------
# Task collection
# -----------------------------
class TaskSyncController:

    def __init__(
        self,
        store: DocumentStore,
        resolver: PermissionResolver,
        on_publish: Optional[Callable[[TaskView], None]] = None,
        collection: str = COLLECTION_TASKS,
        stale_after: float = SYNC_STALE_AFTER_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.resolver = resolver
        self.on_publish = on_publish
        self.collection = collection
        self.stale_after = stale_after
        self.clock = clock

        self._lock = threading.RLock()
        self._user: Optional[User] = None
        self._auth_loading = True
        self._key: Optional[Tuple[Any, bool, bool]] = None
        self._unsubscribe = None
        self._generation = 0
        self._raw: List[Task] = []
        self._last_push: Optional[float] = None
        self._subscribed_at: Optional[float] = None
        # set by teardown; only set_user opens the feed again
        self._closed = False

        self.state = SyncState.IDLE
        self.view = TaskView()

    # --- lifecycle -----------------------------------------------------------
    def set_user(self, user: Optional[User], auth_loading: bool = False) -> None:
        """
        Entry point for auth transitions.

        A change of user id, auth-loading flag or View Tasks capability
        replaces the subscription; anything else (a role change that keeps
        the capability) just re-filters the last snapshot.
        """
        with self._lock:
            self._closed = False
            self._user = user
            self._auth_loading = auth_loading
            self._reconcile()

    def refresh_permissions(self) -> None:
        """Re-check the View Tasks capability after the permission rules changed. No-op after teardown."""
        with self._lock:
            if self._closed:
                return
            self._reconcile()

    def teardown(self) -> None:
        """Release the subscription. Safe to call any number of times."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._release()
            self._key = None
            self._raw = []
            self._last_push = None
            self._subscribed_at = None
            self.state = SyncState.TORN_DOWN
            self._publish(TaskView([], True, None, SyncState.TORN_DOWN))
            logger.info("Task feed torn down")

    def check_liveness(self, now: Optional[float] = None) -> bool:
        """
        Resubscribe when a live feed has been silent, or a new subscription
        has produced no first push, for ``stale_after`` seconds.

        Returns True if a resubscribe happened. The last published tasks stay
        visible while the new subscription comes up.
        """
        with self._lock:
            if self._closed or self.stale_after <= 0:
                return False
            if self.state == SyncState.LIVE:
                since = self._last_push
            elif self.state == SyncState.SUBSCRIBING:
                since = self._subscribed_at
            else:
                return False
            if since is None:
                return False
            now = self.clock() if now is None else now
            if now - since < self.stale_after:
                return False
            logger.warning("Task feed silent for %.0fs, resubscribing", now - since)
            self._release()
            self._subscribe(keep_view=True)
            return True

    # --- internals -----------------------------------------------------------
    def _can_view(self) -> bool:
        return self.resolver.user_can(self._user, VIEW_TASKS)

    def _reconcile(self) -> None:
        can_view = self._can_view()
        key = (self._user.id if self._user else None, self._auth_loading, can_view)

        if key == self._key:
            self._republish()
            return

        self._key = key
        had_subscription = self._unsubscribe is not None
        self._release()
        self._raw = []
        self._last_push = None

        if self._auth_loading or self._user is None:
            self.state = SyncState.IDLE
            self._publish(TaskView([], True, None, SyncState.IDLE))
        elif not can_view:
            self.state = SyncState.TORN_DOWN
            self._publish(TaskView([], True, None, SyncState.TORN_DOWN))
            if had_subscription:
                logger.info("User %s lost '%s', task feed torn down", self._user.id, VIEW_TASKS)
        else:
            self._subscribe()

    def _subscribe(self, keep_view: bool = False) -> None:
        self._generation += 1
        generation = self._generation
        self.state = SyncState.SUBSCRIBING
        self._subscribed_at = self.clock()
        if not keep_view:
            self._publish(TaskView([], True, None, SyncState.SUBSCRIBING))
        logger.info("Subscribing to %s for user %s", self.collection, self._user.id if self._user else None)

        def on_change(snapshot: Snapshot) -> None:
            self._on_snapshot(generation, snapshot)

        def on_error(exc: Exception) -> None:
            self._on_error(generation, exc)

        try:
            unsubscribe = self.store.subscribe_collection(
                self.collection, on_change, on_error, order_by="createdAt", descending=True
            )
        except Exception as e:
            self._on_error(generation, e)
            return

        if generation == self._generation:
            self._unsubscribe = unsubscribe
        else:
            # superseded while subscribing
            unsubscribe()

    def _release(self) -> None:
        self._generation += 1
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()

    def _on_snapshot(self, generation: int, snapshot: Snapshot) -> None:
        with self._lock:
            if generation != self._generation or self.state not in (SyncState.SUBSCRIBING, SyncState.LIVE):
                logger.debug("Dropping push for stale subscription %d", generation)
                return
            self._raw = _normalize_snapshot(snapshot)
            self._last_push = self.clock()
            self.state = SyncState.LIVE

            if not self._can_view():
                self._reconcile()
                return
            self._publish(TaskView(visible_tasks(self._raw, self._user), False, None, SyncState.LIVE))
            logger.debug("Published %d of %d tasks", len(self.view.tasks), len(self._raw))

    def _on_error(self, generation: int, exc: Exception) -> None:
        with self._lock:
            if generation != self._generation or self.state not in (SyncState.SUBSCRIBING, SyncState.LIVE):
                return
            err = exc if isinstance(exc, TransientSyncError) else TransientSyncError(str(exc))
            logger.warning("Task feed error, keeping last known tasks: %s", err)
            self.state = SyncState.ERROR
            self._release()
            # the raw snapshot is kept so a later role change can re-filter it
            self._publish(TaskView(visible_tasks(self._raw, self._user), False, str(err), SyncState.ERROR))

    def _republish(self) -> None:
        if self.state == SyncState.LIVE:
            self._publish(TaskView(visible_tasks(self._raw, self._user), False, None, SyncState.LIVE))
        elif self.state == SyncState.ERROR:
            self._publish(TaskView(visible_tasks(self._raw, self._user), False, self.view.error, SyncState.ERROR))

    def _publish(self, view: TaskView) -> None:
        self.view = view
        if self.on_publish is not None:
            self.on_publish(view)


# -----------------------------
# Settings singleton
# -----------------------------
class SettingsFeed:
    """
    Live view of ``settings/global`` plus its write operations.

    The feed is the owner of ``rule_store``: every push reloads it, and
    every listener registered with ``add_listener`` is told afterwards.
    """

    def __init__(
        self,
        store: DocumentStore,
        rule_store: RuleStore,
        on_publish: Optional[Callable[[SettingsView], None]] = None,
        collection: str = COLLECTION_SETTINGS,
        doc_id: str = SETTINGS_DOC_ID,
    ):
        self.store = store
        self.rule_store = rule_store
        self.on_publish = on_publish
        self.collection = collection
        self.doc_id = doc_id

        self._lock = threading.RLock()
        self._listeners: List[Callable[[SettingsView], None]] = []
        self._unsubscribe = None
        self._generation = 0
        self.view = SettingsView()

    def add_listener(self, listener: Callable[[SettingsView], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def start(self) -> None:
        with self._lock:
            if self._unsubscribe is not None:
                return
            self._generation += 1
            generation = self._generation
            logger.info("Subscribing to %s/%s", self.collection, self.doc_id)
            try:
                unsubscribe = self.store.subscribe_document(
                    self.collection,
                    self.doc_id,
                    lambda data: self._on_change(generation, data),
                    lambda exc: self._on_error(generation, exc),
                )
            except Exception as e:
                self._on_error(generation, e)
                return
            if generation == self._generation:
                self._unsubscribe = unsubscribe
            else:
                unsubscribe()

    def stop(self) -> None:
        with self._lock:
            self._generation += 1
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            if unsubscribe is not None:
                unsubscribe()
            self.rule_store.clear()
            self._publish(SettingsView())

    def _on_change(self, generation: int, data: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            if generation != self._generation:
                return
            settings = normalize_settings(self.doc_id, data)
            self.rule_store.load(settings.rules)
            self._publish(SettingsView(settings, False, None))

    def _on_error(self, generation: int, exc: Exception) -> None:
        with self._lock:
            if generation != self._generation:
                return
            logger.warning("Settings sync failed, keeping last known settings: %s", exc)
            self._generation += 1
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            if unsubscribe is not None:
                unsubscribe()
            self._publish(SettingsView(self.view.settings, False, str(TransientSyncError(str(exc)))))

    def _publish(self, view: SettingsView) -> None:
        self.view = view
        if self.on_publish is not None:
            self.on_publish(view)
        for listener in list(self._listeners):
            listener(view)

    # --- writes --------------------------------------------------------------
    def current_rules(self) -> List[PermissionRule]:
        return normalize_settings(self.doc_id, self.store.get(self.collection, self.doc_id)).rules

    def initialize_defaults(self) -> None:
        """Merge the default dropdown options in; seed the rule table only if none is stored."""
        payload: Dict[str, Any] = {"customFields": DEFAULT_CUSTOM_FIELDS}
        if not self.current_rules():
            payload["rules"] = [r.model_dump() for r in DEFAULT_RULES]
        self.store.set(self.collection, self.doc_id, payload, merge=True)
        logger.info("Settings initialized with defaults")

    def update_custom_fields(self, category: str, values: Iterable[str]) -> None:
        self.store.set(self.collection, self.doc_id, {"customFields": {category: list(values)}}, merge=True)

    def set_permission(self, permission: str, role: str, allowed: bool) -> List[PermissionRule]:
        """Change one checkbox and save the whole table; an empty table starts from the defaults on display."""
        rules = toggle_rule(self.current_rules(), permission, role, allowed)
        self.store.set(self.collection, self.doc_id, {"rules": [r.model_dump() for r in rules]}, merge=True)
        logger.info("Permission '%s' for %s set to %s", permission, role, allowed)
        return rules


# -----------------------------
# Single task
# -----------------------------
class TaskWatcher:

    def __init__(
        self,
        store: DocumentStore,
        resolver: PermissionResolver,
        task_id: str,
        user: Optional[User],
        on_publish: Optional[Callable[[TaskDetailView], None]] = None,
        collection: str = COLLECTION_TASKS,
    ):
        self.store = store
        self.resolver = resolver
        self.task_id = task_id
        self.user = user
        self.on_publish = on_publish
        self.collection = collection

        self._lock = threading.RLock()
        self._unsubscribe = None
        self._generation = 0
        self._task: Optional[Task] = None
        self.view = TaskDetailView()

    def start(self) -> None:
        with self._lock:
            if self._unsubscribe is not None:
                return
            self._generation += 1
            generation = self._generation
            try:
                unsubscribe = self.store.subscribe_document(
                    self.collection,
                    self.task_id,
                    lambda data: self._on_change(generation, data),
                    lambda exc: self._on_error(generation, exc),
                )
            except Exception as e:
                self._on_error(generation, e)
                return
            if generation == self._generation:
                self._unsubscribe = unsubscribe
            else:
                unsubscribe()

    def stop(self) -> None:
        with self._lock:
            self._generation += 1
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            if unsubscribe is not None:
                unsubscribe()
            self._task = None
            self.view = TaskDetailView()

    def set_user(self, user: Optional[User]) -> None:
        with self._lock:
            self.user = user
            if not self.view.loading:
                self._publish_current()

    def _on_change(self, generation: int, data: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._task = None
            if data is not None:
                try:
                    self._task = normalize_task(self.task_id, data)
                except MalformedRecord as e:
                    logger.warning("Task %s unreadable: %s", self.task_id, e)
            self._publish_current()

    def _on_error(self, generation: int, exc: Exception) -> None:
        with self._lock:
            if generation != self._generation:
                return
            logger.warning("Task %s sync failed: %s", self.task_id, exc)
            self._generation += 1
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            if unsubscribe is not None:
                unsubscribe()
            self._publish(TaskDetailView(self.view.task, False, str(TransientSyncError(str(exc)))))

    def _publish_current(self) -> None:
        task = self._task
        allowed = task is not None and self.resolver.user_can(self.user, VIEW_TASKS) and can_see(task, self.user)
        if allowed:
            self._publish(TaskDetailView(task, False, None))
        else:
            self._publish(TaskDetailView(None, False, "Task not found"))

    def _publish(self, view: TaskDetailView) -> None:
        self.view = view
        if self.on_publish is not None:
            self.on_publish(view)
