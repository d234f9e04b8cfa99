import pytest

from permissions import CREATE_TASKS, DEFAULT_RULES, VIEW_TASKS
from schemas import PermissionRule
from sync import SettingsFeed, SyncState, TaskSyncController, TaskWatcher


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def views():
    return []


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def controller(store, resolver, views, clock):
    return TaskSyncController(store, resolver, on_publish=views.append, stale_after=60, clock=clock)


def seed(service, admin, member, other_member):
    service.create({"title": "mine", "assignee": member}, admin)
    service.create({"title": "shared", "viewers": [member]}, other_member)
    service.create({"title": "private"}, admin)


def test_no_user_stays_idle(controller, store, views):
    controller.set_user(None)
    assert controller.state == SyncState.IDLE
    assert views[-1].loading is True
    assert views[-1].tasks == []
    assert store.listener_count("tasks") == 0


def test_auth_loading_does_not_subscribe(controller, store, member):
    controller.set_user(member, auth_loading=True)
    assert controller.state == SyncState.IDLE
    assert store.listener_count("tasks") == 0


def test_live_feed_is_filtered(controller, service, rule_store, admin, member, other_member, views):
    rule_store.load([PermissionRule(permission=VIEW_TASKS, admin=True, manager=True, member=True)])
    seed(service, admin, member, other_member)

    controller.set_user(member)
    assert [v.state for v in views] == [SyncState.SUBSCRIBING, SyncState.LIVE]
    assert views[0].loading is True
    assert views[-1].loading is False
    # newest first, only what the member may see
    assert [t.title for t in controller.view.tasks] == ["shared", "mine"]

    service.create({"title": "later", "assignee": member}, admin)
    assert [t.title for t in controller.view.tasks] == ["later", "shared", "mine"]

    service.create({"title": "hidden"}, admin)
    assert len(controller.view.tasks) == 3


def test_admin_sees_everything(controller, service, admin, member, other_member):
    seed(service, admin, member, other_member)
    controller.set_user(admin)
    assert len(controller.view.tasks) == 3


def test_member_without_view_capability_gets_nothing(controller, service, store, admin, member, other_member, views):
    seed(service, admin, member, other_member)
    # no rules loaded: members fall back to no access
    controller.set_user(member)
    assert controller.state == SyncState.TORN_DOWN
    assert views[-1].tasks == []
    assert views[-1].loading is True
    assert store.listener_count("tasks") == 0


def test_losing_capability_tears_the_feed_down(controller, service, store, rule_store, admin, member, other_member):
    rule_store.load([PermissionRule(permission=VIEW_TASKS, member=True)])
    seed(service, admin, member, other_member)
    controller.set_user(member)
    assert controller.state == SyncState.LIVE

    rule_store.load([PermissionRule(permission=VIEW_TASKS, member=False)])
    controller.refresh_permissions()
    assert controller.state == SyncState.TORN_DOWN
    assert controller.view.tasks == []
    assert store.listener_count("tasks") == 0

    rule_store.load([PermissionRule(permission=VIEW_TASKS, member=True)])
    controller.refresh_permissions()
    assert controller.state == SyncState.LIVE
    assert len(controller.view.tasks) == 2


def test_role_change_refilters_without_resubscribing(controller, service, store, admin, member, other_member, views):
    seed(service, admin, member, other_member)
    controller.set_user(admin)
    count = len(views)
    controller.set_user(admin.model_copy(update={"role": "Manager"}))
    assert len(views) == count + 1
    assert views[-1].state == SyncState.LIVE
    assert store.listener_count("tasks") == 1


def test_user_switch_replaces_subscription(controller, service, store, admin, manager, member, other_member):
    seed(service, admin, member, other_member)
    controller.set_user(admin)
    controller.set_user(manager)
    assert store.listener_count("tasks") == 1
    assert controller.state == SyncState.LIVE


def test_error_keeps_last_known_tasks(controller, service, store, admin, member, other_member, views):
    seed(service, admin, member, other_member)
    controller.set_user(admin)
    store.break_subscriptions("tasks", ConnectionError("network down"))

    assert controller.state == SyncState.ERROR
    assert len(controller.view.tasks) == 3
    assert controller.view.loading is False
    assert "network down" in controller.view.error

    # no automatic retry
    service.create({"title": "after"}, admin)
    assert len(controller.view.tasks) == 3
    assert store.listener_count("tasks") == 0


def test_role_change_during_error_refilters_last_snapshot(controller, service, store, rule_store, admin, member):
    rule_store.load([PermissionRule(permission=VIEW_TASKS, admin=True, manager=True, member=True)])
    service.create({"title": "mine", "assignee": member}, admin)
    service.create({"title": "private"}, admin)
    controller.set_user(member)
    assert len(controller.view.tasks) == 1

    store.break_subscriptions("tasks", ConnectionError("network down"))
    controller.set_user(member.model_copy(update={"role": "Admin"}))
    assert controller.state == SyncState.ERROR
    assert sorted(t.title for t in controller.view.tasks) == ["mine", "private"]
    assert "network down" in controller.view.error


def test_teardown_is_idempotent_and_silences_pushes(controller, service, store, admin, views):
    controller.set_user(admin)
    controller.teardown()
    controller.teardown()
    assert controller.state == SyncState.TORN_DOWN
    assert store.listener_count("tasks") == 0
    published = len(views)

    service.create({"title": "late"}, admin)
    assert len(views) == published
    assert controller.view.tasks == []


def test_permission_refresh_after_teardown_stays_closed(controller, store, admin):
    controller.set_user(admin)
    controller.teardown()
    controller.refresh_permissions()
    assert controller.state == SyncState.TORN_DOWN
    assert store.listener_count("tasks") == 0

    # a new sign-in opens it again
    controller.set_user(admin)
    assert controller.state == SyncState.LIVE


def test_settings_change_after_teardown_does_not_resubscribe(store, rule_store, resolver, service, admin, member, other_member):
    feed = SettingsFeed(store, rule_store)
    controller = TaskSyncController(store, resolver)
    feed.add_listener(lambda _view: controller.refresh_permissions())
    feed.start()
    seed(service, admin, member, other_member)
    feed.set_permission(VIEW_TASKS, "member", True)
    controller.set_user(member)
    assert controller.state == SyncState.LIVE

    controller.teardown()
    feed.set_permission(VIEW_TASKS, "member", False)
    feed.set_permission(VIEW_TASKS, "member", True)
    assert controller.state == SyncState.TORN_DOWN
    assert store.listener_count("tasks") == 0


def test_stale_generation_is_dropped(controller, store, admin, views):
    captured = []
    original = store.subscribe_collection

    def capture(collection, on_change, on_error, **kw):
        captured.append(on_change)
        return original(collection, on_change, on_error, **kw)

    store.subscribe_collection = capture
    controller.set_user(admin)
    controller.teardown()
    published = len(views)

    captured[0]([("T-001", {"title": "ghost"})])
    assert len(views) == published
    assert controller.view.tasks == []


def test_liveness_resubscribes_silent_feed(controller, store, service, admin, clock, views):
    service.create({"title": "t"}, admin)
    controller.set_user(admin)

    clock.now += 30
    assert controller.check_liveness() is False

    clock.now += 31
    assert controller.check_liveness() is True
    assert controller.state == SyncState.LIVE
    assert store.listener_count("tasks") == 1
    # the list never went empty while resubscribing
    assert all(v.tasks for v in views if v.state == SyncState.LIVE)
    assert SyncState.SUBSCRIBING not in [v.state for v in views[2:]]


def test_liveness_retries_subscription_that_never_delivers(controller, store, admin, clock):
    calls = []

    def silent(collection, on_change, on_error, **kw):
        calls.append(collection)
        return lambda: None

    store.subscribe_collection = silent
    controller.set_user(admin)
    assert controller.state == SyncState.SUBSCRIBING

    clock.now += 59
    assert controller.check_liveness() is False
    clock.now += 2
    assert controller.check_liveness() is True
    assert calls == ["tasks", "tasks"]
    assert controller.state == SyncState.SUBSCRIBING


def test_liveness_can_be_disabled(store, resolver, admin, clock):
    controller = TaskSyncController(store, resolver, stale_after=0, clock=clock)
    controller.set_user(admin)
    clock.now += 10_000
    assert controller.check_liveness() is False


# -----------------------------
# Settings feed
# -----------------------------
def test_settings_feed_loads_rules(store, rule_store, resolver, member):
    published = []
    feed = SettingsFeed(store, rule_store, on_publish=published.append)
    feed.start()
    assert published[-1].loading is False
    assert rule_store.loaded
    assert resolver.can("Member", VIEW_TASKS) is False

    feed.initialize_defaults()
    assert [r.permission for r in published[-1].settings.rules] == [r.permission for r in DEFAULT_RULES]
    assert resolver.can("Member", VIEW_TASKS) is True
    assert "Currency" in published[-1].settings.customFields

    feed.stop()
    assert not rule_store.loaded


def test_initialize_keeps_existing_rules(store, rule_store):
    feed = SettingsFeed(store, rule_store)
    feed.start()
    feed.set_permission(VIEW_TASKS, "member", False)
    feed.initialize_defaults()
    rules = feed.current_rules()
    assert [r.permission for r in rules] == [r.permission for r in DEFAULT_RULES]
    assert next(r for r in rules if r.permission == VIEW_TASKS).member is False


def test_first_toggle_saves_the_whole_default_table(store, rule_store, resolver):
    feed = SettingsFeed(store, rule_store)
    feed.start()
    feed.set_permission(CREATE_TASKS, "member", False)
    assert len(rule_store.rules()) == len(DEFAULT_RULES)
    assert resolver.can("Member", VIEW_TASKS) is True
    assert resolver.can("Member", CREATE_TASKS) is False


def test_settings_change_notifies_listeners(store, rule_store, resolver, service, admin, member, other_member):
    feed = SettingsFeed(store, rule_store)
    controller = TaskSyncController(store, resolver)
    remove = feed.add_listener(lambda _view: controller.refresh_permissions())
    feed.start()
    seed(service, admin, member, other_member)

    controller.set_user(member)
    assert controller.state == SyncState.TORN_DOWN

    feed.set_permission(VIEW_TASKS, "Member", True)
    assert controller.state == SyncState.LIVE
    assert len(controller.view.tasks) == 2

    remove()
    feed.set_permission(VIEW_TASKS, "Member", False)
    assert controller.state == SyncState.LIVE


def test_custom_fields_update(store, rule_store):
    feed = SettingsFeed(store, rule_store)
    feed.start()
    feed.update_custom_fields("Label", ["Work", "Home"])
    feed.update_custom_fields("Currency", ["USD"])
    assert feed.view.settings.customFields == {"Label": ["Work", "Home"], "Currency": ["USD"]}


def test_settings_error_keeps_last_view(store, rule_store):
    feed = SettingsFeed(store, rule_store)
    feed.start()
    feed.update_custom_fields("Label", ["Work"])
    store.break_subscriptions("settings", ConnectionError("offline"))
    assert feed.view.settings.customFields == {"Label": ["Work"]}
    assert "offline" in feed.view.error


# -----------------------------
# Single task watcher
# -----------------------------
def test_watcher_follows_one_task(store, resolver, service, admin):
    task = service.create({"title": "watch me"}, admin)
    views = []
    watcher = TaskWatcher(store, resolver, task.id, admin, on_publish=views.append)
    watcher.start()
    assert views[-1].task.title == "watch me"

    service.add_comment(task.id, "ping", admin)
    assert views[-1].task.activity[-1].details == "ping"

    service.delete(task.id)
    assert views[-1].task is None
    assert views[-1].error == "Task not found"

    watcher.stop()
    assert store.listener_count("tasks") == 0


def test_watcher_hides_tasks_the_user_cannot_see(store, resolver, rule_store, service, admin, member):
    rule_store.load([PermissionRule(permission=VIEW_TASKS, member=True)])
    task = service.create({"title": "private"}, admin)
    views = []
    watcher = TaskWatcher(store, resolver, task.id, member, on_publish=views.append)
    watcher.start()
    assert views[-1].task is None

    watcher.set_user(admin)
    assert views[-1].task.id == task.id

    watcher.set_user(None)
    assert views[-1].task is None
