from schemas import Task, User
from visibility import can_see, visible_tasks


def make_tasks(u1, u2):
    return [
        Task(id="T-001", title="Assigned", assignee=u1, creatorId="u-x"),
        Task(id="T-002", title="Shared", creatorId=u2.id, viewers=[u1]),
        Task(id="T-003", title="Unrelated", creatorId="u-x"),
    ]


def test_member_sees_assigned_and_shared(member, other_member):
    tasks = make_tasks(member, other_member)
    assert [t.id for t in visible_tasks(tasks, member)] == ["T-001", "T-002"]


def test_creator_sees_own_task(member, other_member):
    tasks = make_tasks(member, other_member)
    assert [t.id for t in visible_tasks(tasks, other_member)] == ["T-002"]


def test_privileged_roles_see_everything_in_order(admin, manager, member, other_member):
    tasks = make_tasks(member, other_member)
    assert visible_tasks(tasks, admin) == tasks
    assert visible_tasks(tasks, manager) == tasks


def test_no_user_sees_nothing(member, other_member):
    assert visible_tasks(make_tasks(member, other_member), None) == []
    assert can_see(make_tasks(member, other_member)[0], None) is False


def test_filter_is_a_subset_and_keeps_order(member, other_member):
    tasks = make_tasks(member, other_member)
    tasks.reverse()
    visible = visible_tasks(tasks, member)
    assert all(t in tasks for t in visible)
    assert [t.id for t in visible] == ["T-002", "T-001"]


def test_raw_dicts_with_missing_fields(member):
    raw = [
        {"id": "T-010"},
        {"id": "T-011", "assignee": None, "viewers": None},
        {"id": "T-012", "viewers": [{"name": "no id"}, {"id": member.id}]},
        {"id": "T-013", "assignee": {"id": member.id}},
    ]
    assert [t["id"] for t in visible_tasks(raw, member)] == ["T-012", "T-013"]


def test_user_without_id_matches_nothing():
    anonymous = User(id="", role="Member")
    assert can_see({"id": "T-1", "creatorId": ""}, anonymous) is False
