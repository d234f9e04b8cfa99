import threading
import time

import pytest

from errors import DocumentExists, DocumentNotFound
from store import deep_merge, sort_snapshot


def test_create_is_insert_if_absent(store):
    store.create("tasks", "T-001", {"title": "a"})
    with pytest.raises(DocumentExists):
        store.create("tasks", "T-001", {"title": "b"})
    assert store.get("tasks", "T-001") == {"title": "a"}


def test_reads_return_copies(store):
    store.set("tasks", "T-001", {"viewers": []})
    store.get("tasks", "T-001")["viewers"].append("x")
    assert store.get("tasks", "T-001") == {"viewers": []}


def test_merge_set(store):
    store.set("settings", "global", {"customFields": {"Label": ["Work"]}, "rules": []})
    store.set("settings", "global", {"customFields": {"Currency": ["USD"]}}, merge=True)
    assert store.get("settings", "global") == {
        "customFields": {"Label": ["Work"], "Currency": ["USD"]},
        "rules": [],
    }


def test_update_with_array_union(store):
    store.set("tasks", "T-001", {"activity": [{"id": "a"}], "title": "x"})
    store.update("tasks", "T-001", {"title": "y"}, array_union={"activity": [{"id": "a"}, {"id": "b"}]})
    assert store.get("tasks", "T-001") == {"activity": [{"id": "a"}, {"id": "b"}], "title": "y"}
    with pytest.raises(DocumentNotFound):
        store.update("tasks", "T-404", {"title": "z"})


def test_find(store):
    store.set("user", "u1", {"email": "a@example.com"})
    store.set("user", "u2", {"email": "b@example.com"})
    assert store.find("user", email="b@example.com") == [("u2", {"email": "b@example.com"})]


def test_collection_subscription(store):
    seen = []
    unsubscribe = store.subscribe_collection("tasks", seen.append, pytest.fail)
    store.set("tasks", "T-001", {"title": "a"})
    store.delete("tasks", "T-001")
    unsubscribe()
    store.set("tasks", "T-002", {"title": "b"})
    assert seen == [[], [("T-001", {"title": "a"})], []]
    assert store.listener_count() == 0


def test_document_subscription(store):
    seen = []
    store.subscribe_document("settings", "global", seen.append, pytest.fail)
    store.set("settings", "other", {"x": 1})
    store.set("settings", "global", {"x": 2})
    assert seen == [None, {"x": 2}]


def test_concurrent_writes_never_deliver_an_older_snapshot(store):
    sizes = []

    def slow_listener(snapshot):
        time.sleep(0.0005)
        sizes.append(len(snapshot))

    store.subscribe_collection("tasks", slow_listener, pytest.fail)

    def writer(prefix):
        for n in range(25):
            store.set("tasks", f"{prefix}-{n}", {"title": str(n)})

    threads = [threading.Thread(target=writer, args=(p,)) for p in "abcd"]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sizes == sorted(sizes)
    assert sizes[-1] == 100


def test_break_subscriptions(store):
    errors = []
    store.subscribe_collection("tasks", lambda _s: None, errors.append)
    assert store.break_subscriptions("tasks", ConnectionError("gone")) == 1
    assert len(errors) == 1
    assert store.listener_count("tasks") == 0


def test_sort_snapshot_puts_missing_last():
    snap = [("a", {"n": 2}), ("b", {}), ("c", {"n": 5})]
    assert [d for d, _ in sort_snapshot(snap, "n", True)] == ["c", "a", "b"]
    assert sort_snapshot(snap, None, False) == snap
    assert [d for d, _ in sort_snapshot([("x", ["odd"]), ("a", {"n": 1})], "n", False)] == ["a", "x"]


def test_deep_merge_leaves_inputs_alone():
    base = {"a": {"b": 1}}
    merged = deep_merge(base, {"a": {"c": 2}})
    assert merged == {"a": {"b": 1, "c": 2}}
    assert base == {"a": {"b": 1}}
