import threading

import pytest

from errors import AllocationFailure, DocumentExists
from ids import TaskIdAllocator, format_task_id, next_task_id
from store import MemoryDocumentStore
from tasks import TaskService


def test_next_id_after_highest_suffix():
    assert next_task_id(["T-001", "T-004", "T-002"]) == "T-005"


def test_next_id_ignores_foreign_ids():
    assert next_task_id(["legacy", "T-abc", "X-9", "T-002"]) == "T-003"
    assert next_task_id([]) == "T-001"


def test_ids_grow_past_three_digits():
    assert next_task_id(["T-999"]) == "T-1000"
    assert format_task_id(42) == "T-042"


class RacingStore(MemoryDocumentStore):
    """Another writer claims the scanned id just before our first insert."""

    def __init__(self):
        super().__init__()
        self.raced = False

    def create(self, collection, doc_id, data):
        if not self.raced:
            self.raced = True
            super().create(collection, doc_id, {"title": "theirs"})
        super().create(collection, doc_id, data)


def test_create_rescans_after_conflict():
    store = RacingStore()
    allocator = TaskIdAllocator(store, "tasks")
    task_id, payload = allocator.create(lambda _id: {"title": "ours"})
    assert task_id == "T-002"
    assert store.get("tasks", "T-001") == {"title": "theirs"}
    assert store.get("tasks", "T-002") == {"title": "ours"}


class AlwaysTaken(MemoryDocumentStore):
    def create(self, collection, doc_id, data):
        raise DocumentExists(collection, doc_id)


def test_create_gives_up_after_attempts():
    allocator = TaskIdAllocator(AlwaysTaken(), "tasks", attempts=3)
    with pytest.raises(AllocationFailure):
        allocator.create(lambda _id: {})


class BrokenScan(MemoryDocumentStore):
    def list(self, collection, order_by=None, descending=False):
        raise ConnectionError("store offline")


def test_scan_failure_is_allocation_failure():
    with pytest.raises(AllocationFailure):
        TaskIdAllocator(BrokenScan(), "tasks").next_id()


def test_concurrent_creates_get_distinct_ids(store, member):
    service = TaskService(store, allocator=TaskIdAllocator(store, "tasks", attempts=50))
    created = []
    lock = threading.Lock()

    def worker(n):
        task = service.create({"title": f"task {n}"}, member)
        with lock:
            created.append(task.id)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(created) == 10
    assert sorted(created) == [format_task_id(n) for n in range(1, 11)]
    assert len(store.list("tasks")) == 10
