import pytest

from permissions import PermissionResolver, RuleStore
from schemas import User
from store import MemoryDocumentStore
from tasks import TaskService


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def rule_store():
    return RuleStore()


@pytest.fixture
def resolver(rule_store):
    return PermissionResolver(rule_store)


@pytest.fixture
def service(store):
    return TaskService(store)


@pytest.fixture
def admin():
    return User(id="u-admin", name="Ada", email="ada@example.com", role="Admin")


@pytest.fixture
def manager():
    return User(id="u-manager", name="Mara", email="mara@example.com", role="Manager")


@pytest.fixture
def member():
    return User(id="u-member", name="Mo", email="mo@example.com", role="Member")


@pytest.fixture
def other_member():
    return User(id="u-other", name="Olu", email="olu@example.com", role="Member")
