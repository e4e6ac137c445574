import pytest

from fakes import FakeClock, FakeExecutor, FakeExplorerClient
from paywatch.store import MemoryOrderStore


@pytest.fixture
def store():
    return MemoryOrderStore()


@pytest.fixture
def explorer():
    return FakeExplorerClient()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def clock():
    return FakeClock()
