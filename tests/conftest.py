"""Pytest fixtures for the PimPoodle suite."""

import pytest

from core.utils import fncSetDebug
from fakes import FakeClock, FakeMonotonic, FakePimApi, FakeTokenManager, RecordingSleep


@pytest.fixture(autouse=True)
def quiet_console():
    """Keep debug chatter out of test output."""
    fncSetDebug(False)
    yield
    fncSetDebug(False)


@pytest.fixture
def api():
    return FakePimApi()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def tokens():
    return FakeTokenManager()
