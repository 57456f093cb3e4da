"""
Pytest fixtures for engine unit tests.
"""
import pytest

from fakes import FakeCache, RecordingEngine


@pytest.fixture
def fake_cache():
    return FakeCache()


@pytest.fixture
def recording_engine():
    return RecordingEngine()
