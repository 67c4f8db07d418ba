"""Shared fixtures for the trellis test suite."""

import pytest

from trellis.config import ExecutorConfig
from trellis.observability import clear_trace_context
from trellis.runtime.event_bus import EventBus
from trellis.storage.checkpoint_store import InMemoryCheckpointStore


@pytest.fixture(autouse=True)
def _reset_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture
def fast_config():
    """Executor config without backoff delays."""
    return ExecutorConfig(max_steps=50, retry_backoff_seconds=0)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def memory_store():
    return InMemoryCheckpointStore()
