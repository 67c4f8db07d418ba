"""
Tests for retry with exponential backoff and per-node timeouts.

Only TransientFailure (and timeouts flagged transient) are retried; retries
are counted per node and never advance the step counter.
"""

import asyncio
from unittest.mock import AsyncMock, call

import pytest

from trellis.builder.workflow import GraphBuilder
from trellis.config import ExecutorConfig
from trellis.graph.context import ExecutionStatus
from trellis.graph.errors import ErrorKind, PermanentFailure, TransientFailure
from trellis.graph.node import NodeProtocol, NodeResult
from trellis.graph.state import State
from trellis.runtime.event_bus import EventBus, EventType


class FlakyNode(NodeProtocol):
    """Fails transiently ``failures`` times, then succeeds."""

    def __init__(self, failures: int):
        self.failures = failures
        self.attempt_count = 0

    async def execute(self, state: State) -> NodeResult:
        self.attempt_count += 1
        if self.attempt_count <= self.failures:
            raise TransientFailure(f"rate limited (attempt {self.attempt_count})")
        return NodeResult(output={"attempts": self.attempt_count})


class BrokenNode(NodeProtocol):
    def __init__(self):
        self.attempt_count = 0

    async def execute(self, state: State) -> NodeResult:
        self.attempt_count += 1
        raise PermanentFailure("schema mismatch")


class HangingNode(NodeProtocol):
    """Never finishes on its own."""

    def __init__(self):
        self.attempt_count = 0

    async def execute(self, state: State) -> NodeResult:
        self.attempt_count += 1
        await asyncio.Event().wait()
        return NodeResult()


@pytest.fixture(autouse=True)
def fast_sleep(monkeypatch):
    """Mock asyncio.sleep to avoid real delays from exponential backoff."""
    mock = AsyncMock()
    monkeypatch.setattr("asyncio.sleep", mock)
    return mock


def _single(node: NodeProtocol, **node_kwargs) -> GraphBuilder:
    builder = GraphBuilder("retry-test")
    builder.add_node("work", node, **node_kwargs)
    return builder


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failure_retried_until_success(self):
        node = FlakyNode(failures=2)
        builder = _single(node, max_retries=3)

        result = await builder.executor().execute(builder.build(), {})

        assert result.success
        assert node.attempt_count == 3
        assert result.output == {"attempts": 3}
        assert result.retry_details == {"work": 2}
        assert result.total_retries == 2
        assert result.steps_executed == 1
        assert result.path == ["work"]

    @pytest.mark.asyncio
    async def test_backoff_doubles_between_attempts(self, fast_sleep):
        builder = _single(FlakyNode(failures=3), max_retries=3)
        config = ExecutorConfig(retry_backoff_seconds=1.0, retry_backoff_max=30.0)

        result = await builder.executor(config=config).execute(builder.build(), {})

        assert result.success
        assert fast_sleep.await_args_list == [call(1.0), call(2.0), call(4.0)]

    @pytest.mark.asyncio
    async def test_zero_backoff_does_not_sleep(self, fast_sleep, fast_config):
        builder = _single(FlakyNode(failures=1), max_retries=1)

        result = await builder.executor(config=fast_config).execute(builder.build(), {})

        assert result.success
        fast_sleep.assert_not_awaited()

    def test_backoff_delay_is_capped(self):
        config = ExecutorConfig(retry_backoff_seconds=1.0, retry_backoff_max=3.0)
        assert config.backoff_delay(1) == 1.0
        assert config.backoff_delay(2) == 2.0
        assert config.backoff_delay(5) == 3.0
        assert ExecutorConfig(retry_backoff_seconds=0).backoff_delay(3) == 0.0

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_with_transient_kind(self, fast_config):
        node = FlakyNode(failures=10)
        builder = _single(node, max_retries=2)

        result = await builder.executor(config=fast_config).execute(builder.build(), {})

        assert result.status == ExecutionStatus.FAILED
        assert result.error.kind == ErrorKind.TRANSIENT
        assert result.error.attempts == 3
        assert node.attempt_count == 3

    @pytest.mark.asyncio
    async def test_zero_max_retries_means_single_attempt(self, fast_config):
        node = FlakyNode(failures=1)
        builder = _single(node, max_retries=0)

        result = await builder.executor(config=fast_config).execute(builder.build(), {})

        assert not result.success
        assert node.attempt_count == 1

    @pytest.mark.asyncio
    async def test_executor_default_max_retries_applies(self):
        node = FlakyNode(failures=10)
        builder = _single(node)
        config = ExecutorConfig(max_retries=1, retry_backoff_seconds=0)

        await builder.executor(config=config).execute(builder.build(), {})

        assert node.attempt_count == 2

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, fast_config):
        node = BrokenNode()
        builder = _single(node, max_retries=5)

        result = await builder.executor(config=fast_config).execute(builder.build(), {})

        assert node.attempt_count == 1
        assert result.error.kind == ErrorKind.PERMANENT
        assert result.total_retries == 0

    @pytest.mark.asyncio
    async def test_retry_events(self, fast_config):
        bus = EventBus()
        builder = _single(FlakyNode(failures=2), max_retries=3)

        await builder.executor(config=fast_config, event_bus=bus).execute(builder.build(), {})

        retries = bus.get_history(event_type=EventType.NODE_RETRY)
        assert sorted(e.data["retry_count"] for e in retries) == [1, 2]
        assert all(e.node_id == "work" for e in retries)
        started = bus.get_history(event_type=EventType.NODE_STARTED)
        assert sorted(e.data["attempt"] for e in started) == [1, 2, 3]
        assert {e.data["step"] for e in started} == {1}


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_timeout_is_transient_by_default(self, fast_config):
        node = HangingNode()
        builder = _single(node, timeout_seconds=0.01, max_retries=1)

        result = await builder.executor(config=fast_config).execute(builder.build(), {})

        assert result.status == ExecutionStatus.FAILED
        assert result.error.kind == ErrorKind.TRANSIENT
        assert "timed out" in result.error.message
        assert node.attempt_count == 2

    @pytest.mark.asyncio
    async def test_permanent_timeout_not_retried(self, fast_config):
        node = HangingNode()
        builder = _single(node, timeout_seconds=0.01, max_retries=3, timeout_is_transient=False)

        result = await builder.executor(config=fast_config).execute(builder.build(), {})

        assert result.error.kind == ErrorKind.PERMANENT
        assert node.attempt_count == 1

    @pytest.mark.asyncio
    async def test_default_node_timeout_from_config(self):
        node = HangingNode()
        builder = _single(node, max_retries=0)
        config = ExecutorConfig(default_node_timeout=0.01, retry_backoff_seconds=0)

        result = await builder.executor(config=config).execute(builder.build(), {})

        assert result.error.kind == ErrorKind.TRANSIENT
        assert "0.01s" in result.error.message

    @pytest.mark.asyncio
    async def test_timeout_routes_to_error_edge(self, fast_config):
        builder = GraphBuilder("timeout-route")
        builder.add_node("work", HangingNode(), timeout_seconds=0.01, max_retries=0)
        builder.add_node("fallback", lambda s: {"used_fallback": True})
        builder.add_error_edge("work", "fallback")

        result = await builder.executor(config=fast_config).execute(builder.build(), {})

        assert result.success
        assert result.output["used_fallback"] is True
        assert result.node_errors[0].kind == ErrorKind.TRANSIENT
