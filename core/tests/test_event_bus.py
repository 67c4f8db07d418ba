"""
Tests for the EventBus: subscriptions, sinks, bounded streams and the
events an execution publishes.
"""

import asyncio
import time

import pytest

from trellis.builder.workflow import GraphBuilder
from trellis.graph.context import CancellationToken
from trellis.graph.errors import PermanentFailure
from trellis.runtime.event_bus import EventBus, EventStream, EventType, GraphEvent


def _event(event_type: EventType = EventType.NODE_STARTED, **kwargs) -> GraphEvent:
    kwargs.setdefault("execution_id", "exec-1")
    return GraphEvent(type=event_type, **kwargs)


def _two_step(**node_kwargs) -> GraphBuilder:
    builder = GraphBuilder("two-step")
    builder.add_node("a", lambda s: {"a": 1}, **node_kwargs)
    builder.add_node("b", lambda s: {"b": 2})
    builder.add_edge("a", "b")
    return builder


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_handler_receives_matching_events(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event)

        bus.subscribe([EventType.NODE_STARTED], handler)
        await bus.publish(_event(EventType.NODE_STARTED, node_id="a"))
        await bus.publish(_event(EventType.NODE_COMPLETED, node_id="a"))
        await bus.flush()

        assert [e.type for e in received] == [EventType.NODE_STARTED]

    @pytest.mark.asyncio
    async def test_filters_by_execution_and_node(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append((event.execution_id, event.node_id))

        bus.subscribe([EventType.NODE_STARTED], handler, filter_execution="exec-1", filter_node="a")
        await bus.publish(_event(node_id="a"))
        await bus.publish(_event(node_id="b"))
        await bus.publish(_event(execution_id="exec-2", node_id="a"))
        await bus.flush()

        assert received == [("exec-1", "a")]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event)

        sub_id = bus.subscribe([EventType.NODE_STARTED], handler)
        assert bus.unsubscribe(sub_id)
        assert not bus.unsubscribe(sub_id)

        await bus.publish(_event())
        assert received == []

    @pytest.mark.asyncio
    async def test_handler_errors_are_isolated(self):
        bus = EventBus()
        received = []

        async def broken(event):
            raise RuntimeError("handler bug")

        async def healthy(event):
            received.append(event)

        bus.subscribe([EventType.NODE_STARTED], broken)
        bus.subscribe([EventType.NODE_STARTED], healthy)

        await bus.publish(_event())
        await bus.flush()

        assert len(received) == 1
        assert bus.get_stats()["handler_errors"] == 1

    @pytest.mark.asyncio
    async def test_wait_for(self):
        bus = EventBus()

        async def publish_later():
            await asyncio.sleep(0.01)
            await bus.publish(_event(EventType.EXECUTION_COMPLETED))

        task = asyncio.create_task(publish_later())
        event = await bus.wait_for(EventType.EXECUTION_COMPLETED, timeout=1.0)
        await task

        assert event is not None
        assert event.type == EventType.EXECUTION_COMPLETED
        assert bus.get_stats()["subscriptions"] == 0

    @pytest.mark.asyncio
    async def test_wait_for_timeout(self):
        bus = EventBus()
        assert await bus.wait_for(EventType.EXECUTION_FAILED, timeout=0.01) is None


class TestSinks:
    @pytest.mark.asyncio
    async def test_sync_and_async_sinks_receive_every_event(self):
        class ListSink:
            def __init__(self):
                self.events = []

            def on_event(self, event):
                self.events.append(event.type)

        class AsyncSink:
            def __init__(self):
                self.events = []

            async def on_event(self, event):
                self.events.append(event.type)

        bus = EventBus()
        sync_sink, async_sink = ListSink(), AsyncSink()
        bus.add_sink(sync_sink)
        bus.add_sink(async_sink)

        await bus.publish(_event(EventType.NODE_STARTED))
        await bus.publish(_event(EventType.EDGE_TRAVERSED))
        await bus.flush()

        expected = [EventType.NODE_STARTED, EventType.EDGE_TRAVERSED]
        assert sync_sink.events == expected
        assert async_sink.events == expected

        assert bus.remove_sink(sync_sink)
        assert not bus.remove_sink(sync_sink)

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_break_execution(self):
        class BrokenSink:
            def on_event(self, event):
                raise ValueError("sink bug")

        bus = EventBus()
        bus.add_sink(BrokenSink())
        builder = _two_step()

        result = await builder.executor(event_bus=bus).execute(builder.build(), {})
        await bus.flush()

        assert result.success
        assert bus.get_stats()["handler_errors"] > 0

    @pytest.mark.asyncio
    async def test_slow_sink_does_not_hold_up_execution(self):
        class SlowSink:
            def __init__(self):
                self.events = []

            async def on_event(self, event):
                await asyncio.sleep(0.05)
                self.events.append(event.type)

        bus = EventBus()
        sink = SlowSink()
        bus.add_sink(sink)
        builder = _two_step()

        start = time.perf_counter()
        result = await builder.executor(event_bus=bus).execute(builder.build(), {})
        elapsed = time.perf_counter() - start

        assert result.success
        assert elapsed < 0.1

        await bus.flush()
        published = [e.type for e in reversed(bus.get_history(limit=1000))]
        assert sink.events == published

    @pytest.mark.asyncio
    async def test_lagging_sink_gets_dropped_marker(self):
        received = []

        class RecordingSink:
            def on_event(self, event):
                received.append(event)

        bus = EventBus()
        bus.add_sink(RecordingSink(), buffer_size=2)

        for i in range(5):
            await bus.publish(_event(node_id=f"n{i}"))
        await bus.flush()

        assert received[0].type == EventType.DROPPED
        assert received[0].data == {"dropped": 3}
        assert [e.node_id for e in received[1:]] == ["n3", "n4"]
        assert bus.get_stats()["dropped_events"] == 3

    @pytest.mark.asyncio
    async def test_slow_handler_falls_behind_without_blocking_publish(self, caplog):
        handled = []

        async def slow(event):
            await asyncio.sleep(0.05)
            handled.append(event.node_id)

        bus = EventBus()
        bus.subscribe([EventType.NODE_STARTED], slow, buffer_size=1)

        for i in range(3):
            await bus.publish(_event(node_id=f"n{i}"))
        await bus.flush()

        assert handled == ["n2"]
        assert "2 events dropped" in caplog.text


class TestStreams:
    @pytest.mark.asyncio
    async def test_overflow_drops_oldest_and_reports_marker(self):
        bus = EventBus()
        stream = bus.stream(buffer_size=3)

        for i in range(5):
            await bus.publish(_event(node_id=f"n{i}"))

        events = stream.drain()

        assert events[0].type == EventType.DROPPED
        assert events[0].data == {"dropped": 2}
        assert [e.node_id for e in events[1:]] == ["n2", "n3", "n4"]
        assert stream.total_dropped == 2
        assert stream.drain() == []

    @pytest.mark.asyncio
    async def test_marker_reports_drops_since_last_read(self):
        bus = EventBus()
        stream = bus.stream(buffer_size=1)

        await bus.publish(_event(node_id="first"))
        await bus.publish(_event(node_id="second"))
        assert [e.type for e in stream.drain()] == [EventType.DROPPED, EventType.NODE_STARTED]

        await bus.publish(_event(node_id="third"))
        assert [e.node_id for e in stream.drain()] == ["third"]
        assert stream.total_dropped == 1

    @pytest.mark.asyncio
    async def test_stream_filters(self):
        bus = EventBus()
        stream = bus.stream(event_types=[EventType.NODE_COMPLETED], filter_execution="exec-1")

        await bus.publish(_event(EventType.NODE_STARTED))
        await bus.publish(_event(EventType.NODE_COMPLETED))
        await bus.publish(_event(EventType.NODE_COMPLETED, execution_id="exec-2"))

        events = stream.drain()
        assert len(events) == 1
        assert events[0].execution_id == "exec-1"

    @pytest.mark.asyncio
    async def test_iteration_ends_after_close_and_drain(self):
        bus = EventBus()
        stream = bus.stream()
        await bus.publish(_event(node_id="a"))
        await bus.publish(_event(node_id="b"))
        stream.close()
        await bus.publish(_event(node_id="late"))

        seen = [event.node_id async for event in stream]

        assert seen == ["a", "b"]
        assert stream.closed
        assert bus.get_stats()["streams"] == 0

    @pytest.mark.asyncio
    async def test_consumer_waits_for_events(self):
        bus = EventBus()
        stream = bus.stream()
        seen = []

        async def consume():
            async for event in stream:
                seen.append(event.node_id)

        consumer = asyncio.create_task(consume())
        await bus.publish(_event(node_id="a"))
        await asyncio.sleep(0)
        await bus.publish(_event(node_id="b"))
        stream.close()
        await asyncio.wait_for(consumer, timeout=1.0)

        assert seen == ["a", "b"]

    def test_buffer_size_must_be_positive(self):
        with pytest.raises(ValueError):
            EventStream(EventBus(), "stream_x", buffer_size=0)

    @pytest.mark.asyncio
    async def test_small_buffer_never_blocks_execution(self):
        bus = EventBus()
        builder = _two_step()
        stream = bus.stream(filter_execution="run-1", buffer_size=2)

        result = await builder.executor(event_bus=bus).execute(
            builder.build(), {}, execution_id="run-1"
        )
        stream.close()
        events = [event async for event in stream]

        assert result.success
        assert events[0].type == EventType.DROPPED
        assert events[-1].type == EventType.EXECUTION_COMPLETED


class TestExecutionEvents:
    @pytest.mark.asyncio
    async def test_event_sequence_for_successful_run(self):
        bus = EventBus()
        builder = _two_step()

        await builder.executor(event_bus=bus).execute(builder.build(), {}, execution_id="run-1")

        history = list(reversed(bus.get_history(execution_id="run-1")))
        assert [(e.type, e.node_id) for e in history] == [
            (EventType.EXECUTION_STARTED, None),
            (EventType.NODE_STARTED, "a"),
            (EventType.NODE_COMPLETED, "a"),
            (EventType.CONDITION_EVALUATED, "a"),
            (EventType.EDGE_TRAVERSED, "a"),
            (EventType.NODE_STARTED, "b"),
            (EventType.NODE_COMPLETED, "b"),
            (EventType.EXECUTION_COMPLETED, None),
        ]
        assert all(e.graph_id == "two-step" for e in history)
        completed = history[-1]
        assert completed.data["path"] == ["a", "b"]
        assert completed.data["termination"] == "terminal"

    @pytest.mark.asyncio
    async def test_failure_event_carries_structured_error(self):
        def boom(state):
            raise PermanentFailure("nope")

        bus = EventBus()
        builder = GraphBuilder("failing")
        builder.add_node("boom", boom)

        await builder.executor(event_bus=bus).execute(builder.build(), {})

        failed = bus.get_history(event_type=EventType.EXECUTION_FAILED)[0]
        assert failed.node_id == "boom"
        assert failed.data["error"]["kind"] == "permanent"
        assert failed.data["error"]["message"] == "nope"

    @pytest.mark.asyncio
    async def test_cancel_event(self):
        token = CancellationToken()
        bus = EventBus()
        builder = GraphBuilder("cancel")
        builder.add_node("a", lambda s: token.cancel("stop please"))
        builder.add_node("b", lambda s: None)
        builder.add_edge("a", "b")

        await builder.executor(event_bus=bus).execute(builder.build(), {}, cancellation=token)

        cancelled = bus.get_history(event_type=EventType.EXECUTION_CANCELLED)[0]
        assert cancelled.data["reason"] == "stop please"
        assert cancelled.node_id == "b"

    def test_event_to_dict(self):
        event = _event(EventType.NODE_RETRY, node_id="a", data={"retry_count": 1})
        data = event.to_dict()
        assert data["type"] == "node_retry"
        assert data["node_id"] == "a"
        assert data["data"] == {"retry_count": 1}
        assert "timestamp" in data

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            await bus.publish(_event(node_id=f"n{i}"))

        history = bus.get_history()
        assert [e.node_id for e in history] == ["n4", "n3", "n2"]
        assert bus.get_stats()["events_by_type"] == {"node_started": 3}
