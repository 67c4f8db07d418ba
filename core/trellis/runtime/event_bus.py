"""
Event Bus - Pub/sub event system for execution observability.

Consumers attach to the bus in three ways:
- subscribe(): async handler callbacks filtered by type/execution/node
- add_sink(): any object with an ``on_event(event)`` method (sync or async)
- stream(): an async iterator with its own bounded buffer

Publishing never waits on a consumer. Every stream, sink and subscription
has its own bounded buffer; handlers and sinks are fed from theirs by a
consumer task, in publish order. When a buffer is full the oldest event is
dropped and the consumer receives a single ``dropped`` marker
(``data={"dropped": n}``) on its next read, so memory stays bounded.
``flush()`` waits until sinks and handlers have caught up.

Handler and sink errors are logged and never propagate into the executor.
"""

import asyncio
import inspect
import logging
from collections import Counter, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events emitted during graph execution."""

    # Execution lifecycle
    EXECUTION_STARTED = "execution_started"
    EXECUTION_RESUMED = "execution_resumed"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CANCELLED = "execution_cancelled"

    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_RETRY = "node_retry"

    # Routing
    CONDITION_EVALUATED = "condition_evaluated"
    EDGE_TRAVERSED = "edge_traversed"

    # Parallel execution
    PARALLEL_FORKED = "parallel_forked"
    PARALLEL_JOINED = "parallel_joined"

    # Persistence
    CHECKPOINT_SAVED = "checkpoint_saved"

    # Stream overflow marker
    DROPPED = "dropped"


@dataclass
class GraphEvent:
    """An event in the execution timeline."""

    type: EventType
    execution_id: str | None = None
    graph_id: str | None = None
    node_id: str | None = None  # Which node emitted this event
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "execution_id": self.execution_id,
            "graph_id": self.graph_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[GraphEvent], Awaitable[None]]


class EventSink(Protocol):
    """Anything that wants every event, e.g. a trace recorder."""

    def on_event(self, event: GraphEvent) -> Any: ...


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_node: str | None = None  # Only receive events from this node
    filter_execution: str | None = None  # Only receive events from this execution


class EventStream:
    """
    Bounded, per-consumer event buffer usable as an async iterator.

    Example:
        stream = bus.stream(filter_execution=execution_id, buffer_size=100)
        async for event in stream:
            if event.type == EventType.DROPPED:
                print(f"missed {event.data['dropped']} events")
            ...

    Iteration ends once the stream is closed and its buffer is drained.
    """

    def __init__(
        self,
        bus: "EventBus",
        stream_id: str,
        event_types: set[EventType] | None = None,
        filter_execution: str | None = None,
        buffer_size: int = 1000,
    ):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.id = stream_id
        self.event_types = event_types
        self.filter_execution = filter_execution
        self.buffer_size = buffer_size
        self._bus = bus
        self._buffer: deque[GraphEvent] = deque()
        self._dropped = 0
        self._total_dropped = 0
        self._closed = False
        self._ready = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def total_dropped(self) -> int:
        """Events lost to overflow over the stream's lifetime."""
        return self._total_dropped

    def __len__(self) -> int:
        return len(self._buffer)

    def matches(self, event: GraphEvent) -> bool:
        if self.event_types is not None and event.type not in self.event_types:
            return False
        if self.filter_execution and self.filter_execution != event.execution_id:
            return False
        return True

    def push(self, event: GraphEvent) -> None:
        """Buffer an event, evicting the oldest one when full. Never blocks."""
        if self._closed:
            return
        if len(self._buffer) >= self.buffer_size:
            self._buffer.popleft()
            self._dropped += 1
            self._total_dropped += 1
        self._buffer.append(event)
        self._ready.set()

    def _next_ready(self) -> GraphEvent | None:
        if self._dropped:
            marker = GraphEvent(
                type=EventType.DROPPED,
                execution_id=self.filter_execution,
                data={"dropped": self._dropped},
            )
            self._dropped = 0
            return marker
        if self._buffer:
            return self._buffer.popleft()
        return None

    def drain(self) -> list[GraphEvent]:
        """Return everything currently readable without waiting."""
        events = []
        while (event := self._next_ready()) is not None:
            events.append(event)
        self._ready.clear()
        return events

    def close(self) -> None:
        """Stop receiving events; iteration ends once the buffer is drained."""
        if not self._closed:
            self._closed = True
            self._bus._remove_stream(self.id)
            self._ready.set()

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> GraphEvent:
        while True:
            event = self._next_ready()
            if event is not None:
                return event
            if self._closed:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()


class _Consumer:
    """Feeds one sink or subscription from its own EventStream."""

    def __init__(
        self,
        stream: EventStream,
        deliver: Callable[[GraphEvent], Awaitable[None]],
    ):
        self.stream = stream
        self._deliver = deliver
        self._task: asyncio.Task | None = None
        self.idle = asyncio.Event()
        self.idle.set()

    def push(self, event: GraphEvent) -> None:
        """Buffer ``event`` and make sure a task is delivering. Never blocks."""
        if self.stream.closed:
            return
        self.stream.push(event)
        self.idle.clear()
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while events := self.stream.drain():
            for event in events:
                await self._deliver(event)
        self.idle.set()

    def close(self) -> None:
        """Stop accepting events; anything already buffered is still delivered."""
        self.stream.close()


class EventBus:
    """
    Pub/sub event bus for execution events.

    Features:
    - Async event handling
    - Type-based subscriptions
    - Node/execution filtering
    - Bounded streams with overflow markers
    - Event history for debugging

    Example:
        bus = EventBus()

        async def on_failure(event: GraphEvent):
            print(f"Execution {event.execution_id} failed: {event.data['error']}")

        bus.subscribe(
            event_types=[EventType.EXECUTION_FAILED],
            handler=on_failure,
        )

        executor = GraphExecutor(event_bus=bus)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
        default_buffer_size: int = 1000,
    ):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
            default_buffer_size: Buffer size for streams that don't set one
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._sinks: dict[str, EventSink] = {}
        self._consumers: dict[str, _Consumer] = {}
        self._streams: dict[str, EventStream] = {}
        self._event_history: deque[GraphEvent] = deque(maxlen=max_history)
        self._default_buffer_size = default_buffer_size
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._handler_errors = 0

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_execution: str | None = None,
        filter_node: str | None = None,
        buffer_size: int | None = None,
    ) -> str:
        """
        Subscribe to events.

        The handler runs in its own consumer task, so a slow handler only
        falls behind (and loses the oldest events) instead of slowing the
        publisher.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when event occurs
            filter_execution: Only receive events from this execution
            filter_node: Only receive events from this node
            buffer_size: Events buffered for a slow handler (bus default when None)

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        subscription = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_node=filter_node,
            filter_execution=filter_execution,
        )

        self._subscriptions[sub_id] = subscription
        self._consumers[sub_id] = self._consumer(
            sub_id, lambda event: self._run_handler(subscription, event), buffer_size
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")

        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """
        Unsubscribe from events.

        Returns:
            True if subscription was found and removed
        """
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            self._consumers.pop(subscription_id).close()
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    def add_sink(self, sink: EventSink, buffer_size: int | None = None) -> None:
        """Register an object whose ``on_event`` receives every event, in order."""
        self._subscription_counter += 1
        sink_id = f"sink_{self._subscription_counter}"
        self._sinks[sink_id] = sink
        self._consumers[sink_id] = self._consumer(
            sink_id, lambda event: self._deliver_to_sink(sink, event), buffer_size
        )

    def remove_sink(self, sink: EventSink) -> bool:
        for sink_id, registered in self._sinks.items():
            if registered == sink:
                del self._sinks[sink_id]
                self._consumers.pop(sink_id).close()
                return True
        return False

    def stream(
        self,
        event_types: list[EventType] | None = None,
        filter_execution: str | None = None,
        buffer_size: int | None = None,
    ) -> EventStream:
        """Open a bounded event stream. Close it when done."""
        self._subscription_counter += 1
        stream_id = f"stream_{self._subscription_counter}"
        stream = EventStream(
            bus=self,
            stream_id=stream_id,
            event_types=set(event_types) if event_types is not None else None,
            filter_execution=filter_execution,
            buffer_size=buffer_size or self._default_buffer_size,
        )
        self._streams[stream_id] = stream
        return stream

    def _remove_stream(self, stream_id: str) -> None:
        self._streams.pop(stream_id, None)

    def _consumer(
        self,
        consumer_id: str,
        deliver: Callable[[GraphEvent], Awaitable[None]],
        buffer_size: int | None,
    ) -> _Consumer:
        stream = EventStream(
            bus=self,
            stream_id=consumer_id,
            buffer_size=buffer_size or self._default_buffer_size,
        )
        return _Consumer(stream, deliver)

    async def publish(self, event: GraphEvent) -> None:
        """
        Record ``event`` and hand it to every matching stream, sink and subscriber.

        Only buffers; handlers and sinks run in their consumer tasks.
        """
        self._event_history.append(event)

        for stream in list(self._streams.values()):
            if stream.matches(event):
                stream.push(event)

        for sink_id in list(self._sinks):
            self._consumers[sink_id].push(event)

        for subscription in list(self._subscriptions.values()):
            if self._matches(subscription, event):
                self._consumers[subscription.id].push(event)

    async def flush(self) -> None:
        """
        Wait until sinks and handlers have processed everything published so far.

        Must not be awaited from inside a handler or sink.
        """
        while busy := [c for c in self._consumers.values() if not c.idle.is_set()]:
            await asyncio.gather(*(c.idle.wait() for c in busy))

    def _matches(self, subscription: Subscription, event: GraphEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        if subscription.filter_execution and subscription.filter_execution != event.execution_id:
            return False
        return True

    async def _deliver_to_sink(self, sink: EventSink, event: GraphEvent) -> None:
        try:
            returned = sink.on_event(event)
            if inspect.isawaitable(returned):
                await returned
        except Exception as e:
            self._handler_errors += 1
            logger.error(f"Sink error for {event.type}: {e}")

    async def _run_handler(self, subscription: Subscription, event: GraphEvent) -> None:
        """Call one handler, at most max_concurrent_handlers at a time across the bus."""
        if event.type == EventType.DROPPED and EventType.DROPPED not in subscription.event_types:
            logger.warning(
                f"Subscription {subscription.id} fell behind; "
                f"{event.data['dropped']} events dropped"
            )
            return
        async with self._semaphore:
            try:
                await subscription.handler(event)
            except Exception as e:
                self._handler_errors += 1
                logger.error(f"Handler error for {event.type}: {e}")

    # === CONVENIENCE PUBLISHERS ===

    async def _emit(
        self,
        event_type: EventType,
        execution_id: str,
        graph_id: str,
        node_id: str | None = None,
        **data: Any,
    ) -> None:
        await self.publish(
            GraphEvent(
                type=event_type,
                execution_id=execution_id,
                graph_id=graph_id,
                node_id=node_id,
                data=data,
            )
        )

    async def emit_execution_started(
        self,
        execution_id: str,
        graph_id: str,
        entry_node: str,
        input_keys: list[str] | None = None,
    ) -> None:
        await self._emit(
            EventType.EXECUTION_STARTED,
            execution_id,
            graph_id,
            entry_node=entry_node,
            input_keys=list(input_keys or []),
        )

    async def emit_execution_resumed(
        self,
        execution_id: str,
        graph_id: str,
        checkpoint_id: str,
        next_node: str | None,
        step: int,
    ) -> None:
        await self._emit(
            EventType.EXECUTION_RESUMED,
            execution_id,
            graph_id,
            next_node,
            checkpoint_id=checkpoint_id,
            next_node=next_node,
            step=step,
        )

    async def emit_node_started(
        self, execution_id: str, graph_id: str, node_id: str, step: int, attempt: int = 1
    ) -> None:
        await self._emit(
            EventType.NODE_STARTED, execution_id, graph_id, node_id, step=step, attempt=attempt
        )

    async def emit_node_completed(
        self,
        execution_id: str,
        graph_id: str,
        node_id: str,
        success: bool,
        duration_ms: int,
        error: str | None = None,
    ) -> None:
        """One attempt finished; ``error`` is set when it failed."""
        extra = {"error": error} if error is not None else {}
        await self._emit(
            EventType.NODE_COMPLETED,
            execution_id,
            graph_id,
            node_id,
            success=success,
            duration_ms=duration_ms,
            **extra,
        )

    async def emit_node_retry(
        self,
        execution_id: str,
        graph_id: str,
        node_id: str,
        retry_count: int,
        max_retries: int,
        error: str,
        delay_seconds: float,
    ) -> None:
        await self._emit(
            EventType.NODE_RETRY,
            execution_id,
            graph_id,
            node_id,
            retry_count=retry_count,
            max_retries=max_retries,
            error=error,
            delay_seconds=delay_seconds,
        )

    async def emit_condition_evaluated(
        self,
        execution_id: str,
        graph_id: str,
        node_id: str,
        edge_id: str,
        target: str,
        result: bool,
    ) -> None:
        """One edge guard evaluated while routing out of ``node_id``."""
        await self._emit(
            EventType.CONDITION_EVALUATED,
            execution_id,
            graph_id,
            node_id,
            edge_id=edge_id,
            target=target,
            result=result,
        )

    async def emit_edge_traversed(
        self,
        execution_id: str,
        graph_id: str,
        source_node: str,
        target_node: str,
        edge_id: str | None = None,
        edge_condition: str = "",
    ) -> None:
        await self._emit(
            EventType.EDGE_TRAVERSED,
            execution_id,
            graph_id,
            source_node,
            source_node=source_node,
            target_node=target_node,
            edge_id=edge_id,
            edge_condition=edge_condition,
        )

    async def emit_parallel_forked(
        self, execution_id: str, graph_id: str, node_id: str, group_id: str, targets: list[str]
    ) -> None:
        await self._emit(
            EventType.PARALLEL_FORKED,
            execution_id,
            graph_id,
            node_id,
            group_id=group_id,
            targets=list(targets),
        )

    async def emit_parallel_joined(
        self,
        execution_id: str,
        graph_id: str,
        join_node: str,
        group_id: str,
        arrived: list[str],
        discarded: list[str],
        merged_keys: list[str],
    ) -> None:
        """Branches met at ``join_node``; ``discarded`` lists late or failed ones."""
        await self._emit(
            EventType.PARALLEL_JOINED,
            execution_id,
            graph_id,
            join_node,
            group_id=group_id,
            arrived=list(arrived),
            discarded=list(discarded),
            merged_keys=list(merged_keys),
        )

    async def emit_checkpoint_saved(
        self,
        execution_id: str,
        graph_id: str,
        checkpoint_id: str,
        checkpoint_type: str,
        step: int,
        next_node: str | None,
    ) -> None:
        await self._emit(
            EventType.CHECKPOINT_SAVED,
            execution_id,
            graph_id,
            next_node,
            checkpoint_id=checkpoint_id,
            checkpoint_type=checkpoint_type,
            step=step,
        )

    async def emit_execution_completed(
        self,
        execution_id: str,
        graph_id: str,
        steps: int,
        path: list[str],
        termination: str | None = None,
    ) -> None:
        await self._emit(
            EventType.EXECUTION_COMPLETED,
            execution_id,
            graph_id,
            steps=steps,
            path=list(path),
            termination=termination,
        )

    async def emit_execution_failed(
        self,
        execution_id: str,
        graph_id: str,
        error: dict[str, Any],
        node_id: str | None = None,
    ) -> None:
        await self._emit(EventType.EXECUTION_FAILED, execution_id, graph_id, node_id, error=error)

    async def emit_execution_cancelled(
        self,
        execution_id: str,
        graph_id: str,
        reason: str | None = None,
        node_id: str | None = None,
    ) -> None:
        await self._emit(
            EventType.EXECUTION_CANCELLED, execution_id, graph_id, node_id, reason=reason
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        execution_id: str | None = None,
        node_id: str | None = None,
        limit: int = 100,
    ) -> list[GraphEvent]:
        """Recorded events matching every given filter, most recent first."""
        events = [
            e
            for e in reversed(self._event_history)
            if (event_type is None or e.type == event_type)
            and (execution_id is None or e.execution_id == execution_id)
            and (node_id is None or e.node_id == node_id)
        ]
        return events[:limit]

    def get_stats(self) -> dict:
        type_counts = Counter(event.type.value for event in self._event_history)
        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "sinks": len(self._sinks),
            "streams": len(self._streams),
            "handler_errors": self._handler_errors,
            "dropped_events": sum(c.stream.total_dropped for c in self._consumers.values()),
            "events_by_type": dict(type_counts),
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        node_id: str | None = None,
        execution_id: str | None = None,
        timeout: float | None = None,
    ) -> GraphEvent | None:
        """
        Block until a matching event is published.

        Returns:
            The first matching event, or None if ``timeout`` elapsed first
        """
        received: asyncio.Future[GraphEvent] = asyncio.get_running_loop().create_future()

        async def handler(event: GraphEvent) -> None:
            if not received.done():
                received.set_result(event)

        sub_id = self.subscribe([event_type], handler, execution_id, node_id)
        try:
            return await asyncio.wait_for(received, timeout=timeout)
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
