"""
Graph Executor - Runs workflow graphs.

The executor:
1. Validates the GraphSpec against its node registry
2. Wraps the caller's input in a State (never copied)
3. Executes nodes, writes their output, and routes along edges
4. Forks parallel groups onto cloned state and merges them at the join
5. Checkpoints at step boundaries and emits events along the way
6. Returns an ExecutionResult; exceptions never escape execute()
"""

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from trellis.config import ExecutorConfig
from trellis.graph.checkpoint_manager import CheckpointManager
from trellis.graph.context import CancellationToken, ExecutionContext, ExecutionStatus
from trellis.graph.edge import GraphSpec, ParallelGroupSpec
from trellis.graph.errors import (
    ErrorKind,
    ExecutionError,
    MissingKeyError,
    NodeFailure,
    PermanentFailure,
    RunawayLoopError,
    TransientFailure,
    ValidationFailure,
)
from trellis.graph.node import (
    FunctionNode,
    NodeProtocol,
    NodeResult,
    NodeSpec,
    coerce_result,
    run_hook,
)
from trellis.graph.router import RouteDecision, RouteOutcome, Router
from trellis.graph.state import State, merge_deltas
from trellis.observability import clear_trace_context, get_trace_context, set_trace_context
from trellis.runtime.event_bus import EventBus
from trellis.schemas.checkpoint import Checkpoint

NO_MATCH_MARKER = "<no_match>"
LAST_ERROR_KEY = "__last_error__"


@dataclass
class ExecutionResult:
    """Result of executing a graph."""

    execution_id: str
    status: ExecutionStatus
    state: State
    path: list[str] = field(default_factory=list)  # Node IDs executed, in order
    steps_executed: int = 0
    termination: RouteOutcome | None = None  # How a completed run ended
    dead_end_node: str | None = None  # Node whose edges all declined (no_match)
    error: ExecutionError | None = None
    node_errors: list[ExecutionError] = field(default_factory=list)  # Routed to error edges

    # Retry tracking
    total_retries: int = 0
    retry_details: dict[str, int] = field(default_factory=dict)  # {node_id: retry_count}

    # Visit tracking (for loops)
    node_visit_counts: dict[str, int] = field(default_factory=dict)

    started_at: datetime | None = None
    finished_at: datetime | None = None
    resumed_from: str | None = None  # Checkpoint ID when resumed

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    @property
    def output(self) -> dict[str, Any]:
        return self.state.to_dict()

    @property
    def duration_ms(self) -> int:
        if self.started_at is None or self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def is_no_match(self) -> bool:
        """True when the run stopped at a designed dead end."""
        return self.termination == RouteOutcome.NO_MATCH

    @property
    def marked_path(self) -> list[str]:
        """Path with a trailing marker when the run ended at a dead end."""
        if self.is_no_match:
            return [*self.path, NO_MATCH_MARKER]
        return list(self.path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "status": self.status.value,
            "path": self.marked_path,
            "steps_executed": self.steps_executed,
            "termination": self.termination.value if self.termination else None,
            "dead_end_node": self.dead_end_node,
            "error": self.error.to_dict() if self.error else None,
            "node_errors": [e.to_dict() for e in self.node_errors],
            "total_retries": self.total_retries,
            "retry_details": dict(self.retry_details),
            "node_visit_counts": dict(self.node_visit_counts),
            "duration_ms": self.duration_ms,
            "resumed_from": self.resumed_from,
            "output": self.output,
        }


@dataclass
class _StepOutcome:
    """Result of running one node (including its retries)."""

    result: NodeResult | None = None
    failure: NodeFailure | None = None
    attempts: int = 1


@dataclass
class _TraversalOutcome:
    """How a traversal (main or branch) stopped."""

    status: str  # "completed" | "failed" | "cancelled" | "arrived" | "stopped"
    node_id: str | None = None  # Node where it stopped (next node when cancelled)
    termination: RouteOutcome | None = None
    error: ExecutionError | None = None
    fork_pending: str | None = None  # Parallel group whose fan-out must be repeated


@dataclass
class _RunScope:
    """Per-traversal settings shared by the main path and its branches."""

    graph: GraphSpec
    router: Router
    max_steps: int
    deadline: float | None = None
    node_errors: list[ExecutionError] = field(default_factory=list)
    in_branch: bool = False
    stop_at: str | None = None  # Join node a branch stops at
    stop_event: asyncio.Event | None = None  # Set when a branch's result is no longer needed

    def for_branch(self, join_node: str, stop_event: asyncio.Event) -> "_RunScope":
        return _RunScope(
            graph=self.graph,
            router=self.router,
            max_steps=self.max_steps,
            deadline=self.deadline,
            in_branch=True,
            stop_at=join_node,
            stop_event=stop_event,
        )


class GraphExecutor:
    """
    Executes workflow graphs.

    Example:
        executor = GraphExecutor(event_bus=bus, checkpoint_manager=manager)
        executor.register_function("check", check_age)
        executor.register_node("score", ScoreNode())

        result = await executor.execute(graph, {"age": 17})
        if result.success:
            print(result.path, result.output)
    """

    def __init__(
        self,
        node_registry: dict[str, NodeProtocol] | None = None,
        config: ExecutorConfig | None = None,
        event_bus: EventBus | None = None,
        checkpoint_manager: CheckpointManager | None = None,
    ):
        """
        Initialize the executor.

        Args:
            node_registry: Node implementations by node ID
            config: Step limit, timeouts and retry policy
            event_bus: Optional event bus for lifecycle events
            checkpoint_manager: Optional checkpointing at step boundaries
        """
        self.node_registry = node_registry or {}
        self.config = config or ExecutorConfig()
        self.logger = logging.getLogger(__name__)
        self._event_bus = event_bus
        self.checkpoint_manager = checkpoint_manager

        # Cancellation tokens of in-flight executions (for request_cancel)
        self._active_tokens: set[CancellationToken] = set()
        # Late parallel branches left to stop at their next step boundary
        self._detached_branches: set[asyncio.Task] = set()

    # === REGISTRY ===

    def register_node(self, node_id: str, implementation: NodeProtocol) -> None:
        """Register a custom node implementation."""
        self.node_registry[node_id] = implementation

    def register_function(self, node_id: str, func: Callable) -> None:
        """Register a function as a node."""
        self.node_registry[node_id] = FunctionNode(func)

    def request_cancel(self, reason: str = "Cancellation requested") -> None:
        """
        Request cancellation of every execution currently running on this executor.

        Cancellation is cooperative: each execution stops at its next step
        boundary; a node that has started always runs to completion.
        """
        for token in list(self._active_tokens):
            token.cancel(reason)
        self.logger.info("⏹ Cancel requested - will stop at next step boundary")

    # === ENTRY POINTS ===

    async def execute(
        self,
        graph: GraphSpec,
        initial_state: State | Mapping[str, Any] | None = None,
        execution_id: str | None = None,
        cancellation: CancellationToken | None = None,
    ) -> ExecutionResult:
        """
        Execute a graph from its entry node.

        Args:
            graph: The graph specification
            initial_state: A State (used as is) or a mapping to wrap
            execution_id: ID for events and checkpoints (generated when None)
            cancellation: Token the caller can use to cancel this execution

        Returns:
            ExecutionResult with status, final state and path
        """
        if isinstance(initial_state, State):
            state = initial_state
        else:
            state = State(initial_state or {})

        context = ExecutionContext(graph_id=graph.id)
        if execution_id:
            context.execution_id = execution_id
        if cancellation is not None:
            context.cancellation = cancellation

        errors = self.validate(graph)
        if errors:
            return self._invalid_result(context, state, errors)

        context.transition(ExecutionStatus.RUNNING)

        self.logger.info(f"🚀 Starting execution: {graph.id}")
        self.logger.info(f"   Execution ID: {context.execution_id}")
        self.logger.info(f"   Entry node: {graph.entry_node}")

        if self._event_bus:
            await self._event_bus.emit_execution_started(
                execution_id=context.execution_id,
                graph_id=graph.id,
                entry_node=graph.entry_node,
                input_keys=state.keys(),
            )

        return await self._run(graph, context, state, graph.entry_node)

    async def resume(
        self,
        graph: GraphSpec,
        execution_id: str,
        cancellation: CancellationToken | None = None,
    ) -> ExecutionResult:
        """
        Continue an execution from its latest checkpoint.

        Cancelled executions continue where they stopped. Failed executions
        re-enter at the node that failed, so a run can be resumed after the
        node is fixed. A checkpoint recorded at completion returns that result
        without running anything. Never raises; a missing checkpoint yields
        a failed result with a validation error.
        """
        context = ExecutionContext(execution_id=execution_id, graph_id=graph.id)

        if self.checkpoint_manager is None:
            return self._invalid_result(context, State(), ["No checkpoint manager configured"])

        errors = self.validate(graph)
        if errors:
            return self._invalid_result(context, State(), errors)

        restored = await self.checkpoint_manager.resume(execution_id)
        if restored is None:
            return self._invalid_result(
                context, State(), [f"No checkpoint found for execution '{execution_id}'"]
            )

        context, state, checkpoint = restored

        if context.status.is_terminal:
            self.logger.info(
                f"✓ Execution {execution_id} already {context.status.value}; "
                f"returning checkpointed result"
            )
            return self._result_from_checkpoint(context, state, checkpoint)

        next_node = checkpoint.next_node
        if next_node is None or graph.get_node(next_node) is None:
            return self._invalid_result(
                context,
                state,
                [f"Checkpoint {checkpoint.checkpoint_id} resumes at unknown node '{next_node}'"],
            )

        fork_pending = checkpoint.pending_fork is not None
        if fork_pending:
            group = graph.get_parallel_group(next_node)
            if group is None or group.id != checkpoint.pending_fork:
                return self._invalid_result(
                    context,
                    state,
                    [
                        f"Checkpoint {checkpoint.checkpoint_id} resumes parallel group "
                        f"'{checkpoint.pending_fork}', which does not fork from '{next_node}'"
                    ],
                )

        if cancellation is not None:
            context.cancellation = cancellation
        context.transition(ExecutionStatus.RUNNING)

        self.logger.info(f"🔄 Resuming {execution_id} from {checkpoint.checkpoint_id}")
        self.logger.info(f"   Step: {context.step}, next node: {next_node}")

        if self._event_bus:
            await self._event_bus.emit_execution_resumed(
                execution_id=execution_id,
                graph_id=graph.id,
                checkpoint_id=checkpoint.checkpoint_id,
                next_node=next_node,
                step=context.step,
            )

        return await self._run(graph, context, state, next_node, fork_pending)

    def validate(self, graph: GraphSpec) -> list[str]:
        """Structural validation plus a registered implementation for every node."""
        errors = graph.validate()
        for node in graph.nodes:
            if node.id not in self.node_registry:
                errors.append(f"No implementation registered for node '{node.id}'")
        return errors

    # === MAIN LOOP ===

    async def _run(
        self,
        graph: GraphSpec,
        context: ExecutionContext,
        state: State,
        start_node: str,
        fork_pending: bool = False,
    ) -> ExecutionResult:
        previous_trace = get_trace_context()
        set_trace_context(execution_id=context.execution_id, graph_id=graph.id)
        self._active_tokens.add(context.cancellation)

        deadline = None
        if self.config.execution_timeout:
            deadline = asyncio.get_running_loop().time() + self.config.execution_timeout

        scope = _RunScope(
            graph=graph,
            router=Router(graph),
            max_steps=graph.max_steps or self.config.max_steps,
            deadline=deadline,
        )

        try:
            outcome = await self._traverse(scope, context, state, start_node, fork_pending)
        except Exception as e:
            # Engine bug or hook misbehaviour outside a node step
            self.logger.exception(f"✗ Execution {context.execution_id} crashed: {e}")
            outcome = _TraversalOutcome(
                status="failed",
                node_id=None,
                error=ExecutionError(
                    kind=ErrorKind.PERMANENT,
                    message=f"{type(e).__name__}: {e}",
                    node_id=context.current_node,
                ),
            )
        finally:
            self._active_tokens.discard(context.cancellation)

        try:
            return await self._finish(scope, context, state, outcome)
        finally:
            clear_trace_context()
            if previous_trace:
                set_trace_context(**previous_trace)

    async def _traverse(
        self,
        scope: _RunScope,
        context: ExecutionContext,
        state: State,
        start_node: str,
        fork_pending: bool = False,
    ) -> _TraversalOutcome:
        """
        Walk the graph from ``start_node`` until a stop condition.

        With ``fork_pending`` the start node is a parallel source that already
        ran, and the walk begins with its fan-out.
        """
        graph = scope.graph
        current = start_node

        while True:
            if scope.stop_at is not None and current == scope.stop_at:
                return _TraversalOutcome(status="arrived", node_id=current)

            if scope.stop_event is not None and scope.stop_event.is_set():
                return _TraversalOutcome(status="stopped", node_id=current)

            if context.cancellation.cancelled:
                self.logger.info(f"⏹ Cancellation observed before {current}")
                return _TraversalOutcome(status="cancelled", node_id=current)

            if scope.deadline is not None and asyncio.get_running_loop().time() >= scope.deadline:
                return _TraversalOutcome(
                    status="failed",
                    node_id=current,
                    error=ExecutionError(
                        kind=ErrorKind.TIMEOUT,
                        message=(
                            f"Execution exceeded timeout of {self.config.execution_timeout}s"
                        ),
                        node_id=current,
                    ),
                )

            if context.step >= scope.max_steps:
                runaway = RunawayLoopError(scope.max_steps, node_id=current)
                self.logger.error(f"✗ {runaway} at {current}")
                return _TraversalOutcome(
                    status="failed",
                    node_id=current,
                    error=ExecutionError.from_failure(runaway, attempts=0),
                )

            node_spec = graph.get_node(current)
            if node_spec is None:
                return _TraversalOutcome(
                    status="failed",
                    node_id=current,
                    error=ExecutionError(
                        kind=ErrorKind.VALIDATION,
                        message=f"Node not found in graph: {current}",
                        node_id=current,
                    ),
                )

            if fork_pending:
                # The source already ran; only its fan-out is repeated
                fork_pending = False
                loop = None
            else:
                step = await self._execute_step(node_spec, context, state)
                context.current_node = current
                context.record_step(current)

                # Handle failure
                if step.failure is not None:
                    error = ExecutionError.from_failure(step.failure, attempts=step.attempts)
                    target = await self._route_failure(scope, context, state, current, error)
                    if target is None:
                        return _TraversalOutcome(status="failed", node_id=current, error=error)
                    current = target
                    continue

                # Write outputs before routing
                result = step.result
                if result.output:
                    state.update(result.output)

                loop = graph.get_loop(current)
                if loop is not None:
                    state.set(loop.counter_key, loop.iterations(state) + 1)

            group = graph.get_parallel_group(current)
            if group is not None:
                join = await self._fork_join(scope, context, state, group)
                if join.status == "cancelled":
                    return join
                if join.status == "failed":
                    target = await self._route_failure(scope, context, state, current, join.error)
                    if target is None:
                        return join
                    current = target
                    continue
                current = group.join_node
                await self._maybe_checkpoint(scope, context, state, current)
                continue

            decision = scope.router.resolve(current, state)
            await self._emit_evaluations(context, current, decision)

            if loop is not None and not (decision.routed and decision.edge.loop_back):
                # Loop finished; the next entry starts counting afresh
                state.delete(loop.counter_key)

            if decision.outcome == RouteOutcome.TERMINAL:
                self.logger.info(f"✓ Reached terminal node: {node_spec.display_name}")
                return _TraversalOutcome(
                    status="completed", node_id=current, termination=RouteOutcome.TERMINAL
                )

            if decision.outcome == RouteOutcome.NO_MATCH:
                self.logger.info(
                    f"   ⊘ No edge matched from {node_spec.display_name} (designed dead end)"
                )
                return _TraversalOutcome(
                    status="completed", node_id=current, termination=RouteOutcome.NO_MATCH
                )

            self.logger.info(f"   → Next: {decision.target} via {decision.edge.describe()}")
            if self._event_bus:
                await self._event_bus.emit_edge_traversed(
                    execution_id=context.execution_id,
                    graph_id=graph.id,
                    source_node=current,
                    target_node=decision.target,
                    edge_id=decision.edge.id,
                    edge_condition=decision.edge.condition.value,
                )

            current = decision.target
            await self._maybe_checkpoint(scope, context, state, current)

    # === NODE STEP ===

    async def _execute_step(
        self,
        node_spec: NodeSpec,
        context: ExecutionContext,
        state: State,
    ) -> _StepOutcome:
        """Run one node, retrying TransientFailure with exponential backoff."""
        impl = self.node_registry[node_spec.id]
        max_retries = (
            node_spec.max_retries if node_spec.max_retries is not None else self.config.max_retries
        )
        timeout = (
            node_spec.timeout_seconds
            if node_spec.timeout_seconds is not None
            else self.config.default_node_timeout
        )
        step_number = context.step + 1

        set_trace_context(node_id=node_spec.id, step=step_number)
        self.logger.info(
            f"▶ Step {step_number}: {node_spec.display_name}",
            extra={"event": "node_started", "node_id": node_spec.id, "step": step_number},
        )

        attempt = 0
        while True:
            attempt += 1

            if self._event_bus:
                await self._event_bus.emit_node_started(
                    execution_id=context.execution_id,
                    graph_id=context.graph_id,
                    node_id=node_spec.id,
                    step=step_number,
                    attempt=attempt,
                )

            start = time.perf_counter()
            try:
                result = await self._run_node(node_spec, impl, state, timeout)
            except NodeFailure as failure:
                if failure.node_id is None:
                    failure.node_id = node_spec.id
                duration_ms = int((time.perf_counter() - start) * 1000)

                if self._event_bus:
                    await self._event_bus.emit_node_completed(
                        execution_id=context.execution_id,
                        graph_id=context.graph_id,
                        node_id=node_spec.id,
                        success=False,
                        duration_ms=duration_ms,
                        error=failure.message,
                    )

                if failure.retryable and attempt <= max_retries:
                    context.record_retry(node_spec.id)
                    delay = self.config.backoff_delay(attempt)
                    self.logger.warning(
                        f"   ↻ Retrying {node_spec.display_name} ({attempt}/{max_retries}) "
                        f"in {delay}s: {failure.message}",
                        extra={"event": "node_retry", "node_id": node_spec.id, "attempt": attempt},
                    )
                    if self._event_bus:
                        await self._event_bus.emit_node_retry(
                            execution_id=context.execution_id,
                            graph_id=context.graph_id,
                            node_id=node_spec.id,
                            retry_count=attempt,
                            max_retries=max_retries,
                            error=failure.message,
                            delay_seconds=delay,
                        )
                    if delay > 0:
                        await asyncio.sleep(delay)
                    continue

                if failure.retryable:
                    self.logger.error(
                        f"   ✗ Max retries ({max_retries}) exceeded for "
                        f"{node_spec.display_name}: {failure.message}"
                    )
                else:
                    self.logger.error(
                        f"   ✗ {node_spec.display_name} failed ({failure.kind.value}): "
                        f"{failure.message}"
                    )
                return _StepOutcome(failure=failure, attempts=attempt)

            duration_ms = int((time.perf_counter() - start) * 1000)
            if not result.latency_ms:
                result.latency_ms = duration_ms

            self.logger.info(
                f"   ✓ {result.to_summary(node_spec)} ({duration_ms}ms)",
                extra={
                    "event": "node_completed",
                    "node_id": node_spec.id,
                    "step": step_number,
                    "duration_ms": duration_ms,
                },
            )
            if self._event_bus:
                await self._event_bus.emit_node_completed(
                    execution_id=context.execution_id,
                    graph_id=context.graph_id,
                    node_id=node_spec.id,
                    success=True,
                    duration_ms=duration_ms,
                )
            return _StepOutcome(result=result, attempts=attempt)

    async def _run_node(
        self,
        node_spec: NodeSpec,
        impl: NodeProtocol,
        state: State,
        timeout: float | None,
    ) -> NodeResult:
        """
        One attempt: contract checks, pre-hooks, body under timeout, post-hooks.

        Raises:
            NodeFailure: Every failure is normalised to one of its subclasses
        """
        missing = [key for key in node_spec.input_keys if key not in state]
        if missing:
            raise ValidationFailure(f"Missing required input keys: {missing}", node_spec.id)

        problems = impl.validate_input(state)
        if problems:
            raise ValidationFailure("; ".join(problems), node_spec.id)

        try:
            for hook in node_spec.pre_hooks:
                await run_hook(hook, state, node_spec.id)

            if timeout:
                returned = await asyncio.wait_for(impl.execute(state), timeout=timeout)
            else:
                returned = await impl.execute(state)
            result = coerce_result(returned)

            for hook in node_spec.post_hooks:
                await run_hook(hook, state, node_spec.id, result)
        except NodeFailure:
            raise
        except TimeoutError as e:
            message = f"Node '{node_spec.id}' timed out after {timeout}s"
            if node_spec.timeout_is_transient:
                raise TransientFailure(message, node_spec.id) from e
            raise PermanentFailure(message, node_spec.id) from e
        except MissingKeyError as e:
            raise ValidationFailure(str(e), node_spec.id) from e
        except Exception as e:
            raise PermanentFailure(f"{type(e).__name__}: {e}", node_spec.id) from e

        return result

    # === ROUTING ===

    async def _route_failure(
        self,
        scope: _RunScope,
        context: ExecutionContext,
        state: State,
        node_id: str,
        error: ExecutionError,
    ) -> str | None:
        """Follow a matching error edge from ``node_id``; None when there is none."""
        if not scope.graph.get_failure_edges(node_id):
            return None

        state.set(
            LAST_ERROR_KEY,
            {
                "node_id": error.node_id or node_id,
                "kind": error.kind.value,
                "message": error.message,
            },
        )
        decision = scope.router.resolve(node_id, state, failed=True)
        await self._emit_evaluations(context, node_id, decision)

        if not decision.routed:
            return None

        scope.node_errors.append(error)
        self.logger.info(f"   → Routing to failure handler: {decision.target}")
        if self._event_bus:
            await self._event_bus.emit_edge_traversed(
                execution_id=context.execution_id,
                graph_id=scope.graph.id,
                source_node=node_id,
                target_node=decision.target,
                edge_id=decision.edge.id,
                edge_condition=decision.edge.condition.value,
            )
        await self._maybe_checkpoint(scope, context, state, decision.target)
        return decision.target

    async def _emit_evaluations(
        self, context: ExecutionContext, node_id: str, decision: RouteDecision
    ) -> None:
        if not self._event_bus:
            return
        for edge, matched in decision.evaluations:
            await self._event_bus.emit_condition_evaluated(
                execution_id=context.execution_id,
                graph_id=context.graph_id,
                node_id=node_id,
                edge_id=edge.id,
                target=edge.target,
                result=matched,
            )

    # === PARALLEL FAN-OUT / JOIN ===

    async def _fork_join(
        self,
        scope: _RunScope,
        context: ExecutionContext,
        state: State,
        group: ParallelGroupSpec,
    ) -> _TraversalOutcome:
        """
        Run each target of ``group`` on its own state clone and merge at the join.

        Returns an "arrived" outcome once the deltas of the arrived branches
        have been applied to ``state``, or a failed/cancelled outcome.
        """
        if context.cancellation.cancelled:
            return _TraversalOutcome(
                status="cancelled", node_id=group.source, fork_pending=group.id
            )

        required = group.required
        self.logger.info(
            f"   ⑂ Fan-out: {len(group.targets)} branches from {group.source} "
            f"(join: {group.join_node}, quorum: {required})"
        )
        if self._event_bus:
            await self._event_bus.emit_parallel_forked(
                execution_id=context.execution_id,
                graph_id=context.graph_id,
                node_id=group.source,
                group_id=group.id,
                targets=group.targets,
            )

        stop_event = asyncio.Event()
        branch_scopes: dict[str, _RunScope] = {}
        branch_states: dict[str, State] = {}
        branch_contexts: dict[str, ExecutionContext] = {}
        tasks: dict[asyncio.Task, str] = {}
        for target in group.targets:
            branch_scopes[target] = scope.for_branch(group.join_node, stop_event)
            branch_states[target] = state.clone()
            branch_contexts[target] = ExecutionContext(
                execution_id=context.execution_id,
                graph_id=context.graph_id,
                step=context.step,
                status=ExecutionStatus.RUNNING,
                cancellation=context.cancellation,
            )
            task = asyncio.create_task(
                self._traverse(
                    branch_scopes[target], branch_contexts[target], branch_states[target], target
                )
            )
            tasks[task] = target

        outcomes: dict[str, _TraversalOutcome] = {}
        arrived: list[str] = []
        pending = set(tasks)
        timed_out = False
        loop = asyncio.get_running_loop()
        deadline = loop.time() + group.timeout_seconds if group.timeout_seconds else None

        while pending:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            done, pending = await asyncio.wait(
                pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            if not done:
                timed_out = True
                break
            for task in done:
                target = tasks[task]
                outcome = task.result()
                outcomes[target] = outcome
                if outcome.status == "arrived":
                    arrived.append(target)
                    self.logger.info(f"      ✓ Branch {target} reached {group.join_node}")
                else:
                    self.logger.warning(
                        f"      ✗ Branch {target} did not arrive ({outcome.status})"
                    )
            if len(arrived) >= required:
                break
            if len(arrived) + len(pending) < required:
                break

        # Late branches stop at their next step boundary; nodes are never killed
        stop_event.set()
        for task in pending:
            self._detached_branches.add(task)
            task.add_done_callback(self._on_detached_done)

        if context.cancellation.cancelled:
            # Nothing from this fan-out is kept; resume forks again from the source
            self.logger.info(f"⏹ Cancellation observed during fan-out from {group.source}")
            return _TraversalOutcome(
                status="cancelled", node_id=group.source, fork_pending=group.id
            )

        # Commit finished branches' bookkeeping in registration order
        for target in group.targets:
            if target in outcomes:
                self._commit_branch(context, branch_contexts[target])
                scope.node_errors.extend(branch_scopes[target].node_errors)

        discarded = [t for t in group.targets if t not in arrived]

        if timed_out and len(arrived) < required:
            message = (
                f"Parallel group '{group.id}' timed out after {group.timeout_seconds}s "
                f"with {len(arrived)}/{required} branches at '{group.join_node}'"
            )
            self.logger.error(f"   ✗ {message}")
            return _TraversalOutcome(
                status="failed",
                node_id=group.source,
                error=ExecutionError.from_failure(PermanentFailure(message, group.source)),
                fork_pending=group.id,
            )

        if len(arrived) < required:
            error = self._branch_error(group, outcomes, arrived, required)
            self.logger.error(f"   ✗ Join at {group.join_node} failed: {error.message}")
            return _TraversalOutcome(
                status="failed", node_id=group.source, error=error, fork_pending=group.id
            )

        # Merge deltas of the arrived branches in registration order
        ordered = [t for t in group.targets if t in arrived]
        merged = merge_deltas(
            [branch_states[t].delta() for t in ordered],
            group.conflict_policy,
            base=state.to_dict(),
        )
        state.update(merged)

        self.logger.info(
            f"   ⑃ Fan-in: {len(ordered)}/{len(group.targets)} branches merged at "
            f"{group.join_node} ({len(merged)} keys)"
        )
        if self._event_bus:
            await self._event_bus.emit_parallel_joined(
                execution_id=context.execution_id,
                graph_id=context.graph_id,
                join_node=group.join_node,
                group_id=group.id,
                arrived=ordered,
                discarded=discarded,
                merged_keys=list(merged),
            )

        if context.cancellation.cancelled:
            return _TraversalOutcome(status="cancelled", node_id=group.join_node)

        return _TraversalOutcome(status="arrived", node_id=group.join_node)

    def _on_detached_done(self, task: asyncio.Task) -> None:
        """Forget a late branch once it stops, logging an engine error it raised."""
        self._detached_branches.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(
                f"✗ Detached branch crashed after its join: {type(error).__name__}: {error}",
                exc_info=error,
            )

    @staticmethod
    def _commit_branch(context: ExecutionContext, branch: ExecutionContext) -> None:
        """Fold a finished branch's path, steps and counters into the parent."""
        for node_id in branch.path:
            context.record_step(node_id)
        for node_id, count in branch.retry_counts.items():
            context.retry_counts[node_id] = context.retry_counts.get(node_id, 0) + count

    @staticmethod
    def _branch_error(
        group: ParallelGroupSpec,
        outcomes: dict[str, _TraversalOutcome],
        arrived: list[str],
        required: int,
    ) -> ExecutionError:
        for target in group.targets:
            outcome = outcomes.get(target)
            if outcome is not None and outcome.error is not None:
                return outcome.error
        dead_ends = [t for t, o in outcomes.items() if o.status == "completed"]
        return ExecutionError(
            kind=ErrorKind.PERMANENT,
            message=(
                f"Parallel group '{group.id}' needs {required} branches at "
                f"'{group.join_node}', {len(arrived)} arrived (dead ends: {dead_ends})"
            ),
            node_id=group.source,
        )

    # === CHECKPOINTS / TERMINATION ===

    async def _maybe_checkpoint(
        self,
        scope: _RunScope,
        context: ExecutionContext,
        state: State,
        next_node: str,
    ) -> None:
        # Branch state is not the execution state; checkpoints wait for the join
        if self.checkpoint_manager is None or scope.in_branch:
            return
        await self.checkpoint_manager.maybe_checkpoint(context, state, next_node)

    async def _finish(
        self,
        scope: _RunScope,
        context: ExecutionContext,
        state: State,
        outcome: _TraversalOutcome,
    ) -> ExecutionResult:
        manager = self.checkpoint_manager
        termination = None
        dead_end_node = None
        error = None

        if outcome.status == "cancelled":
            context.transition(ExecutionStatus.CANCELLED)
            reason = context.cancellation.reason
            self.logger.info(f"⏹ Execution cancelled before {outcome.node_id}: {reason}")
            if manager and manager.config.checkpoint_on_cancel:
                await manager.save(
                    context,
                    state,
                    outcome.node_id,
                    checkpoint_type="cancel",
                    pending_fork=outcome.fork_pending,
                )
            if self._event_bus:
                await self._event_bus.emit_execution_cancelled(
                    execution_id=context.execution_id,
                    graph_id=context.graph_id,
                    reason=reason,
                    node_id=outcome.node_id,
                )

        elif outcome.status == "failed":
            context.transition(ExecutionStatus.FAILED)
            error = outcome.error
            self.logger.error(f"✗ Execution failed: {error}")
            if manager and manager.config.checkpoint_on_failure:
                await manager.save(
                    context,
                    state,
                    outcome.node_id,
                    checkpoint_type="failure",
                    error=error.to_dict(),
                    pending_fork=outcome.fork_pending,
                )
            if self._event_bus:
                await self._event_bus.emit_execution_failed(
                    execution_id=context.execution_id,
                    graph_id=context.graph_id,
                    error=error.to_dict(),
                    node_id=error.node_id,
                )

        else:
            context.transition(ExecutionStatus.COMPLETED)
            termination = outcome.termination
            if termination == RouteOutcome.NO_MATCH:
                dead_end_node = outcome.node_id
            self.logger.info("✓ Execution complete!")
            self.logger.info(f"   Steps: {context.step}")
            self.logger.info(f"   Path: {' → '.join(context.path)}")
            if manager and manager.config.checkpoint_on_completion:
                await manager.save(
                    context,
                    state,
                    None,
                    checkpoint_type="completion",
                    termination=termination.value if termination else None,
                )
            if self._event_bus:
                await self._event_bus.emit_execution_completed(
                    execution_id=context.execution_id,
                    graph_id=context.graph_id,
                    steps=context.step,
                    path=context.path,
                    termination=termination.value if termination else None,
                )

        return ExecutionResult(
            execution_id=context.execution_id,
            status=context.status,
            state=state,
            path=list(context.path),
            steps_executed=context.step,
            termination=termination,
            dead_end_node=dead_end_node,
            error=error,
            node_errors=list(scope.node_errors),
            total_retries=context.total_retries,
            retry_details=dict(context.retry_counts),
            node_visit_counts=dict(context.node_visit_counts),
            started_at=context.started_at,
            finished_at=context.finished_at,
            resumed_from=context.resumed_from,
        )

    def _invalid_result(
        self, context: ExecutionContext, state: State, errors: list[str]
    ) -> ExecutionResult:
        self.logger.error("❌ Graph validation failed:")
        for err in errors:
            self.logger.error(f"   • {err}")
        return ExecutionResult(
            execution_id=context.execution_id,
            status=ExecutionStatus.FAILED,
            state=state,
            path=list(context.path),
            steps_executed=context.step,
            error=ExecutionError(kind=ErrorKind.VALIDATION, message="; ".join(errors)),
            resumed_from=context.resumed_from,
        )

    @staticmethod
    def _result_from_checkpoint(
        context: ExecutionContext, state: State, checkpoint: Checkpoint
    ) -> ExecutionResult:
        error = None
        if checkpoint.error:
            error = ExecutionError(
                kind=ErrorKind(checkpoint.error["kind"]),
                message=checkpoint.error.get("message", ""),
                node_id=checkpoint.error.get("node_id"),
                attempts=checkpoint.error.get("attempts", 0),
            )
        termination = RouteOutcome(checkpoint.termination) if checkpoint.termination else None
        return ExecutionResult(
            execution_id=context.execution_id,
            status=context.status,
            state=state,
            path=list(context.path),
            steps_executed=context.step,
            termination=termination,
            dead_end_node=(
                checkpoint.current_node if termination == RouteOutcome.NO_MATCH else None
            ),
            error=error,
            total_retries=context.total_retries,
            retry_details=dict(context.retry_counts),
            node_visit_counts=dict(context.node_visit_counts),
            resumed_from=checkpoint.checkpoint_id,
        )
