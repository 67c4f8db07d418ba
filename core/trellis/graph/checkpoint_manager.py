"""
Checkpoint Manager - Decides when to checkpoint and rebuilds runs from them.

A checkpoint is taken at a step boundary, after a node's output has been
written and the next node resolved, so resuming continues at ``next_node``
with exactly the state the uninterrupted run would have seen there.

Checkpoint writes are best effort: a storage failure is logged and the
execution carries on.
"""

import logging
from typing import Any

from trellis.graph.checkpoint_config import DEFAULT_CHECKPOINT_CONFIG, CheckpointConfig
from trellis.graph.context import ExecutionContext, ExecutionStatus
from trellis.graph.state import State
from trellis.runtime.event_bus import EventBus
from trellis.schemas.checkpoint import Checkpoint
from trellis.storage.checkpoint_store import CheckpointStorage

logger = logging.getLogger(__name__)


class CheckpointManager:
    """
    Serializes execution position + state into a CheckpointStorage.

    Example:
        manager = CheckpointManager(FileCheckpointStore("./checkpoints"))
        executor = GraphExecutor(checkpoint_manager=manager)
        result = await executor.execute(graph, {"n": 1}, execution_id="run-1")
        ...
        result = await executor.resume(graph, "run-1")
    """

    def __init__(
        self,
        storage: CheckpointStorage,
        config: CheckpointConfig | None = None,
        event_bus: EventBus | None = None,
    ):
        self.storage = storage
        self.config = config or DEFAULT_CHECKPOINT_CONFIG
        self.event_bus = event_bus
        self._saved_count = 0

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    async def maybe_checkpoint(
        self,
        context: ExecutionContext,
        state: State,
        next_node: str | None,
    ) -> Checkpoint | None:
        """Save a step checkpoint when the completed step lands on the interval."""
        if not self.config.should_checkpoint_step(context.step):
            return None
        return await self.save(context, state, next_node, checkpoint_type="step")

    async def save(
        self,
        context: ExecutionContext,
        state: State,
        next_node: str | None,
        checkpoint_type: str = "forced",
        error: dict[str, Any] | None = None,
        termination: str | None = None,
        pending_fork: str | None = None,
    ) -> Checkpoint | None:
        """
        Save a checkpoint regardless of the interval.

        Returns:
            The saved Checkpoint, or None when disabled or the write failed
        """
        if not self.config.enabled:
            return None

        checkpoint = Checkpoint.create(
            checkpoint_type=checkpoint_type,
            execution_id=context.execution_id,
            graph_id=context.graph_id,
            step=context.step,
            current_node=context.current_node,
            next_node=next_node,
            execution_path=context.path,
            state=state.snapshot(),
            status=context.status.value,
            node_visit_counts=context.node_visit_counts,
            retry_counts=context.retry_counts,
            termination=termination,
            error=error,
            pending_fork=pending_fork,
        )

        try:
            blob = checkpoint.model_dump_json().encode("utf-8")
            await self.storage.save(context.execution_id, blob)
        except Exception as e:
            # Best effort: never fail the execution over a checkpoint
            logger.warning(
                f"⚠ Failed to save checkpoint {checkpoint.checkpoint_id} "
                f"for {context.execution_id}: {e}"
            )
            return None

        self._saved_count += 1
        logger.debug(f"      💾 Checkpoint {checkpoint.checkpoint_id} (next: {next_node})")

        if self.event_bus:
            await self.event_bus.emit_checkpoint_saved(
                execution_id=context.execution_id,
                graph_id=context.graph_id,
                checkpoint_id=checkpoint.checkpoint_id,
                checkpoint_type=checkpoint_type,
                step=context.step,
                next_node=next_node,
            )

        if self.config.should_prune_checkpoints(self._saved_count):
            await self._prune(context.execution_id)

        return checkpoint

    async def _prune(self, execution_id: str) -> None:
        prune = getattr(self.storage, "prune_checkpoints", None)
        if prune is None:
            return
        try:
            await prune(execution_id, max_age_days=self.config.max_age_days)
        except OSError as e:
            logger.warning(f"⚠ Checkpoint pruning failed for {execution_id}: {e}")

    async def load_latest(self, execution_id: str) -> Checkpoint | None:
        """Load and parse the most recent checkpoint (None if absent or unreadable)."""
        try:
            blob = await self.storage.load_latest(execution_id)
        except OSError as e:
            logger.error(f"Failed to read checkpoint for {execution_id}: {e}")
            return None
        if blob is None:
            return None
        try:
            return Checkpoint.model_validate_json(blob)
        except ValueError as e:
            logger.error(f"Corrupt checkpoint for {execution_id}: {e}")
            return None

    async def resume(
        self, execution_id: str
    ) -> tuple[ExecutionContext, State, Checkpoint] | None:
        """
        Rebuild the execution context and state from the latest checkpoint.

        The returned context is NOT_STARTED (ready to run again) unless the
        checkpoint is final: recorded at completion, or with nowhere left to
        go. Cancelled and failed executions resume at ``next_node``, the node
        that was next (cancel) or the node that failed (failure).
        """
        checkpoint = await self.load_latest(execution_id)
        if checkpoint is None:
            return None

        status = ExecutionStatus(checkpoint.status)
        final = status == ExecutionStatus.COMPLETED or (
            status.is_terminal and checkpoint.next_node is None
        )
        context = ExecutionContext(
            execution_id=checkpoint.execution_id,
            graph_id=checkpoint.graph_id,
            current_node=checkpoint.current_node,
            path=list(checkpoint.execution_path),
            step=checkpoint.step,
            status=status if final else ExecutionStatus.NOT_STARTED,
            node_visit_counts=dict(checkpoint.node_visit_counts),
            retry_counts=dict(checkpoint.retry_counts),
            resumed_from=checkpoint.checkpoint_id,
        )
        state = State.from_snapshot(checkpoint.state)

        logger.info(
            f"↻ Restored {execution_id} from {checkpoint.checkpoint_id} "
            f"(step {checkpoint.step}, next: {checkpoint.next_node})"
        )
        return context, state, checkpoint
