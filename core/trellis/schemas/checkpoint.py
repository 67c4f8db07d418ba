"""
Checkpoint models - the persisted position and state of a graph execution.

A Checkpoint is written at step boundaries (and on failure, cancellation
and completion); the per-execution CheckpointIndex lists them by step.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from trellis.graph.state import StateSnapshot


class Checkpoint(BaseModel):
    """
    Single checkpoint in an execution timeline.

    ``next_node`` is where traversal continues on resume; it is None when the
    execution had already reached a terminal status.
    """

    # Identity
    checkpoint_id: str  # Format: cp_{step:06d}_{type}
    checkpoint_type: str  # "step" | "failure" | "cancel" | "completion" | "forced"
    execution_id: str
    graph_id: str = ""

    # Timestamps
    created_at: str  # ISO 8601, local time

    # Execution position
    step: int = 0
    current_node: str | None = None  # Last node that completed
    next_node: str | None = None
    execution_path: list[str] = Field(default_factory=list)
    status: str = "running"

    # State snapshot
    state: StateSnapshot

    # Bookkeeping for resume
    node_visit_counts: dict[str, int] = Field(default_factory=dict)
    retry_counts: dict[str, int] = Field(default_factory=dict)
    termination: str | None = None
    error: dict[str, Any] | None = None
    pending_fork: str | None = None  # Parallel group at next_node to fan out again

    description: str = ""

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        checkpoint_type: str,
        execution_id: str,
        step: int,
        current_node: str | None,
        execution_path: list[str],
        state: StateSnapshot,
        next_node: str | None = None,
        graph_id: str = "",
        status: str = "running",
        node_visit_counts: dict[str, int] | None = None,
        retry_counts: dict[str, int] | None = None,
        termination: str | None = None,
        error: dict[str, Any] | None = None,
        pending_fork: str | None = None,
        description: str = "",
    ) -> "Checkpoint":
        """
        Build a checkpoint whose ID sorts by step: ``cp_{step:06d}_{type}``.

        Args:
            checkpoint_type: Why the checkpoint was taken
            execution_id: Execution this checkpoint belongs to
            step: Step counter at checkpoint time
            current_node: Last node that completed
            execution_path: Node IDs executed so far
            state: Snapshot of the execution state
            next_node: Node to continue from on resume
            status: Execution status at checkpoint time
            error: Structured error for failure checkpoints
            pending_fork: Parallel group whose fan-out at next_node was interrupted

        Returns:
            New Checkpoint instance
        """
        checkpoint_id = f"cp_{step:06d}_{checkpoint_type}"

        if not description:
            where = current_node or "start"
            description = f"{checkpoint_type.replace('_', ' ').title()} after {where}"

        return cls(
            checkpoint_id=checkpoint_id,
            checkpoint_type=checkpoint_type,
            execution_id=execution_id,
            graph_id=graph_id,
            created_at=datetime.now().isoformat(),
            step=step,
            current_node=current_node,
            next_node=next_node,
            execution_path=list(execution_path),
            status=status,
            state=state,
            node_visit_counts=dict(node_visit_counts or {}),
            retry_counts=dict(retry_counts or {}),
            termination=termination,
            error=error,
            pending_fork=pending_fork,
            description=description,
        )


class CheckpointSummary(BaseModel):
    """
    Index entry for one checkpoint (everything except the state snapshot).

    """

    checkpoint_id: str
    checkpoint_type: str
    created_at: str
    step: int = 0
    current_node: str | None = None
    next_node: str | None = None
    status: str = "running"
    description: str = ""

    model_config = {"extra": "allow"}

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "CheckpointSummary":
        """Strip a checkpoint down to its index entry."""
        return cls(
            checkpoint_id=checkpoint.checkpoint_id,
            checkpoint_type=checkpoint.checkpoint_type,
            created_at=checkpoint.created_at,
            step=checkpoint.step,
            current_node=checkpoint.current_node,
            next_node=checkpoint.next_node,
            status=checkpoint.status,
            description=checkpoint.description,
        )


class CheckpointIndex(BaseModel):
    """
    Manifest of all checkpoints for an execution.

    Stored as index.json beside the checkpoint files so listing and
    "latest" lookups never parse a state snapshot.
    """

    execution_id: str
    checkpoints: list[CheckpointSummary] = Field(default_factory=list)
    latest_checkpoint_id: str | None = None
    total_checkpoints: int = 0

    model_config = {"extra": "allow"}

    def add_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Add a checkpoint to the index, replacing one with the same ID."""
        summary = CheckpointSummary.from_checkpoint(checkpoint)
        self.checkpoints = [
            cp for cp in self.checkpoints if cp.checkpoint_id != checkpoint.checkpoint_id
        ]
        self.checkpoints.append(summary)
        self.latest_checkpoint_id = checkpoint.checkpoint_id
        self.total_checkpoints = len(self.checkpoints)

    def get_checkpoint_summary(self, checkpoint_id: str) -> CheckpointSummary | None:
        """Index entry for ``checkpoint_id``, or None."""
        for summary in self.checkpoints:
            if summary.checkpoint_id == checkpoint_id:
                return summary
        return None

    def filter_by_type(self, checkpoint_type: str) -> list[CheckpointSummary]:
        """Entries of one checkpoint type, oldest first."""
        return [cp for cp in self.checkpoints if cp.checkpoint_type == checkpoint_type]

    def filter_by_node(self, node_id: str) -> list[CheckpointSummary]:
        """Entries taken right after ``node_id`` completed."""
        return [cp for cp in self.checkpoints if cp.current_node == node_id]
