"""
Execution Context - Per-run bookkeeping for one traversal.

Tracks the current position, the ordered execution path, the step counter
and the status state machine:

    not_started → running → {completed, failed, cancelled}

``len(path) == step`` holds at all times; retries are not steps.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class ExecutionStatus(StrEnum):
    """Lifecycle of an execution."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


_ALLOWED_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.NOT_STARTED: {ExecutionStatus.RUNNING},
    ExecutionStatus.RUNNING: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.CANCELLED: set(),
}


class CancellationToken:
    """
    Cooperative cancellation signal.

    The executor checks it between steps and at parallel fork/join
    boundaries; a node that has started always runs to completion
    (or its timeout).
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "Cancellation requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class ExecutionContext:
    """Ephemeral bookkeeping for a single execution."""

    execution_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    graph_id: str = ""
    current_node: str | None = None
    path: list[str] = field(default_factory=list)
    step: int = 0
    status: ExecutionStatus = ExecutionStatus.NOT_STARTED
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    # Visit / retry tracking
    node_visit_counts: dict[str, int] = field(default_factory=dict)
    retry_counts: dict[str, int] = field(default_factory=dict)

    resumed_from: str | None = None  # Checkpoint ID when resumed

    def record_step(self, node_id: str) -> None:
        """Record a completed node execution."""
        self.path.append(node_id)
        self.step += 1
        self.node_visit_counts[node_id] = self.node_visit_counts.get(node_id, 0) + 1

    def record_retry(self, node_id: str) -> int:
        count = self.retry_counts.get(node_id, 0) + 1
        self.retry_counts[node_id] = count
        return count

    def transition(self, status: ExecutionStatus) -> None:
        """Move to ``status``, enforcing the lifecycle state machine."""
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise RuntimeError(f"Illegal execution transition: {self.status} → {status}")
        if status == ExecutionStatus.RUNNING and self.started_at is None:
            self.started_at = datetime.now(UTC)
        if status.is_terminal:
            self.finished_at = datetime.now(UTC)
        self.status = status

    @property
    def total_retries(self) -> int:
        return sum(self.retry_counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "graph_id": self.graph_id,
            "current_node": self.current_node,
            "path": list(self.path),
            "step": self.step,
            "status": self.status.value,
            "node_visit_counts": dict(self.node_visit_counts),
            "retry_counts": dict(self.retry_counts),
            "resumed_from": self.resumed_from,
        }
