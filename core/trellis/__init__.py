"""Trellis - graph workflow execution with checkpoints, events and subgraphs."""

from trellis.builder.workflow import GraphBuilder, ValidationResult
from trellis.graph import (
    MISSING,
    CancellationToken,
    CheckpointManager,
    ConflictPolicy,
    ExecutionResult,
    ExecutionStatus,
    GraphExecutor,
    GraphSpec,
    IsolationMode,
    NodeProtocol,
    NodeResult,
    State,
    SubgraphConfig,
)
from trellis.runtime.event_bus import EventBus, EventType, GraphEvent

__version__ = "0.1.0"

__all__ = [
    "GraphBuilder",
    "ValidationResult",
    "GraphExecutor",
    "ExecutionResult",
    "ExecutionStatus",
    "CancellationToken",
    "GraphSpec",
    "NodeProtocol",
    "NodeResult",
    "State",
    "MISSING",
    "ConflictPolicy",
    "CheckpointManager",
    "IsolationMode",
    "SubgraphConfig",
    "EventBus",
    "EventType",
    "GraphEvent",
]
