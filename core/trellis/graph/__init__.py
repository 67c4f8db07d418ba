"""Graph structures: State, Nodes, Edges, Routing and Execution."""

from trellis.graph.checkpoint_config import (
    DEFAULT_CHECKPOINT_CONFIG,
    DISABLED_CHECKPOINT_CONFIG,
    MINIMAL_CHECKPOINT_CONFIG,
    CheckpointConfig,
)
from trellis.graph.checkpoint_manager import CheckpointManager
from trellis.graph.context import CancellationToken, ExecutionContext, ExecutionStatus
from trellis.graph.edge import EdgeCondition, EdgeSpec, GraphSpec, LoopSpec, ParallelGroupSpec
from trellis.graph.errors import (
    ErrorKind,
    ExecutionError,
    GraphValidationError,
    MissingKeyError,
    NodeFailure,
    PermanentFailure,
    RunawayLoopError,
    StateMergeError,
    TransientFailure,
    TrellisError,
    ValidationFailure,
)
from trellis.graph.executor import NO_MATCH_MARKER, ExecutionResult, GraphExecutor
from trellis.graph.node import FunctionNode, NodeProtocol, NodeResult, NodeSpec
from trellis.graph.router import RouteDecision, RouteOutcome, Router
from trellis.graph.state import (
    MISSING,
    ConflictPolicy,
    Missing,
    ScopedState,
    State,
    StateSnapshot,
    combine_values,
)
from trellis.graph.subgraph import IsolationMode, SubgraphConfig, SubgraphNode

__all__ = [
    # State
    "State",
    "ScopedState",
    "StateSnapshot",
    "Missing",
    "MISSING",
    "ConflictPolicy",
    "combine_values",
    # Node
    "NodeSpec",
    "NodeResult",
    "NodeProtocol",
    "FunctionNode",
    # Edge
    "EdgeSpec",
    "EdgeCondition",
    "GraphSpec",
    "ParallelGroupSpec",
    "LoopSpec",
    # Routing
    "Router",
    "RouteDecision",
    "RouteOutcome",
    # Execution
    "GraphExecutor",
    "ExecutionResult",
    "ExecutionContext",
    "ExecutionStatus",
    "CancellationToken",
    "NO_MATCH_MARKER",
    # Errors
    "TrellisError",
    "ErrorKind",
    "ExecutionError",
    "MissingKeyError",
    "NodeFailure",
    "TransientFailure",
    "PermanentFailure",
    "ValidationFailure",
    "RunawayLoopError",
    "GraphValidationError",
    "StateMergeError",
    # Checkpoints
    "CheckpointManager",
    "CheckpointConfig",
    "DEFAULT_CHECKPOINT_CONFIG",
    "MINIMAL_CHECKPOINT_CONFIG",
    "DISABLED_CHECKPOINT_CONFIG",
    # Subgraphs
    "SubgraphNode",
    "SubgraphConfig",
    "IsolationMode",
]
