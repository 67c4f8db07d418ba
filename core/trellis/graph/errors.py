"""
Error taxonomy for graph execution.

Nodes signal failure by raising one of the NodeFailure subclasses:
- TransientFailure: retryable, the executor re-invokes the node with backoff
- PermanentFailure: not retryable, routed to an error edge if one exists
- ValidationFailure: input/state contract violated, never retried

Anything else a node raises is wrapped as a PermanentFailure. The executor
never lets an exception escape; callers get an ExecutionError on the result.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Classification of an execution failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    VALIDATION = "validation"
    RUNAWAY_LOOP = "runaway_loop"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class TrellisError(Exception):
    """Base class for all engine errors."""


class MissingKeyError(TrellisError, KeyError):
    """A state key was required but is absent."""

    def __init__(self, key: str):
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"Missing state key: '{self.key}'"


class NodeFailure(TrellisError):
    """Base class for failures raised from node bodies."""

    kind: ErrorKind = ErrorKind.PERMANENT
    retryable: bool = False

    def __init__(self, message: str, node_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.node_id = node_id


class TransientFailure(NodeFailure):
    """Retryable failure (flaky dependency, timeout, rate limit)."""

    kind = ErrorKind.TRANSIENT
    retryable = True


class PermanentFailure(NodeFailure):
    """Non-retryable failure."""

    kind = ErrorKind.PERMANENT


class ValidationFailure(NodeFailure):
    """The node's input or state contract was violated."""

    kind = ErrorKind.VALIDATION


class RunawayLoopError(TrellisError):
    """Step counter exceeded the configured maximum."""

    kind = ErrorKind.RUNAWAY_LOOP

    def __init__(self, max_steps: int, node_id: str | None = None):
        self.message = f"Step limit of {max_steps} exceeded"
        super().__init__(self.message)
        self.max_steps = max_steps
        self.node_id = node_id


class GraphValidationError(TrellisError):
    """Graph structure is invalid."""

    def __init__(self, errors: list[str]):
        super().__init__(f"Invalid graph: {errors}")
        self.errors = errors


class StateMergeError(TrellisError):
    """Two states could not be merged."""


@dataclass
class ExecutionError:
    """Structured error carried on an ExecutionResult."""

    kind: ErrorKind
    message: str
    node_id: str | None = None
    attempts: int = 0

    @classmethod
    def from_failure(
        cls, failure: NodeFailure | RunawayLoopError, attempts: int = 1
    ) -> "ExecutionError":
        return cls(
            kind=failure.kind,
            message=failure.message,
            node_id=failure.node_id,
            attempts=attempts,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "node_id": self.node_id,
            "attempts": self.attempts,
        }

    def __str__(self) -> str:
        where = f" at node '{self.node_id}'" if self.node_id else ""
        return f"{self.kind.value}{where}: {self.message}"
