"""
Node Protocol - The unit of work in a graph.

A node is identified by a NodeSpec (id, contract, retry/timeout policy,
lifecycle hooks) and implemented by anything satisfying NodeProtocol:

    class Scorer(NodeProtocol):
        async def execute(self, state: State) -> NodeResult:
            return NodeResult(output={"score": len(state.require("text"))})

Plain callables are wrapped with FunctionNode. Node implementations must be
reentrant: the same instance may serve several concurrent executions, so keep
no per-run mutable state on the instance. Nodes with external side effects
should be idempotent, since resuming from a checkpoint re-runs the node that
was in flight.
"""

import inspect
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from trellis.graph.state import State


class NodeSpec(BaseModel):
    """
    Specification for a node in the graph.

    Example:
        NodeSpec(
            id="grade",
            name="Grade answer",
            input_keys=["answer"],
            output_keys=["score"],
            max_retries=2,
            timeout_seconds=10.0,
        )
    """

    id: str
    name: str = ""
    description: str = ""

    # State contract
    input_keys: list[str] = Field(
        default_factory=list, description="Keys that must be present before execution"
    )
    output_keys: list[str] = Field(
        default_factory=list, description="Keys this node is expected to write"
    )

    # Failure policy (None = executor default)
    max_retries: int | None = Field(default=None, description="Retries for TransientFailure")
    timeout_seconds: float | None = None
    timeout_is_transient: bool = Field(
        default=True, description="A fired timeout is retryable unless set to False"
    )

    # Lifecycle hooks: pre(state, node_id), post(state, node_id, result)
    pre_hooks: list[Callable[..., Any]] = Field(default_factory=list, exclude=True)
    post_hooks: list[Callable[..., Any]] = Field(default_factory=list, exclude=True)

    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow", "arbitrary_types_allowed": True}

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass
class NodeResult:
    """Result of a node body."""

    output: dict[str, Any] = field(default_factory=dict)  # Written to state before routing
    value: Any = None
    side_effects_applied: bool = True
    latency_ms: int = 0

    def to_summary(self, node_spec: NodeSpec | None = None) -> str:
        """Short human-readable description for logs."""
        name = node_spec.display_name if node_spec else "node"
        if not self.output and self.value is None:
            return f"{name} completed with no output"
        parts = []
        if self.output:
            parts.append(f"wrote {sorted(self.output)}")
        if self.value is not None:
            value_str = str(self.value)
            if len(value_str) > 80:
                value_str = value_str[:80] + "..."
            parts.append(f"returned {value_str}")
        return f"{name} " + ", ".join(parts)


class NodeProtocol(ABC):
    """Interface every node implementation satisfies."""

    @abstractmethod
    async def execute(self, state: State) -> NodeResult:
        """Run the node body against the state."""

    def validate_input(self, state: State) -> list[str]:
        """Return contract violations for the current state (empty = valid)."""
        return []


class FunctionNode(NodeProtocol):
    """
    Wraps a plain function (sync or async) as a node.

    Return value handling:
    - NodeResult: passed through
    - dict: written to state as output
    - None: empty result (the function mutated state directly)
    - anything else: stored as NodeResult.value
    """

    def __init__(self, func: Callable[[State], Any]):
        self.func = func

    async def execute(self, state: State) -> NodeResult:
        returned = self.func(state)
        if inspect.isawaitable(returned):
            returned = await returned
        return coerce_result(returned)

    def __repr__(self) -> str:
        return f"FunctionNode({getattr(self.func, '__name__', self.func)!r})"


def coerce_result(returned: Any) -> NodeResult:
    if isinstance(returned, NodeResult):
        return returned
    if returned is None:
        return NodeResult()
    if isinstance(returned, dict):
        return NodeResult(output=returned)
    return NodeResult(value=returned)


async def run_hook(hook: Callable[..., Any], *args: Any) -> None:
    """Invoke a lifecycle hook, awaiting it if it is async."""
    returned = hook(*args)
    if inspect.isawaitable(returned):
        await returned
