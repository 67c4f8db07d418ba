"""
Subgraph Runner - A nested graph executed as a single node.

Two isolation modes control what the nested execution can see and touch:

- isolated_clone: the child gets a fresh State holding deep copies of the
  input-mapped keys only; only output-mapped keys come back.
- scoped_prefix: the child shares the parent State through a ScopedState
  view; its writes land under ``prefix`` and are demapped on return.

In both modes the values coming back are merged with the configured
conflict policy, the same rule the parallel join uses.
"""

import copy
import logging
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from trellis.graph.context import ExecutionStatus
from trellis.graph.edge import GraphSpec
from trellis.graph.errors import ErrorKind, PermanentFailure, ValidationFailure
from trellis.graph.node import NodeProtocol, NodeResult
from trellis.graph.state import MISSING, ConflictPolicy, ScopedState, State
from trellis.observability import get_trace_context

if TYPE_CHECKING:
    from trellis.graph.executor import ExecutionResult, GraphExecutor

logger = logging.getLogger(__name__)


class IsolationMode(StrEnum):
    """How a subgraph's state relates to its parent's."""

    ISOLATED_CLONE = "isolated_clone"
    SCOPED_PREFIX = "scoped_prefix"


class SubgraphConfig(BaseModel):
    """
    Key mapping and isolation for a subgraph node.

    Example:
        SubgraphConfig(
            isolation=IsolationMode.ISOLATED_CLONE,
            input_mapping={"text": "document"},   # child_key: parent_key
            output_mapping={"summary": "digest"}, # parent_key: child_key
        )
    """

    isolation: IsolationMode = IsolationMode.ISOLATED_CLONE
    input_mapping: dict[str, str] = Field(
        default_factory=dict, description="child_key -> parent_key"
    )
    output_mapping: dict[str, str] = Field(
        default_factory=dict, description="parent_key -> child_key"
    )
    prefix: str | None = Field(
        default=None, description="Namespace for scoped writes (default: '<graph_id>.')"
    )
    conflict_policy: ConflictPolicy = ConflictPolicy.PREFER_INCOMING
    keep_scoped_keys: bool = False


class SubgraphNode(NodeProtocol):
    """Runs a nested GraphSpec on its own executor as one step of the parent."""

    def __init__(
        self,
        graph: GraphSpec,
        executor: "GraphExecutor",
        config: SubgraphConfig | None = None,
    ):
        self.graph = graph
        self.executor = executor
        self.config = config or SubgraphConfig()

    @property
    def prefix(self) -> str:
        return self.config.prefix if self.config.prefix is not None else f"{self.graph.id}."

    def validate_input(self, state: State) -> list[str]:
        if self.config.isolation != IsolationMode.ISOLATED_CLONE:
            return []
        return [
            f"Subgraph '{self.graph.id}' input '{child_key}' needs missing parent key "
            f"'{parent_key}'"
            for child_key, parent_key in self.config.input_mapping.items()
            if parent_key not in state
        ]

    async def execute(self, state: State) -> NodeResult:
        result = await self._run(state)
        # Outputs were merged into the parent by run(); nothing left to write
        return NodeResult(value=result.to_dict())

    async def run(self, parent_state: State) -> State:
        """Execute the nested graph against ``parent_state`` and merge back."""
        await self._run(parent_state)
        return parent_state

    async def _run(self, parent_state: State) -> "ExecutionResult":
        nested_id = self._nested_execution_id()

        if self.config.isolation == IsolationMode.SCOPED_PREFIX:
            return await self._run_scoped(parent_state, nested_id)
        return await self._run_isolated(parent_state, nested_id)

    def _nested_execution_id(self) -> str | None:
        trace = get_trace_context()
        parent_id = trace.get("execution_id")
        node_id = trace.get("node_id")
        if parent_id and node_id:
            return f"{parent_id}/{node_id}"
        return None

    async def _run_isolated(self, parent_state: State, nested_id: str | None) -> "ExecutionResult":
        inputs: dict[str, Any] = {}
        for child_key, parent_key in self.config.input_mapping.items():
            value = parent_state.get(parent_key)
            if value is MISSING:
                raise ValidationFailure(
                    f"Subgraph '{self.graph.id}' input '{child_key}' needs missing parent key "
                    f"'{parent_key}'"
                )
            inputs[child_key] = copy.deepcopy(value)

        child_state = State(inputs, metadata={"parent_state_id": parent_state.state_id})
        logger.info(f"   ⤷ Subgraph {self.graph.id} (isolated, inputs: {sorted(inputs)})")

        result = await self.executor.execute(self.graph, child_state, execution_id=nested_id)
        self._raise_if_unsuccessful(result)

        outgoing = {}
        for parent_key, child_key in self.config.output_mapping.items():
            value = result.state.get(child_key)
            if value is MISSING:
                logger.warning(
                    f"Subgraph '{self.graph.id}' did not produce output '{child_key}'"
                )
                continue
            outgoing[parent_key] = copy.deepcopy(value)

        parent_state.merge(outgoing, self.config.conflict_policy)
        return result

    async def _run_scoped(self, parent_state: State, nested_id: str | None) -> "ExecutionResult":
        prefix = self.prefix
        view = ScopedState(parent_state, prefix, self.config.input_mapping)
        logger.info(f"   ⤷ Subgraph {self.graph.id} (scoped under '{prefix}')")

        result = await self.executor.execute(self.graph, view, execution_id=nested_id)
        # Scoped keys stay in place on failure for diagnostics
        self._raise_if_unsuccessful(result)

        outgoing = {}
        for parent_key, child_key in self.config.output_mapping.items():
            value = parent_state.get(prefix + child_key)
            if value is MISSING:
                logger.warning(
                    f"Subgraph '{self.graph.id}' did not produce output '{child_key}'"
                )
                continue
            outgoing[parent_key] = value

        if not self.config.keep_scoped_keys:
            for key in view.scoped_keys():
                parent_state.delete(key)

        parent_state.merge(outgoing, self.config.conflict_policy)
        return result

    def _raise_if_unsuccessful(self, result: "ExecutionResult") -> None:
        if result.status == ExecutionStatus.COMPLETED:
            return
        if result.status == ExecutionStatus.CANCELLED:
            raise PermanentFailure(f"Subgraph '{self.graph.id}' was cancelled")
        error = result.error
        message = f"Subgraph '{self.graph.id}' failed: {error}"
        if error is not None and error.kind == ErrorKind.VALIDATION:
            raise ValidationFailure(message)
        raise PermanentFailure(message)

    def __repr__(self) -> str:
        return f"SubgraphNode({self.graph.id!r}, isolation={self.config.isolation.value})"
