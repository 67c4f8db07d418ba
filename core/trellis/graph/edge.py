"""
Edge Protocol - How nodes connect in a graph.

Edges define:
1. Source and target nodes
2. An optional guard (a pure predicate over State)
3. Registration order, which is the tie-break between siblings

Edge Types:
- always: Unconditional; always matches. Must be registered LAST among a
  node's routing edges, otherwise it shadows its conditional siblings.
- conditional: Matches when its predicate returns True for the current state
- on_failure: Error edge, only considered when the source node failed

Edges that belong to a parallel group (``group`` set) are not routing edges;
the executor takes all of them at once and joins the branches later.
Edges flagged ``loop_back`` are guarded by the bounds of the source node's
LoopSpec in addition to any predicate of their own.
"""

import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from trellis.graph.errors import MissingKeyError
from trellis.graph.node import NodeSpec
from trellis.graph.state import ConflictPolicy, State

logger = logging.getLogger(__name__)

LOOP_COUNTER_PREFIX = "__loop__:"


def loop_counter_key(node_id: str) -> str:
    """State key holding the iteration count of a loop node."""
    return f"{LOOP_COUNTER_PREFIX}{node_id}"


class EdgeCondition(StrEnum):
    """When an edge should be traversed."""

    ALWAYS = "always"  # Unconditional
    CONDITIONAL = "conditional"  # Based on predicate
    ON_FAILURE = "on_failure"  # Only if source fails


def _evaluate_guard(guard: Callable[[State], Any], state: State, label: str) -> bool:
    try:
        return bool(guard(state))
    except MissingKeyError as e:
        # Absence is a legitimate branch condition
        logger.debug(f"      Guard {label} saw missing key '{e.key}', treating as False")
        return False
    except Exception as e:
        logger.warning(f"      ⚠ Guard evaluation failed for {label}: {e}")
        return False


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        # Conditional routing
        EdgeSpec(
            id="check-to-adult",
            source="check",
            target="adult",
            predicate=lambda s: s.get("age", 0) >= 18,
            label="age >= 18",
        )

        # Unconditional fallback (registered after the conditional one)
        EdgeSpec(id="check-to-minor", source="check", target="minor")

        # Error edge
        EdgeSpec(
            id="fetch-failed",
            source="fetch",
            target="report_error",
            condition=EdgeCondition.ON_FAILURE,
        )
    """

    id: str
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")

    # When to traverse
    condition: EdgeCondition = EdgeCondition.ALWAYS
    predicate: Callable[[State], bool] | None = Field(
        default=None,
        exclude=True,
        description="Pure function of state; must not have side effects",
    )

    # Registration order among all edges of the graph (tie-break)
    order: int = 0

    # Parallel group membership / loop back edge
    group: str | None = None
    loop_back: bool = False

    # Metadata
    label: str = ""

    model_config = {"extra": "allow", "arbitrary_types_allowed": True}

    @model_validator(mode="after")
    def _infer_condition(self) -> "EdgeSpec":
        if self.predicate is not None and self.condition == EdgeCondition.ALWAYS:
            self.condition = EdgeCondition.CONDITIONAL
        return self

    @property
    def is_unconditional(self) -> bool:
        """True when the edge always matches."""
        return (
            self.condition == EdgeCondition.ALWAYS
            and self.predicate is None
            and not self.loop_back
        )

    @property
    def is_failure_edge(self) -> bool:
        return self.condition == EdgeCondition.ON_FAILURE

    @property
    def is_routing_edge(self) -> bool:
        """Participates in first-match routing after a successful node."""
        return not self.is_failure_edge and self.group is None

    def describe(self) -> str:
        return self.label or f"{self.source} → {self.target}"

    def evaluate(self, state: State) -> bool:
        """Evaluate this edge's own predicate against the state."""
        if self.predicate is None:
            return True
        return _evaluate_guard(self.predicate, state, f"edge '{self.id}'")


class ParallelGroupSpec(BaseModel):
    """
    A fan-out from one node to several branches that re-converge at a join node.

    Each branch runs on an isolated clone of the state taken at the fork.
    The join waits for ``quorum`` branches (all when None) to reach
    ``join_node`` and merges their deltas with ``conflict_policy``.
    """

    id: str
    source: str
    targets: list[str]
    join_node: str
    quorum: int | None = Field(default=None, description="Branches required at the join")
    timeout_seconds: float | None = None
    conflict_policy: ConflictPolicy = ConflictPolicy.PREFER_INCOMING

    @property
    def required(self) -> int:
        return self.quorum if self.quorum is not None else len(self.targets)


class LoopSpec(BaseModel):
    """
    Bounds on a cycle through ``node_id``.

    The loop continues along its back edge to ``back_to`` until either
    ``max_iterations`` visits of the loop node have happened or ``until``
    returns True, whichever comes first. The iteration counter is kept in
    state (see loop_counter_key) so the guard remains a pure function of
    state and survives checkpoint/resume.
    """

    node_id: str
    back_to: str
    max_iterations: int = Field(ge=1)
    until: Callable[[State], bool] | None = Field(default=None, exclude=True)
    exit_to: str | None = None

    model_config = {"arbitrary_types_allowed": True}

    @property
    def counter_key(self) -> str:
        return loop_counter_key(self.node_id)

    def iterations(self, state: State) -> int:
        return int(state.get(self.counter_key, 0))

    def should_exit(self, state: State) -> bool:
        """Both bounds are checked together; whichever triggers first wins."""
        if self.iterations(state) >= self.max_iterations:
            return True
        if self.until is not None:
            return _evaluate_guard(self.until, state, f"loop '{self.node_id}'")
        return False


class GraphSpec(BaseModel):
    """
    Complete specification of a workflow graph.

    Contains all nodes, edges, parallel groups and loop bounds needed to
    execute. Usually produced by GraphBuilder:

        GraphSpec(
            id="triage",
            entry_node="check",
            nodes=[NodeSpec(id="check"), NodeSpec(id="adult"), NodeSpec(id="minor")],
            edges=[
                EdgeSpec(id="e1", source="check", target="adult",
                         predicate=lambda s: s.get("age", 0) >= 18, order=0),
                EdgeSpec(id="e2", source="check", target="minor", order=1),
            ],
        )
    """

    id: str
    version: str = "1.0.0"

    # Graph structure
    entry_node: str = Field(description="ID of the first node to execute")
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)
    parallel_groups: list[ParallelGroupSpec] = Field(default_factory=list)
    loops: list[LoopSpec] = Field(default_factory=list)

    # Execution limits (None = executor config)
    max_steps: int | None = Field(default=None, description="Maximum node executions")

    # Metadata
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """All edges leaving a node, in registration order."""
        edges = [e for e in self.edges if e.source == node_id]
        return sorted(edges, key=lambda e: e.order)

    def get_routing_edges(self, node_id: str) -> list[EdgeSpec]:
        """First-match routing edges leaving a node, in registration order."""
        return [e for e in self.get_outgoing_edges(node_id) if e.is_routing_edge]

    def get_failure_edges(self, node_id: str) -> list[EdgeSpec]:
        """Error edges leaving a node, in registration order."""
        return [e for e in self.get_outgoing_edges(node_id) if e.is_failure_edge]

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges entering a node."""
        return [e for e in self.edges if e.target == node_id]

    def get_parallel_group(self, source: str) -> ParallelGroupSpec | None:
        """The parallel group forking from ``source``, if any."""
        for group in self.parallel_groups:
            if group.source == source:
                return group
        return None

    def get_loop(self, node_id: str) -> LoopSpec | None:
        """The loop bounds attached to ``node_id``, if any."""
        for loop in self.loops:
            if loop.node_id == node_id:
                return loop
        return None

    def validate(self) -> list[str]:
        """Validate the graph structure."""
        errors = []
        node_ids = [n.id for n in self.nodes]

        # Unique node ids
        seen: set[str] = set()
        for node_id in node_ids:
            if node_id in seen:
                errors.append(f"Duplicate node ID: '{node_id}'")
            seen.add(node_id)

        # Check entry node exists
        if not self.get_node(self.entry_node):
            errors.append(f"Entry node '{self.entry_node}' not found")

        # Check edge references
        edge_ids: set[str] = set()
        for edge in self.edges:
            if edge.id in edge_ids:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            edge_ids.add(edge.id)
            if edge.source not in seen:
                errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")
            if edge.target not in seen:
                errors.append(f"Edge '{edge.id}' references missing target '{edge.target}'")

        # An unconditional edge must be the last of its siblings
        for node_id in node_ids:
            for kind, edges in (
                ("routing", self.get_routing_edges(node_id)),
                ("failure", self.get_failure_edges(node_id)),
            ):
                for i, edge in enumerate(edges[:-1]):
                    if edge.is_unconditional:
                        shadowed = [e.id for e in edges[i + 1 :]]
                        errors.append(
                            f"Unconditional {kind} edge '{edge.id}' from '{node_id}' must be "
                            f"registered last; it shadows {shadowed}"
                        )

        # Parallel groups
        group_sources: set[str] = set()
        for group in self.parallel_groups:
            if group.source in group_sources:
                errors.append(f"Node '{group.source}' declares more than one parallel group")
            group_sources.add(group.source)
            if group.source not in seen:
                errors.append(f"Parallel group '{group.id}' references missing source")
            if group.join_node not in seen:
                errors.append(
                    f"Parallel group '{group.id}' references missing join node "
                    f"'{group.join_node}'"
                )
            if len(group.targets) < 2:
                errors.append(f"Parallel group '{group.id}' needs at least two targets")
            for target in group.targets:
                if target not in seen:
                    errors.append(f"Parallel group '{group.id}' references missing '{target}'")
            if group.quorum is not None and not 1 <= group.quorum <= len(group.targets):
                errors.append(
                    f"Parallel group '{group.id}' quorum {group.quorum} is outside "
                    f"1..{len(group.targets)}"
                )
            if self.get_routing_edges(group.source):
                errors.append(
                    f"Node '{group.source}' forks a parallel group and cannot also have "
                    f"first-match routing edges"
                )

        # Loops
        for loop in self.loops:
            for ref in (loop.node_id, loop.back_to, loop.exit_to):
                if ref is not None and ref not in seen:
                    errors.append(f"Loop on '{loop.node_id}' references missing node '{ref}'")
            back_edges = [
                e
                for e in self.get_routing_edges(loop.node_id)
                if e.loop_back and e.target == loop.back_to
            ]
            if not back_edges:
                errors.append(
                    f"Loop on '{loop.node_id}' has no back edge to '{loop.back_to}'"
                )

        # Check for unreachable nodes
        if self.entry_node in seen:
            reachable = self._compute_reachable(self.entry_node)
            for node_id in node_ids:
                if node_id not in reachable:
                    errors.append(f"Node '{node_id}' is unreachable from entry")

        return errors

    def _compute_reachable(self, start: str) -> set[str]:
        """Compute all nodes reachable from start."""
        reachable = set()
        to_visit = [start]

        while to_visit:
            current = to_visit.pop()
            if current in reachable:
                continue
            reachable.add(current)
            for edge in self.get_outgoing_edges(current):
                to_visit.append(edge.target)
            group = self.get_parallel_group(current)
            if group:
                to_visit.extend(group.targets)
                to_visit.append(group.join_node)

        return reachable
