"""
Router - Resolves the next node from a node's outgoing edges.

Resolution is first-match in registration order against the current
(post-execution) state. Three outcomes are possible:

- routed:   an edge matched; ``target`` is the next node
- terminal: the node has no routing edges (a true terminal node), or its only
            routing edges are loop back edges whose loop has finished
- no_match: routing edges exist but none matched (a designed dead end)

Resolution is deterministic for pure predicates: the same state and edge set
always produce the same target. The router never writes to state.
"""

from dataclasses import dataclass, field
from enum import StrEnum

from trellis.graph.edge import EdgeSpec, GraphSpec
from trellis.graph.state import State


class RouteOutcome(StrEnum):
    """How edge resolution ended."""

    ROUTED = "routed"
    TERMINAL = "terminal"
    NO_MATCH = "no_match"


@dataclass
class RouteDecision:
    """Result of resolving a node's outgoing edges."""

    outcome: RouteOutcome
    target: str | None = None
    edge: EdgeSpec | None = None
    evaluations: list[tuple[EdgeSpec, bool]] = field(default_factory=list)

    @property
    def routed(self) -> bool:
        return self.outcome == RouteOutcome.ROUTED


class Router:
    """First-match edge resolution over a GraphSpec."""

    def __init__(self, graph: GraphSpec):
        self.graph = graph

    def edge_matches(self, edge: EdgeSpec, state: State) -> bool:
        """Evaluate a single edge, including loop bounds for back edges."""
        if edge.loop_back:
            loop = self.graph.get_loop(edge.source)
            if loop is not None and loop.should_exit(state):
                return False
        return edge.evaluate(state)

    def resolve(self, node_id: str, state: State, failed: bool = False) -> RouteDecision:
        """
        Pick the next node after ``node_id``.

        Args:
            node_id: The node that just finished
            state: Current state, after the node's writes
            failed: Whether the node failed; only error edges are considered

        Returns:
            RouteDecision with the outcome and every predicate evaluation made
        """
        if failed:
            edges = self.graph.get_failure_edges(node_id)
        else:
            edges = self.graph.get_routing_edges(node_id)

        if not edges:
            return RouteDecision(outcome=RouteOutcome.TERMINAL)

        evaluations: list[tuple[EdgeSpec, bool]] = []
        for edge in edges:
            matched = self.edge_matches(edge, state)
            evaluations.append((edge, matched))
            if matched:
                return RouteDecision(
                    outcome=RouteOutcome.ROUTED,
                    target=edge.target,
                    edge=edge,
                    evaluations=evaluations,
                )

        # A finished loop with nowhere else to go ends like a terminal node
        if failed or all(edge.loop_back for edge in edges):
            return RouteDecision(outcome=RouteOutcome.TERMINAL, evaluations=evaluations)

        return RouteDecision(outcome=RouteOutcome.NO_MATCH, evaluations=evaluations)
