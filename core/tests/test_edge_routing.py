"""
Tests for first-match edge resolution.

Routing after a successful node looks at its routing edges in registration
order against the post-execution state. A node without routing edges is
terminal; a node whose edges all decline is a designed dead end (no_match).
"""

import pytest

from trellis.builder.workflow import GraphBuilder
from trellis.graph.edge import EdgeCondition, EdgeSpec, GraphSpec
from trellis.graph.errors import ErrorKind, GraphValidationError
from trellis.graph.executor import NO_MATCH_MARKER, GraphExecutor
from trellis.graph.node import NodeSpec
from trellis.graph.router import RouteOutcome, Router
from trellis.graph.state import State


def _triage_builder() -> GraphBuilder:
    builder = GraphBuilder("triage")
    builder.add_node("check", lambda s: {"checked": True})
    builder.add_node("adultNode", lambda s: {"group": "adult"})
    builder.add_node("minorNode", lambda s: {"group": "minor"})
    builder.add_edge("check", "adultNode", predicate=lambda s: s.get("age", 0) >= 18)
    builder.add_edge("check", "minorNode")
    return builder


class TestRouter:
    def test_first_match_in_registration_order(self):
        graph = _triage_builder().build()
        router = Router(graph)

        decision = router.resolve("check", State({"age": 17}))
        assert decision.outcome == RouteOutcome.ROUTED
        assert decision.target == "minorNode"
        assert [(e.target, matched) for e, matched in decision.evaluations] == [
            ("adultNode", False),
            ("minorNode", True),
        ]

        decision = router.resolve("check", State({"age": 40}))
        assert decision.target == "adultNode"
        assert len(decision.evaluations) == 1

    def test_resolution_is_deterministic(self):
        router = Router(_triage_builder().build())
        state = State({"age": 17})
        targets = {router.resolve("check", state).target for _ in range(20)}
        assert targets == {"minorNode"}

    def test_router_never_writes_state(self):
        router = Router(_triage_builder().build())
        state = State({"age": 17})
        router.resolve("check", state)
        assert state.version == 0

    def test_node_without_edges_is_terminal(self):
        router = Router(_triage_builder().build())
        decision = router.resolve("minorNode", State())
        assert decision.outcome == RouteOutcome.TERMINAL
        assert decision.evaluations == []

    def test_all_edges_declining_is_no_match(self):
        builder = GraphBuilder("gate")
        builder.add_node("gate", lambda s: None)
        builder.add_node("open", lambda s: None)
        builder.add_node("closed", lambda s: None)
        builder.add_edge("gate", "open", predicate=lambda s: s.get("key") == "right")
        builder.add_edge("gate", "closed", predicate=lambda s: s.get("key") == "spare")
        router = Router(builder.build())

        decision = router.resolve("gate", State({"key": "wrong"}))
        assert decision.outcome == RouteOutcome.NO_MATCH
        assert decision.target is None
        assert not decision.routed

    def test_missing_key_in_predicate_is_false(self):
        builder = GraphBuilder("absent")
        builder.add_node("a", lambda s: None)
        builder.add_node("b", lambda s: None)
        builder.add_node("c", lambda s: None)
        builder.add_edge("a", "b", predicate=lambda s: s.require("flag"))
        builder.add_edge("a", "c")

        decision = Router(builder.build()).resolve("a", State())
        assert decision.target == "c"

    def test_raising_predicate_is_false(self):
        builder = GraphBuilder("broken")
        builder.add_node("a", lambda s: None)
        builder.add_node("b", lambda s: None)
        builder.add_node("c", lambda s: None)
        builder.add_edge("a", "b", predicate=lambda s: 1 / 0)
        builder.add_edge("a", "c")

        decision = Router(builder.build()).resolve("a", State())
        assert decision.target == "c"

    def test_failure_edges_only_considered_when_failed(self):
        builder = GraphBuilder("errors")
        builder.add_node("work", lambda s: None)
        builder.add_node("next", lambda s: None)
        builder.add_node("handler", lambda s: None)
        builder.add_edge("work", "next")
        builder.add_error_edge("work", "handler")
        router = Router(builder.build())

        assert router.resolve("work", State()).target == "next"
        assert router.resolve("work", State(), failed=True).target == "handler"


class TestEdgeSpec:
    def test_predicate_makes_edge_conditional(self):
        edge = EdgeSpec(id="e", source="a", target="b", predicate=lambda s: True)
        assert edge.condition == EdgeCondition.CONDITIONAL
        assert not edge.is_unconditional

    def test_plain_edge_is_unconditional(self):
        edge = EdgeSpec(id="e", source="a", target="b")
        assert edge.is_unconditional
        assert edge.is_routing_edge
        assert edge.evaluate(State())

    def test_failure_edge_is_not_a_routing_edge(self):
        edge = EdgeSpec(id="e", source="a", target="b", condition=EdgeCondition.ON_FAILURE)
        assert edge.is_failure_edge
        assert not edge.is_routing_edge


class TestOrderingInvariant:
    def test_unconditional_edge_before_conditional_is_rejected(self):
        builder = GraphBuilder("shadowed")
        builder.add_node("check", lambda s: None)
        builder.add_node("adultNode", lambda s: None)
        builder.add_node("minorNode", lambda s: None)
        builder.add_edge("check", "minorNode")
        builder.add_edge("check", "adultNode", predicate=lambda s: s.get("age", 0) >= 18)

        validation = builder.validate()
        assert not validation.valid
        assert any("must be registered last" in err for err in validation.errors)

        with pytest.raises(GraphValidationError):
            builder.build()

    def test_order_field_wins_over_list_position(self):
        graph = GraphSpec(
            id="ordered",
            entry_node="a",
            nodes=[NodeSpec(id="a"), NodeSpec(id="b"), NodeSpec(id="c")],
            edges=[
                EdgeSpec(id="fallback", source="a", target="c", order=1),
                EdgeSpec(id="first", source="a", target="b", order=0, predicate=lambda s: True),
            ],
        )
        assert graph.validate() == []
        assert Router(graph).resolve("a", State()).target == "b"

    @pytest.mark.asyncio
    async def test_executor_reports_ordering_violation_as_validation_error(self):
        graph = GraphSpec(
            id="shadowed",
            entry_node="a",
            nodes=[NodeSpec(id="a"), NodeSpec(id="b"), NodeSpec(id="c")],
            edges=[
                EdgeSpec(id="fallback", source="a", target="c", order=0),
                EdgeSpec(id="never", source="a", target="b", order=1, predicate=lambda s: True),
            ],
        )
        executor = GraphExecutor()
        for node_id in ("a", "b", "c"):
            executor.register_function(node_id, lambda s: None)

        result = await executor.execute(graph, {})

        assert not result.success
        assert result.error.kind == ErrorKind.VALIDATION
        assert result.steps_executed == 0


class TestExecutorRouting:
    @pytest.mark.asyncio
    async def test_minor_routes_to_minor_node(self):
        builder = _triage_builder()
        result = await builder.executor().execute(builder.build(), {"age": 17})

        assert result.success
        assert result.path == ["check", "minorNode"]
        assert result.termination == RouteOutcome.TERMINAL
        assert result.state.get("group") == "minor"
        assert result.marked_path == ["check", "minorNode"]

    @pytest.mark.asyncio
    async def test_adult_routes_to_adult_node(self):
        builder = _triage_builder()
        result = await builder.executor().execute(builder.build(), {"age": 30})
        assert result.path == ["check", "adultNode"]

    @pytest.mark.asyncio
    async def test_routing_sees_node_output(self):
        builder = GraphBuilder("post_write")
        builder.add_node("score", lambda s: {"score": 90})
        builder.add_node("pass", lambda s: None)
        builder.add_node("fail", lambda s: None)
        builder.add_edge("score", "pass", predicate=lambda s: s.get("score", 0) >= 50)
        builder.add_edge("score", "fail")

        result = await builder.executor().execute(builder.build(), {})
        assert result.path == ["score", "pass"]

    @pytest.mark.asyncio
    async def test_no_match_is_distinguishable_from_terminal(self):
        builder = GraphBuilder("gate")
        builder.add_node("gate", lambda s: None)
        builder.add_node("open", lambda s: None)
        builder.add_edge("gate", "open", predicate=lambda s: s.get("key") == "right")

        result = await builder.executor().execute(builder.build(), {"key": "wrong"})

        assert result.success
        assert result.is_no_match
        assert result.termination == RouteOutcome.NO_MATCH
        assert result.dead_end_node == "gate"
        assert result.path == ["gate"]
        assert result.marked_path == ["gate", NO_MATCH_MARKER]
        assert result.to_dict()["path"] == ["gate", NO_MATCH_MARKER]
