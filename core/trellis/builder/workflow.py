"""
GraphBuilder - Fluent construction of workflow graphs.

Nodes, edges, parallel groups and loops are registered in order; edge
registration order is the routing tie-break, so add conditional edges
before the unconditional fallback:

    builder = GraphBuilder("triage")
    builder.add_node("check", check_age)
    builder.add_node("adult", handle_adult)
    builder.add_node("minor", handle_minor)
    builder.add_edge("check", "adult", predicate=lambda s: s.get("age", 0) >= 18)
    builder.add_edge("check", "minor")

    graph = builder.build()          # raises GraphValidationError if invalid
    executor = builder.executor()    # registry pre-populated
    result = await executor.execute(graph, {"age": 17})
"""

from collections.abc import Callable, Iterable
from typing import Any

from pydantic import BaseModel, Field

from trellis.graph.edge import EdgeCondition, EdgeSpec, GraphSpec, LoopSpec, ParallelGroupSpec
from trellis.graph.errors import GraphValidationError
from trellis.graph.executor import GraphExecutor
from trellis.graph.node import FunctionNode, NodeProtocol, NodeSpec
from trellis.graph.state import ConflictPolicy, State
from trellis.graph.subgraph import SubgraphConfig, SubgraphNode


class ValidationResult(BaseModel):
    """Result of a validation check."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class GraphBuilder:
    """
    Incrementally assembles a GraphSpec and its node registry.

    Duplicate node IDs are rejected immediately; everything else is checked
    by validate()/build().
    """

    def __init__(self, graph_id: str, description: str = ""):
        self.graph_id = graph_id
        self.description = description
        self.nodes: list[NodeSpec] = []
        self.edges: list[EdgeSpec] = []
        self.parallel_groups: list[ParallelGroupSpec] = []
        self.loops: list[LoopSpec] = []
        self.registry: dict[str, NodeProtocol] = {}
        self.entry_node: str | None = None
        self.max_steps: int | None = None
        self.metadata: dict[str, Any] = {}
        self._edge_counter = 0

    # === NODES ===

    def add_node(
        self,
        node_id: str,
        impl: NodeProtocol | Callable[[State], Any],
        name: str | None = None,
        description: str = "",
        input_keys: Iterable[str] = (),
        output_keys: Iterable[str] = (),
        max_retries: int | None = None,
        timeout_seconds: float | None = None,
        timeout_is_transient: bool = True,
        pre_hooks: Iterable[Callable[..., Any]] = (),
        post_hooks: Iterable[Callable[..., Any]] = (),
        **metadata: Any,
    ) -> "GraphBuilder":
        """
        Add a node and its implementation.

        Args:
            node_id: Unique node ID
            impl: A NodeProtocol instance or a plain (sync/async) callable
            input_keys: Keys that must be in state before the node runs
            max_retries: Retries for TransientFailure (None = executor default)
            timeout_seconds: Per-attempt timeout (None = executor default)
            pre_hooks: Called as hook(state, node_id) before the body
            post_hooks: Called as hook(state, node_id, result) after the body

        Raises:
            GraphValidationError: If the node ID is already taken
        """
        if any(n.id == node_id for n in self.nodes):
            raise GraphValidationError([f"Duplicate node ID: '{node_id}'"])

        if not isinstance(impl, NodeProtocol):
            if not callable(impl):
                raise TypeError(f"Node '{node_id}' implementation must be callable")
            impl = FunctionNode(impl)

        self.nodes.append(
            NodeSpec(
                id=node_id,
                name=name or node_id,
                description=description,
                input_keys=list(input_keys),
                output_keys=list(output_keys),
                max_retries=max_retries,
                timeout_seconds=timeout_seconds,
                timeout_is_transient=timeout_is_transient,
                pre_hooks=list(pre_hooks),
                post_hooks=list(post_hooks),
                metadata=metadata,
            )
        )
        self.registry[node_id] = impl
        if self.entry_node is None:
            self.entry_node = node_id
        return self

    def add_subgraph(
        self,
        node_id: str,
        subgraph: "GraphBuilder | GraphSpec",
        config: SubgraphConfig | None = None,
        executor: GraphExecutor | None = None,
        **node_kwargs: Any,
    ) -> "GraphBuilder":
        """
        Add a nested graph as a single node.

        A GraphBuilder supplies both the graph and an executor with its
        registry; a bare GraphSpec needs an explicit executor.
        """
        if isinstance(subgraph, GraphBuilder):
            graph = subgraph.build()
            executor = executor or subgraph.executor()
        else:
            graph = subgraph
            if executor is None:
                raise ValueError(f"Subgraph '{node_id}' given as GraphSpec needs an executor")

        node = SubgraphNode(graph=graph, executor=executor, config=config)
        node_kwargs.setdefault("description", graph.description or f"Subgraph {graph.id}")
        return self.add_node(node_id, node, subgraph=graph.id, **node_kwargs)

    def set_entry(self, node_id: str) -> "GraphBuilder":
        self.entry_node = node_id
        return self

    # === EDGES ===

    def _next_edge_id(self, source: str, target: str, kind: str = "") -> str:
        base = f"{source}->{target}" + (f":{kind}" if kind else "")
        existing = {e.id for e in self.edges}
        edge_id = base
        n = 2
        while edge_id in existing:
            edge_id = f"{base}#{n}"
            n += 1
        return edge_id

    def _append_edge(self, **kwargs: Any) -> EdgeSpec:
        edge = EdgeSpec(order=self._edge_counter, **kwargs)
        self._edge_counter += 1
        self.edges.append(edge)
        return edge

    def add_edge(
        self,
        source: str,
        target: str,
        predicate: Callable[[State], bool] | None = None,
        label: str = "",
    ) -> "GraphBuilder":
        """Add a first-match routing edge; without a predicate it always matches."""
        self._append_edge(
            id=self._next_edge_id(source, target),
            source=source,
            target=target,
            predicate=predicate,
            label=label,
        )
        return self

    def add_error_edge(
        self,
        source: str,
        target: str,
        predicate: Callable[[State], bool] | None = None,
        label: str = "",
    ) -> "GraphBuilder":
        """Add an edge followed only when ``source`` fails."""
        self._append_edge(
            id=self._next_edge_id(source, target, "on_failure"),
            source=source,
            target=target,
            condition=EdgeCondition.ON_FAILURE,
            predicate=predicate,
            label=label or "on failure",
        )
        return self

    def add_parallel(
        self,
        source: str,
        targets: list[str],
        join: str,
        quorum: int | None = None,
        timeout_seconds: float | None = None,
        conflict_policy: ConflictPolicy = ConflictPolicy.PREFER_INCOMING,
    ) -> "GraphBuilder":
        """
        Fork ``targets`` concurrently after ``source`` and join them at ``join``.

        Each branch routes on its own edges until it reaches ``join``.
        """
        group_id = f"{source}-parallel"
        self.parallel_groups.append(
            ParallelGroupSpec(
                id=group_id,
                source=source,
                targets=list(targets),
                join_node=join,
                quorum=quorum,
                timeout_seconds=timeout_seconds,
                conflict_policy=conflict_policy,
            )
        )
        for target in targets:
            self._append_edge(
                id=self._next_edge_id(source, target, "parallel"),
                source=source,
                target=target,
                group=group_id,
                label="parallel",
            )
        return self

    def add_loop(
        self,
        node_id: str,
        back_to: str,
        max_iterations: int,
        until: Callable[[State], bool] | None = None,
        exit_to: str | None = None,
    ) -> "GraphBuilder":
        """
        Bound a cycle from ``node_id`` back to ``back_to``.

        Registers the back edge (guarded by the loop bounds) and, when
        ``exit_to`` is given, an exit edge taken once the loop is done.
        """
        loop = LoopSpec(
            node_id=node_id,
            back_to=back_to,
            max_iterations=max_iterations,
            until=until,
            exit_to=exit_to,
        )
        self.loops.append(loop)

        self._append_edge(
            id=self._next_edge_id(node_id, back_to, "loop"),
            source=node_id,
            target=back_to,
            predicate=lambda state: not loop.should_exit(state),
            loop_back=True,
            label=f"loop (max {max_iterations})",
        )
        if exit_to is not None:
            self._append_edge(
                id=self._next_edge_id(node_id, exit_to, "exit"),
                source=node_id,
                target=exit_to,
                predicate=loop.should_exit,
                label="loop exit",
            )
        return self

    # === VALIDATION / BUILD ===

    def _graph(self) -> GraphSpec:
        return GraphSpec(
            id=self.graph_id,
            entry_node=self.entry_node or "",
            nodes=list(self.nodes),
            edges=list(self.edges),
            parallel_groups=list(self.parallel_groups),
            loops=list(self.loops),
            max_steps=self.max_steps,
            description=self.description,
            metadata=dict(self.metadata),
        )

    def validate(self) -> ValidationResult:
        """Validate the graph assembled so far."""
        if not self.nodes:
            return ValidationResult(valid=False, errors=["No nodes defined"])

        graph = self._graph()
        errors = graph.validate()
        warnings = []

        # Check for terminal nodes
        terminal = [
            n.id
            for n in self.nodes
            if not graph.get_outgoing_edges(n.id) and not graph.get_parallel_group(n.id)
        ]
        if not terminal:
            warnings.append("No terminal nodes found (all nodes have outgoing edges)")

        # Cycles without loop bounds only stop at the step limit
        for edge in self.edges:
            if edge.loop_back or edge.is_failure_edge:
                continue
            if edge.source in self._forward_reachable(edge.target):
                warnings.append(
                    f"Edge '{edge.id}' closes a cycle with no loop bounds; "
                    f"only max_steps stops it"
                )

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def _forward_reachable(self, start: str) -> set[str]:
        """Nodes reachable from start without taking loop back edges or error edges."""
        reachable = set()
        to_visit = [start]

        while to_visit:
            current = to_visit.pop()
            if current in reachable:
                continue
            reachable.add(current)
            for edge in self.edges:
                if edge.source == current and not edge.loop_back and not edge.is_failure_edge:
                    to_visit.append(edge.target)

        return reachable

    def build(self) -> GraphSpec:
        """
        Return the validated GraphSpec.

        Raises:
            GraphValidationError: If validation fails
        """
        validation = self.validate()
        if not validation.valid:
            raise GraphValidationError(validation.errors)
        return self._graph()

    def executor(self, **kwargs: Any) -> GraphExecutor:
        """Create a GraphExecutor with this builder's node registry."""
        return GraphExecutor(node_registry=dict(self.registry), **kwargs)

    def show(self) -> str:
        """Show current graph as text."""
        lines = [f"=== Graph: {self.graph_id} ===", f"Entry: {self.entry_node}", ""]

        if self.nodes:
            lines.append("Nodes:")
            for node in self.nodes:
                lines.append(f"  [{node.id}] {node.display_name} ({self.registry[node.id]!r})")
            lines.append("")

        if self.edges:
            lines.append("Edges:")
            for edge in self.edges:
                label = edge.label or edge.condition.value
                lines.append(f"  {edge.source} --{label}--> {edge.target}")
            lines.append("")

        return "\n".join(lines)
