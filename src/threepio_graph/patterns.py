"""
Fluent graph builder and ready-made topologies.

GraphBuilder is a thin, chainable front end for StateGraph whose method
names read like the flow being described. GraphPatterns returns fully wired
StateGraphs for common shapes:

    - linear:      A -> B -> C -> END
    - loop:        A -> B -> C -> (A | END)
    - retry:       try -> (END | try | on_exhausted), bounded by max_retries
    - map_reduce:  split -> [mapper, ...] in parallel -> merge -> END

Example:
    >>> graph = (
    ...     GraphBuilder()
    ...     .with_node("draft", draft)
    ...     .with_node("review", review)
    ...     .connect("draft", "review")
    ...     .route_if("review", lambda s: s["approved"], then=END, otherwise="draft")
    ...     .start_from("draft")
    ...     .build()
    ... )
"""

from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .config import DEFAULT_MAX_ITERATIONS
from .edge import Merger, Predicate
from .exceptions import GraphConstructionError
from .node import END, ExecutionContext, NodeFunction, call_maybe_async
from .stategraph import CompiledGraph, StateGraph

NodeSpecs = Union[Mapping[str, NodeFunction], Iterable[Tuple[str, NodeFunction]]]


def _node_list(nodes: NodeSpecs) -> List[Tuple[str, NodeFunction]]:
    items = list(nodes.items()) if isinstance(nodes, Mapping) else list(nodes)
    if not items:
        raise GraphConstructionError("At least one node is required.")
    return items


class GraphBuilder:
    """Chainable wrapper around StateGraph."""

    def __init__(self, max_iterations: int = DEFAULT_MAX_ITERATIONS, name: str = "StateGraph", **kwargs: Any):
        self._graph = StateGraph(max_iterations=max_iterations, name=name, **kwargs)

    def with_node(
        self, name: str, function: NodeFunction, description: Optional[str] = None
    ) -> "GraphBuilder":
        self._graph.add_node(name, function, description=description)
        return self

    def connect(self, source: str, target: str) -> "GraphBuilder":
        self._graph.add_edge(source, target)
        return self

    def route_if(
        self, source: str, condition: Predicate, then: str, otherwise: str
    ) -> "GraphBuilder":
        """Go to ``then`` when ``condition(state)`` is true, else to ``otherwise``."""
        self._graph.add_conditional_router(source, {then: condition}, default_route=otherwise)
        return self

    def route_when(
        self,
        source: str,
        routes: Mapping[str, Predicate],
        default_route: str = END,
    ) -> "GraphBuilder":
        """Go to the first route whose predicate holds, else ``default_route``."""
        self._graph.add_conditional_router(source, routes, default_route=default_route)
        return self

    def parallel(
        self,
        source: str,
        targets: Sequence[str],
        merger: Optional[Merger] = None,
        join: Optional[str] = None,
    ) -> "GraphBuilder":
        self._graph.add_parallel_edge(source, targets, merger=merger, join=join)
        return self

    def start_from(self, name: str) -> "GraphBuilder":
        self._graph.set_entry_point(name)
        return self

    def finish_at(self, name: str) -> "GraphBuilder":
        self._graph.set_finish_point(name)
        return self

    def build(self) -> StateGraph:
        """Return the underlying StateGraph."""
        return self._graph

    def compile(self) -> CompiledGraph:
        """Compile the underlying StateGraph."""
        return self._graph.compile()


class GraphPatterns:
    """Factories for common graph topologies."""

    @staticmethod
    def linear(nodes: NodeSpecs, max_iterations: int = DEFAULT_MAX_ITERATIONS) -> StateGraph:
        """
        Chain ``nodes`` in order and finish after the last one.

        Args:
            nodes: ``(name, function)`` pairs or a name -> function mapping.
        """
        items = _node_list(nodes)
        graph = StateGraph(max_iterations=max_iterations)
        for name, function in items:
            graph.add_node(name, function)
        for (source, _), (target, _) in zip(items, items[1:]):
            graph.add_edge(source, target)
        graph.set_finish_point(items[-1][0])
        graph.set_entry_point(items[0][0])
        return graph

    @staticmethod
    def loop(
        nodes: NodeSpecs,
        should_continue: Predicate,
        entry_node: Optional[str] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> StateGraph:
        """
        Chain ``nodes`` and, after the last one, go back to ``entry_node``
        while ``should_continue(state)`` holds.

        ``entry_node`` defaults to the first node.
        """
        items = _node_list(nodes)
        graph = StateGraph(max_iterations=max_iterations)
        for name, function in items:
            graph.add_node(name, function)
        for (source, _), (target, _) in zip(items, items[1:]):
            graph.add_edge(source, target)
        entry = entry_node if entry_node is not None else items[0][0]
        graph.add_conditional_router(items[-1][0], {entry: should_continue})
        graph.set_entry_point(entry)
        return graph

    @staticmethod
    def retry(
        try_node: str,
        try_function: NodeFunction,
        is_success: Predicate,
        max_retries: int = 3,
        on_exhausted: Optional[Tuple[str, NodeFunction]] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> StateGraph:
        """
        Run ``try_function`` until ``is_success(state)`` holds.

        The attempt count is read from the execution path, so states need no
        bookkeeping field. After ``max_retries`` failed retries the run goes to
        the ``on_exhausted`` node (a ``(name, function)`` pair) or ends.

        Raises:
            GraphConstructionError: If max_retries is negative or the loop
                guard could trip before the retries are used up.
        """
        if max_retries < 0:
            raise GraphConstructionError(f"max_retries must be >= 0, got {max_retries}")
        needed = max_retries + 1 + (1 if on_exhausted else 0)
        if needed > max_iterations:
            raise GraphConstructionError(
                f"max_iterations ({max_iterations}) is too small for {max_retries} retries"
            )

        graph = StateGraph(max_iterations=max_iterations)
        graph.add_node(try_node, try_function)
        give_up = END
        if on_exhausted is not None:
            give_up, exhausted_function = on_exhausted
            graph.add_node(give_up, exhausted_function)
            graph.set_finish_point(give_up)

        async def decide(state: Any, context: ExecutionContext) -> str:
            if await call_maybe_async(is_success, state):
                return END
            if context.path.count(try_node) <= max_retries:
                return try_node
            return give_up

        graph.add_conditional_edge(
            try_node,
            decide,
            description=f"retry up to {max_retries}x",
            targets=tuple(dict.fromkeys([END, try_node, give_up])),
        )
        graph.set_entry_point(try_node)
        return graph

    @staticmethod
    def map_reduce(
        split_node: str,
        split_function: NodeFunction,
        mappers: NodeSpecs,
        merge_node: str,
        merge_function: NodeFunction,
        merger: Optional[Merger] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> StateGraph:
        """
        Split, run every mapper concurrently, combine with ``merger`` and
        finish with ``merge_function``.

        Without a merger the last mapper's result reaches the merge node.
        """
        mapper_items = _node_list(mappers)
        graph = StateGraph(max_iterations=max_iterations)
        graph.add_node(split_node, split_function)
        for name, function in mapper_items:
            graph.add_node(name, function)
        graph.add_node(merge_node, merge_function)
        graph.add_parallel_edge(
            split_node,
            [name for name, _ in mapper_items],
            merger=merger,
            join=merge_node,
        )
        graph.set_finish_point(merge_node)
        graph.set_entry_point(split_node)
        return graph
