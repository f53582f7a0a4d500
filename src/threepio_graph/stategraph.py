import asyncio
import logging
from types import MappingProxyType
from typing import (
    Any,
    Dict,
    Generic,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

import networkx as nx

from .config import DEFAULT_MAX_ITERATIONS, GraphConfig
from .edge import (
    ConditionalEdge,
    ConditionalRouter,
    DirectEdge,
    Edge,
    Merger,
    ParallelEdge,
    Predicate,
    Router,
    edge_kind,
)
from .exceptions import (
    GraphConstructionError,
    GraphError,
    GraphNotConfiguredError,
    InvalidRouteError,
    InvalidStateError,
    LoopGuardError,
)
from .node import (
    END,
    RESERVED_NAMES,
    START,
    ExecutionContext,
    GraphNode,
    NodeFunction,
    NodeName,
    call_maybe_async,
)
from .state import ExecutionResult
from .visualization import VisualizationMixin

S = TypeVar("S")


class StateGraph(VisualizationMixin, Generic[S]):
    """
    Builder for state-based workflow graphs.

    Nodes are named transforms over a state value; edges decide which node
    runs next. Registration methods validate names immediately and return
    the graph, so calls can be chained. ``compile()`` (alias ``build()``)
    freezes the topology into a CompiledGraph that can be invoked any number
    of times, including concurrently.

    Attributes:
        name (str): Name used in logs, diagrams and execution contexts.
        max_iterations (int): Loop guard cap for each run.
        graph (nx.DiGraph): Static mirror of the topology, used for analysis.
        logger (logging.Logger): Logger instance for observability.
        log_state_values (bool): Whether to log full state values.

    Logging:
        Log levels used:
        - DEBUG: Node entry, edge resolution, transitions
        - INFO: Node completion, parallel flow start/join, execution complete
        - ERROR: Exceptions in nodes, routers and mergers; loop guard trips

    Example:
        >>> graph = (
        ...     StateGraph()
        ...     .add_node("fetch", fetch)
        ...     .add_node("process", process)
        ...     .add_edge("fetch", "process")
        ...     .add_conditional_edge(
        ...         "process", lambda state: "fetch" if state["more"] else END
        ...     )
        ...     .set_entry_point("fetch")
        ... )
        >>> result = await graph.invoke(MapState({"more": False}))
        >>> result.path
        ['fetch', 'process']
    """

    def __init__(
        self,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        name: str = "StateGraph",
        log_level: Optional[int] = None,
        log_state_values: bool = False,
    ):
        """
        Initialize the StateGraph.

        Args:
            max_iterations (int): Maximum number of node steps per run. Must be > 0.
            name (str): Name of the graph.
            log_level (Optional[int]): Level for the ``threepio_graph.stategraph``
                logger. The logger is shared by every graph in the process, so
                the level is only changed when given; None leaves it as is.
            log_state_values (bool): If True, log full state values. Defaults to False
                since state may contain secrets or PII.

        Raises:
            GraphConstructionError: If max_iterations is not a positive integer.
        """
        if (
            not isinstance(max_iterations, int)
            or isinstance(max_iterations, bool)
            or max_iterations <= 0
        ):
            raise GraphConstructionError(
                f"max_iterations must be a positive integer, got {max_iterations!r}"
            )
        self.name = name
        self.max_iterations = max_iterations
        self.graph = nx.DiGraph()
        self.graph.add_node(START)
        self.graph.add_node(END)
        self._nodes: Dict[str, GraphNode] = {}
        self._edges: Dict[str, Edge] = {}
        self._entry_point: Optional[str] = None
        self.logger = logging.getLogger(__name__)
        if log_level is not None:
            self.logger.setLevel(log_level)
        self.log_state_values = log_state_values

    @classmethod
    def from_config(cls, config: GraphConfig, name: str = "StateGraph") -> "StateGraph":
        """Create an empty graph using the settings of a GraphConfig."""
        return cls(
            max_iterations=config.max_iterations,
            name=name,
            log_level=config.log_level,
            log_state_values=config.log_state_values,
        )

    # --- Registration ---

    def add_node(
        self,
        name: str,
        transform: NodeFunction,
        description: Optional[str] = None,
    ) -> "StateGraph[S]":
        """
        Add a node to the graph.

        Args:
            name (str): Unique name of the node.
            transform (Callable): Function ``state -> state`` (sync or async). It may
                declare a ``context`` parameter to receive an ExecutionContext.
            description (Optional[str]): Text shown in diagrams.

        Returns:
            StateGraph: This graph, for chaining.

        Raises:
            GraphConstructionError: If the name is empty, reserved or already
                registered, or if transform is not callable.
        """
        if not isinstance(name, str) or not name:
            raise GraphConstructionError(f"Node name must be a non-empty string, got {name!r}")
        if name in RESERVED_NAMES:
            raise GraphConstructionError(f"Node name '{name}' is reserved.")
        if name in self._nodes:
            raise GraphConstructionError(f"Node '{name}' already exists in the graph.")
        if not callable(transform):
            raise GraphConstructionError(f"Transform for node '{name}' must be callable.")

        self._nodes[name] = GraphNode(name=name, function=transform, description=description)
        self.graph.add_node(name, description=description)
        return self

    def add_edge(self, source: str, target: str) -> "StateGraph[S]":
        """
        Add a direct edge from ``source`` to ``target``.

        Args:
            source (str): The source node.
            target (str): The target node, or END.

        Raises:
            GraphConstructionError: If either node doesn't exist, or source
                already has an outgoing edge.
        """
        self._validate_node(source)
        self._validate_node(target, allow_end=True)
        self._register_edge(DirectEdge(source=source, target=target))
        return self

    def set_finish_point(self, name: str) -> "StateGraph[S]":
        """Route ``name`` to END. Equivalent to ``add_edge(name, END)``."""
        return self.add_edge(name, END)

    def add_conditional_edge(
        self,
        source: str,
        router: Router,
        description: Optional[str] = None,
        targets: Optional[Sequence[str]] = None,
    ) -> "StateGraph[S]":
        """
        Add an edge whose destination is computed from the state.

        Args:
            source (str): The source node.
            router (Callable): Function ``state -> node name`` (sync or async).
            description (Optional[str]): Label used by diagrams.
            targets (Optional[Sequence[str]]): Possible destinations. When given,
                each must be registered (or END) and the router's answer must
                be one of them.

        Raises:
            GraphConstructionError: If source or a declared target doesn't exist,
                or source already has an outgoing edge.
        """
        self._validate_node(source)
        if not callable(router):
            raise GraphConstructionError(f"Router for node '{source}' must be callable.")
        if targets is not None:
            targets = tuple(targets)
            if not targets:
                raise GraphConstructionError(
                    f"Conditional edge from '{source}' declares no targets."
                )
            for target in targets:
                self._validate_node(target, allow_end=True)
        self._register_edge(
            ConditionalEdge(
                source=source, router=router, description=description, targets=targets
            )
        )
        return self

    def add_conditional_router(
        self,
        source: str,
        routes: Mapping[str, Predicate],
        default_route: str = END,
    ) -> "StateGraph[S]":
        """
        Add a conditional edge defined by named predicates.

        Predicates are evaluated in declaration order; the first one that
        returns True selects its route. When none match, ``default_route``
        is used.

        Args:
            source (str): The source node.
            routes (Mapping[str, Callable]): Route name -> predicate ``state -> bool``.
            default_route (str): Route used when no predicate matches. Defaults to END.

        Raises:
            GraphConstructionError: If source, a route name or the default route
                doesn't exist, or source already has an outgoing edge.
        """
        self._validate_node(source)
        for route, predicate in routes.items():
            self._validate_node(route, allow_end=True)
            if not callable(predicate):
                raise GraphConstructionError(
                    f"Predicate for route '{route}' on node '{source}' must be callable."
                )
        self._validate_node(default_route, allow_end=True)
        self._register_edge(ConditionalRouter(source, routes, default_route=default_route))
        return self

    def add_parallel_edge(
        self,
        source: str,
        targets: Sequence[str],
        merger: Optional[Merger] = None,
        join: Optional[str] = None,
    ) -> "StateGraph[S]":
        """
        Add a fan-out edge that runs several nodes concurrently.

        Every target runs one transform step from the same state. Results are
        merged by ``merger(original_state, results)`` when given, otherwise the
        last target's result is used. Execution continues at ``join``, or ends
        when no join node is given.

        Args:
            source (str): The source node.
            targets (Sequence[str]): Nodes to run in parallel (non-empty, no duplicates).
            merger (Optional[Callable]): Function combining the branch results.
            join (Optional[str]): Node to continue at after the merge.

        Raises:
            GraphConstructionError: If any node doesn't exist, targets is empty
                or has duplicates, or source already has an outgoing edge.
        """
        self._validate_node(source)
        if isinstance(targets, str):
            raise GraphConstructionError(
                f"Parallel targets for '{source}' must be a sequence of node names."
            )
        targets = tuple(targets)
        if not targets:
            raise GraphConstructionError(f"Parallel edge from '{source}' has no targets.")
        duplicates = sorted({t for t in targets if targets.count(t) > 1})
        if duplicates:
            raise GraphConstructionError(
                f"Parallel edge from '{source}' lists duplicate targets: {duplicates}"
            )
        for target in targets:
            self._validate_node(target)
        if join is not None:
            self._validate_node(join, allow_end=True)
        if merger is not None and not callable(merger):
            raise GraphConstructionError(f"Merger for node '{source}' must be callable.")
        self._register_edge(
            ParallelEdge(source=source, targets=targets, merger=merger, join=join)
        )
        return self

    def set_entry_point(self, name: str) -> "StateGraph[S]":
        """
        Set the node where execution starts.

        Raises:
            GraphConstructionError: If the node doesn't exist in the graph.
        """
        self._validate_node(name)
        if self._entry_point is not None:
            self.graph.remove_edge(START, self._entry_point)
        self._entry_point = name
        self.graph.add_edge(START, name, kind="entry")
        return self

    def _validate_node(self, name: str, allow_end: bool = False) -> None:
        if allow_end and name == END:
            return
        if name not in self._nodes:
            raise GraphConstructionError(f"Node '{name}' does not exist in the graph.")

    def _register_edge(self, edge: Edge) -> None:
        existing = self._edges.get(edge.source)
        if existing is not None:
            raise GraphConstructionError(
                f"Node '{edge.source}' already has an outgoing edge: {existing}"
            )
        self._edges[edge.source] = edge

        kind = edge_kind(edge)
        for target in edge.static_targets():
            self.graph.add_edge(edge.source, target, kind=kind)
        if isinstance(edge, ParallelEdge):
            self.graph.add_edge(edge.source, edge.continuation, kind="join")
        if isinstance(edge, ConditionalEdge) and edge.targets is None:
            self.graph.nodes[edge.source]["dynamic_routing"] = True

    # --- Accessors ---

    @property
    def entry_point(self) -> Optional[str]:
        return self._entry_point

    @property
    def nodes(self) -> Mapping[str, GraphNode]:
        return MappingProxyType(self._nodes)

    @property
    def edges(self) -> Mapping[str, Edge]:
        return MappingProxyType(self._edges)

    def node(self, name: str) -> GraphNode:
        """
        Get a registered node.

        Raises:
            KeyError: If the node is not found in the graph.
        """
        if name not in self._nodes:
            raise KeyError(f"Node '{name}' not found in the graph")
        return self._nodes[name]

    def edge(self, source: str) -> Optional[Edge]:
        """Return the outgoing edge of ``source``, or None if it has none."""
        return self._edges.get(source)

    def successors(self, name: str) -> List[str]:
        """
        List the statically known successors of a node.

        Raises:
            KeyError: If the node is not found in the graph.
        """
        if name not in self._nodes:
            raise KeyError(f"Node '{name}' not found in the graph")
        return list(self.graph.successors(name))

    # --- Compilation & execution ---

    def compile(self) -> "CompiledGraph[S]":
        """
        Freeze the current topology into an immutable CompiledGraph.

        Later changes to this builder do not affect graphs compiled earlier.

        Raises:
            GraphNotConfiguredError: If no entry point has been set.
        """
        if self._entry_point is None:
            raise GraphNotConfiguredError("Entry point not set. Call set_entry_point() first.")
        return CompiledGraph(
            name=self.name,
            nodes=self._nodes,
            edges=self._edges,
            entry_point=self._entry_point,
            max_iterations=self.max_iterations,
            graph=self.graph,
            log_state_values=self.log_state_values,
        )

    build = compile

    async def invoke(self, initial_state: S) -> ExecutionResult[S]:
        """Compile the current topology and run it. See CompiledGraph.invoke()."""
        return await self.compile().invoke(initial_state)

    def invoke_sync(self, initial_state: S) -> ExecutionResult[S]:
        """Run ``invoke()`` to completion in a fresh event loop."""
        return self.compile().invoke_sync(initial_state)

    def as_runnable(self, max_concurrency: Optional[int] = None):
        """Compile and wrap the graph in a GraphRunnable."""
        return self.compile().as_runnable(max_concurrency=max_concurrency)

    def __repr__(self) -> str:
        return (
            f"StateGraph(name={self.name!r}, nodes: {len(self._nodes)}, "
            f"edges: {len(self._edges)}, entry: {self._entry_point})"
        )


class CompiledGraph(VisualizationMixin, Generic[S]):
    """
    An immutable, validated graph ready for execution.

    The node and edge registries are read-only mappings and the NetworkX mirror
    is frozen, so a CompiledGraph can safely serve concurrent ``invoke()``
    calls. Each call keeps its own state, path and iteration counter.
    """

    def __init__(
        self,
        name: str,
        nodes: Mapping[str, GraphNode],
        edges: Mapping[str, Edge],
        entry_point: str,
        max_iterations: int,
        graph: nx.DiGraph,
        log_state_values: bool = False,
    ):
        if entry_point not in nodes:
            raise GraphNotConfiguredError(
                f"Entry point '{entry_point}' is not a registered node."
            )
        self.name = name
        self.max_iterations = max_iterations
        self._nodes: Mapping[str, GraphNode] = MappingProxyType(dict(nodes))
        self._edges: Mapping[str, Edge] = MappingProxyType(dict(edges))
        self._entry_point = NodeName(entry_point)
        self.graph = nx.freeze(nx.DiGraph(graph))
        self.logger = logging.getLogger(__name__)
        self.log_state_values = log_state_values

    @property
    def entry_point(self) -> str:
        return self._entry_point

    @property
    def nodes(self) -> Mapping[str, GraphNode]:
        return self._nodes

    @property
    def edges(self) -> Mapping[str, Edge]:
        return self._edges

    def node(self, name: str) -> GraphNode:
        if name not in self._nodes:
            raise KeyError(f"Node '{name}' not found in the graph")
        return self._nodes[name]

    def edge(self, source: str) -> Optional[Edge]:
        return self._edges.get(source)

    async def invoke(self, initial_state: S) -> ExecutionResult[S]:
        """
        Execute the graph from the entry point until END.

        Execution stops when a node routes to END or has no outgoing edge.

        Args:
            initial_state: The state handed to the entry node.

        Returns:
            ExecutionResult: Final state, executed path and metadata
                (``iterations``, ``entry_point``).

        Raises:
            LoopGuardError: If more than ``max_iterations`` steps are needed.
            InvalidRouteError: If a router returns an unknown node name.
            InvalidStateError: If a node or merger returns None.
            Exception: Anything raised by a node, router or merger, unmodified.
        """
        state = initial_state
        current = self._entry_point
        path: List[str] = []
        iteration = 0

        self.logger.debug(f"Starting execution of '{self.name}' at node '{current}'")
        if self.log_state_values:
            self.logger.debug(f"Initial state: {state}")

        while current != END:
            iteration += 1
            if iteration > self.max_iterations:
                self.logger.error(
                    f"Loop guard tripped: more than {self.max_iterations} iterations "
                    f"(next node '{current}')"
                )
                raise LoopGuardError(self.max_iterations, node=current, path=path)

            state = await self._run_node(current, state, self._context(current, path, iteration))
            path.append(current)

            edge = self._edges.get(current)
            if edge is None:
                self.logger.debug(f"Node '{current}' has no outgoing edge, finishing")
                break
            state, current = await self._follow_edge(edge, state, path, iteration)

        self.logger.info(f"Execution completed successfully after {iteration} iteration(s)")
        if self.log_state_values:
            self.logger.debug(f"Final state: {state}")

        return ExecutionResult(
            state=state,
            path=path,
            metadata={"iterations": iteration, "entry_point": self._entry_point},
        )

    def invoke_sync(self, initial_state: S) -> ExecutionResult[S]:
        """
        Run ``invoke()`` to completion in a fresh event loop.

        Must not be called from inside a running event loop; await
        ``invoke()`` there instead.
        """
        return asyncio.run(self.invoke(initial_state))

    def as_runnable(self, max_concurrency: Optional[int] = None):
        """Wrap this graph in a GraphRunnable for use in pipelines."""
        from .runnable import GraphRunnable

        return GraphRunnable(self, max_concurrency=max_concurrency)

    def _context(self, node: str, path: Sequence[str], iteration: int) -> ExecutionContext:
        return ExecutionContext(
            node=node, path=tuple(path), iteration=iteration, graph_name=self.name
        )

    async def _run_node(self, name: str, state: S, context: ExecutionContext) -> S:
        node = self._nodes[name]
        self.logger.debug(f"Entering node: {name}")
        if self.log_state_values:
            self.logger.debug(f"Node '{name}' input state: {state}")
        try:
            result = await node.execute(state, context)
        except Exception as e:
            self.logger.error(f"Error in node '{name}': {e}")
            raise
        self.logger.info(f"Node '{name}' completed successfully")
        if self.log_state_values:
            self.logger.debug(f"Node '{name}' output state: {result}")
        return result

    async def _follow_edge(
        self, edge: Edge, state: S, path: List[str], iteration: int
    ) -> Tuple[S, str]:
        """Resolve the next node for ``edge``; returns (state, next node)."""
        if isinstance(edge, DirectEdge):
            self.logger.debug(f"Transitioning from '{edge.source}' to '{edge.target}'")
            return state, edge.target

        if isinstance(edge, ConditionalEdge):
            try:
                target = await edge.route(state, self._context(edge.source, path, iteration))
            except Exception as e:
                self.logger.error(f"Error routing from node '{edge.source}': {e}")
                raise
            self._check_route(edge, target)
            self.logger.debug(
                f"Edge '{edge.source}' -> '{target}': router selected '{target}'"
            )
            return state, target

        if isinstance(edge, ParallelEdge):
            state = await self._run_parallel(edge, state, path, iteration)
            path.extend(edge.targets)
            self.logger.debug(
                f"Transitioning from parallel join of '{edge.source}' to '{edge.continuation}'"
            )
            return state, edge.continuation

        raise GraphError(f"Unsupported edge type: {type(edge).__name__}")

    def _check_route(self, edge: ConditionalEdge, target: Any) -> None:
        if not isinstance(target, str):
            raise InvalidRouteError(edge.source, target, "router must return a node name")
        if target != END and target not in self._nodes:
            raise InvalidRouteError(edge.source, target, "node does not exist in the graph")
        if edge.targets is not None and target not in edge.targets:
            raise InvalidRouteError(
                edge.source, target, f"expected one of {list(edge.targets)}"
            )

    async def _run_parallel(
        self, edge: ParallelEdge, state: S, path: List[str], iteration: int
    ) -> S:
        """
        Run every branch of ``edge`` concurrently from ``state`` and merge.

        Fail-fast: the first branch error cancels the remaining branches and
        is re-raised unmodified.
        """
        self.logger.info(
            f"Starting {len(edge.targets)} parallel flow(s) from node '{edge.source}'"
        )
        snapshot = tuple(path)
        tasks = [
            asyncio.ensure_future(
                self._run_node(
                    target,
                    state,
                    ExecutionContext(
                        node=target,
                        path=snapshot,
                        iteration=iteration,
                        graph_name=self.name,
                    ),
                )
            )
            for target in edge.targets
        ]

        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        failures = [
            (target, task)
            for target, task in zip(edge.targets, tasks)
            if task in done and not task.cancelled() and task.exception() is not None
        ]
        if failures:
            branch, failed = failures[0]
            self.logger.warning(
                f"Fail-fast triggered by branch '{branch}', "
                f"cancelling {len(pending)} pending branch(es)"
            )
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            raise failed.exception()

        results = [task.result() for task in tasks]
        self.logger.info(
            f"Joining {len(results)} parallel flow(s) from node '{edge.source}'"
        )

        if edge.merger is None:
            return results[-1]

        try:
            merged = await call_maybe_async(edge.merger, state, results)
        except Exception as e:
            self.logger.error(f"Error in merger of parallel edge from '{edge.source}': {e}")
            raise
        if merged is None:
            raise InvalidStateError(
                f"Merger of parallel edge from '{edge.source}' returned None"
            )
        return merged

    def __repr__(self) -> str:
        return (
            f"CompiledGraph(name={self.name!r}, nodes: {len(self._nodes)}, "
            f"edges: {len(self._edges)}, entry: {self._entry_point})"
        )
