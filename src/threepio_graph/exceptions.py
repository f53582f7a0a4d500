"""
Exception classes for threepio_graph.

All errors raised by the engine itself derive from GraphError. Each subclass
also inherits the builtin exception that callers would naturally catch for
the same situation (ValueError for bad topology, RuntimeError for execution
failures), so ``except ValueError`` keeps working for construction mistakes.

Exceptions raised by user code (node transforms, routers, mergers) are never
wrapped: they propagate out of ``invoke()`` unmodified.

Design Principle:
    exceptions.py (BASE - zero dependencies)
        ^
    node.py / edge.py / state.py
        ^
    stategraph.py (CORE)
"""

from typing import List, Optional, Sequence


class GraphError(Exception):
    """Base class for every error raised by threepio_graph."""


class GraphConstructionError(GraphError, ValueError):
    """
    Raised synchronously while building a graph.

    Triggers include duplicate or reserved node names, edges that reference
    unknown nodes, a second edge registered for the same source node, an
    entry point that is not registered, and invalid graph settings.
    """


class GraphNotConfiguredError(GraphError, RuntimeError):
    """Raised when a graph is compiled or invoked before an entry point is set."""


class LoopGuardError(GraphError, RuntimeError):
    """
    Raised when a run performs more steps than ``max_iterations`` allows.

    Attributes:
        max_iterations: The cap that was exceeded.
        node: The node that would have run next.
        path: The nodes executed before the guard tripped.
    """

    def __init__(
        self,
        max_iterations: int,
        node: Optional[str] = None,
        path: Optional[Sequence[str]] = None,
    ):
        self.max_iterations = max_iterations
        self.node = node
        self.path: List[str] = list(path or [])
        message = (
            f"Graph exceeded maximum iterations ({max_iterations}). "
            "Possible infinite loop."
        )
        if node is not None:
            message += f" Next node was '{node}'."
        super().__init__(message)


class InvalidRouteError(GraphError, RuntimeError):
    """
    Raised when a router selects a node that cannot be routed to.

    Attributes:
        source: The node whose conditional edge was evaluated.
        target: The value returned by the router.
    """

    def __init__(self, source: str, target: object, reason: Optional[str] = None):
        self.source = source
        self.target = target
        message = f"Router on node '{source}' returned invalid target {target!r}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class InvalidStateError(GraphError, TypeError):
    """Raised when a node or merger returns None instead of a next state."""


class CheckpointError(GraphError):
    """Raised by checkpoint stores for invalid ids or unreadable documents."""


class GraphConfigError(GraphError, ValueError):
    """Raised for invalid configuration values or unreadable config files."""
