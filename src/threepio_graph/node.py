"""
Nodes: named state-transformation steps.

A node wraps a transform ``S -> S`` that may be a plain function or a
coroutine function. Both are driven through a single awaited call path, so
the engine never needs to know which kind it was given.

A transform (and likewise a router) may declare a ``context`` parameter to
receive an :class:`ExecutionContext` describing where the run currently is.
The signature is inspected once, when the node is created.
"""

import inspect
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    NewType,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from .exceptions import InvalidStateError

S = TypeVar("S")

START = "__start__"
END = "__end__"

RESERVED_NAMES = frozenset({START, END})

NodeName = NewType("NodeName", str)

NodeFunction = Callable[..., Union[S, Awaitable[S]]]


@dataclass(frozen=True)
class ExecutionContext:
    """
    Snapshot of an in-flight run, handed to transforms and routers that ask for it.

    Attributes:
        node: Name of the node being executed (or whose edge is being routed).
        path: Nodes executed so far in this run. While a node runs, its own
            name is not yet part of the path; while its router runs, it is.
        iteration: Current step number (1-based).
        graph_name: Name of the graph executing the run.
    """

    node: str
    path: Tuple[str, ...] = ()
    iteration: int = 0
    graph_name: str = "StateGraph"


def accepts_context(func: Callable[..., Any]) -> bool:
    """Return True if ``func`` can be called with a ``context`` keyword argument."""
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return False
    for param in sig.parameters.values():
        if param.name == "context" and param.kind in (
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
            inspect.Parameter.KEYWORD_ONLY,
        ):
            return True
        if param.kind == inspect.Parameter.VAR_KEYWORD:
            return True
    return False


async def call_maybe_async(
    func: Callable[..., Any],
    *args: Any,
    context: Optional[ExecutionContext] = None,
    pass_context: bool = False,
) -> Any:
    """Call ``func`` and await the result if it is awaitable."""
    if pass_context:
        result = func(*args, context=context)
    else:
        result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass(frozen=True, eq=False)
class GraphNode(Generic[S]):
    """
    A node in the graph.

    Nodes are compared and hashed by name only: within one graph a name
    identifies exactly one node.

    Attributes:
        name: Unique name of the node.
        function: Transform from state to next state (sync or async).
        description: Optional text shown in diagrams.
    """

    name: str
    function: NodeFunction
    description: Optional[str] = None
    wants_context: bool = field(init=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "wants_context", accepts_context(self.function))

    async def execute(self, state: S, context: Optional[ExecutionContext] = None) -> S:
        """
        Run the transform on ``state`` and return the next state.

        Raises:
            InvalidStateError: If the transform returns None.
            Exception: Anything raised by the transform, unmodified.
        """
        result = await call_maybe_async(
            self.function,
            state,
            context=context or ExecutionContext(node=self.name),
            pass_context=self.wants_context,
        )
        if result is None:
            raise InvalidStateError(
                f"Node '{self.name}' returned None; transforms must return the next state"
            )
        return result

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GraphNode):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)

    def __str__(self) -> str:
        if self.description:
            return f"Node({self.name}: {self.description})"
        return f"Node({self.name})"
