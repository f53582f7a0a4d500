"""
Edges: routing rules keyed by their source node.

Every source node has at most one outgoing edge, and that edge is one of the
variants below. Together they form the ``Edge`` union the engine dispatches
on in its step function:

- DirectEdge: always continue at the same target.
- ConditionalEdge: a router function picks the next node from the state.
- ConditionalRouter: named predicates evaluated in declaration order; sugar
  built entirely on ConditionalEdge.
- ParallelEdge: fan out to several nodes concurrently, merge, continue at an
  optional join node.

Edges are immutable once created. Validation against the node registry is
the graph's job (see StateGraph), since edges do not know which nodes exist.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from .node import END, ExecutionContext, accepts_context, call_maybe_async

S = TypeVar("S")

Router = Callable[..., Union[str, Awaitable[str]]]
Predicate = Callable[..., Union[bool, Awaitable[bool]]]
Merger = Callable[[Any, List[Any]], Any]


@dataclass(frozen=True)
class DirectEdge:
    """An edge that always routes ``source`` to ``target``."""

    source: str
    target: str

    def static_targets(self) -> Tuple[str, ...]:
        return (self.target,)

    def __str__(self) -> str:
        return f"DirectEdge({self.source} -> {self.target})"


@dataclass(frozen=True)
class ConditionalEdge(Generic[S]):
    """
    An edge whose destination is chosen at run time by ``router``.

    Attributes:
        source: Source node name.
        router: Callable returning the next node name (or END); may be async
            and may accept a ``context`` keyword.
        description: Optional label used by diagrams.
        targets: Optional declared set of possible destinations. When given,
            the router must answer with one of them.
    """

    source: str
    router: Router
    description: Optional[str] = None
    targets: Optional[Tuple[str, ...]] = None
    wants_context: bool = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.targets is not None:
            object.__setattr__(self, "targets", tuple(self.targets))
        object.__setattr__(self, "wants_context", accepts_context(self.router))

    def static_targets(self) -> Tuple[str, ...]:
        return self.targets or ()

    async def route(self, state: S, context: Optional[ExecutionContext] = None) -> Any:
        """Evaluate the router against ``state`` and return its raw answer."""
        return await call_maybe_async(
            self.router,
            state,
            context=context or ExecutionContext(node=self.source),
            pass_context=self.wants_context,
        )

    def __str__(self) -> str:
        text = f"ConditionalEdge({self.source} -> ?)"
        if self.description:
            text += f": {self.description}"
        return text


class ConditionalRouter(ConditionalEdge):
    """
    A conditional edge defined by named predicates.

    Predicates are evaluated in declaration order against the current state;
    the first one returning a truthy value selects its route name. When none
    match, ``default_route`` is used.

    Example:
        >>> ConditionalRouter(
        ...     "classify",
        ...     {
        ...         "question": lambda state: state["kind"] == "question",
        ...         "command": lambda state: state["kind"] == "command",
        ...     },
        ...     default_route="unknown",
        ... )
    """

    def __init__(
        self,
        source: str,
        routes: Mapping[str, Predicate],
        default_route: str = END,
    ):
        ordered = dict(routes)
        frozen_routes = MappingProxyType(ordered)
        predicates = [
            (name, predicate, accepts_context(predicate))
            for name, predicate in ordered.items()
        ]

        async def _route(state, context=None):
            for name, predicate, wants_context in predicates:
                matched = await call_maybe_async(
                    predicate, state, context=context, pass_context=wants_context
                )
                if matched:
                    return name
            return default_route

        super().__init__(
            source=source,
            router=_route,
            description=f"Routes to: {', '.join(ordered)}",
            targets=tuple(dict.fromkeys([*ordered, default_route])),
        )
        object.__setattr__(self, "routes", frozen_routes)
        object.__setattr__(self, "default_route", default_route)

    def __str__(self) -> str:
        return f"ConditionalRouter({self.source} -> {{{', '.join(self.routes)}}})"


@dataclass(frozen=True)
class ParallelEdge(Generic[S]):
    """
    Fan out from ``source`` to every node in ``targets`` concurrently.

    Each target runs exactly one transform step from the same pre-branch
    state. The branch results are combined by ``merger(original, results)``
    when given, otherwise the result of the last target in declaration order
    wins. Execution then continues at ``join`` (END when not set).
    """

    source: str
    targets: Tuple[str, ...]
    merger: Optional[Merger] = None
    join: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "targets", tuple(self.targets))

    @property
    def continuation(self) -> str:
        return self.join if self.join is not None else END

    def static_targets(self) -> Tuple[str, ...]:
        if self.join is not None:
            return self.targets + (self.join,)
        return self.targets

    def __str__(self) -> str:
        return f"ParallelEdge({self.source} -> {', '.join(self.targets)})"


Edge = Union[DirectEdge, ConditionalEdge, ParallelEdge]


def edge_kind(edge: Edge) -> str:
    """Return the short kind name of an edge: direct, router, conditional or parallel."""
    if isinstance(edge, DirectEdge):
        return "direct"
    if isinstance(edge, ConditionalRouter):
        return "router"
    if isinstance(edge, ConditionalEdge):
        return "conditional"
    if isinstance(edge, ParallelEdge):
        return "parallel"
    raise TypeError(f"Unsupported edge type: {type(edge).__name__}")
