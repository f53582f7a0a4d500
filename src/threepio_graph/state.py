"""
State types that flow through a StateGraph.

The engine treats state as an opaque value: it hands the current state to a
node and takes whatever the node returns as the next state. The only contract
is that a node never mutates its input in place and instead produces an
updated copy. ``GraphState`` names that contract; ``MapState`` and
``DataclassState`` are ready-made implementations.

Example:
    >>> state = MapState({"count": 0})
    >>> updated = state.set("count", 1)
    >>> state["count"], updated["count"]
    (0, 1)
"""

import dataclasses
from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    Generic,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

S = TypeVar("S")


@runtime_checkable
class GraphState(Protocol):
    """Protocol for states that can produce an updated copy of themselves."""

    def copy_with(self, **changes: Any) -> "GraphState":
        """Return a new state with ``changes`` applied; never mutate ``self``."""
        ...


class DataclassState:
    """
    Mixin giving frozen dataclasses a ``copy_with`` built on ``dataclasses.replace``.

    Example:
        >>> @dataclass(frozen=True)
        ... class Counter(DataclassState):
        ...     value: int = 0
        >>> Counter().copy_with(value=3)
        Counter(value=3)
    """

    def copy_with(self, **changes: Any):
        return dataclasses.replace(self, **changes)


class MapState(Mapping[str, Any]):
    """
    Immutable, dictionary-backed state for quick prototyping.

    Every "modifying" operation returns a new MapState and leaves the original
    untouched. MapState is a read-only ``Mapping``, so it compares equal to any
    mapping with the same items and works with ``dict(state)``.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Optional[Mapping[str, Any]] = None, **kwargs: Any):
        merged: Dict[str, Any] = dict(data or {})
        merged.update(kwargs)
        self._data = merged

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def set(self, key: str, value: Any) -> "MapState":
        """Return a copy with ``key`` set to ``value``."""
        return MapState({**self._data, key: value})

    def set_all(self, updates: Mapping[str, Any]) -> "MapState":
        """Return a copy with every entry of ``updates`` applied."""
        return MapState({**self._data, **updates})

    def remove(self, key: str) -> "MapState":
        """Return a copy without ``key`` (no error if it is missing)."""
        data = dict(self._data)
        data.pop(key, None)
        return MapState(data)

    def copy_with(self, **changes: Any) -> "MapState":
        return self.set_all(changes)

    def to_dict(self) -> Dict[str, Any]:
        """Return a shallow dict copy of the state."""
        return dict(self._data)

    def __reduce__(self):
        return (MapState, (self._data,))

    def __repr__(self) -> str:
        return f"MapState({self._data!r})"


@dataclass(frozen=True)
class ExecutionResult(Generic[S]):
    """
    Outcome of a single ``invoke()`` call.

    Attributes:
        state: The final state after the last executed node.
        path: Node names in the order they were executed, including repeats
            from loops and every branch of a parallel fan-out.
        metadata: Run information; always contains ``iterations``.
    """

    state: S
    path: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def final_state(self) -> S:
        return self.state

    @property
    def iterations(self) -> int:
        return self.metadata.get("iterations", 0)

    def to_dict(self) -> Dict[str, Any]:
        state = self.state
        if isinstance(state, MapState):
            state = state.to_dict()
        return {
            "state": state,
            "path": list(self.path),
            "metadata": dict(self.metadata),
        }

    def __repr__(self) -> str:
        return f"ExecutionResult(path={self.path!r}, state={self.state!r})"
