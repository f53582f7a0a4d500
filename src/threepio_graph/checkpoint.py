"""
Checkpoint values and the storage contract.

The engine never saves or restores checkpoints on its own. A node (or code
around ``invoke()``) builds a :class:`Checkpoint` and hands it to a
:class:`CheckpointStore`; resuming means starting a graph again from the
saved state. Concrete stores live in :mod:`threepio_graph.checkpointers`.

Example:
    >>> from threepio_graph.checkpointers import InMemoryCheckpointStore
    >>> store = InMemoryCheckpointStore()
    >>> def review(state, context):
    ...     store.save("before-review", Checkpoint.from_context(context, state))
    ...     return state.set("reviewed", True)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Generic, List, Mapping, Optional, Sequence, Tuple, TypeVar

from .node import ExecutionContext

S = TypeVar("S")


@dataclass(frozen=True)
class Checkpoint(Generic[S]):
    """
    An immutable snapshot of a run.

    Attributes:
        state: The state at the time of the snapshot.
        current_node: Node the run was at (or should resume from).
        path: Nodes executed before the snapshot.
        iteration: Step counter at the time of the snapshot.
        timestamp: When the snapshot was taken (UTC), if known.
        metadata: Free-form, read-only extra information.
    """

    state: S
    current_node: str
    path: Tuple[str, ...] = ()
    iteration: int = 0
    timestamp: Optional[datetime] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "path", tuple(self.path))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @classmethod
    def now(
        cls,
        state: S,
        current_node: str,
        path: Sequence[str] = (),
        iteration: int = 0,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> "Checkpoint[S]":
        """Create a checkpoint stamped with the current UTC time."""
        return cls(
            state=state,
            current_node=current_node,
            path=tuple(path),
            iteration=iteration,
            timestamp=datetime.now(timezone.utc),
            metadata=metadata or {},
        )

    @classmethod
    def from_context(
        cls,
        context: ExecutionContext,
        state: S,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> "Checkpoint[S]":
        """Create a timestamped checkpoint at the node described by ``context``."""
        return cls.now(
            state,
            context.node,
            path=context.path,
            iteration=context.iteration,
            metadata=metadata,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "current_node": self.current_node,
            "path": list(self.path),
            "iteration": self.iteration,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "metadata": dict(self.metadata),
        }

    def __reduce__(self):
        # mappingproxy cannot be pickled; rebuild it from a plain dict
        return (
            self.__class__,
            (
                self.state,
                self.current_node,
                self.path,
                self.iteration,
                self.timestamp,
                dict(self.metadata),
            ),
        )

    def __str__(self) -> str:
        return (
            f"Checkpoint(node: {self.current_node}, iteration: {self.iteration}, "
            f"path: {list(self.path)})"
        )


class CheckpointStore(ABC, Generic[S]):
    """
    Storage contract for checkpoints, keyed by caller-chosen ids.

    Implementations must honour these rules:
        - ``save`` overwrites an existing checkpoint with the same id.
        - ``load`` returns None for an unknown id.
        - ``delete`` of an unknown id is a no-op.
    """

    @abstractmethod
    def save(self, checkpoint_id: str, checkpoint: Checkpoint[S]) -> None:
        """Store ``checkpoint`` under ``checkpoint_id``."""

    @abstractmethod
    def load(self, checkpoint_id: str) -> Optional[Checkpoint[S]]:
        """Return the checkpoint stored under ``checkpoint_id``, or None."""

    @abstractmethod
    def delete(self, checkpoint_id: str) -> None:
        """Remove the checkpoint stored under ``checkpoint_id`` if present."""

    @abstractmethod
    def list(self) -> List[str]:
        """Return the ids of all stored checkpoints."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every stored checkpoint."""

    def __contains__(self, checkpoint_id: object) -> bool:
        return checkpoint_id in self.list()

    def __len__(self) -> int:
        return len(self.list())

    def __bool__(self) -> bool:
        # An empty store is still a configured store.
        return True
