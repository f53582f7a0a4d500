"""
Checkpoint store implementations.

Available stores:
    - InMemoryCheckpointStore: dictionary storage for tests and short-lived runs
    - FileCheckpointStore: one JSON document per checkpoint under any fsspec
      URL (local directory, ``memory://``, ``s3://`` with the matching backend)

A FileCheckpointStore needs to turn states into JSON and back; it does so
through a :class:`StateCodec`. ``MAP_STATE_CODEC`` (the default) handles
MapState, ``DICT_STATE_CODEC`` handles plain dicts.

Example:
    >>> from threepio_graph.checkpointers import FileCheckpointStore
    >>> store = FileCheckpointStore("./checkpoints")
    >>> store.save("run-1", Checkpoint.now(state, "review"))
    >>> store.list()
    ['run-1']
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import fsspec

from .checkpoint import Checkpoint, CheckpointStore
from .exceptions import CheckpointError
from .serialization import GraphJSONEncoder, checkpoint_from_dict, checkpoint_to_dict
from .state import MapState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateCodec:
    """Pair of functions converting a state to JSON-compatible data and back."""

    encode: Callable[[Any], Any]
    decode: Callable[[Any], Any]


def _encode_map_state(state: Any) -> Dict[str, Any]:
    if isinstance(state, MapState):
        return state.to_dict()
    return dict(state)


MAP_STATE_CODEC = StateCodec(encode=_encode_map_state, decode=MapState)
DICT_STATE_CODEC = StateCodec(encode=dict, decode=dict)


class InMemoryCheckpointStore(CheckpointStore):
    """
    In-memory checkpoint storage for testing and simple use cases.

    Checkpoints are kept in insertion order and lost when the process exits.
    Checkpoint values are immutable, so they are stored and returned as-is.

    Example:
        >>> store = InMemoryCheckpointStore()
        >>> store.save("cp_1", Checkpoint.now(MapState(x=1), "node_a"))
        >>> store.load("cp_1").current_node
        'node_a'
        >>> store.load("missing") is None
        True
    """

    def __init__(self) -> None:
        self._storage: Dict[str, Checkpoint] = {}

    def save(self, checkpoint_id: str, checkpoint: Checkpoint) -> None:
        self._storage[checkpoint_id] = checkpoint

    def load(self, checkpoint_id: str) -> Optional[Checkpoint]:
        return self._storage.get(checkpoint_id)

    def delete(self, checkpoint_id: str) -> None:
        self._storage.pop(checkpoint_id, None)

    def list(self) -> List[str]:
        return list(self._storage.keys())

    def clear(self) -> None:
        self._storage.clear()

    def count(self) -> int:
        return len(self._storage)

    def __len__(self) -> int:
        return len(self._storage)

    def __contains__(self, checkpoint_id: object) -> bool:
        return checkpoint_id in self._storage


class FileCheckpointStore(CheckpointStore):
    """
    Checkpoint storage as JSON documents in a directory.

    Each checkpoint is written to ``<root>/<checkpoint_id>.json``. ``root``
    may be any URL fsspec understands; the directory is created on first
    save.

    Args:
        root: Directory path or fsspec URL.
        codec: StateCodec used to encode and decode states.

    Raises:
        CheckpointError: For invalid ids, I/O failures, and documents that
            are not valid JSON or do not match the checkpoint schema.
    """

    SUFFIX = ".json"

    def __init__(self, root: str, codec: StateCodec = MAP_STATE_CODEC) -> None:
        self.root = str(root)
        self.codec = codec
        self._fs, self._root_path = fsspec.core.url_to_fs(self.root)

    def _path(self, checkpoint_id: str) -> str:
        if (
            not isinstance(checkpoint_id, str)
            or not checkpoint_id
            or "/" in checkpoint_id
            or "\\" in checkpoint_id
            or checkpoint_id.startswith(".")
        ):
            raise CheckpointError(f"Invalid checkpoint id: {checkpoint_id!r}")
        return f"{self._root_path.rstrip('/')}/{checkpoint_id}{self.SUFFIX}"

    def save(self, checkpoint_id: str, checkpoint: Checkpoint) -> None:
        path = self._path(checkpoint_id)
        document = checkpoint_to_dict(checkpoint, self.codec.encode)
        try:
            content = json.dumps(document, cls=GraphJSONEncoder, indent=2)
        except (TypeError, ValueError) as e:
            raise CheckpointError(
                f"Checkpoint '{checkpoint_id}' state is not JSON serializable: {e}"
            ) from e
        try:
            self._fs.makedirs(self._root_path, exist_ok=True)
            with self._fs.open(path, "w") as f:
                f.write(content)
        except OSError as e:
            raise CheckpointError(f"Failed to save checkpoint to '{path}': {e}") from e
        logger.info(f"Checkpoint '{checkpoint_id}' saved to '{path}' at node '{checkpoint.current_node}'")

    def load(self, checkpoint_id: str) -> Optional[Checkpoint]:
        path = self._path(checkpoint_id)
        if not self._fs.exists(path):
            return None
        try:
            with self._fs.open(path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise CheckpointError(f"Checkpoint '{checkpoint_id}' is not valid JSON: {e}") from e
        except OSError as e:
            raise CheckpointError(f"Failed to load checkpoint from '{path}': {e}") from e
        return checkpoint_from_dict(data, self.codec.decode)

    def delete(self, checkpoint_id: str) -> None:
        path = self._path(checkpoint_id)
        try:
            if not self._fs.exists(path):
                return
            self._fs.rm(path)
        except OSError as e:
            raise CheckpointError(f"Failed to delete checkpoint '{path}': {e}") from e
        logger.debug(f"Checkpoint '{checkpoint_id}' deleted")

    def list(self) -> List[str]:
        try:
            if not self._fs.exists(self._root_path):
                return []
            entries = self._fs.ls(self._root_path, detail=False)
        except OSError as e:
            raise CheckpointError(f"Failed to list checkpoints in '{self.root}': {e}") from e
        ids = []
        for entry in entries:
            name = entry.rstrip("/").rsplit("/", 1)[-1]
            if name.endswith(self.SUFFIX) and not name.startswith("."):
                ids.append(name[: -len(self.SUFFIX)])
        return sorted(ids)

    def clear(self) -> None:
        for checkpoint_id in self.list():
            self.delete(checkpoint_id)

    def __repr__(self) -> str:
        return f"FileCheckpointStore(root={self.root!r})"
