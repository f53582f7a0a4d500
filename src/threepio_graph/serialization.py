"""
JSON serialization for threepio_graph.

This module provides the JSON encoder used at serialization boundaries (CLI
output, checkpoint files) and the versioned checkpoint document format.

Checkpoint document (version "1.0"):
    {
        "version": "1.0",
        "state": <encoded state>,
        "current_node": "review",
        "path": ["fetch", "process"],
        "iteration": 2,
        "timestamp": "2024-01-01T12:00:00+00:00",   (optional, may be null)
        "metadata": {...}
    }

Documents are validated against ``CHECKPOINT_SCHEMA`` with jsonschema when
they are decoded.

Usage:
    from threepio_graph.serialization import GraphJSONEncoder, dumps

    json.dumps(result, cls=GraphJSONEncoder)
    dumps(result, indent=2)
"""

import json
from dataclasses import asdict, is_dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping

from jsonschema import Draft202012Validator

from .checkpoint import Checkpoint
from .exceptions import CheckpointError

CHECKPOINT_VERSION = "1.0"

CHECKPOINT_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "threepio_graph checkpoint",
    "type": "object",
    "required": ["version", "state", "current_node", "path", "iteration"],
    "properties": {
        "version": {"const": CHECKPOINT_VERSION},
        "state": {},
        "current_node": {"type": "string", "minLength": 1},
        "path": {"type": "array", "items": {"type": "string"}},
        "iteration": {"type": "integer", "minimum": 0},
        "timestamp": {"type": ["string", "null"]},
        "metadata": {"type": "object"},
    },
}

_validator = Draft202012Validator(CHECKPOINT_SCHEMA)


class GraphJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for threepio_graph types.

    Handles:
    - Objects with a to_dict() method (MapState, ExecutionResult, Checkpoint)
    - Dataclass objects (generic fallback)
    - Mappings, tuples, sets and frozensets
    - datetime values (ISO 8601)
    """

    def default(self, obj: Any) -> Any:
        if hasattr(obj, "to_dict") and callable(getattr(obj, "to_dict")):
            return self._ensure_serializable(obj.to_dict())

        if is_dataclass(obj) and not isinstance(obj, type):
            return self._ensure_serializable(asdict(obj))

        if isinstance(obj, Mapping):
            return self._ensure_serializable(dict(obj))

        if isinstance(obj, (set, frozenset)):
            return [self._ensure_serializable(item) for item in sorted(obj, key=repr)]

        if isinstance(obj, datetime):
            return obj.isoformat()

        return super().default(obj)

    def _ensure_serializable(self, obj: Any) -> Any:
        """Recursively convert nested values the base encoder would reject."""
        if isinstance(obj, dict):
            return {k: self._ensure_serializable(v) for k, v in obj.items()}
        if isinstance(obj, (list, tuple)):
            return [self._ensure_serializable(item) for item in obj]
        if isinstance(obj, (str, int, float, bool)) or obj is None:
            return obj
        return self.default(obj)


def dumps(obj: Any, **kwargs) -> str:
    """
    JSON dumps with threepio_graph type support.

    All standard json.dumps() arguments are supported; ``cls`` defaults to
    GraphJSONEncoder.
    """
    kwargs.setdefault("cls", GraphJSONEncoder)
    return json.dumps(obj, **kwargs)


def checkpoint_to_dict(
    checkpoint: Checkpoint, encode_state: Callable[[Any], Any]
) -> Dict[str, Any]:
    """Build the version 1.0 document for ``checkpoint``."""
    return {
        "version": CHECKPOINT_VERSION,
        "state": encode_state(checkpoint.state),
        "current_node": checkpoint.current_node,
        "path": list(checkpoint.path),
        "iteration": checkpoint.iteration,
        "timestamp": checkpoint.timestamp.isoformat() if checkpoint.timestamp else None,
        "metadata": dict(checkpoint.metadata),
    }


def validate_checkpoint_document(data: Any) -> None:
    """
    Validate a decoded checkpoint document against CHECKPOINT_SCHEMA.

    Raises:
        CheckpointError: Listing every schema violation found.
    """
    errors = sorted(_validator.iter_errors(data), key=lambda e: [str(p) for p in e.path])
    if errors:
        details = "; ".join(
            f"{'/'.join(str(p) for p in error.path) or '<root>'}: {error.message}"
            for error in errors
        )
        raise CheckpointError(f"Invalid checkpoint document: {details}")


def checkpoint_from_dict(
    data: Any, decode_state: Callable[[Any], Any]
) -> Checkpoint:
    """
    Rebuild a Checkpoint from a version 1.0 document.

    Raises:
        CheckpointError: If the document does not match the schema or its
            timestamp is not ISO 8601.
    """
    validate_checkpoint_document(data)

    timestamp = data.get("timestamp")
    if timestamp is not None:
        try:
            timestamp = datetime.fromisoformat(timestamp)
        except ValueError as e:
            raise CheckpointError(f"Invalid checkpoint timestamp {timestamp!r}") from e

    return Checkpoint(
        state=decode_state(data["state"]),
        current_node=data["current_node"],
        path=tuple(data["path"]),
        iteration=data["iteration"],
        timestamp=timestamp,
        metadata=data.get("metadata") or {},
    )
