from .stategraph import StateGraph, CompiledGraph
from .node import START, END, NodeName, GraphNode, ExecutionContext
from .edge import DirectEdge, ConditionalEdge, ConditionalRouter, ParallelEdge, Edge
from .state import GraphState, DataclassState, MapState, ExecutionResult

# Exceptions (zero dependencies)
from .exceptions import (
    GraphError,
    GraphConstructionError,
    GraphNotConfiguredError,
    LoopGuardError,
    InvalidRouteError,
    InvalidStateError,
    CheckpointError,
    GraphConfigError,
)

# Checkpoints
from .checkpoint import Checkpoint, CheckpointStore
from .checkpointers import (
    InMemoryCheckpointStore,
    FileCheckpointStore,
    StateCodec,
    MAP_STATE_CODEC,
    DICT_STATE_CODEC,
)

# Configuration
from .config import GraphConfig, load_config

# Runnable adapter
from .runnable import Runnable, GraphRunnable, RunnableLambda, PipeRunnable, as_node

# Builders and templates
from .patterns import GraphBuilder, GraphPatterns

__all__ = [
    "StateGraph",
    "CompiledGraph",
    "START",
    "END",
    "NodeName",
    "GraphNode",
    "ExecutionContext",
    "DirectEdge",
    "ConditionalEdge",
    "ConditionalRouter",
    "ParallelEdge",
    "Edge",
    "GraphState",
    "DataclassState",
    "MapState",
    "ExecutionResult",
    # Exceptions
    "GraphError",
    "GraphConstructionError",
    "GraphNotConfiguredError",
    "LoopGuardError",
    "InvalidRouteError",
    "InvalidStateError",
    "CheckpointError",
    "GraphConfigError",
    # Checkpoints
    "Checkpoint",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "FileCheckpointStore",
    "StateCodec",
    "MAP_STATE_CODEC",
    "DICT_STATE_CODEC",
    # Configuration
    "GraphConfig",
    "load_config",
    # Runnable adapter
    "Runnable",
    "GraphRunnable",
    "RunnableLambda",
    "PipeRunnable",
    "as_node",
    # Builders and templates
    "GraphBuilder",
    "GraphPatterns",
    # Version
    "__version__",
]
__version__ = "0.1.0"
