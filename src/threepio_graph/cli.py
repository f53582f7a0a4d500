#!/usr/bin/env python3
"""
Command-line interface for threepio_graph.

Graphs are Python objects, so every command takes a TARGET that points at
one: ``package.module:attr`` or ``path/to/file.py:attr``. The attribute may
be a StateGraph, a CompiledGraph or a zero-argument factory returning either.

Usage:
    threepio-graph run myapp.flows:graph --input '{"value": 0}'
    threepio-graph run flows.py:build_graph --input @state.json --checkpoint-dir ./cps
    threepio-graph inspect flows.py:graph --format mermaid
    threepio-graph checkpoints list ./cps
    threepio-graph checkpoints show ./cps run-1
    threepio-graph --version
"""

import asyncio
import importlib
import importlib.util
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from threepio_graph import __version__
from threepio_graph.checkpoint import Checkpoint
from threepio_graph.checkpointers import FileCheckpointStore
from threepio_graph.config import GraphConfig, load_config, read_yaml_settings
from threepio_graph.edge import ConditionalEdge, DirectEdge, ParallelEdge
from threepio_graph.exceptions import GraphError
from threepio_graph.node import END
from threepio_graph.serialization import dumps
from threepio_graph.state import MapState
from threepio_graph.stategraph import CompiledGraph, StateGraph

app = typer.Typer(
    name="threepio-graph",
    help="threepio-graph - Async State Graph Workflow Engine",
    no_args_is_help=True,
    add_completion=False,
)

checkpoints_app = typer.Typer(
    name="checkpoints",
    help="Manage checkpoints stored in a directory",
    no_args_is_help=True,
)
app.add_typer(checkpoints_app, name="checkpoints")

ENGINE_LOGGERS = ("threepio_graph", "threepio_graph.stategraph")


class OutputFormat(str, Enum):
    """Output format for inspect command."""
    text = "text"
    json = "json"
    mermaid = "mermaid"


def parse_input(value: Optional[str]) -> Dict[str, Any]:
    """
    Parse input from JSON string or @file.json.

    Raises:
        typer.Exit: On parse error or when the input is not a JSON object
    """
    if value is None:
        return {}

    if value.startswith("@"):
        path = Path(value[1:])
        if not path.exists():
            typer.echo(f"Error: Input file not found: {path}", err=True)
            raise typer.Exit(1)
        text = path.read_text()
        source = "input file"
    else:
        text = value
        source = "--input"

    try:
        result = json.loads(text)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: Invalid JSON in {source}: {e}", err=True)
        raise typer.Exit(1)
    if not isinstance(result, dict):
        typer.echo(f"Error: Input must be a JSON object, got {type(result).__name__}", err=True)
        raise typer.Exit(1)
    return result


def setup_logging(verbose: int, quiet: bool) -> int:
    """Configure logging based on verbosity flags and return the chosen level."""
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose >= 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    return level


def _set_engine_log_level(level: int) -> None:
    # Graphs built with log_level= set this logger when the target module is imported.
    for name in ENGINE_LOGGERS:
        logging.getLogger(name).setLevel(level)


def _import_target_module(module_ref: str):
    if module_ref.endswith(".py"):
        path = Path(module_ref).resolve()
        if not path.exists():
            typer.echo(f"Error: File not found: {path}", err=True)
            raise typer.Exit(1)
        try:
            spec = importlib.util.spec_from_file_location(path.stem, path)
            if spec is None or spec.loader is None:
                raise ImportError(f"Cannot load module spec from file: {path}")
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
        except Exception as e:
            typer.echo(f"Error: Failed to load Python file '{path}': {e}", err=True)
            raise typer.Exit(1)
        return module

    try:
        return importlib.import_module(module_ref)
    except ImportError as e:
        typer.echo(f"Error: Cannot import module '{module_ref}': {e}", err=True)
        raise typer.Exit(1)


def load_graph(target: str) -> CompiledGraph:
    """
    Resolve TARGET (``module:attr`` or ``file.py:attr``) to a CompiledGraph.

    Raises:
        typer.Exit: If the target cannot be imported, does not name a graph,
            or the graph cannot be compiled
    """
    module_ref, sep, attr = target.rpartition(":")
    if not sep or not module_ref or not attr:
        typer.echo(
            f"Error: Target must look like 'module:attr' or 'file.py:attr', got '{target}'",
            err=True,
        )
        raise typer.Exit(1)

    module = _import_target_module(module_ref)
    if not hasattr(module, attr):
        typer.echo(f"Error: '{module_ref}' has no attribute '{attr}'", err=True)
        raise typer.Exit(1)

    obj = getattr(module, attr)
    if not isinstance(obj, (StateGraph, CompiledGraph)) and callable(obj):
        try:
            obj = obj()
        except Exception as e:
            typer.echo(f"Error: Graph factory '{target}' failed: {e}", err=True)
            raise typer.Exit(1)

    if isinstance(obj, StateGraph):
        try:
            return obj.compile()
        except GraphError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
    if isinstance(obj, CompiledGraph):
        return obj

    typer.echo(
        f"Error: '{target}' is not a StateGraph, CompiledGraph or graph factory "
        f"(got {type(obj).__name__})",
        err=True,
    )
    raise typer.Exit(1)


def _resolve_config(config_file: Optional[Path], **overrides: Any) -> GraphConfig:
    try:
        return load_config(str(config_file) if config_file else None, **overrides)
    except GraphError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _with_max_iterations(graph: CompiledGraph, max_iterations: int) -> CompiledGraph:
    return CompiledGraph(
        name=graph.name,
        nodes=graph.nodes,
        edges=graph.edges,
        entry_point=graph.entry_point,
        max_iterations=max_iterations,
        graph=graph.graph,
        log_state_values=graph.log_state_values,
    )


def _max_iterations_is_explicit(
    option: Optional[int], config_file: Optional[Path]
) -> bool:
    if option is not None:
        return True
    if GraphConfig.from_env().get("max_iterations") is not None:
        return True
    if config_file is not None:
        return "max_iterations" in read_yaml_settings(str(config_file))
    return False


@app.command()
def run(
    target: str = typer.Argument(..., help="Graph to run: module:attr or file.py:attr"),
    input: Optional[str] = typer.Option(None, "--input", "-i", help="Initial state as JSON or @file.json"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML settings file"),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", help="Override the loop guard cap"),
    checkpoint_dir: Optional[str] = typer.Option(None, "--checkpoint-dir", "-c", help="Save the final state as a checkpoint here"),
    checkpoint_id: Optional[str] = typer.Option(None, "--checkpoint-id", help="Id for the saved checkpoint"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase verbosity (-v, -vv)"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-error output"),
):
    """Run a graph and print its ExecutionResult as JSON."""
    level = setup_logging(verbose, quiet)
    config = _resolve_config(
        config_file, max_iterations=max_iterations, checkpoint_dir=checkpoint_dir
    )
    initial_state = MapState(parse_input(input))
    graph = load_graph(target)
    _set_engine_log_level(level)

    try:
        explicit = _max_iterations_is_explicit(max_iterations, config_file)
    except GraphError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if explicit:
        graph = _with_max_iterations(graph, config.max_iterations)
    if config.log_state_values:
        graph.log_state_values = True

    try:
        result = asyncio.run(graph.invoke(initial_state))
    except Exception as e:
        typer.echo(f"Error: {type(e).__name__}: {e}", err=True)
        raise typer.Exit(1)

    if config.checkpoint_dir:
        checkpoint_id = checkpoint_id or datetime.now(timezone.utc).strftime("run-%Y%m%dT%H%M%S%f")
        checkpoint = Checkpoint.now(
            result.state,
            END,
            path=result.path,
            iteration=result.iterations,
            metadata={"graph": graph.name},
        )
        try:
            FileCheckpointStore(config.checkpoint_dir).save(checkpoint_id, checkpoint)
        except GraphError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
        if not quiet:
            typer.echo(f"Checkpoint saved: {checkpoint_id}", err=True)

    typer.echo(dumps(result, indent=2))


@app.command()
def inspect(
    target: str = typer.Argument(..., help="Graph to inspect: module:attr or file.py:attr"),
    format: OutputFormat = typer.Option(OutputFormat.text, "--format", "-f", help="Output format (text, json, mermaid)"),
):
    """Inspect graph structure."""
    graph = load_graph(target)

    if format == OutputFormat.json:
        typer.echo(dumps(graph.describe(), indent=2))
        return

    if format == OutputFormat.mermaid:
        typer.echo(graph.to_mermaid())
        return

    typer.echo(f"Graph: {graph.name}")
    typer.echo(f"Entry point: {graph.entry_point}")
    typer.echo(f"Max iterations: {graph.max_iterations}")
    typer.echo()

    typer.echo(f"Nodes ({len(graph.nodes)}):")
    for name, node in graph.nodes.items():
        line = f"  {name}"
        if node.description:
            line += f" - {node.description}"
        typer.echo(line)
    typer.echo()

    typer.echo(f"Edges ({len(graph.edges)}):")
    for source, edge in graph.edges.items():
        if isinstance(edge, DirectEdge):
            typer.echo(f"  {source} -> {edge.target}")
        elif isinstance(edge, ConditionalEdge):
            targets = " | ".join(edge.targets) if edge.targets else "?"
            label = f"[{edge.description}]" if edge.description else ""
            typer.echo(f"  {source} --{label}--> {targets}")
        elif isinstance(edge, ParallelEdge):
            typer.echo(f"  {source} => [{', '.join(edge.targets)}] -> {edge.continuation}")

    unreachable = graph.unreachable_nodes()
    if unreachable:
        typer.echo()
        typer.echo(f"Unreachable: {', '.join(unreachable)}")
    typer.echo(f"Has cycles: {'yes' if graph.has_cycles() else 'no'}")


def _open_store(directory: Optional[str]) -> FileCheckpointStore:
    root = directory
    if root is None:
        root = _resolve_config(None).checkpoint_dir
    if not root:
        typer.echo(
            "Error: No checkpoint directory given and THREEPIO_GRAPH_CHECKPOINT_DIR is not set",
            err=True,
        )
        raise typer.Exit(1)
    return FileCheckpointStore(root)


@checkpoints_app.command("list")
def checkpoints_list(
    directory: Optional[str] = typer.Argument(None, help="Checkpoint directory or fsspec URL"),
):
    """List checkpoint ids."""
    store = _open_store(directory)
    try:
        ids = store.list()
    except GraphError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if not ids:
        typer.echo("No checkpoints found.")
        return
    for checkpoint_id in ids:
        typer.echo(checkpoint_id)


@checkpoints_app.command("show")
def checkpoints_show(
    directory: str = typer.Argument(..., help="Checkpoint directory or fsspec URL"),
    checkpoint_id: str = typer.Argument(..., help="Checkpoint id"),
):
    """Print a checkpoint as JSON."""
    store = _open_store(directory)
    try:
        checkpoint = store.load(checkpoint_id)
    except GraphError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if checkpoint is None:
        typer.echo(f"Error: Checkpoint not found: {checkpoint_id}", err=True)
        raise typer.Exit(1)
    typer.echo(dumps(checkpoint, indent=2))


@checkpoints_app.command("delete")
def checkpoints_delete(
    directory: str = typer.Argument(..., help="Checkpoint directory or fsspec URL"),
    checkpoint_id: str = typer.Argument(..., help="Checkpoint id"),
):
    """Delete one checkpoint."""
    store = _open_store(directory)
    try:
        existed = checkpoint_id in store
        store.delete(checkpoint_id)
    except GraphError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if existed:
        typer.echo(f"Deleted checkpoint '{checkpoint_id}'")
    else:
        typer.echo(f"Checkpoint '{checkpoint_id}' did not exist")


@checkpoints_app.command("clear")
def checkpoints_clear(
    directory: Optional[str] = typer.Argument(None, help="Checkpoint directory or fsspec URL"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete every checkpoint in a directory."""
    store = _open_store(directory)
    try:
        count = len(store)
        if count and not yes:
            typer.confirm(f"Delete {count} checkpoint(s) from '{store.root}'?", abort=True)
        store.clear()
    except GraphError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted {count} checkpoint(s)")


def version_callback(value: bool):
    """Handle --version flag."""
    if value:
        typer.echo(f"threepio-graph {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(None, "--version", callback=version_callback, is_eager=True,
                                 help="Show version and exit"),
):
    """threepio-graph - Async State Graph Workflow Engine."""


def main():
    """Entry point for the threepio-graph CLI."""
    app()


if __name__ == "__main__":
    main()
