"""
Visualization and topology analysis mixin for StateGraph and CompiledGraph.

This module provides the VisualizationMixin class that renders a graph's
node and edge registries as a Mermaid flowchart and answers simple static
questions about the topology (reachability, cycles) using NetworkX.

Nothing here takes part in execution: every method only reads the registries.

Example:
    >>> from threepio_graph import StateGraph, END
    >>> graph = StateGraph()
    >>> graph.add_node("process", lambda state: state)
    >>> graph.set_entry_point("process")
    >>> graph.add_edge("process", END)
    >>> print(graph.to_diagram())
    graph TD
        __start__((Start))
        process[process]
        __end__((End))
        __start__-->process
        process-->__end__
"""

from typing import Any, Dict, List, Mapping, Optional, Set

import networkx as nx

from .edge import (
    ConditionalEdge,
    ConditionalRouter,
    DirectEdge,
    Edge,
    ParallelEdge,
    edge_kind,
)
from .node import END, START, GraphNode


def escape_node_id(name: str) -> str:
    """Escape characters in node IDs that would break Mermaid syntax."""
    escaped = name.replace(" ", "_").replace("-", "_").replace(".", "_")
    escaped = escaped.replace("(", "_").replace(")", "_")
    escaped = escaped.replace("[", "_").replace("]", "_")
    escaped = escaped.replace("{", "_").replace("}", "_")
    escaped = escaped.replace("<", "_").replace(">", "_")
    escaped = escaped.replace("|", "_").replace(":", "_")
    escaped = escaped.replace(";", "_").replace(",", "_")
    escaped = escaped.replace("&", "_").replace("#", "_")
    escaped = escaped.replace('"', "_").replace("'", "_")
    return escaped or "_"


def escape_label(text: str) -> str:
    """Escape characters in labels displayed to users."""
    return text.replace('"', "'").replace("|", "/")


def _unique_id(base: str, used: Set[str]) -> str:
    candidate = base
    suffix = 2
    while candidate in used:
        candidate = f"{base}_{suffix}"
        suffix += 1
    used.add(candidate)
    return candidate


class VisualizationMixin:
    """
    Mixin providing diagram rendering and topology analysis.

    This mixin expects the following attributes on the host class:
        - self.name: str - Graph name
        - self.graph: nx.DiGraph - Static mirror of the topology
        - self._nodes: Mapping[str, GraphNode] - Node registry
        - self._edges: Mapping[str, Edge] - Edge registry, keyed by source
        - self._entry_point: Optional[str] - Entry node name
        - self.max_iterations: int - Loop guard cap
    """

    name: str
    graph: Any
    _nodes: Mapping[str, GraphNode]
    _edges: Mapping[str, Edge]
    _entry_point: Optional[str]
    max_iterations: int

    def _mermaid_ids(self) -> Dict[str, str]:
        """
        Map every node name (plus START and END) to a unique Mermaid id.

        Escaping can fold different names onto one id (``a-b`` and ``a_b``);
        later nodes in registration order get a numeric suffix.
        """
        ids = {START: START, END: END}
        used = {START, END}
        for name in self._nodes:
            ids[name] = _unique_id(escape_node_id(name), used)
        return ids

    def to_mermaid(self) -> str:
        """
        Generate Mermaid flowchart syntax for the graph.

        The output always contains the entry marker ``__start__((Start))`` and
        the terminal marker ``__end__((End))``, even for an empty graph.

        Returns:
            str: Mermaid graph definition.
        """
        ids = self._mermaid_ids()
        used = set(ids.values())
        lines = ["graph TD", f"    {START}((Start))"]

        for name, node in self._nodes.items():
            label = escape_label(name)
            if node.description:
                label = f"{label}<br/>{escape_label(node.description)}"
                lines.append(f'    {ids[name]}["{label}"]')
            else:
                lines.append(f"    {ids[name]}[{label}]")

        lines.append(f"    {END}((End))")

        if self._entry_point is not None:
            lines.append(f"    {START}-->{ids[self._entry_point]}")

        for source, edge in self._edges.items():
            lines.extend(self._edge_lines(source, edge, ids, used))

        return "\n".join(lines)

    def to_diagram(self) -> str:
        """Render the topology as text; alias of :meth:`to_mermaid`."""
        return self.to_mermaid()

    def _edge_lines(
        self, source: str, edge: Edge, ids: Mapping[str, str], used: Set[str]
    ) -> List[str]:
        src = ids[source]

        if isinstance(edge, DirectEdge):
            return [f"    {src}-->{ids[edge.target]}"]

        if isinstance(edge, ConditionalRouter):
            lines = []
            for route in edge.routes:
                lines.append(f"    {src}-->|{escape_label(route)}|{ids[route]}")
            if edge.default_route not in edge.routes:
                lines.append(f"    {src}-->|default|{ids[edge.default_route]}")
            return lines

        if isinstance(edge, ConditionalEdge):
            label = escape_label(edge.description) if edge.description else "condition"
            if edge.targets:
                return [f"    {src}-->|{label}|{ids[target]}" for target in edge.targets]
            decision = _unique_id(f"{src}__router", used)
            return [f"    {decision}{{?}}", f"    {src}-->|{label}|{decision}"]

        if isinstance(edge, ParallelEdge):
            join = ids[edge.continuation]
            lines = [f"    {src}-.->|parallel|{ids[target]}" for target in edge.targets]
            lines.extend(f"    {ids[target]}-.->|join|{join}" for target in edge.targets)
            return lines

        return []

    def to_networkx(self) -> nx.DiGraph:
        """Return an independent copy of the static topology as a NetworkX DiGraph."""
        return nx.DiGraph(self.graph)

    def unreachable_nodes(self) -> List[str]:
        """
        List registered nodes that can never run from the entry point.

        Reachability follows every statically known edge target. When a
        reachable node routes through a conditional edge without declared
        targets, any node could be next, so nothing is reported.

        Returns:
            List[str]: Node names in registration order.
        """
        if self._entry_point is None:
            return list(self._nodes)
        reachable = {self._entry_point} | nx.descendants(self.graph, self._entry_point)
        for name in reachable:
            if self.graph.nodes[name].get("dynamic_routing", False):
                return []
        return [name for name in self._nodes if name not in reachable]

    def has_cycles(self) -> bool:
        """Return True if the static topology contains a cycle."""
        return not nx.is_directed_acyclic_graph(self.graph)

    def describe(self) -> Dict[str, Any]:
        """Summarize the topology as a JSON-serializable dictionary."""
        edges = []
        for source, edge in self._edges.items():
            entry: Dict[str, Any] = {
                "source": source,
                "kind": edge_kind(edge),
                "targets": list(edge.static_targets()),
            }
            if isinstance(edge, ConditionalEdge) and edge.description:
                entry["description"] = edge.description
            if isinstance(edge, ParallelEdge):
                entry["join"] = edge.continuation
                entry["merger"] = edge.merger is not None
            edges.append(entry)

        return {
            "name": self.name,
            "entry_point": self._entry_point,
            "max_iterations": self.max_iterations,
            "nodes": [
                {"name": name, "description": node.description}
                for name, node in self._nodes.items()
            ],
            "edges": edges,
            "unreachable": self.unreachable_nodes(),
            "has_cycles": self.has_cycles(),
        }
