"""
Execution Graph
Directed acyclic graph of node instances for a single flow run
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import networkx as nx
import structlog

from .exceptions import StructuralError
from .models import DataTransformation, Flow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GraphEdge:
    """Edge between an output pin and an input pin"""

    from_node_id: str
    to_node_id: str
    from_output: str
    to_input: str
    transformation: Optional[DataTransformation] = None


class ExecutionGraph:
    """
    Node and edge store with ordering queries

    Features:
    - Insertion-ordered nodes so traversal ties are deterministic
    - Multiple edges between the same pair of nodes (one per pin pairing)
    - Cycle, orphan and dangling-edge detection backed by networkx
    """

    def __init__(self):
        self._nodes: Dict[str, Any] = {}
        self._edges: List[GraphEdge] = []

    @classmethod
    def from_flow(cls, flow: Flow) -> "ExecutionGraph":
        graph = cls()
        for node in flow.nodes:
            graph.add_node(node.id, node)
        for conn in flow.connections:
            graph.add_edge(
                conn.from_node_id,
                conn.to_node_id,
                conn.from_output,
                conn.to_input,
                conn.transformation
            )
        return graph

    def add_node(self, node_id: str, info: Any = None) -> None:
        """Add or overwrite a node, keeping its original insertion position"""
        self._nodes[node_id] = info

    def add_edge(
        self,
        from_node_id: str,
        to_node_id: str,
        from_output: str,
        to_input: str,
        transformation: Optional[DataTransformation] = None
    ) -> GraphEdge:
        """Add an edge; endpoints are checked later by validate()"""
        edge = GraphEdge(
            from_node_id=from_node_id,
            to_node_id=to_node_id,
            from_output=from_output,
            to_input=to_input,
            transformation=transformation
        )
        self._edges.append(edge)
        return edge

    @property
    def node_ids(self) -> List[str]:
        return list(self._nodes)

    @property
    def edges(self) -> List[GraphEdge]:
        return list(self._edges)

    def get_node(self, node_id: str) -> Any:
        return self._nodes.get(node_id)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def incoming_edges(self, node_id: str) -> List[GraphEdge]:
        return [edge for edge in self._edges if edge.to_node_id == node_id]

    def outgoing_edges(self, node_id: str) -> List[GraphEdge]:
        return [edge for edge in self._edges if edge.from_node_id == node_id]

    def dangling_edges(self) -> List[GraphEdge]:
        """Edges whose source or target was never added as a node"""
        return [
            edge for edge in self._edges
            if edge.from_node_id not in self._nodes or edge.to_node_id not in self._nodes
        ]

    def orphaned_nodes(self) -> List[str]:
        """Nodes with neither incoming nor outgoing edges"""
        connected = set()
        for edge in self._edges:
            connected.add(edge.from_node_id)
            connected.add(edge.to_node_id)
        return [node_id for node_id in self._nodes if node_id not in connected]

    def find_cycle(self) -> List[str]:
        """Return the node ids along the first cycle found, empty if acyclic"""
        try:
            cycle = nx.find_cycle(self._build_digraph())
        except nx.NetworkXNoCycle:
            return []
        return [edge[0] for edge in cycle]

    def has_cycles(self) -> bool:
        return bool(self.find_cycle())

    def topological_order(self) -> List[str]:
        """
        Order nodes so every edge source precedes its target.

        Reversed depth-first postorder, starting roots in node insertion
        order and visiting successors in edge insertion order.

        Raises:
            StructuralError: If the graph contains a cycle
        """
        cycle = self.find_cycle()
        if cycle:
            raise StructuralError(
                f"Flow contains circular dependencies: {' -> '.join(cycle)}"
            )

        postorder = list(nx.dfs_postorder_nodes(self._build_digraph()))
        return list(reversed(postorder))

    def validate(self) -> None:
        """
        Check the graph is safe to traverse.

        Raises:
            StructuralError: On dangling edges or cycles
        """
        dangling = self.dangling_edges()
        if dangling:
            details = ", ".join(
                f"{edge.from_node_id}.{edge.from_output} -> {edge.to_node_id}.{edge.to_input}"
                for edge in dangling
            )
            raise StructuralError(f"Connections reference unknown nodes: {details}")

        cycle = self.find_cycle()
        if cycle:
            raise StructuralError(
                f"Flow contains circular dependencies: {' -> '.join(cycle)}"
            )

        orphans = self.orphaned_nodes()
        if orphans and len(self._nodes) > 1:
            logger.warning(
                "execution_graph_orphaned_nodes",
                orphaned_nodes=orphans
            )

    def _build_digraph(self) -> nx.MultiDiGraph:
        graph = nx.MultiDiGraph()
        graph.add_nodes_from(self._nodes)
        for edge in self._edges:
            if edge.from_node_id in self._nodes and edge.to_node_id in self._nodes:
                graph.add_edge(edge.from_node_id, edge.to_node_id)
        return graph
