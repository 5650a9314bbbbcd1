"""
NetworkX view of the affinity graph.

Used by operators to inspect the derived graph: node/edge statistics,
listener neighbourhoods, and node-link JSON export for offline analysis.
"""

from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Set

import networkx as nx
from loguru import logger

from sga.graph.store import AffinityGraphStore, EdgeType


def node_id(node_type: str, key: Any) -> str:
    """Prefixed node ID, so user 5 and track 5 stay distinct."""
    return f"{node_type}_{key}"


class AffinitySnapshot:
    """
    NetworkX representation of the affinity graph.

    Nodes: users, tracks, artists, genres (``node_type`` attribute).
    Edges: PLAYED, LIKES_ARTIST, LIKES_GENRE, BY_ARTIST, HAS_GENRE
    (``relation`` attribute, plus ``count`` / ``last_played`` where stored).
    """

    # edge -> (source node type, target node type)
    _ENDPOINTS = {
        EdgeType.PLAYED: ("user", "track"),
        EdgeType.LIKES_ARTIST: ("user", "artist"),
        EdgeType.LIKES_GENRE: ("user", "genre"),
        EdgeType.BY_ARTIST: ("track", "artist"),
        EdgeType.HAS_GENRE: ("track", "genre"),
    }

    def __init__(self, store: Optional[AffinityGraphStore] = None):
        self.store = store
        self.graph = nx.MultiDiGraph()

    def build(self, user_ids: Optional[Iterable[int]] = None) -> Dict[str, Any]:
        """
        Load the graph from the store.

        Args:
            user_ids: Restrict to these listeners and the tracks they played
                (None loads everything)

        Returns:
            Statistics about the built graph
        """
        if self.store is None:
            raise ValueError("snapshot has no store to build from")

        users: Optional[Set[int]] = set(user_ids) if user_ids is not None else None
        self.graph = nx.MultiDiGraph()
        touched_tracks: Set[int] = set()

        for edge in (EdgeType.PLAYED, EdgeType.LIKES_ARTIST, EdgeType.LIKES_GENRE):
            for src, dst, count, last_played in self.store.edges(edge):
                if users is not None and src not in users:
                    continue
                if edge == EdgeType.PLAYED:
                    touched_tracks.add(dst)
                self._add_edge(edge, src, dst, count=count, last_played=last_played)

        for edge in (EdgeType.BY_ARTIST, EdgeType.HAS_GENRE):
            for src, dst, _, _ in self.store.edges(edge):
                if users is not None and src not in touched_tracks:
                    continue
                self._add_edge(edge, src, dst)

        stats = self.get_graph_stats()
        logger.success(f"Snapshot built: {stats['nodes']} nodes, {stats['edges']} edges")
        return stats

    def _add_edge(self, edge: EdgeType, src: Any, dst: Any, **attrs):
        src_type, dst_type = self._ENDPOINTS[edge]
        u, v = node_id(src_type, src), node_id(dst_type, dst)
        if u not in self.graph:
            self.graph.add_node(u, node_type=src_type, key=src)
        if v not in self.graph:
            self.graph.add_node(v, node_type=dst_type, key=dst)

        data = {k: val for k, val in attrs.items() if val is not None}
        self.graph.add_edge(u, v, key=edge.value, relation=edge.value, **data)

    def listeners_of(self, track_id: int) -> Dict[int, int]:
        """Users who played a track, mapped to their play count."""
        track_node = node_id("track", track_id)
        if track_node not in self.graph:
            return {}

        listeners = {}
        for user_node, _, data in self.graph.in_edges(track_node, data=True):
            if data.get("relation") == EdgeType.PLAYED.value:
                listeners[self.graph.nodes[user_node]["key"]] = data.get("count", 0)
        return listeners

    def get_graph_stats(self) -> Dict[str, Any]:
        """Get statistics about the graph."""
        if self.graph.number_of_nodes() == 0:
            return {
                "nodes": 0,
                "edges": 0,
                "density": 0.0,
                "avg_degree": 0.0
            }

        degrees = [d for _, d in self.graph.degree()]

        node_counts: Dict[str, int] = {}
        for _, data in self.graph.nodes(data=True):
            node_type = data.get("node_type", "unknown")
            node_counts[node_type] = node_counts.get(node_type, 0) + 1

        edge_counts: Dict[str, int] = {}
        for _, _, data in self.graph.edges(data=True):
            relation = data.get("relation", "unknown")
            edge_counts[relation] = edge_counts.get(relation, 0) + 1

        stats = {
            "nodes": self.graph.number_of_nodes(),
            "edges": self.graph.number_of_edges(),
            "density": nx.density(self.graph),
            "avg_degree": sum(degrees) / len(degrees),
            "max_degree": max(degrees),
            "node_types": node_counts,
            "edge_types": edge_counts,
        }

        # Skip for very large graphs
        if self.graph.number_of_nodes() < 10000:
            stats["connected_components"] = nx.number_weakly_connected_components(self.graph)
        else:
            stats["connected_components"] = None

        return stats

    def export_to_json(self, output_path: str | Path):
        """
        Export the graph to JSON format (node-link data).

        Args:
            output_path: Path to save the JSON file
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        data = nx.node_link_data(self.graph)

        with open(output_path, 'w') as f:
            json.dump(data, f, indent=2)

        logger.info(f"Graph exported to {output_path}")

    def load_from_json(self, input_path: str | Path):
        """
        Load a graph from JSON format.

        Args:
            input_path: Path to the JSON file
        """
        input_path = Path(input_path)

        with open(input_path, 'r') as f:
            data = json.load(f)

        self.graph = nx.node_link_graph(data)

        logger.info(f"Graph loaded from {input_path}: "
                    f"{self.graph.number_of_nodes()} nodes, "
                    f"{self.graph.number_of_edges()} edges")
