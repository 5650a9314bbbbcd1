"""
Tests for the NetworkX snapshot of the affinity graph.
"""

import shutil
import tempfile
from pathlib import Path

import pytest

from sga.graph.snapshot import AffinitySnapshot, node_id
from sga.graph.store import AffinityGraphStore


class TestAffinitySnapshot:
    """Test AffinitySnapshot functionality."""

    def setup_method(self):
        """Create temporary graph store with a few plays."""
        self.temp_dir = tempfile.mkdtemp()
        self.store = AffinityGraphStore(Path(self.temp_dir) / "graph.db")

        self.store.record_play(1, 10, 100, genre="rock", played_at=1000.0)
        self.store.record_play(2, 10, 100, genre="rock", played_at=1000.0)
        self.store.record_play(2, 10, 100, genre="rock", played_at=2000.0)
        self.store.record_play(2, 11, 200, genre="", played_at=1500.0)

    def teardown_method(self):
        """Clean up."""
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_node_id(self):
        assert node_id("user", 5) == "user_5"
        assert node_id("track", 5) != node_id("user", 5)

    def test_build(self):
        snapshot = AffinitySnapshot(self.store)
        stats = snapshot.build()

        assert stats["nodes"] == 7
        assert stats["edges"] == 11
        assert stats["node_types"] == {"user": 2, "track": 2, "artist": 2, "genre": 1}
        assert stats["edge_types"]["PLAYED"] == 3
        assert stats["edge_types"]["LIKES_ARTIST"] == 3
        assert stats["edge_types"]["HAS_GENRE"] == 1
        assert stats["connected_components"] == 1

    def test_build_restricted_to_users(self):
        snapshot = AffinitySnapshot(self.store)
        stats = snapshot.build(user_ids=[1])

        assert stats["nodes"] == 4
        assert stats["edges"] == 5
        assert node_id("user", 2) not in snapshot.graph

    def test_listeners_of(self):
        snapshot = AffinitySnapshot(self.store)
        snapshot.build()

        assert snapshot.listeners_of(10) == {1: 1, 2: 2}
        assert snapshot.listeners_of(404) == {}

    def test_empty_stats(self):
        stats = AffinitySnapshot().get_graph_stats()
        assert stats == {"nodes": 0, "edges": 0, "density": 0.0, "avg_degree": 0.0}

    def test_build_requires_store(self):
        with pytest.raises(ValueError):
            AffinitySnapshot().build()

    def test_export_and_load(self):
        snapshot = AffinitySnapshot(self.store)
        snapshot.build()
        output = Path(self.temp_dir) / "export" / "graph.json"

        snapshot.export_to_json(output)
        assert output.exists()

        loaded = AffinitySnapshot()
        loaded.load_from_json(output)

        assert loaded.graph.number_of_nodes() == 7
        assert loaded.graph.number_of_edges() == 11
        assert loaded.listeners_of(10) == {1: 1, 2: 2}
        edge = loaded.graph.get_edge_data(node_id("user", 2), node_id("track", 10))["PLAYED"]
        assert edge["last_played"] == 2000.0
