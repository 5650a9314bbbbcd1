"""
Graph module for SoundGraph Affinity.

This module provides the affinity graph store and a NetworkX view of it.
"""

from .store import AffinityGraphStore, EdgeType, Neighbor
from .snapshot import AffinitySnapshot

__all__ = ["AffinityGraphStore", "EdgeType", "Neighbor", "AffinitySnapshot"]
