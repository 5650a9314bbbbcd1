"""
Ingestion module for SoundGraph Affinity.

Turns "track played" events into play-history records and background
affinity-graph updates.
"""

from .events import EventIngestor, PlayEvent

__all__ = ["EventIngestor", "PlayEvent"]
