"""Typed result rows for each recommendation mode."""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Sequence, Union


REASON_PERSONALIZED = "Based on your listening history and preferences"
REASON_SIMILAR = "Tracks similar to what you're listening to"
REASON_TRENDING = "Trending this week"
REASON_GENRE = "Popular tracks in {genre}"

SOURCE_GRAPH = "graph"
SOURCE_FALLBACK = "fallback"


@dataclass(frozen=True)
class PersonalizedRow:
    track_id: int
    popularity: int
    artist_affinity: int
    score: float


@dataclass(frozen=True)
class SimilarRow:
    track_id: int
    occurrences: int


@dataclass(frozen=True)
class TrendingRow:
    track_id: int
    play_count: int


@dataclass(frozen=True)
class GenreRow:
    track_id: int
    popularity: int


@dataclass(frozen=True)
class FallbackRow:
    """Position in the global recency ranking."""
    track_id: int
    rank: int


ResultRow = Union[PersonalizedRow, SimilarRow, TrendingRow, GenreRow, FallbackRow]


@dataclass
class Recommendation:
    """Ranked track IDs plus the reason shown to the listener."""
    mode: str
    reason: str
    rows: List[ResultRow] = field(default_factory=list)
    source: str = SOURCE_GRAPH

    @property
    def track_ids(self) -> List[int]:
        return [row.track_id for row in self.rows]

    @property
    def is_fallback(self) -> bool:
        return self.source == SOURCE_FALLBACK

    def __len__(self) -> int:
        return len(self.rows)


def fallback_rows(track_ids: Sequence[int]) -> List[FallbackRow]:
    return [FallbackRow(track_id=tid, rank=i) for i, tid in enumerate(track_ids, 1)]
