"""
Recommendation query engine.

Four read-only ranked-retrieval modes over the affinity graph:

- personalized: tracks by liked artists / in liked genres, minus saturated
  tracks, scored 0.5 * popularity + 0.5 * artist affinity
- similar: same artist, same genre and co-played tracks, scored by how many
  of those signals nominate each track
- trending: PLAYED counts summed over a trailing window
- by genre: tracks in a genre by distinct listeners, minus saturated tracks
  when a listener is given

Personalized and trending fall back to the catalog's recency ranking when
the graph yields nothing or cannot be reached. Similar and by-genre have no
fallback; an unreachable graph surfaces as a retryable ServiceError.
"""

from __future__ import annotations
import time
from typing import Any, Dict, List, Optional

from loguru import logger

from sga.db.catalog import CatalogStore, TrackRecord
from sga.errors import (
    InvalidReference,
    ServiceError,
    StoreUnavailable,
    normalize_genre,
    require_positive,
)
from sga.graph.store import AffinityGraphStore, EdgeType, to_epoch
from sga.recommend.models import (
    REASON_GENRE,
    REASON_PERSONALIZED,
    REASON_SIMILAR,
    REASON_TRENDING,
    SOURCE_FALLBACK,
    GenreRow,
    PersonalizedRow,
    Recommendation,
    SimilarRow,
    TrendingRow,
    fallback_rows,
)

SECONDS_PER_DAY = 86400


class RecommendationEngine:
    """Ranked retrieval over the affinity graph."""

    def __init__(self, graph: AffinityGraphStore, catalog: CatalogStore,
                 config: Optional[Dict[str, Any]] = None):
        """
        Initialize the engine.

        Args:
            graph: Affinity graph store (read only)
            catalog: Catalog used for the fallback ranking and hydration
            config: Recommendation settings (the ``recommend`` config section
                plus ``query_timeout``)
        """
        self.graph = graph
        self.catalog = catalog
        self.config = config or {}

        self.saturation_cutoff = self.config.get("saturation_cutoff", 3)
        self.trending_window_days = self.config.get("trending_window_days", 7)
        self.candidate_cap = self.config.get("candidate_cap", 500)
        self.default_limit = self.config.get("default_limit", 20)
        self.max_limit = self.config.get("max_limit", 100)
        self.query_timeout = self.config.get("query_timeout", 2.0)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], graph: AffinityGraphStore,
                    catalog: CatalogStore) -> "RecommendationEngine":
        settings = dict(cfg.get("recommend", {}))
        settings.setdefault("query_timeout", cfg.get("graph", {}).get("query_timeout", 2.0))
        return cls(graph, catalog, settings)

    def _limit(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self.default_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise InvalidReference(f"limit must be a positive integer, got {limit!r}")
        return min(limit, self.max_limit)

    # === Personalized ===

    def get_personalized(self, user_id: int, limit: Optional[int] = None) -> Recommendation:
        """
        Recommend tracks for a listener.

        Falls back to the global ranking when the listener has no usable
        signal or the graph cannot be read.
        """
        require_positive("user_id", user_id)
        limit = self._limit(limit)

        try:
            with self.graph.deadline(self.query_timeout):
                rows = self._rank_personalized(user_id, limit)
        except StoreUnavailable as e:
            logger.warning(f"Personalized query for user {user_id} degraded to fallback: {e}")
            rows = []

        if not rows:
            return self._fallback("personalized", REASON_PERSONALIZED, limit)
        return Recommendation("personalized", REASON_PERSONALIZED, rows)

    def _unsaturated_tracks(self, edge: EdgeType, key: Any, user_id: int) -> List[int]:
        """One capped hop to tracks, with the listener's saturated tracks filtered in the query."""
        return [
            n.key for n in self.graph.neighbors(
                edge, key, reverse=True, limit=self.candidate_cap,
                exclude_played_by=user_id, exclude_min_count=self.saturation_cutoff)
        ]

    def _rank_personalized(self, user_id: int, limit: int) -> List[PersonalizedRow]:
        cap = self.candidate_cap

        liked_artists = self.graph.neighbors(EdgeType.LIKES_ARTIST, user_id, strongest_first=True)
        affinity = {n.key: n.count for n in liked_artists}

        # track -> artist affinity; insertion order is traversal order
        candidates: Dict[int, int] = {}

        for artist in liked_artists[:cap]:
            for track_id in self._unsaturated_tracks(EdgeType.BY_ARTIST, artist.key, user_id):
                candidates[track_id] = max(candidates.get(track_id, 0), artist.count)
                if len(candidates) >= cap:
                    break
            if len(candidates) >= cap:
                break

        if len(candidates) < cap:
            liked_genres = self.graph.neighbors(
                EdgeType.LIKES_GENRE, user_id, strongest_first=True, limit=cap
            )
            for genre in liked_genres:
                for track_id in self._unsaturated_tracks(EdgeType.HAS_GENRE, genre.key, user_id):
                    if track_id in candidates:
                        continue
                    artist_id = self.graph.target_of(EdgeType.BY_ARTIST, track_id)
                    candidates[track_id] = affinity.get(artist_id, 0)
                    if len(candidates) >= cap:
                        break
                if len(candidates) >= cap:
                    break

        if not candidates:
            return []

        popularity = self.graph.count_distinct_sources(
            EdgeType.PLAYED, list(candidates), exclude_source=user_id
        )
        rows = [
            PersonalizedRow(
                track_id=track_id,
                popularity=popularity[track_id],
                artist_affinity=artist_affinity,
                score=0.5 * popularity[track_id] + 0.5 * artist_affinity,
            )
            for track_id, artist_affinity in candidates.items()
        ]
        # Stable sort: equal scores keep traversal order
        rows.sort(key=lambda row: row.score, reverse=True)
        return rows[:limit]

    # === Similar ===

    def get_similar(self, track_id: int, limit: Optional[int] = None) -> Recommendation:
        """
        Tracks similar to ``track_id``. An unknown track yields an empty result.

        Raises:
            ServiceError: Graph unavailable (retryable)
        """
        require_positive("track_id", track_id)
        limit = self._limit(limit)

        try:
            with self.graph.deadline(self.query_timeout):
                rows = self._rank_similar(track_id, limit)
        except StoreUnavailable as e:
            logger.error(f"Similar query for track {track_id} failed: {e}")
            raise ServiceError(f"similar tracks unavailable: {e.message}", retryable=True) from e

        return Recommendation("similar", REASON_SIMILAR, rows)

    def _rank_similar(self, track_id: int, limit: int) -> List[SimilarRow]:
        cap = self.candidate_cap
        occurrences: Dict[int, int] = {}

        def nominate(track_ids):
            # Each signal nominates a track at most once
            for tid in dict.fromkeys(track_ids):
                if tid != track_id:
                    occurrences[tid] = occurrences.get(tid, 0) + 1

        # (i) same artist
        artist_id = self.graph.target_of(EdgeType.BY_ARTIST, track_id)
        if artist_id is not None:
            nominate(n.key for n in self.graph.neighbors(
                EdgeType.BY_ARTIST, artist_id, reverse=True, limit=cap + 1))

        # (ii) same genre
        genre_tracks: List[int] = []
        for genre in self.graph.neighbors(EdgeType.HAS_GENRE, track_id):
            genre_tracks.extend(n.key for n in self.graph.neighbors(
                EdgeType.HAS_GENRE, genre.key, reverse=True, limit=cap + 1))
        nominate(genre_tracks)

        # (iii) co-played by the same listeners
        co_played: Dict[int, None] = {}
        for listener in self.graph.neighbors(EdgeType.PLAYED, track_id, reverse=True, limit=cap):
            for track in self.graph.neighbors(EdgeType.PLAYED, listener.key, limit=cap + 1):
                if track.key != track_id:
                    co_played.setdefault(track.key, None)
            if len(co_played) >= cap:
                break
        nominate(co_played)

        rows = [SimilarRow(track_id=tid, occurrences=n) for tid, n in occurrences.items()]
        rows.sort(key=lambda row: row.occurrences, reverse=True)
        return rows[:limit]

    # === Trending ===

    def get_trending(self, limit: Optional[int] = None, now: Any = None) -> Recommendation:
        """
        Most played tracks within the trailing window.

        Args:
            limit: Maximum tracks
            now: Reference time (datetime or epoch seconds, default now)
        """
        limit = self._limit(limit)
        now = time.time() if now is None else to_epoch(now)
        since = now - self.trending_window_days * SECONDS_PER_DAY

        try:
            with self.graph.deadline(self.query_timeout):
                totals = self.graph.sum_counts(EdgeType.PLAYED, since=since, limit=limit)
        except StoreUnavailable as e:
            logger.warning(f"Trending query degraded to fallback: {e}")
            totals = []

        if not totals:
            return self._fallback("trending", REASON_TRENDING, limit)

        rows = [TrendingRow(track_id=tid, play_count=total) for tid, total in totals]
        return Recommendation("trending", REASON_TRENDING, rows)

    # === By genre ===

    def get_by_genre(self, genre: str, limit: Optional[int] = None,
                     user_id: Optional[int] = None) -> Recommendation:
        """
        Popular tracks in a genre, minus the listener's saturated tracks.

        Raises:
            InvalidReference: Empty genre or invalid user ID
            ServiceError: Graph unavailable (retryable)
        """
        genre = normalize_genre(genre)
        if not genre:
            raise InvalidReference("genre is required")
        if user_id is not None:
            require_positive("user_id", user_id)
        limit = self._limit(limit)

        try:
            with self.graph.deadline(self.query_timeout):
                rows = self._rank_genre(genre, limit, user_id)
        except StoreUnavailable as e:
            logger.error(f"Genre query for {genre!r} failed: {e}")
            raise ServiceError(f"genre recommendations unavailable: {e.message}", retryable=True) from e

        return Recommendation("genre", REASON_GENRE.format(genre=genre), rows)

    def _rank_genre(self, genre: str, limit: int, user_id: Optional[int]) -> List[GenreRow]:
        # Ranked over the whole genre in SQL; the request deadline bounds the scan
        ranked = self.graph.popular_in_genre(
            genre, limit=min(limit, self.candidate_cap),
            exclude_played_by=user_id, exclude_min_count=self.saturation_cutoff,
        )
        return [GenreRow(track_id=tid, popularity=n) for tid, n in ranked]

    # === Fallback and hydration ===

    def fallback_ranking(self, limit: int) -> List[int]:
        """
        Global ranking used when the graph has no answer: newest catalog tracks.

        Never raises; an unreachable catalog yields an empty list.
        """
        try:
            return self.catalog.recent_track_ids(limit)
        except StoreUnavailable as e:
            logger.error(f"Fallback ranking unavailable: {e}")
            return []

    def _fallback(self, mode: str, reason: str, limit: int) -> Recommendation:
        logger.info(f"No {mode} candidates in graph, serving fallback ranking")
        rows = fallback_rows(self.fallback_ranking(limit))
        return Recommendation(mode, reason, rows, source=SOURCE_FALLBACK)

    def hydrate(self, recommendation: Recommendation) -> List[TrackRecord]:
        """Catalog join: display records in recommendation order."""
        return self.catalog.lookup_tracks_by_id(recommendation.track_ids)
