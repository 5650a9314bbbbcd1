"""
Tests for the recommendation query engine

Each test builds a small affinity graph directly through the graph store
and checks the ranking, fallback and failure behaviour of one mode.
"""

import shutil
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import sqlalchemy as sa

from sga.db.catalog import CatalogStore
from sga.db.engine import init_schema
from sga.errors import InvalidReference, QueryTimeout, ServiceError
from sga.graph.store import AffinityGraphStore
from sga.recommend.engine import RecommendationEngine, SECONDS_PER_DAY
from sga.recommend.models import PersonalizedRow, SimilarRow, TrendingRow, GenreRow

BASE_TIME = datetime(2024, 1, 1)
NOW = 1_700_000_000.0


class RecommendationTestBase:
    """Temporary catalog + graph shared by the recommendation tests."""

    def setup_method(self):
        """Create temporary stores."""
        self.temp_dir = tempfile.mkdtemp()
        self.db = sa.create_engine(f"sqlite:///{Path(self.temp_dir) / 'catalog.db'}")
        init_schema(self.db)
        self.catalog = CatalogStore(self.db)
        self.graph = AffinityGraphStore(Path(self.temp_dir) / "graph.db")
        self.engine = RecommendationEngine(self.graph, self.catalog)
        self.tracks = {}

    def teardown_method(self):
        """Clean up."""
        self.graph.close()
        self.db.dispose()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def add_track(self, track_id, artist_id, genre=""):
        """Catalog a track; newer tracks get higher IDs."""
        self.tracks[track_id] = (artist_id, genre)
        self.catalog.add_track(track_id, f"Track {track_id}", artist_id, f"Artist {artist_id}",
                               artist_id, f"Album {artist_id}", duration=200, genre=genre,
                               created_at=BASE_TIME + timedelta(minutes=track_id))

    def play(self, user_id, track_id, times=1, at=NOW):
        artist_id, genre = self.tracks[track_id]
        for _ in range(times):
            self.graph.record_play(user_id, track_id, artist_id, genre=genre, played_at=at)


class TestPersonalized(RecommendationTestBase):
    """Test personalized recommendations."""

    def test_scores_artist_and_genre_candidates(self):
        self.add_track(10, 100, "rock")
        self.add_track(11, 100, "rock")
        self.add_track(12, 200, "rock")

        self.play(1, 10)
        self.play(2, 11)
        self.play(3, 11)
        self.play(2, 12)
        self.play(3, 12)
        self.play(4, 12)

        rec = self.engine.get_personalized(1, 10)

        assert rec.source == "graph"
        assert rec.reason == "Based on your listening history and preferences"
        # 11 and 12 tie at 1.5; the artist route is traversed first
        assert rec.rows == [
            PersonalizedRow(track_id=11, popularity=2, artist_affinity=1, score=1.5),
            PersonalizedRow(track_id=12, popularity=3, artist_affinity=0, score=1.5),
            PersonalizedRow(track_id=10, popularity=0, artist_affinity=1, score=0.5),
        ]

    def test_saturated_tracks_excluded(self):
        """Tracks played three times are excluded; twice is still recommended."""
        self.add_track(10, 100, "rock")
        self.add_track(11, 100, "rock")
        self.play(2, 11)

        self.play(1, 10, times=2)
        assert 10 in self.engine.get_personalized(1).track_ids

        self.play(1, 10)
        assert self.engine.get_personalized(1).track_ids == [11]

    def test_saturated_track_only_returns_through_fallback(self):
        self.add_track(10, 1, "rock")
        self.play(1, 10, times=3)

        rec = self.engine.get_personalized(1)
        assert rec.is_fallback
        assert rec.track_ids == [10]

    def test_saturation_cutoff_configurable(self):
        self.add_track(10, 100, "rock")
        self.add_track(11, 100, "rock")
        self.play(2, 11)
        self.play(1, 10, times=2)

        engine = RecommendationEngine(self.graph, self.catalog, {"saturation_cutoff": 2})
        rec = engine.get_personalized(1)
        assert rec.source == "graph"
        assert rec.track_ids == [11]

    def test_unknown_user_gets_fallback(self):
        self.add_track(10, 100, "rock")
        self.add_track(11, 100, "rock")
        self.play(1, 10)

        rec = self.engine.get_personalized(99, 5)

        assert rec.source == "fallback"
        assert rec.is_fallback
        assert rec.track_ids == [11, 10]

    def test_limit_truncates(self):
        for track_id in range(10, 20):
            self.add_track(track_id, 100, "rock")
            self.play(2, track_id)
        self.play(1, 10)

        assert len(self.engine.get_personalized(1, 3)) == 3

    def test_unavailable_graph_falls_back(self):
        self.add_track(10, 100)
        self.graph.close()

        rec = self.engine.get_personalized(1, 5)

        assert rec.is_fallback
        assert rec.track_ids == [10]

    def test_invalid_arguments(self):
        with pytest.raises(InvalidReference):
            self.engine.get_personalized(0)
        with pytest.raises(InvalidReference):
            self.engine.get_personalized(1, 0)
        with pytest.raises(InvalidReference):
            self.engine.get_personalized(1, -3)


class TestSimilar(RecommendationTestBase):
    """Test similar-track recommendations."""

    def build_scenario(self):
        self.add_track(7, 100, "g")
        self.add_track(3, 100, "h")
        self.add_track(8, 100, "g")
        self.add_track(11, 200, "g")
        self.add_track(15, 300, "x")

        for track_id in (7, 3, 8, 15):
            self.play(1, track_id)
        self.play(2, 11)

    def test_signals_summed(self):
        """Same artist, same genre and co-play each count once."""
        self.build_scenario()

        rec = self.engine.get_similar(7, 10)

        assert rec.reason == "Tracks similar to what you're listening to"
        assert rec.rows == [
            SimilarRow(track_id=8, occurrences=3),
            SimilarRow(track_id=3, occurrences=2),
            SimilarRow(track_id=11, occurrences=1),
            SimilarRow(track_id=15, occurrences=1),
        ]

    def test_limit(self):
        self.build_scenario()
        assert self.engine.get_similar(7, 2).track_ids == [8, 3]

    def test_unknown_track_is_empty(self):
        self.build_scenario()

        rec = self.engine.get_similar(404)

        assert rec.rows == []
        assert rec.source == "graph"

    def test_repeated_plays_do_not_inflate(self):
        self.build_scenario()
        self.play(1, 15, times=5)

        rows = self.engine.get_similar(7).rows
        assert SimilarRow(track_id=15, occurrences=1) in rows

    def test_unavailable_graph_raises(self):
        self.graph.close()

        with pytest.raises(ServiceError) as exc_info:
            self.engine.get_similar(7)
        assert exc_info.value.retryable is True


class TestTrending(RecommendationTestBase):
    """Test trending recommendations."""

    def test_window(self):
        self.add_track(10, 100)
        self.add_track(11, 100)
        self.add_track(12, 200)

        self.play(1, 10, times=2, at=NOW - SECONDS_PER_DAY)
        self.play(2, 11, at=NOW - 2 * SECONDS_PER_DAY)
        self.play(3, 12, times=5, at=NOW - 30 * SECONDS_PER_DAY)

        rec = self.engine.get_trending(10, now=NOW)

        assert rec.reason == "Trending this week"
        assert rec.rows == [TrendingRow(track_id=10, play_count=2), TrendingRow(track_id=11, play_count=1)]

    def test_counts_summed_across_listeners(self):
        self.add_track(10, 100)
        self.add_track(11, 100)
        self.play(1, 11, at=NOW)
        self.play(1, 10, at=NOW)
        self.play(2, 10, at=NOW)

        assert self.engine.get_trending(now=NOW).track_ids == [10, 11]

    def test_ties_keep_first_observation(self):
        self.add_track(10, 100)
        self.add_track(11, 100)
        self.play(1, 11, at=NOW)
        self.play(1, 10, at=NOW)

        assert self.engine.get_trending(now=NOW).track_ids == [11, 10]

    def test_window_configurable(self):
        self.add_track(10, 100)
        self.play(1, 10, at=NOW - 20 * SECONDS_PER_DAY)

        engine = RecommendationEngine(self.graph, self.catalog, {"trending_window_days": 30})
        assert engine.get_trending(now=NOW).track_ids == [10]
        assert self.engine.get_trending(now=NOW).is_fallback

    def test_empty_window_falls_back(self):
        """Fallback is deterministic: newest catalog tracks first."""
        self.add_track(1, 100)
        self.add_track(2, 100)
        self.add_track(3, 100)

        first = self.engine.get_trending(2, now=NOW)
        second = self.engine.get_trending(2, now=NOW)

        assert first.is_fallback
        assert first.track_ids == [3, 2]
        assert second.track_ids == first.track_ids

    def test_empty_catalog_fallback_is_empty(self):
        rec = self.engine.get_trending(now=NOW)
        assert rec.is_fallback
        assert rec.rows == []

    def test_unavailable_graph_falls_back(self):
        self.add_track(10, 100)
        self.graph.close()

        assert self.engine.get_trending(now=NOW).track_ids == [10]

    def test_unreachable_catalog_fallback_is_empty(self):
        broken = CatalogStore(sa.create_engine(f"sqlite:///{Path(self.temp_dir) / 'missing' / 'x.db'}"))
        engine = RecommendationEngine(self.graph, broken)

        assert engine.fallback_ranking(5) == []
        assert engine.get_trending(now=NOW).rows == []


class TestByGenre(RecommendationTestBase):
    """Test genre recommendations."""

    def build_scenario(self):
        self.add_track(10, 100, "rock")
        self.add_track(11, 100, "rock")
        self.add_track(12, 200, "rock")
        self.add_track(13, 200, "jazz")

        self.play(1, 10)
        self.play(2, 10)
        self.play(1, 11, times=3)
        self.play(2, 11)
        self.play(3, 11)
        self.play(4, 12)
        self.play(4, 13)

    def test_ranked_by_listeners(self):
        self.build_scenario()

        rec = self.engine.get_by_genre("rock")

        assert rec.reason == "Popular tracks in rock"
        assert rec.rows == [
            GenreRow(track_id=11, popularity=3),
            GenreRow(track_id=10, popularity=2),
            GenreRow(track_id=12, popularity=1),
        ]

    def test_listener_exclusion(self):
        """The listener's saturated tracks are dropped."""
        self.build_scenario()

        assert self.engine.get_by_genre("rock", user_id=1).track_ids == [10, 12]
        assert self.engine.get_by_genre("rock", user_id=2).track_ids == [11, 10, 12]

    def test_genre_trimmed(self):
        self.build_scenario()

        rec = self.engine.get_by_genre("  rock ", 1)
        assert rec.reason == "Popular tracks in rock"
        assert rec.track_ids == [11]

    def test_unknown_genre_is_empty(self):
        self.build_scenario()
        assert self.engine.get_by_genre("polka").rows == []

    def test_empty_genre_rejected(self):
        with pytest.raises(InvalidReference):
            self.engine.get_by_genre("   ")
        with pytest.raises(InvalidReference):
            self.engine.get_by_genre("rock", user_id=-1)

    def test_unavailable_graph_raises(self):
        self.graph.close()

        with pytest.raises(ServiceError) as exc_info:
            self.engine.get_by_genre("rock")
        assert exc_info.value.retryable is True


class TestEngineHelpers(RecommendationTestBase):
    """Test limits and catalog hydration."""

    def test_limit_clamped(self):
        assert self.engine._limit(None) == 20
        assert self.engine._limit(5) == 5
        assert self.engine._limit(1000) == 100

        with pytest.raises(InvalidReference):
            self.engine._limit(True)

    def test_from_config(self):
        cfg = {"graph": {"query_timeout": 0.5}, "recommend": {"max_limit": 10, "candidate_cap": 50}}
        engine = RecommendationEngine.from_config(cfg, self.graph, self.catalog)

        assert engine.query_timeout == 0.5
        assert engine.max_limit == 10
        assert engine.candidate_cap == 50
        assert engine.saturation_cutoff == 3

    def test_hydrate_keeps_rank_order(self):
        self.add_track(10, 100, "rock")
        self.add_track(11, 100, "rock")
        self.play(1, 10)
        self.play(1, 11)
        self.play(2, 11)
        # Known to the graph but not the catalog
        self.graph.record_play(3, 12, 100, genre="rock")
        self.graph.record_play(4, 12, 100, genre="rock")
        self.graph.record_play(5, 12, 100, genre="rock")

        rec = self.engine.get_by_genre("rock")
        assert rec.track_ids == [12, 11, 10]

        records = self.engine.hydrate(rec)
        assert [r.track_id for r in records] == [11, 10]
        assert records[0].title == "Track 11"
        assert records[0].artist_name == "Artist 100"


def timed_out(*args, **kwargs):
    raise QueryTimeout("graph query exceeded 2.0s")


class TestSmallCandidateCap(RecommendationTestBase):
    """Rankings with a fan-out cap smaller than the graph."""

    def setup_method(self):
        super().setup_method()
        self.capped = RecommendationEngine(self.graph, self.catalog, {"candidate_cap": 2})

    def test_by_genre_ranks_beyond_cap(self):
        """The most popular track wins even when first seen after the cap."""
        self.add_track(1, 100, "rock")
        self.add_track(2, 100, "rock")
        self.add_track(3, 200, "rock")
        self.play(1, 1, times=3)
        self.play(1, 2, times=3)
        for user_id in (2, 3, 4, 5):
            self.play(user_id, 3)

        assert self.capped.get_by_genre("rock", 1).rows == [GenreRow(track_id=3, popularity=4)]
        assert self.capped.get_by_genre("rock", 5, user_id=1).track_ids == [3]

    def test_personalized_skips_saturated_before_cap(self):
        """Saturated tracks do not fill the per-hop budget."""
        self.add_track(1, 100, "rock")
        self.add_track(2, 100, "rock")
        self.add_track(3, 100, "rock")
        self.play(2, 1)
        self.play(2, 2)
        self.play(2, 3)
        self.play(1, 1, times=3)
        self.play(1, 2, times=3)

        rec = self.capped.get_personalized(1, 5)

        assert rec.source == "graph"
        assert rec.track_ids == [3]

    def test_personalized_candidate_set_capped(self):
        for track_id in (1, 2, 3, 4):
            self.add_track(track_id, 100, "rock")
            self.play(2, track_id)
        self.play(1, 1)

        assert self.capped.get_personalized(1, 5).track_ids == [1, 2]


class TestFallbackConsistency(RecommendationTestBase):
    """Every fallback path serves the same global ranking."""

    def test_no_history_matches_empty_window(self):
        for track_id in (1, 2, 3, 4):
            self.add_track(track_id, 100, "rock")
        self.play(5, 1, at=NOW - 60 * SECONDS_PER_DAY)

        personalized = self.engine.get_personalized(99, 3)
        trending = self.engine.get_trending(3, now=NOW)

        assert personalized.is_fallback and trending.is_fallback
        assert personalized.rows == trending.rows
        assert personalized.track_ids == [4, 3, 2]


class TestQueryTimeouts(RecommendationTestBase):
    """A query that overruns its deadline degrades by mode."""

    def setup_method(self):
        super().setup_method()
        self.add_track(10, 100, "rock")
        self.add_track(11, 100, "rock")
        self.play(1, 10, at=NOW)
        self.play(2, 11, at=NOW)

    def test_personalized_falls_back(self, monkeypatch):
        monkeypatch.setattr(self.graph, "neighbors", timed_out)

        rec = self.engine.get_personalized(1, 5)

        assert rec.is_fallback
        assert rec.track_ids == [11, 10]

    def test_trending_falls_back(self, monkeypatch):
        monkeypatch.setattr(self.graph, "sum_counts", timed_out)

        rec = self.engine.get_trending(5, now=NOW)

        assert rec.is_fallback
        assert rec.track_ids == [11, 10]

    def test_similar_raises_retryable(self, monkeypatch):
        monkeypatch.setattr(self.graph, "target_of", timed_out)

        with pytest.raises(ServiceError) as exc_info:
            self.engine.get_similar(10)
        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.__cause__, QueryTimeout)

    def test_by_genre_raises_retryable(self, monkeypatch):
        monkeypatch.setattr(self.graph, "popular_in_genre", timed_out)

        with pytest.raises(ServiceError) as exc_info:
            self.engine.get_by_genre("rock", user_id=1)
        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.__cause__, QueryTimeout)
