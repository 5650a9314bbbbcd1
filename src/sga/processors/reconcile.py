"""
Graph Reconciliation

Rebuilds the affinity graph by replaying the authoritative play-history log.

Background graph updates are best effort: a full queue, a failed worker or a
restart mid-flight leaves plays in the log that never reached the graph.
This processor is the recovery path for that drift. It is never triggered
automatically; operators run it (scripts/reconcile_graph.py).

Phases:
1. Measure drift (log aggregates vs graph PLAYED counts)
2. Rebuild (aggregate the log with pandas, replace graph contents)
3. Verify (measure drift again)
"""

from __future__ import annotations
from typing import Dict, Any, List, Optional, Tuple

import pandas as pd
import sqlalchemy as sa
from loguru import logger

from sga.db.engine import plays, tracks
from sga.errors import StoreUnavailable
from sga.graph.store import AffinityGraphStore, EdgeType

_EPOCH = pd.Timestamp("1970-01-01", tz="UTC")


class GraphReconciler:
    """
    Replays the play-history log into the affinity graph.

    Plays applied to the graph while a rebuild is running may be overwritten
    by the rebuilt contents if they were logged after the log was read; run a
    second pass (or pause ingestion) when exact convergence is needed.
    """

    def __init__(self, engine: sa.Engine, graph: AffinityGraphStore,
                 config: Optional[Dict[str, Any]] = None):
        """
        Initialize the reconciler.

        Args:
            engine: SQLAlchemy engine holding the play log and catalog
            graph: Affinity graph to rebuild
            config: Reconciliation settings
        """
        self.engine = engine
        self.graph = graph
        self.config = config or {}

        self.sample_size = self.config.get("drift_sample_size", 10)

        self.stats = {
            "plays_replayed": 0,
            "played_edges": 0,
            "likes_artist_edges": 0,
            "likes_genre_edges": 0,
            "drift_before": 0,
            "drift_after": 0,
        }

    def process_all(self, force: bool = False) -> Dict[str, Any]:
        """
        Measure drift, rebuild when needed, and verify.

        Args:
            force: Rebuild even when no drift is found

        Returns:
            Processing statistics
        """
        logger.info("=" * 70)
        logger.info("GRAPH RECONCILIATION")
        logger.info("=" * 70)

        graph_stats = self.graph.get_stats()
        logger.info("Graph contains:")
        logger.info(f"  Users: {graph_stats.get('users', 0):,}")
        logger.info(f"  Tracks: {graph_stats.get('tracks', 0):,}")
        logger.info(f"  PLAYED edges: {graph_stats.get('PLAYED', 0):,}")

        logger.info("\nPhase 1: Measuring drift...")
        logger.info("-" * 70)
        before = self.measure_drift()
        self.stats["drift_before"] = before["missing_plays"] + before["extra_plays"]

        if before["in_sync"] and not force:
            logger.success("Graph is in sync with the play log, nothing to do")
            return self.stats

        logger.info("\nPhase 2: Rebuilding graph from play log...")
        logger.info("-" * 70)
        self.rebuild()

        logger.info("\nPhase 3: Verifying...")
        logger.info("-" * 70)
        after = self.measure_drift()
        self.stats["drift_after"] = after["missing_plays"] + after["extra_plays"]

        logger.info("\n" + "=" * 70)
        logger.success("RECONCILIATION COMPLETE")
        logger.info("=" * 70)
        logger.info(f"Plays replayed: {self.stats['plays_replayed']:,}")
        logger.info(f"PLAYED edges: {self.stats['played_edges']:,}")
        logger.info(f"Drift before / after: {self.stats['drift_before']:,} / {self.stats['drift_after']:,}")
        logger.info("=" * 70)

        return self.stats

    def _read_log(self) -> pd.DataFrame:
        """The play log joined with each track's artist and genre, in append order."""
        stmt = (
            sa.select(
                plays.c.play_id,
                plays.c.user_id,
                plays.c.track_id,
                plays.c.played_at,
                tracks.c.artist_id,
                tracks.c.genre,
            )
            .select_from(plays.join(tracks, plays.c.track_id == tracks.c.track_id))
            .order_by(plays.c.play_id)
        )
        try:
            with self.engine.connect() as conn:
                df = pd.read_sql(stmt, conn)
        except sa.exc.OperationalError as e:
            raise StoreUnavailable(f"play history unavailable: {e}") from e

        if df.empty:
            return df
        df["genre"] = df["genre"].fillna("").astype(str).str.strip()
        df["last_played"] = (pd.to_datetime(df["played_at"], utc=True) - _EPOCH) / pd.Timedelta(seconds=1)
        return df

    def rebuild(self) -> Dict[str, int]:
        """
        Replace the graph with the aggregate of the whole play log.

        Edge rows are written in order of each pair's first play, so traversal
        order after a rebuild matches live ingestion.

        Returns:
            Row counts written per edge table
        """
        df = self._read_log()
        self.stats["plays_replayed"] = len(df)
        logger.info(f"Replaying {len(df):,} plays")

        if df.empty:
            counts = self.graph.replace_contents([], [], [], [], [])
        else:
            counts = self.graph.replace_contents(*self._aggregate(df))

        self.stats["played_edges"] = counts["played"]
        self.stats["likes_artist_edges"] = counts["likes_artist"]
        self.stats["likes_genre_edges"] = counts["likes_genre"]
        logger.success(f"Rebuilt graph: {counts}")
        return counts

    @staticmethod
    def _aggregate(df: pd.DataFrame) -> Tuple[List, List, List, List, List]:
        # sort=False keeps groups in order of first appearance
        played = (
            df.groupby(["user_id", "track_id"], sort=False)
            .agg(play_count=("play_id", "size"), last_played=("last_played", "max"))
            .reset_index()
        )
        likes_artist = (
            df.groupby(["user_id", "artist_id"], sort=False)
            .size().reset_index(name="play_count")
        )
        with_genre = df[df["genre"] != ""]
        likes_genre = (
            with_genre.groupby(["user_id", "genre"], sort=False)
            .size().reset_index(name="play_count")
        )
        by_artist = df.drop_duplicates("track_id")[["track_id", "artist_id"]]
        has_genre = with_genre.drop_duplicates("track_id")[["track_id", "genre"]]

        # sqlite3 only binds native Python scalars
        return (
            [(int(r.user_id), int(r.track_id), int(r.play_count), float(r.last_played))
             for r in played.itertuples(index=False)],
            [(int(r.user_id), int(r.artist_id), int(r.play_count))
             for r in likes_artist.itertuples(index=False)],
            [(int(r.user_id), str(r.genre), int(r.play_count))
             for r in likes_genre.itertuples(index=False)],
            [(int(r.track_id), int(r.artist_id)) for r in by_artist.itertuples(index=False)],
            [(int(r.track_id), str(r.genre)) for r in has_genre.itertuples(index=False)],
        )

    def measure_drift(self) -> Dict[str, Any]:
        """
        Compare per (user, track) play counts in the log and the graph.

        Returns:
            Dict with pair counts, missing/extra play totals, a sample of
            drifted pairs and an ``in_sync`` flag
        """
        stmt = (
            sa.select(plays.c.user_id, plays.c.track_id, sa.func.count().label("log_count"))
            .group_by(plays.c.user_id, plays.c.track_id)
        )
        try:
            with self.engine.connect() as conn:
                log_df = pd.read_sql(stmt, conn)
        except sa.exc.OperationalError as e:
            raise StoreUnavailable(f"play history unavailable: {e}") from e

        graph_df = pd.DataFrame(
            [(src, dst, count) for src, dst, count, _ in self.graph.edges(EdgeType.PLAYED)],
            columns=["user_id", "track_id", "graph_count"],
        )
        # Empty frames come back as object columns; merge keys must agree
        log_df = log_df.astype("int64")
        graph_df = graph_df.astype("int64")

        merged = log_df.merge(graph_df, on=["user_id", "track_id"], how="outer")
        merged[["log_count", "graph_count"]] = merged[["log_count", "graph_count"]].fillna(0).astype(int)
        merged["delta"] = merged["log_count"] - merged["graph_count"]
        drifted = merged[merged["delta"] != 0]

        report = {
            "log_pairs": int((merged["log_count"] > 0).sum()),
            "graph_pairs": int((merged["graph_count"] > 0).sum()),
            "drifted_pairs": len(drifted),
            "missing_plays": int(drifted.loc[drifted["delta"] > 0, "delta"].sum()),
            "extra_plays": int(-drifted.loc[drifted["delta"] < 0, "delta"].sum()),
            "sample": [
                (int(r.user_id), int(r.track_id), int(r.log_count), int(r.graph_count))
                for r in drifted.head(self.sample_size).itertuples(index=False)
            ],
        }
        report["in_sync"] = report["drifted_pairs"] == 0

        if report["in_sync"]:
            logger.info(f"No drift across {report['log_pairs']:,} (user, track) pairs")
        else:
            logger.warning(f"Graph drift: {report['drifted_pairs']:,} pairs, "
                           f"{report['missing_plays']:,} plays missing, "
                           f"{report['extra_plays']:,} extra")
        return report
