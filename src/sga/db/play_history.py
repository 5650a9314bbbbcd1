"""
Play-history collaborator.

Append-only log of plays. This is the authoritative record of listening
history; the affinity graph is derived from it. Each append also maintains
per-track counters (``track_stats``) in the same transaction.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from loguru import logger

from sga.db.engine import plays, tracks, track_stats
from sga.errors import NotFound, StoreUnavailable, require_positive


@dataclass(frozen=True)
class PlayRecord:
    play_id: int
    user_id: int
    track_id: int
    played_at: datetime
    duration_played: int
    completed: bool


def utc_naive(value: Optional[datetime] = None) -> datetime:
    """Timestamps are stored as naive UTC."""
    if value is None:
        return datetime.now(timezone.utc).replace(tzinfo=None)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class PlayHistoryStore:
    """Append-only play log over a SQLAlchemy engine."""

    def __init__(self, engine: sa.Engine):
        self.engine = engine

    def append_play(self, user_id: int, track_id: int,
                    played_at: Optional[datetime] = None,
                    duration_played: int = 0,
                    completed: bool = True) -> PlayRecord:
        """
        Append one play to the log.

        Not retried on failure: an append is not idempotent.

        Args:
            user_id: Listener ID
            track_id: Played track ID
            played_at: Play timestamp (default now, stored as UTC)
            duration_played: Seconds listened
            completed: Whether the track played to the end

        Returns:
            The stored PlayRecord

        Raises:
            InvalidReference: Non-positive IDs
            NotFound: Track is not in the catalog
            StoreUnavailable: Database unreachable
        """
        require_positive("user_id", user_id)
        require_positive("track_id", track_id)
        played_at = utc_naive(played_at)
        duration_played = max(int(duration_played or 0), 0)

        try:
            with self.engine.begin() as conn:
                known = conn.execute(
                    sa.select(tracks.c.track_id).where(tracks.c.track_id == track_id)
                ).first()
                if known is None:
                    raise NotFound(f"track {track_id} not found")

                result = conn.execute(
                    plays.insert().values(
                        user_id=user_id,
                        track_id=track_id,
                        played_at=played_at,
                        duration_played=duration_played,
                        completed=bool(completed),
                    )
                )
                play_id = result.inserted_primary_key[0]
                self._bump_track_stats(conn, track_id, played_at)
        except sa.exc.OperationalError as e:
            raise StoreUnavailable(f"play history unavailable: {e}") from e

        logger.debug(f"Logged play {play_id}: user={user_id} track={track_id}")
        return PlayRecord(play_id, user_id, track_id, played_at, duration_played, bool(completed))

    # Single-statement upsert: concurrent first plays of a track cannot both insert
    _BUMP_TRACK_STATS = sa.text("""
        INSERT INTO track_stats (track_id, play_count, last_played)
        VALUES (:track_id, 1, :played_at)
        ON CONFLICT (track_id) DO UPDATE SET
          play_count = track_stats.play_count + 1,
          last_played = CASE
            WHEN track_stats.last_played IS NULL OR track_stats.last_played < EXCLUDED.last_played
            THEN EXCLUDED.last_played
            ELSE track_stats.last_played
          END
    """).bindparams(sa.bindparam("played_at", type_=sa.DateTime))

    def _bump_track_stats(self, conn, track_id: int, played_at: datetime):
        conn.execute(self._BUMP_TRACK_STATS, {"track_id": track_id, "played_at": played_at})

    def recent_history(self, user_id: int, limit: int = 100) -> List[PlayRecord]:
        """A user's most recent plays, newest first."""
        require_positive("user_id", user_id)
        stmt = (
            sa.select(plays)
            .where(plays.c.user_id == user_id)
            .order_by(plays.c.played_at.desc(), plays.c.play_id.desc())
            .limit(limit)
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).fetchall()
        except sa.exc.OperationalError as e:
            raise StoreUnavailable(f"play history unavailable: {e}") from e

        return [
            PlayRecord(r.play_id, r.user_id, r.track_id, r.played_at, r.duration_played, bool(r.completed))
            for r in rows
        ]

    def get_track_stats(self, track_id: int) -> Optional[Dict[str, Any]]:
        """Play counter for one track, or None if it was never played."""
        stmt = sa.select(track_stats).where(track_stats.c.track_id == track_id)
        try:
            with self.engine.connect() as conn:
                row = conn.execute(stmt).first()
        except sa.exc.OperationalError as e:
            raise StoreUnavailable(f"play history unavailable: {e}") from e
        return dict(row._mapping) if row else None

    def count_plays(self) -> int:
        try:
            with self.engine.connect() as conn:
                return conn.execute(sa.select(sa.func.count()).select_from(plays)).scalar_one()
        except sa.exc.OperationalError as e:
            raise StoreUnavailable(f"play history unavailable: {e}") from e
