"""
Catalog collaborator.

Read access to track display metadata (title, artist, album, media URLs),
the order-preserving catalog join used to hydrate recommendation results,
and the recency ranking used as the global fallback.
"""

from __future__ import annotations
from dataclasses import dataclass, asdict
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import sqlalchemy as sa
from loguru import logger
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from sga.db.engine import artists, albums, tracks
from sga.errors import NotFound, StoreUnavailable, require_positive


@dataclass(frozen=True)
class TrackRecord:
    """Display record for one catalog track."""
    track_id: int
    title: str
    artist_id: int
    artist_name: str
    album_id: int
    album_name: str
    duration: int
    genre: str
    release_date: Optional[date]
    file_url: Optional[str]
    cover_url: Optional[str]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_TRACK_COLUMNS = (
    tracks.c.track_id,
    tracks.c.title,
    tracks.c.artist_id,
    artists.c.name.label("artist_name"),
    tracks.c.album_id,
    albums.c.title.label("album_name"),
    tracks.c.duration,
    tracks.c.genre,
    tracks.c.release_date,
    tracks.c.file_url,
    tracks.c.cover_url,
    tracks.c.created_at,
)

_TRACK_JOIN = tracks.join(artists, tracks.c.artist_id == artists.c.artist_id).join(
    albums, tracks.c.album_id == albums.c.album_id
)

# Catalog reads are idempotent: retry transient connection failures
_read_retry = retry(
    reraise=True,
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    retry=retry_if_exception_type(sa.exc.OperationalError),
)


def _to_record(row) -> TrackRecord:
    m = row._mapping
    return TrackRecord(
        track_id=m["track_id"],
        title=m["title"],
        artist_id=m["artist_id"],
        artist_name=m["artist_name"],
        album_id=m["album_id"],
        album_name=m["album_name"],
        duration=m["duration"] or 0,
        genre=m["genre"] or "",
        release_date=m["release_date"],
        file_url=m["file_url"],
        cover_url=m["cover_url"],
        created_at=m["created_at"],
    )


class CatalogStore:
    """Catalog metadata lookups over a SQLAlchemy engine."""

    def __init__(self, engine: sa.Engine):
        self.engine = engine

    @_read_retry
    def _fetch(self, stmt) -> list:
        with self.engine.connect() as conn:
            return conn.execute(stmt).fetchall()

    def _read(self, stmt) -> list:
        try:
            return self._fetch(stmt)
        except sa.exc.OperationalError as e:
            raise StoreUnavailable(f"catalog unavailable: {e}") from e

    def get_track(self, track_id: int) -> TrackRecord:
        """
        Fetch one track.

        Raises:
            InvalidReference: Non-positive track ID
            NotFound: Track is not in the catalog
            StoreUnavailable: Catalog database unreachable
        """
        require_positive("track_id", track_id)
        stmt = sa.select(*_TRACK_COLUMNS).select_from(_TRACK_JOIN).where(tracks.c.track_id == track_id)
        rows = self._read(stmt)
        if not rows:
            raise NotFound(f"track {track_id} not found")
        return _to_record(rows[0])

    def lookup_tracks_by_id(self, track_ids: Sequence[int]) -> List[TrackRecord]:
        """
        Fetch display records for a ranked list of track IDs.

        The output follows the input order; IDs without a catalog entry are
        silently omitted.

        Args:
            track_ids: Ordered track IDs

        Returns:
            Ordered list of TrackRecord
        """
        if not track_ids:
            return []

        unique_ids = list(dict.fromkeys(track_ids))
        stmt = sa.select(*_TRACK_COLUMNS).select_from(_TRACK_JOIN).where(tracks.c.track_id.in_(unique_ids))
        by_id = {record.track_id: record for record in map(_to_record, self._read(stmt))}

        missing = len(unique_ids) - len(by_id)
        if missing:
            logger.debug(f"Catalog join dropped {missing} unknown track IDs")

        return [by_id[tid] for tid in track_ids if tid in by_id]

    def recent_track_ids(self, limit: int) -> List[int]:
        """Most recently added tracks first (ties: higher ID first)."""
        stmt = (
            sa.select(tracks.c.track_id)
            .order_by(tracks.c.created_at.desc(), tracks.c.track_id.desc())
            .limit(limit)
        )
        return [row[0] for row in self._read(stmt)]

    def add_track(self, track_id: int, title: str, artist_id: int, artist_name: str,
                  album_id: int, album_title: str, duration: int = 0, genre: str = "",
                  release_date: Optional[date] = None, file_url: Optional[str] = None,
                  cover_url: Optional[str] = None,
                  created_at: Optional[datetime] = None) -> int:
        """
        Insert or update a catalog track together with its artist and album.

        Loader helper for seeding a catalog; the catalog service owns CRUD.

        Returns:
            track_id: The ID of the stored track
        """
        require_positive("track_id", track_id)
        require_positive("artist_id", artist_id)
        require_positive("album_id", album_id)
        if created_at is None:
            created_at = datetime.now(timezone.utc).replace(tzinfo=None)

        track_row = {
            "title": title,
            "artist_id": artist_id,
            "album_id": album_id,
            "duration": duration,
            "genre": genre or "",
            "release_date": release_date,
            "file_url": file_url,
            "cover_url": cover_url,
            "created_at": created_at,
        }

        with self.engine.begin() as conn:
            if conn.execute(sa.select(artists.c.artist_id).where(artists.c.artist_id == artist_id)).first():
                conn.execute(artists.update().where(artists.c.artist_id == artist_id).values(name=artist_name))
            else:
                conn.execute(artists.insert().values(artist_id=artist_id, name=artist_name))

            if conn.execute(sa.select(albums.c.album_id).where(albums.c.album_id == album_id)).first():
                conn.execute(albums.update().where(albums.c.album_id == album_id)
                             .values(title=album_title, artist_id=artist_id))
            else:
                conn.execute(albums.insert().values(album_id=album_id, title=album_title,
                                                    artist_id=artist_id, cover_url=cover_url))

            if conn.execute(sa.select(tracks.c.track_id).where(tracks.c.track_id == track_id)).first():
                conn.execute(tracks.update().where(tracks.c.track_id == track_id).values(**track_row))
            else:
                conn.execute(tracks.insert().values(track_id=track_id, **track_row))

        logger.debug(f"Cataloged track {track_id}: {title}")
        return track_id
