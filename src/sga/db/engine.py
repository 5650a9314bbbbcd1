# src/sga/db/engine.py
from __future__ import annotations

import os
from typing import Any, Dict

import sqlalchemy as sa
from loguru import logger

from sga.errors import StoreUnavailable


metadata = sa.MetaData()

artists = sa.Table(
    "artists", metadata,
    sa.Column("artist_id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("name", sa.Text, nullable=False),
)

albums = sa.Table(
    "albums", metadata,
    sa.Column("album_id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("title", sa.Text, nullable=False),
    sa.Column("artist_id", sa.BigInteger, sa.ForeignKey("artists.artist_id"), nullable=False),
    sa.Column("cover_url", sa.Text),
)

tracks = sa.Table(
    "tracks", metadata,
    sa.Column("track_id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("title", sa.Text, nullable=False),
    sa.Column("artist_id", sa.BigInteger, sa.ForeignKey("artists.artist_id"), nullable=False),
    sa.Column("album_id", sa.BigInteger, sa.ForeignKey("albums.album_id"), nullable=False),
    sa.Column("duration", sa.Integer, nullable=False, default=0),  # seconds
    sa.Column("genre", sa.String(100), default=""),
    sa.Column("release_date", sa.Date),
    sa.Column("file_url", sa.Text),
    sa.Column("cover_url", sa.Text),
    sa.Column("created_at", sa.DateTime, nullable=False),
    sa.Index("idx_tracks_created", "created_at"),
    sa.Index("idx_tracks_genre", "genre"),
)

# Append-only play log: the source of truth for listening history
plays = sa.Table(
    "plays", metadata,
    sa.Column("play_id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("user_id", sa.BigInteger, nullable=False),
    sa.Column("track_id", sa.BigInteger, sa.ForeignKey("tracks.track_id"), nullable=False),
    sa.Column("played_at", sa.DateTime, nullable=False),
    sa.Column("duration_played", sa.Integer, nullable=False, default=0),
    sa.Column("completed", sa.Boolean, nullable=False, default=True),
    sa.Index("idx_plays_user", "user_id"),
    sa.Index("idx_plays_track", "track_id"),
    sa.Index("idx_plays_played_at", "played_at"),
)

# Per-track counters maintained alongside every append
track_stats = sa.Table(
    "track_stats", metadata,
    sa.Column("track_id", sa.BigInteger, sa.ForeignKey("tracks.track_id"), primary_key=True,
              autoincrement=False),
    sa.Column("play_count", sa.Integer, nullable=False, default=0),
    sa.Column("last_played", sa.DateTime),
)


def engine_from_env(cfg: Dict[str, Any]) -> sa.Engine:
    """
    Build a SQLAlchemy engine from env variables pointed to by configs/config.yaml.

    config.yaml:
      db:
        driver: postgresql+psycopg2
        host_env: PGHOST
        port_env: PGPORT
        user_env: PGUSER
        pwd_env:  PGPASSWORD
        db_env:   PGDATABASE
        url_env:  SGA_DB_URL   # full URL, wins when set (e.g. sqlite:///data/catalog.db)
    """
    db = cfg["db"]
    url = os.getenv(db.get("url_env", "SGA_DB_URL"))
    if not url:
        host = os.getenv(db["host_env"])
        port = os.getenv(db["port_env"])
        user = os.getenv(db["user_env"])
        pwd = os.getenv(db["pwd_env"])
        name = os.getenv(db["db_env"])
        url = f"{db['driver']}://{user}:{pwd}@{host}:{port}/{name}"
    return sa.create_engine(url, pool_pre_ping=True)


def init_schema(engine: sa.Engine) -> None:
    """Create catalog and play-history tables (idempotent)."""
    try:
        metadata.create_all(engine)
    except sa.exc.OperationalError as e:
        raise StoreUnavailable(f"cannot initialize schema: {e}") from e
    logger.info("Catalog / play-history schema ensured")
