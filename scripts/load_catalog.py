#!/usr/bin/env python
"""
Seed the catalog from a CSV or JSONL file of tracks.

Expected columns:
    track_id, title, artist_id, artist_name, album_id, album_title,
    duration, genre, release_date, file_url, cover_url, created_at
(the last six are optional)

Usage:
    python scripts/load_catalog.py data/staging/tracks.csv
"""

from __future__ import annotations
import argparse
import sys
from pathlib import Path

import pandas as pd
from loguru import logger

from sga.config import load_config, configure_logging
from sga.db.catalog import CatalogStore
from sga.db.engine import engine_from_env, init_schema

REQUIRED = ["track_id", "title", "artist_id", "artist_name", "album_id", "album_title"]


def _value(row, column):
    value = row.get(column)
    return None if value is None or pd.isna(value) else value


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Load catalog tracks from CSV / JSONL")
    parser.add_argument("path", help="Tracks file (.csv or .jsonl)")
    parser.add_argument("--config", default="configs/config.yaml", help="Config file (default: configs/config.yaml)")
    args = parser.parse_args()

    cfg = load_config(args.config)
    configure_logging(cfg)

    path = Path(args.path)
    df = pd.read_json(path, lines=True) if path.suffix == ".jsonl" else pd.read_csv(path)
    missing = [c for c in REQUIRED if c not in df.columns]
    if missing:
        logger.error(f"{path} is missing columns: {missing}")
        sys.exit(1)

    df = df.dropna(subset=REQUIRED).drop_duplicates("track_id", keep="last")
    for column in ("release_date", "created_at"):
        if column in df.columns:
            df[column] = pd.to_datetime(df[column], errors="coerce")

    engine = engine_from_env(cfg)
    init_schema(engine)
    catalog = CatalogStore(engine)

    for row in df.to_dict(orient="records"):
        release_date = _value(row, "release_date")
        created_at = _value(row, "created_at")
        catalog.add_track(
            track_id=int(row["track_id"]),
            title=str(row["title"]),
            artist_id=int(row["artist_id"]),
            artist_name=str(row["artist_name"]),
            album_id=int(row["album_id"]),
            album_title=str(row["album_title"]),
            duration=int(_value(row, "duration") or 0),
            genre=str(_value(row, "genre") or ""),
            release_date=release_date.date() if release_date is not None else None,
            file_url=_value(row, "file_url"),
            cover_url=_value(row, "cover_url"),
            created_at=created_at.to_pydatetime() if created_at is not None else None,
        )

    logger.success(f"Loaded {len(df):,} tracks from {path}")


if __name__ == "__main__":
    main()
