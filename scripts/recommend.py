#!/usr/bin/env python
"""
Query recommendations from the affinity graph.

Usage:
    python scripts/recommend.py personalized --user 1
    python scripts/recommend.py similar --track 10 --limit 5
    python scripts/recommend.py trending
    python scripts/recommend.py genre --genre techno --user 1
    python scripts/recommend.py trending --json
"""

from __future__ import annotations
import argparse
import json
import sys

from loguru import logger

from sga.config import load_config, configure_logging
from sga.db.catalog import CatalogStore
from sga.db.engine import engine_from_env
from sga.errors import AffinityError
from sga.graph.store import AffinityGraphStore
from sga.recommend.engine import RecommendationEngine


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Query track recommendations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/recommend.py personalized --user 1
  python scripts/recommend.py similar --track 10 --limit 5
  python scripts/recommend.py genre --genre techno
        """,
    )
    parser.add_argument("mode", choices=["personalized", "similar", "trending", "genre"],
                        help="Recommendation mode")
    parser.add_argument("--user", type=int, help="Listener ID (personalized, optional for genre)")
    parser.add_argument("--track", type=int, help="Seed track ID (similar)")
    parser.add_argument("--genre", help="Genre name (genre)")
    parser.add_argument("--limit", type=int, default=None, help="Maximum tracks")
    parser.add_argument("--json", action="store_true", help="Print hydrated tracks as JSON")
    parser.add_argument("--config", default="configs/config.yaml", help="Config file (default: configs/config.yaml)")
    args = parser.parse_args()

    if args.mode == "personalized" and args.user is None:
        parser.error("personalized requires --user")
    if args.mode == "similar" and args.track is None:
        parser.error("similar requires --track")
    if args.mode == "genre" and not args.genre:
        parser.error("genre requires --genre")

    cfg = load_config(args.config)
    configure_logging(cfg)

    catalog = CatalogStore(engine_from_env(cfg))
    with AffinityGraphStore.from_config(cfg) as graph:
        engine = RecommendationEngine.from_config(cfg, graph, catalog)
        try:
            if args.mode == "personalized":
                rec = engine.get_personalized(args.user, args.limit)
            elif args.mode == "similar":
                rec = engine.get_similar(args.track, args.limit)
            elif args.mode == "trending":
                rec = engine.get_trending(args.limit)
            else:
                rec = engine.get_by_genre(args.genre, args.limit, user_id=args.user)
            tracks = engine.hydrate(rec)
        except AffinityError as e:
            logger.error(f"Recommendation failed: {e}")
            sys.exit(1)

    if args.json:
        payload = {
            "mode": rec.mode,
            "reason": rec.reason,
            "source": rec.source,
            "tracks": [t.to_dict() for t in tracks],
        }
        print(json.dumps(payload, indent=2, default=str))
        return

    logger.info("=" * 60)
    logger.info(f"{rec.reason} ({rec.source})")
    logger.info("=" * 60)
    for i, track in enumerate(tracks, 1):
        logger.info(f"{i:3d}. {track.title} - {track.artist_name} [{track.genre or 'n/a'}] (id={track.track_id})")
    if not tracks:
        logger.warning("No tracks to recommend")


if __name__ == "__main__":
    main()
