#!/usr/bin/env python
"""
Record "track played" events and apply them to the affinity graph.

Usage:
    python scripts/record_play.py --user 1 --track 10
    python scripts/record_play.py --user 1 --track 10 --track 11 --duration 95 --skipped
"""

from __future__ import annotations
import argparse
import sys

from loguru import logger

from sga.config import load_config, configure_logging
from sga.db.catalog import CatalogStore
from sga.db.engine import engine_from_env
from sga.db.play_history import PlayHistoryStore
from sga.errors import AffinityError
from sga.graph.store import AffinityGraphStore
from sga.ingest.events import EventIngestor


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Record plays for a listener")
    parser.add_argument("--user", type=int, required=True, help="Listener ID")
    parser.add_argument("--track", type=int, action="append", required=True,
                        help="Played track ID (repeatable)")
    parser.add_argument("--duration", type=int, default=None,
                        help="Seconds listened (default: track duration)")
    parser.add_argument("--skipped", action="store_true", help="Mark the plays as not completed")
    parser.add_argument("--config", default="configs/config.yaml", help="Config file (default: configs/config.yaml)")
    args = parser.parse_args()

    cfg = load_config(args.config)
    configure_logging(cfg)

    engine = engine_from_env(cfg)
    graph = AffinityGraphStore.from_config(cfg)
    ingestor = EventIngestor.from_config(cfg, PlayHistoryStore(engine), CatalogStore(engine), graph)

    failures = 0
    try:
        with ingestor:
            for track_id in args.track:
                try:
                    record = ingestor.record_play(args.user, track_id,
                                                  duration_played=args.duration,
                                                  completed=not args.skipped)
                    logger.info(f"Logged play {record.play_id}: user={args.user} track={track_id}")
                except AffinityError as e:
                    failures += 1
                    logger.error(f"Play not recorded for track {track_id}: {e}")
        logger.info(f"Ingestion stats: {ingestor.stats()}")
    finally:
        graph.close()

    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
