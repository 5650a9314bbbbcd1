#!/usr/bin/env python
"""
Export the affinity graph as node-link JSON for offline analysis.

Usage:
    python scripts/export_graph.py
    python scripts/export_graph.py --user 1 --user 2 --output data/graph/users.json
"""

from __future__ import annotations
import argparse

from loguru import logger

from sga.config import load_config, configure_logging
from sga.graph.snapshot import AffinitySnapshot
from sga.graph.store import AffinityGraphStore


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Export the affinity graph to JSON")
    parser.add_argument("--output", default="data/graph/affinity.json",
                        help="Output path (default: data/graph/affinity.json)")
    parser.add_argument("--user", type=int, action="append", default=None,
                        help="Only export these listeners (repeatable)")
    parser.add_argument("--config", default="configs/config.yaml", help="Config file (default: configs/config.yaml)")
    args = parser.parse_args()

    cfg = load_config(args.config)
    configure_logging(cfg)

    with AffinityGraphStore.from_config(cfg) as graph:
        snapshot = AffinitySnapshot(graph)
        stats = snapshot.build(user_ids=args.user)

    logger.info("=" * 60)
    for key, value in stats.items():
        logger.info(f"{key:22s}: {value}")
    logger.info("=" * 60)

    snapshot.export_to_json(args.output)


if __name__ == "__main__":
    main()
