#!/usr/bin/env python
"""
Create the catalog / play-history tables and the affinity graph store.

Usage:
    python scripts/create_schema.py
    SGA_DB_URL=sqlite:///data/catalog.db python scripts/create_schema.py
"""

from __future__ import annotations
import argparse

from loguru import logger

from sga.config import load_config, configure_logging
from sga.db.engine import engine_from_env, init_schema
from sga.graph.store import AffinityGraphStore


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Create catalog, play-history and graph schemas")
    parser.add_argument("--config", default="configs/config.yaml", help="Config file (default: configs/config.yaml)")
    args = parser.parse_args()

    cfg = load_config(args.config)
    configure_logging(cfg)

    init_schema(engine_from_env(cfg))
    with AffinityGraphStore.from_config(cfg) as graph:
        logger.success(f"Graph store ready at {graph.path}: {graph.get_stats()}")


if __name__ == "__main__":
    main()
