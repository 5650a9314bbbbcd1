#!/usr/bin/env python
"""
Rebuild the affinity graph from the play-history log.

Background graph updates are best effort; run this periodically (or after
an incident) to repair drift between the log and the graph.

Usage:
    python scripts/reconcile_graph.py              # rebuild only if drifted
    python scripts/reconcile_graph.py --check      # report drift, change nothing
    python scripts/reconcile_graph.py --force      # always rebuild
"""

from __future__ import annotations
import argparse
import sys

from loguru import logger

from sga.config import load_config, configure_logging
from sga.db.engine import engine_from_env
from sga.errors import AffinityError
from sga.graph.store import AffinityGraphStore
from sga.processors.reconcile import GraphReconciler


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Reconcile the affinity graph with the play log")
    parser.add_argument("--check", action="store_true", help="Only measure drift")
    parser.add_argument("--force", action="store_true", help="Rebuild even without drift")
    parser.add_argument("--config", default="configs/config.yaml", help="Config file (default: configs/config.yaml)")
    args = parser.parse_args()

    cfg = load_config(args.config)
    configure_logging(cfg)

    with AffinityGraphStore.from_config(cfg) as graph:
        reconciler = GraphReconciler(engine_from_env(cfg), graph, cfg.get("reconcile", {}))
        try:
            if args.check:
                report = reconciler.measure_drift()
                for user_id, track_id, log_count, graph_count in report["sample"]:
                    logger.info(f"  user={user_id} track={track_id}: log={log_count} graph={graph_count}")
                sys.exit(0 if report["in_sync"] else 2)
            reconciler.process_all(force=args.force)
        except AffinityError as e:
            logger.error(f"Reconciliation failed: {e}")
            sys.exit(1)


if __name__ == "__main__":
    main()
