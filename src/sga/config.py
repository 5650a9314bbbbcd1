"""
Configuration loading for SoundGraph Affinity.

Non-secret settings live in configs/config.yaml; hosts and credentials are
read from environment variables (optionally loaded from a .env file).
"""

from __future__ import annotations
import copy
import sys
from pathlib import Path
from typing import Dict, Any, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger


DEFAULT_CONFIG: Dict[str, Any] = {
    "db": {
        "driver": "postgresql+psycopg2",
        "host_env": "PGHOST",
        "port_env": "PGPORT",
        "user_env": "PGUSER",
        "pwd_env": "PGPASSWORD",
        "db_env": "PGDATABASE",
        "url_env": "SGA_DB_URL",
    },
    "graph": {
        "path": "data/graph/affinity.db",
        "query_timeout": 2.0,
        "busy_timeout": 5.0,
    },
    "recommend": {
        "saturation_cutoff": 3,
        "trending_window_days": 7,
        "candidate_cap": 500,
        "default_limit": 20,
        "max_limit": 100,
    },
    "ingest": {
        "queue_size": 1000,
        "workers": 2,
    },
    "reconcile": {
        "drift_sample_size": 10,
    },
    "logging": {
        "level": "INFO",
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path: str | Path = "configs/config.yaml",
                overrides: Optional[Dict[str, Any]] = None,
                env_file: Optional[str] = ".env") -> Dict[str, Any]:
    """
    Load the YAML config and merge it over the built-in defaults.

    Args:
        path: YAML file to read (a missing file means "defaults only")
        overrides: Extra settings merged last (used by tests and scripts)
        env_file: .env file to load into the environment, None to skip

    Returns:
        Nested config dict
    """
    if env_file:
        load_dotenv(env_file)

    cfg = copy.deepcopy(DEFAULT_CONFIG)
    path = Path(path)
    if path.exists():
        with open(path) as f:
            _merge(cfg, yaml.safe_load(f) or {})
    else:
        logger.debug(f"No config file at {path}, using defaults")

    if overrides:
        _merge(cfg, overrides)
    return cfg


def configure_logging(cfg: Dict[str, Any]) -> None:
    """Replace loguru's default sink with one at the configured level."""
    level = cfg.get("logging", {}).get("level", "INFO")
    logger.remove()
    logger.add(sys.stderr, level=level)
