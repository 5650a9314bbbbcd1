"""
Tests for configuration loading and engine construction.
"""

import shutil
import tempfile
from pathlib import Path

import pytest
import yaml

from sga.config import DEFAULT_CONFIG, load_config
from sga.db.engine import engine_from_env
from sga.errors import AffinityError, InvalidReference, QueryTimeout, StoreUnavailable, normalize_genre


class TestLoadConfig:
    """Test config loading."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_file_uses_defaults(self):
        cfg = load_config(Path(self.temp_dir) / "nope.yaml", env_file=None)

        assert cfg == DEFAULT_CONFIG
        assert cfg is not DEFAULT_CONFIG

    def test_yaml_merged_over_defaults(self):
        path = Path(self.temp_dir) / "config.yaml"
        path.write_text(yaml.safe_dump({"recommend": {"max_limit": 50}, "graph": {"path": "x.db"}}))

        cfg = load_config(path, overrides={"ingest": {"workers": 4}}, env_file=None)

        assert cfg["recommend"]["max_limit"] == 50
        assert cfg["recommend"]["saturation_cutoff"] == 3
        assert cfg["graph"]["path"] == "x.db"
        assert cfg["graph"]["query_timeout"] == 2.0
        assert cfg["ingest"]["workers"] == 4
        assert DEFAULT_CONFIG["recommend"]["max_limit"] == 100


class TestEngineFromEnv:
    """Test SQLAlchemy engine construction."""

    def test_url_override(self, monkeypatch):
        monkeypatch.setenv("SGA_DB_URL", "sqlite:///:memory:")

        engine = engine_from_env(DEFAULT_CONFIG)
        assert engine.url.get_backend_name() == "sqlite"

    def test_url_from_parts(self, monkeypatch):
        monkeypatch.delenv("SGA_DB_URL", raising=False)
        monkeypatch.setenv("PGHOST", "db.example")
        monkeypatch.setenv("PGPORT", "5433")
        monkeypatch.setenv("PGUSER", "sga")
        monkeypatch.setenv("PGPASSWORD", "secret")
        monkeypatch.setenv("PGDATABASE", "music")

        engine = engine_from_env(DEFAULT_CONFIG)
        assert engine.url.drivername == "postgresql+psycopg2"
        assert engine.url.host == "db.example"
        assert engine.url.port == 5433
        assert engine.url.database == "music"


class TestErrors:
    """Test the error hierarchy helpers."""

    def test_hierarchy(self):
        assert issubclass(QueryTimeout, StoreUnavailable)
        assert issubclass(StoreUnavailable, AffinityError)
        assert str(InvalidReference("bad id")) == "InvalidReference: bad id"

    def test_normalize_genre(self):
        assert normalize_genre(None) == ""
        assert normalize_genre("  techno ") == "techno"
        with pytest.raises(InvalidReference):
            normalize_genre(42)
