"""
Unit tests for store configuration loading.

Tests for:
- Defaults
- YAML file parsing
- Environment variable overrides
- Validation errors
"""

import logging
from pathlib import Path

import pytest

from vector.core.config import StoreConfig
from vector.core.exceptions import ConfigError


def write_config(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


class TestDefaults:
    """Tests for built-in defaults."""

    def test_defaults(self, tmp_path):
        """Test defaults when no file or env vars exist."""
        config = StoreConfig.load(env={"RAG_STORE_CONFIG_DIR": str(tmp_path)}, load_env_file=False)

        assert config.base_dir == Path.home() / ".rag-chat" / "db"
        assert config.config_dir == tmp_path
        assert config.busy_timeout_seconds == 5.0
        assert config.ann_enabled is True
        assert config.ann_threshold == 256
        assert config.backfill_delay_seconds == 0.5
        assert config.log_level is None
        assert config.hnsw.m == 16
        assert config.hnsw.ef_construction == 200
        assert config.hnsw.ef_search == 100
        assert config.hnsw.max_level == 16

    def test_paths_expanded(self):
        """Test ~ in paths is expanded."""
        config = StoreConfig(base_dir="~/chats")

        assert config.base_dir == Path.home() / "chats"


class TestYamlFile:
    """Tests for reading config.yaml."""

    def test_reads_sections(self, tmp_path):
        """Test every section maps onto StoreConfig."""
        path = write_config(tmp_path / "config.yaml", f"""
storage:
  base_dir: {tmp_path / 'db'}
  busy_timeout_seconds: 2.5
ann:
  enabled: false
  threshold: 64
  m: 8
  ef_search: 32
backfill:
  delay_seconds: 0.1
logging:
  level: debug
""")

        config = StoreConfig.load(path, env={}, load_env_file=False)

        assert config.base_dir == tmp_path / "db"
        assert config.busy_timeout_seconds == 2.5
        assert config.ann_enabled is False
        assert config.ann_threshold == 64
        assert config.hnsw.m == 8
        assert config.hnsw.ef_search == 32
        assert config.hnsw.ef_construction == 200
        assert config.backfill_delay_seconds == 0.1
        assert config.log_level == logging.DEBUG

    def test_default_location(self, tmp_path):
        """Test <config_dir>/config.yaml is read when no path is given."""
        write_config(tmp_path / "config.yaml", "ann:\n  threshold: 10\n")

        config = StoreConfig.load(env={"RAG_STORE_CONFIG_DIR": str(tmp_path)}, load_env_file=False)

        assert config.ann_threshold == 10
        assert config.config_path == tmp_path / "config.yaml"

    def test_empty_file(self, tmp_path):
        """Test an empty file yields defaults."""
        path = write_config(tmp_path / "config.yaml", "")

        assert StoreConfig.load(path, env={}, load_env_file=False).ann_threshold == 256

    def test_explicit_missing_file(self, tmp_path):
        """Test an explicit path must exist."""
        with pytest.raises(ConfigError, match="not found"):
            StoreConfig.load(tmp_path / "missing.yaml", env={}, load_env_file=False)

    def test_invalid_yaml(self, tmp_path):
        """Test unparsable YAML raises ConfigError."""
        path = write_config(tmp_path / "config.yaml", "storage: [unclosed")

        with pytest.raises(ConfigError):
            StoreConfig.load(path, env={}, load_env_file=False)

    def test_not_a_mapping(self, tmp_path):
        """Test a top-level list is rejected."""
        path = write_config(tmp_path / "config.yaml", "- a\n- b\n")

        with pytest.raises(ConfigError, match="mapping"):
            StoreConfig.load(path, env={}, load_env_file=False)

    def test_bad_value_type(self, tmp_path):
        """Test a non-numeric threshold raises ConfigError."""
        path = write_config(tmp_path / "config.yaml", "ann:\n  threshold: lots\n")

        with pytest.raises(ConfigError):
            StoreConfig.load(path, env={}, load_env_file=False)


class TestEnvOverrides:
    """Tests for environment variable overrides."""

    def test_env_wins_over_file(self, tmp_path):
        """Test env vars override YAML values."""
        path = write_config(tmp_path / "config.yaml", "ann:\n  threshold: 10\n  enabled: true\n")
        env = {
            "RAG_STORE_BASE_DIR": str(tmp_path / "env-db"),
            "RAG_STORE_ANN_THRESHOLD": "99",
            "RAG_STORE_ANN_ENABLED": "off",
            "RAG_STORE_BUSY_TIMEOUT": "0.75",
            "RAG_LOGS": "info",
        }

        config = StoreConfig.load(path, env=env, load_env_file=False)

        assert config.base_dir == tmp_path / "env-db"
        assert config.ann_threshold == 99
        assert config.ann_enabled is False
        assert config.busy_timeout_seconds == 0.75
        assert config.log_level == logging.INFO

    @pytest.mark.parametrize("value,expected", [
        ("debug", logging.DEBUG),
        ("INFO", logging.INFO),
        ("error", logging.ERROR),
        ("verbose", None),
        ("", None),
    ])
    def test_rag_logs(self, tmp_path, value, expected):
        """Test RAG_LOGS values; anything unknown disables logging."""
        env = {"RAG_STORE_CONFIG_DIR": str(tmp_path), "RAG_LOGS": value}

        assert StoreConfig.load(env=env, load_env_file=False).log_level == expected

    def test_bad_boolean(self, tmp_path):
        """Test an unparsable boolean raises ConfigError."""
        env = {"RAG_STORE_CONFIG_DIR": str(tmp_path), "RAG_STORE_ANN_ENABLED": "maybe"}

        with pytest.raises(ConfigError, match="RAG_STORE_ANN_ENABLED"):
            StoreConfig.load(env=env, load_env_file=False)

    def test_bad_number(self, tmp_path):
        """Test an unparsable number raises ConfigError."""
        env = {"RAG_STORE_CONFIG_DIR": str(tmp_path), "RAG_STORE_BUSY_TIMEOUT": "soon"}

        with pytest.raises(ConfigError, match="RAG_STORE_BUSY_TIMEOUT"):
            StoreConfig.load(env=env, load_env_file=False)

    def test_dotenv_file_loaded(self, tmp_path, monkeypatch):
        """Test a .env file in the working directory is applied."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("RAG_STORE_CONFIG_DIR", str(tmp_path))
        monkeypatch.delenv("RAG_STORE_ANN_THRESHOLD", raising=False)
        (tmp_path / ".env").write_text("RAG_STORE_ANN_THRESHOLD=7\n")

        try:
            config = StoreConfig.load()
        finally:
            monkeypatch.delenv("RAG_STORE_ANN_THRESHOLD", raising=False)

        assert config.ann_threshold == 7


class TestValidation:
    """Tests for StoreConfig.validate."""

    @pytest.mark.parametrize("kwargs", [
        {"busy_timeout_seconds": -1},
        {"ann_threshold": -5},
        {"backfill_delay_seconds": -0.1},
    ])
    def test_out_of_range(self, kwargs):
        """Test negative values are rejected."""
        with pytest.raises(ConfigError):
            StoreConfig(**kwargs)

    def test_bad_hnsw(self, tmp_path):
        """Test invalid index parameters are rejected."""
        path = write_config(tmp_path / "config.yaml", "ann:\n  m: 0\n")

        with pytest.raises(ConfigError, match="hnsw.m"):
            StoreConfig.load(path, env={}, load_env_file=False)
