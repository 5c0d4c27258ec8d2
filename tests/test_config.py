"""Tests for configuration loading and logging setup."""

import json
import sys

from loguru import logger

from recallgraph.config.loader import load_config, save_config
from recallgraph.config.schema import Config
from recallgraph.utils.logging import configure_logging


class TestConfig:
    """Tests for Config and the loader."""

    def test_defaults(self):
        """Test default values when nothing is configured."""
        config = Config()

        assert config.graph.default_confidence == 0.7
        assert config.graph.max_path_depth == 3
        assert config.collaborators.timeout_seconds == 5.0
        assert config.retrieval.default_min_relevance == 0.3
        assert config.embedding.dimension == 384

    def test_db_path_resolution(self, tmp_path):
        """Test default, in-memory and absolute database paths."""
        assert Config(workspace=str(tmp_path)).db_path == tmp_path / "memory" / "recallgraph.db"
        assert Config(store={"db_path": ":memory:"}).db_path == ":memory:"
        absolute = tmp_path / "elsewhere.db"
        assert Config(store={"db_path": str(absolute)}).db_path == absolute

    def test_camel_case_keys_accepted(self):
        """Test camelCase keys load the same as snake_case ones."""
        config = Config.model_validate({"graph": {"maxPathDepth": 5}, "retrieval": {"historyTtlSeconds": 10}})
        assert config.graph.max_path_depth == 5
        assert config.retrieval.history_ttl_seconds == 10

    def test_environment_overrides(self, monkeypatch):
        """Environment variables override file values."""
        monkeypatch.setenv("RECALLGRAPH_GRAPH__MAX_PATH_DEPTH", "7")
        assert Config().graph.max_path_depth == 7

    def test_save_and_load(self, tmp_path):
        """Test a saved config loads back unchanged."""
        path = tmp_path / "config.json"
        config = Config(workspace=str(tmp_path))
        config.graph.max_path_depth = 4
        save_config(config, path)

        saved = json.loads(path.read_text())
        assert saved["graph"]["maxPathDepth"] == 4
        assert load_config(path).graph.max_path_depth == 4

    def test_missing_or_broken_file_gives_defaults(self, tmp_path):
        """A missing or unreadable file falls back to defaults."""
        assert load_config(tmp_path / "missing.json").graph.max_path_depth == 3

        broken = tmp_path / "broken.json"
        broken.write_text("{not json")
        assert load_config(broken).graph.max_path_depth == 3


class TestLogging:
    """Tests for configure_logging."""

    def test_file_sink(self, tmp_path):
        """Test logging to a file sink."""
        log_file = tmp_path / "logs" / "recallgraph.log"
        configure_logging(level="INFO", log_file=log_file)
        try:
            logger.info("hello from the test")
            logger.complete()
            content = log_file.read_text()
        finally:
            logger.remove()
            logger.add(sys.stderr)

        assert "hello from the test" in content
