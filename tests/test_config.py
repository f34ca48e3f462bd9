"""
Tests for the TaskMap configuration module.

Copyright (c) 2025 TaskMap
"""

import logging
import os
import pytest
from unittest.mock import patch


class TestTaskMapConfig:
    """Test the unified configuration module."""

    def setup_method(self):
        """Reset singleton before each test."""
        from taskmap.config import TaskMapConfig
        TaskMapConfig.reset()

    def test_config_singleton(self):
        """Test that config is a singleton."""
        from taskmap.config import get_config

        config1 = get_config()
        config2 = get_config()

        assert config1 is config2

    def test_config_default_values(self):
        """Test default configuration values."""
        from taskmap.config import get_config

        config = get_config()

        assert config.sync.default_task_title == "New Task"
        assert config.sync.default_group_title == "New Group"
        assert config.sync.rollback_on_create_failure is True

        assert config.focus.retry_delay == 0.05
        assert config.focus.max_attempts == 10

        assert config.history.enabled is True
        assert config.history.max_size == 50

        assert config.store.backend == "memory"
        assert config.store.use_http is False

        assert config.layout.rank_sep == 200
        assert config.layout.node_sep == 50
        assert config.layout.task_size == [150, 40]

    @patch.dict(os.environ, {
        "TASKMAP_STORE_BACKEND": "HTTP",
        "TASKMAP_STORE_URL": "http://store:9000",
        "TASKMAP_FOCUS_MAX_ATTEMPTS": "3",
        "TASKMAP_HISTORY_ENABLED": "false",
    })
    def test_config_loads_from_env(self):
        """Test configuration loads from environment variables."""
        from taskmap.config import get_config

        config = get_config()

        assert config.store.backend == "http"
        assert config.store.use_http is True
        assert config.store.url == "http://store:9000"
        assert config.focus.max_attempts == 3
        assert config.history.enabled is False

    @patch.dict(os.environ, {"TASKMAP_FOCUS_RETRY_DELAY": "not-a-number"})
    def test_invalid_number_falls_back_to_default(self):
        """Test malformed numeric values use defaults."""
        from taskmap.config import get_config

        assert get_config().focus.retry_delay == 0.05

    def test_config_reload(self):
        """Test configuration reload picks up new environment."""
        from taskmap.config import get_config

        config = get_config()
        assert config.history.max_size == 50

        with patch.dict(os.environ, {"TASKMAP_HISTORY_MAX_SIZE": "5"}):
            config.reload()
            assert config.history.max_size == 5

    def test_configure_logging(self):
        """Test logging configuration runs with defaults."""
        from taskmap.config import configure_logging, get_config
        import structlog

        configure_logging(get_config())
        logger = structlog.get_logger("taskmap.test")
        logger.info("configured", component="test")


class TestConfigValidator:
    """Test configuration validation."""

    def setup_method(self):
        from taskmap.config import TaskMapConfig
        TaskMapConfig.reset()

    def test_default_config_is_valid(self):
        from taskmap.config import get_config
        from taskmap.config.validator import validate_config

        result = validate_config(get_config())

        assert result.valid is True
        assert result.errors == []
        assert "Remote store: in-memory" in result.info

    @patch.dict(os.environ, {"TASKMAP_STORE_BACKEND": "sqlite"})
    def test_unknown_backend(self):
        from taskmap.config import get_config
        from taskmap.config.validator import validate_config

        result = validate_config(get_config())

        assert result.valid is False
        assert any("sqlite" in e for e in result.errors)

    @patch.dict(os.environ, {"TASKMAP_STORE_BACKEND": "http", "TASKMAP_STORE_URL": "localhost"})
    def test_invalid_store_url(self):
        from taskmap.config import get_config
        from taskmap.config.validator import validate_config

        result = validate_config(get_config())

        assert result.valid is False
        assert any("Invalid store URL" in e for e in result.errors)

    @patch.dict(os.environ, {"TASKMAP_FOCUS_MAX_ATTEMPTS": "0"})
    def test_focus_attempts_must_be_positive(self):
        from taskmap.config import get_config
        from taskmap.config.validator import validate_config

        result = validate_config(get_config())

        assert result.valid is False

    @patch.dict(os.environ, {"TASKMAP_FOCUS_RETRY_DELAY": "1.0", "TASKMAP_FOCUS_MAX_ATTEMPTS": "5"})
    def test_long_focus_wait_warns(self):
        from taskmap.config import get_config
        from taskmap.config.validator import validate_config

        result = validate_config(get_config())

        assert result.valid is True
        assert any("Focus re-acquisition" in w for w in result.warnings)

    @patch.dict(os.environ, {"LOG_LEVEL": "CHATTY"})
    def test_unknown_log_level_warns(self):
        from taskmap.config import get_config
        from taskmap.config.validator import validate_config

        result = validate_config(get_config())

        assert any("CHATTY" in w for w in result.warnings)

    @patch.dict(os.environ, {"TASKMAP_STORE_BACKEND": "sqlite"})
    def test_startup_validation_logs_errors(self, caplog):
        from taskmap.config import get_config
        from taskmap.config.validator import validate_startup

        with caplog.at_level(logging.INFO, logger="taskmap.config.validator"):
            assert validate_startup(get_config()) is False

        errors = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
        assert any("sqlite" in message for message in errors)

    @patch.dict(os.environ, {"TASKMAP_STORE_BACKEND": "sqlite"})
    def test_startup_validation_can_exit(self):
        from taskmap.config.validator import validate_startup

        with pytest.raises(SystemExit):
            validate_startup(exit_on_error=True)

    def test_startup_validation_uses_global_config(self):
        from taskmap.config.validator import validate_startup

        assert validate_startup() is True
