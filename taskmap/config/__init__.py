"""
TaskMap Unified Configuration Module.

Provides centralized configuration management with typed access to all settings.
Loads configuration from environment variables with sensible defaults.

Copyright (c) 2025 TaskMap
"""

import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

logger = logging.getLogger(__name__)


def _get_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get integer value from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get float value from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@dataclass
class SyncConfig:
    """Optimistic sync settings."""
    default_task_title: str = "New Task"
    default_group_title: str = "New Group"
    rollback_on_create_failure: bool = True


@dataclass
class FocusConfig:
    """Input focus re-acquisition after structural changes."""
    retry_delay: float = 0.05
    max_attempts: int = 10


@dataclass
class HistoryConfig:
    """Undo/redo history settings."""
    enabled: bool = True
    max_size: int = 50


@dataclass
class StoreConfig:
    """Remote store settings."""
    backend: str = "memory"
    url: str = "http://localhost:8020"
    timeout: float = 10.0

    @property
    def use_http(self) -> bool:
        return self.backend == "http"


@dataclass
class LayoutConfig:
    """Tree layout settings (left-to-right)."""
    rank_sep: int = 200
    node_sep: int = 50
    task_size: List[int] = field(default_factory=lambda: [150, 40])
    group_size: List[int] = field(default_factory=lambda: [160, 50])
    project_size: List[int] = field(default_factory=lambda: [200, 60])


@dataclass
class LoggingConfig:
    """Logging configuration."""
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
    json_events: bool = False


class TaskMapConfig:
    """
    Centralized configuration for TaskMap.

    Loads all settings from environment variables with sensible defaults.
    Provides typed access to configuration values.
    """

    _instance: Optional['TaskMapConfig'] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._initialized = True
        self._load_config()

    def _load_config(self):
        """Load configuration from environment variables."""
        self.sync = SyncConfig(
            default_task_title=os.getenv("TASKMAP_DEFAULT_TASK_TITLE", "New Task"),
            default_group_title=os.getenv("TASKMAP_DEFAULT_GROUP_TITLE", "New Group"),
            rollback_on_create_failure=_get_bool("TASKMAP_ROLLBACK_ON_CREATE_FAILURE", True),
        )

        self.focus = FocusConfig(
            retry_delay=_get_float("TASKMAP_FOCUS_RETRY_DELAY", 0.05),
            max_attempts=_get_int("TASKMAP_FOCUS_MAX_ATTEMPTS", 10),
        )

        self.history = HistoryConfig(
            enabled=_get_bool("TASKMAP_HISTORY_ENABLED", True),
            max_size=_get_int("TASKMAP_HISTORY_MAX_SIZE", 50),
        )

        self.store = StoreConfig(
            backend=os.getenv("TASKMAP_STORE_BACKEND", "memory").lower(),
            url=os.getenv("TASKMAP_STORE_URL", "http://localhost:8020"),
            timeout=_get_float("TASKMAP_STORE_TIMEOUT", 10.0),
        )

        self.layout = LayoutConfig(
            rank_sep=_get_int("TASKMAP_LAYOUT_RANK_SEP", 200),
            node_sep=_get_int("TASKMAP_LAYOUT_NODE_SEP", 50),
        )

        self.logging = LoggingConfig(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "%(asctime)s - %(levelname)s - %(name)s - %(message)s"),
            json_events=_get_bool("TASKMAP_JSON_EVENTS", False),
        )

        logger.info(f"Configuration loaded: store={self.store.backend}, history={self.history.enabled}")

    def reload(self):
        """Reload configuration from environment variables."""
        self._initialized = False
        self.__init__()

    @classmethod
    def reset(cls):
        """Reset singleton instance (for testing)."""
        cls._instance = None


def get_config() -> TaskMapConfig:
    """Get the singleton configuration instance."""
    return TaskMapConfig()


def configure_logging(config: Optional[TaskMapConfig] = None) -> None:
    """
    Configure stdlib logging and structlog from the logging settings.

    structlog is routed through the stdlib logger factory so event bus
    records share handlers and level with the rest of the package.
    """
    config = config or get_config()
    level = getattr(logging, config.logging.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=config.logging.log_format)

    renderer = (
        structlog.processors.JSONRenderer()
        if config.logging.json_events
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
