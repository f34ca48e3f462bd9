"""
Configuration validation for TaskMap.

Validates configuration at startup and provides helpful error messages.
"""

import logging
import sys
from typing import List, Tuple
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

VALID_BACKENDS = ("memory", "http")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class ValidationResult:
    """Result of configuration validation."""
    valid: bool
    errors: List[str]
    warnings: List[str]
    info: List[str]


class ConfigValidator:
    """Validates TaskMap configuration at startup."""

    def __init__(self, config):
        """Initialize validator with config object."""
        self.config = config

    def validate_all(self) -> ValidationResult:
        """
        Validate all configuration sections.

        Returns:
            ValidationResult with errors, warnings, and info messages
        """
        errors = []
        warnings = []
        info = []

        store_errors, store_info = self._validate_store()
        errors.extend(store_errors)
        info.extend(store_info)

        errors.extend(self._validate_sync())

        focus_errors, focus_warnings = self._validate_focus()
        errors.extend(focus_errors)
        warnings.extend(focus_warnings)

        warnings.extend(self._validate_history())
        warnings.extend(self._validate_logging())

        result = ValidationResult(
            valid=len(errors) == 0,
            errors=errors,
            warnings=warnings,
            info=info
        )
        for error in errors:
            logger.error(f"Config error: {error}")
        for warning in warnings:
            logger.warning(f"Config warning: {warning}")
        return result

    def _validate_store(self) -> Tuple[List[str], List[str]]:
        """Validate remote store settings."""
        errors = []
        info = []

        store = self.config.store
        if store.backend not in VALID_BACKENDS:
            errors.append(
                f"Unknown store backend '{store.backend}'. Expected one of: {', '.join(VALID_BACKENDS)}"
            )
        elif store.use_http:
            parsed = urlparse(store.url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append(f"Invalid store URL: {store.url}")
            else:
                info.append(f"Remote store: {store.url}")
        else:
            info.append("Remote store: in-memory")

        if store.timeout <= 0:
            errors.append(f"Store timeout must be positive, got {store.timeout}")

        return errors, info

    def _validate_sync(self) -> List[str]:
        """Validate placeholder titles."""
        errors = []
        if not self.config.sync.default_task_title.strip():
            errors.append("Default task title must not be blank")
        if not self.config.sync.default_group_title.strip():
            errors.append("Default group title must not be blank")
        return errors

    def _validate_focus(self) -> Tuple[List[str], List[str]]:
        """Validate focus retry bounds."""
        errors = []
        warnings = []

        focus = self.config.focus
        if focus.max_attempts < 1:
            errors.append(f"Focus max attempts must be at least 1, got {focus.max_attempts}")
        if focus.retry_delay < 0:
            errors.append(f"Focus retry delay must not be negative, got {focus.retry_delay}")

        total = focus.retry_delay * max(focus.max_attempts - 1, 0)
        if total > 2.0:
            warnings.append(
                f"Focus re-acquisition may wait up to {total:.2f}s. "
                "Long waits make stale focus more likely."
            )

        return errors, warnings

    def _validate_history(self) -> List[str]:
        """Validate history bounds."""
        warnings = []
        if self.config.history.enabled and self.config.history.max_size < 1:
            warnings.append("History is enabled but max size is below 1; undo will be unavailable.")
        return warnings

    def _validate_logging(self) -> List[str]:
        """Validate logging settings."""
        warnings = []
        if self.config.logging.log_level.upper() not in VALID_LOG_LEVELS:
            warnings.append(
                f"Unknown log level '{self.config.logging.log_level}', falling back to INFO"
            )
        return warnings


def validate_config(config) -> ValidationResult:
    """Validate a configuration object."""
    return ConfigValidator(config).validate_all()


def validate_startup(config=None, exit_on_error: bool = False) -> bool:
    """
    Validate configuration before a session or the persistence service starts.

    Every error, warning and info line is logged.

    Args:
        config: Configuration to check (default: the global configuration)
        exit_on_error: Exit the process when the configuration is invalid

    Returns:
        True if the configuration is valid
    """
    if config is None:
        from . import get_config
        config = get_config()
    result = validate_config(config)

    for error in result.errors:
        logger.error(f"Configuration error: {error}")
    for warning in result.warnings:
        logger.warning(f"Configuration warning: {warning}")
    for info in result.info:
        logger.info(info)

    if not result.valid and exit_on_error:
        logger.error("Exiting due to configuration errors")
        sys.exit(1)
    return result.valid
