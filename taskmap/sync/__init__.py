"""
TaskMap Sync - optimistic mutations with background persistence.

Copyright (c) 2025 TaskMap
"""

from .engine import SyncEngine, normalize_title

__all__ = ["SyncEngine", "normalize_title"]
