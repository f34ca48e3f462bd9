"""
TaskMap Remote Store.

Provides the persistence adapters the sync engine dispatches to:
- In-memory store (development, tests, persistence service backing)
- HTTP adapter for the persistence service

Copyright (c) 2025 TaskMap
"""

from typing import Optional

from ..config import TaskMapConfig, get_config
from .base import EntityNotFoundError, RemoteStore, RemoteStoreError
from .models import Group, Task, TaskStatus


def get_remote_store(config: Optional[TaskMapConfig] = None) -> RemoteStore:
    """Get the remote store selected by configuration."""
    config = config or get_config()
    if config.store.use_http:
        from .http_backend import HttpRemoteStore
        return HttpRemoteStore(config.store.url, timeout=config.store.timeout)
    else:
        from .memory_backend import get_memory_store
        return get_memory_store()


__all__ = [
    "EntityNotFoundError",
    "Group",
    "RemoteStore",
    "RemoteStoreError",
    "Task",
    "TaskStatus",
    "get_remote_store",
]
