"""
Shared fixtures for TaskMap tests.

Copyright (c) 2025 TaskMap
"""

import pytest

from taskmap.config import TaskMapConfig
from taskmap.core.event_bus import EventBus, reset_event_bus
from taskmap.store.memory_backend import MemoryRemoteStore, reset_memory_store


@pytest.fixture(autouse=True)
def reset_singletons():
    """Give every test a fresh config, event bus and memory store."""
    TaskMapConfig.reset()
    reset_event_bus()
    reset_memory_store()
    yield
    TaskMapConfig.reset()
    reset_event_bus()
    reset_memory_store()


@pytest.fixture
def store():
    return MemoryRemoteStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorded(bus):
    """Collect every event published on the bus, keyed by type."""
    from taskmap.core.event_bus import EventType

    events = {event_type: [] for event_type in EventType}

    def make_handler(event_type):
        def handler(event):
            events[event_type].append(event)
        return handler

    for event_type in EventType:
        bus.subscribe(event_type, make_handler(event_type))
    return events
