"""
Tests for the event bus.
"""

import pytest

from taskmap.core.event_bus import Event, EventBus, EventType, get_event_bus, reset_event_bus


class TestEventBus:
    """Test subscription and delivery."""

    @pytest.mark.asyncio
    async def test_publish_to_sync_and_async_handlers(self):
        bus = EventBus()
        seen = []

        def sync_handler(event):
            seen.append(("sync", event.payload["n"]))

        async def async_handler(event):
            seen.append(("async", event.payload["n"]))

        bus.subscribe(EventType.NOTICE, sync_handler)
        bus.subscribe(EventType.NOTICE, async_handler)
        await bus.publish(Event(type=EventType.NOTICE, payload={"n": 1}, source="test"))

        assert sorted(seen) == [("async", 1), ("sync", 1)]

    @pytest.mark.asyncio
    async def test_handler_errors_are_counted_not_raised(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(EventType.TREE_CHANGED, broken)
        bus.subscribe(EventType.TREE_CHANGED, lambda event: seen.append(event))
        await bus.publish(Event(type=EventType.TREE_CHANGED, payload={}, source="test"))

        assert len(seen) == 1
        stats = bus.get_stats()
        assert stats["error_counts"]["tree.changed"] == 1
        assert stats["event_counts"]["tree.changed"] == 1

    @pytest.mark.asyncio
    async def test_emit_schedules_delivery(self):
        bus = EventBus()
        seen = []
        bus.subscribe(EventType.NOTICE, lambda event: seen.append(event.payload["message"]))

        task = bus.emit(Event(type=EventType.NOTICE, payload={"message": "hi"}, source="test"))
        assert task is not None
        assert seen == []

        await bus.drain()
        assert seen == ["hi"]

    def test_emit_without_loop_is_dropped(self):
        bus = EventBus()
        result = bus.emit(Event(type=EventType.NOTICE, payload={}, source="test"))
        assert result is None

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []

        def handler(event):
            seen.append(event)

        bus.subscribe(EventType.NOTICE, handler)
        bus.unsubscribe(EventType.NOTICE, handler)
        await bus.publish(Event(type=EventType.NOTICE, payload={}, source="test"))

        assert seen == []

    def test_singleton(self):
        reset_event_bus()
        assert get_event_bus() is get_event_bus()
