"""
Tests for the undo/redo history.

Copyright (c) 2025 TaskMap
"""

import asyncio

import pytest

from taskmap.core.history import ActionType, History, HistoryAction


def counter_action(state, key="value", description="Increment"):
    async def execute():
        state[key] += 1

    async def reverse():
        state[key] -= 1

    return HistoryAction(type=ActionType.UPDATE_TASK, description=description, execute=execute, reverse=reverse)


class TestHistory:
    """Test undo/redo stacks."""

    @pytest.mark.asyncio
    async def test_undo_redo(self):
        history = History()
        state = {"value": 1}
        history.record(counter_action(state))

        assert history.can_undo
        assert await history.undo() is True
        assert state["value"] == 0
        assert history.can_redo
        assert history.last_action == "Undo: Increment"

        assert await history.redo() is True
        assert state["value"] == 1
        assert history.last_action == "Redo: Increment"

    @pytest.mark.asyncio
    async def test_nothing_to_undo(self):
        history = History()
        assert await history.undo() is False
        assert await history.redo() is False

    def test_record_clears_future(self):
        history = History()
        state = {"value": 0}
        history.record(counter_action(state))
        history._future.append(counter_action(state))

        history.record(counter_action(state))

        assert not history.can_redo

    def test_bounded_size(self):
        history = History(max_size=3)
        state = {"value": 0}
        for i in range(5):
            history.record(counter_action(state, description=f"action {i}"))

        assert len(history._past) == 3
        assert history._past[0].description == "action 2"

    def test_zero_size_disables_recording(self):
        history = History(max_size=0)
        history.record(counter_action({"value": 0}))
        assert not history.can_undo

    @pytest.mark.asyncio
    async def test_second_undo_rejected_while_processing(self):
        history = History()
        gate = asyncio.Event()
        state = {"value": 2}

        async def slow_reverse():
            await gate.wait()
            state["value"] -= 1

        async def noop():
            pass

        history.record(counter_action(state))
        history.record(HistoryAction(
            type=ActionType.DELETE_TASK, description="Slow", execute=noop, reverse=slow_reverse
        ))

        first = asyncio.create_task(history.undo())
        await asyncio.sleep(0)
        assert history.is_processing
        assert await history.undo() is False

        gate.set()
        assert await first is True
        assert state["value"] == 1
        assert len(history._past) == 1

    @pytest.mark.asyncio
    async def test_edits_during_undo_are_recorded(self):
        history = History()
        gate = asyncio.Event()
        state = {"value": 1, "other": 0}

        async def slow_reverse():
            await gate.wait()
            state["value"] -= 1

        async def noop():
            pass

        history.record(HistoryAction(
            type=ActionType.CREATE_TASK, description="outer", execute=noop, reverse=slow_reverse
        ))
        pending = asyncio.create_task(history.undo())
        await asyncio.sleep(0)
        history.record(counter_action(state, key="other", description="meanwhile"))
        gate.set()

        assert await pending is True
        assert [a.description for a in history._past] == ["meanwhile"]
        assert not history.can_redo

        assert await history.undo() is True
        assert state["other"] == -1

    @pytest.mark.asyncio
    async def test_edits_during_redo_stay_on_top(self):
        history = History()
        gate = asyncio.Event()
        state = {"value": 0}

        async def slow_execute():
            await gate.wait()

        async def noop():
            pass

        history.record(HistoryAction(
            type=ActionType.MOVE_TASK, description="move", execute=slow_execute, reverse=noop
        ))
        await history.undo()
        pending = asyncio.create_task(history.redo())
        await asyncio.sleep(0)
        history.record(counter_action(state, description="meanwhile"))
        gate.set()

        assert await pending is True
        assert [a.description for a in history._past] == ["move", "meanwhile"]

    @pytest.mark.asyncio
    async def test_failed_reversal_keeps_stacks(self):
        history = History()

        async def broken():
            raise RuntimeError("store down")

        history.record(HistoryAction(
            type=ActionType.MOVE_TASK, description="Move", execute=broken, reverse=broken
        ))

        assert await history.undo() is False
        assert history.can_undo
        assert not history.can_redo
        assert not history.is_processing

    def test_clear(self):
        history = History()
        history.record(counter_action({"value": 0}))
        history.clear()
        assert not history.can_undo
        assert history.last_action is None
