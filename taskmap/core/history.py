"""
TaskMap Undo/Redo History.

Command-pattern history for tree edits:
- Each recorded action knows how to re-apply (execute) and revert (reverse) itself
- Bounded past/future stacks
- A single processing flag serializes undo/redo so a second undo cannot start
  while the previous reversal is still persisting; edits made meanwhile are
  still recorded

Copyright (c) 2025 TaskMap
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)


class ActionType(Enum):
    """Kind of recorded edit."""
    CREATE_TASK = "CREATE_TASK"
    DELETE_TASK = "DELETE_TASK"
    UPDATE_TASK = "UPDATE_TASK"
    MOVE_TASK = "MOVE_TASK"
    CREATE_GROUP = "CREATE_GROUP"
    DELETE_GROUP = "DELETE_GROUP"
    UPDATE_GROUP = "UPDATE_GROUP"


@dataclass
class HistoryAction:
    """A reversible edit."""
    type: ActionType
    description: str
    execute: Callable[[], Awaitable[None]]
    reverse: Callable[[], Awaitable[None]]
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def _discard(stack: List[HistoryAction], action: HistoryAction) -> None:
    for i in range(len(stack) - 1, -1, -1):
        if stack[i] is action:
            del stack[i]
            return


class History:
    """
    Undo/redo stacks of HistoryAction.

    Example usage:
        history = History(max_size=50)
        history.record(action)
        await history.undo()
        await history.redo()
    """

    DEFAULT_MAX_SIZE = 50

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE):
        self._past: List[HistoryAction] = []
        self._future: List[HistoryAction] = []
        self._max_size = max_size
        self._processing = False
        self._recorded = 0
        self.last_action: Optional[str] = None

    @property
    def can_undo(self) -> bool:
        return bool(self._past)

    @property
    def can_redo(self) -> bool:
        return bool(self._future)

    @property
    def is_processing(self) -> bool:
        """True while an undo or redo is being applied."""
        return self._processing

    def record(self, action: HistoryAction) -> None:
        """Record a new action and clear the redo stack."""
        if self._max_size < 1:
            return
        self._recorded += 1
        self._past.append(action)
        if len(self._past) > self._max_size:
            self._past = self._past[-self._max_size:]
        self._future.clear()
        self.last_action = action.description

    async def undo(self) -> bool:
        """
        Reverse the most recent action.

        Returns:
            True if an action was reversed, False if there was nothing to undo,
            another undo/redo was in flight, or the reversal failed
        """
        if not self._past or self._processing:
            return False

        self._processing = True
        try:
            action = self._past[-1]
            recorded = self._recorded
            await action.reverse()
            _discard(self._past, action)
            # no redo once a newer edit exists
            if self._recorded == recorded:
                self._future.append(action)
            self.last_action = f"Undo: {action.description}"
            logger.info(f"Undo performed: {action.description}")
            return True
        except Exception as e:
            logger.error(f"Undo failed: {e}")
            return False
        finally:
            self._processing = False

    async def redo(self) -> bool:
        """
        Re-apply the most recently undone action.

        Returns:
            True if an action was re-applied
        """
        if not self._future or self._processing:
            return False

        self._processing = True
        try:
            action = self._future[-1]
            recorded = self._recorded
            await action.execute()
            _discard(self._future, action)
            # keep edits recorded meanwhile above the re-applied action
            newer = min(self._recorded - recorded, len(self._past))
            self._past.insert(len(self._past) - newer, action)
            self.last_action = f"Redo: {action.description}"
            logger.info(f"Redo performed: {action.description}")
            return True
        except Exception as e:
            logger.error(f"Redo failed: {e}")
            return False
        finally:
            self._processing = False

    def clear(self) -> None:
        """Drop all history."""
        self._past.clear()
        self._future.clear()
        self.last_action = None
