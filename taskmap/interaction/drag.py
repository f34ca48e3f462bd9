"""
Drag-Reparent Controller.

Tracks a dragged task node, picks the drop target by spatial containment
and proximity, and turns a drop into a move_task request.

Copyright (c) 2025 TaskMap
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from ..sync.engine import SyncEngine
from ..tree.model import NodeKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Rect:
    """Axis-aligned on-screen bounding box (x, y is the top-left corner)."""
    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)

    def contains(self, point: Tuple[float, float]) -> bool:
        px, py = point
        return self.x <= px <= self.x + self.width and self.y <= py <= self.y + self.height

    def moved_to(self, x: float, y: float) -> "Rect":
        return Rect(x, y, self.width, self.height)


BoundsProvider = Callable[[], Dict[str, Rect]]


class DragReparentController:
    """
    Drag state for reparenting tasks.

    Example usage:
        drag = DragReparentController(engine, lambda: renderer.bounds())
        drag.begin(task_id)
        drag.move(Rect(x, y, w, h))   # every movement tick
        drag.drop()
    """

    def __init__(self, engine: SyncEngine, bounds_provider: BoundsProvider):
        self._engine = engine
        self._bounds = bounds_provider
        self.dragged_id: Optional[str] = None
        self.drop_target: Optional[str] = None
        self._rect: Optional[Rect] = None

    @property
    def active(self) -> bool:
        return self.dragged_id is not None

    def begin(self, node_id: str) -> bool:
        """Start dragging. Only task nodes are draggable."""
        if self._engine.tree.kind_of(node_id) != NodeKind.TASK:
            return False
        self.dragged_id = node_id
        self.drop_target = None
        self._rect = None
        return True

    def move(self, rect: Rect) -> Optional[str]:
        """
        Update the dragged node's position.

        Returns:
            The active drop target, if any
        """
        if not self.active:
            return None
        self._rect = rect
        self.drop_target = self._find_target(rect)
        return self.drop_target

    def _find_target(self, rect: Rect) -> Optional[str]:
        tree = self._engine.tree
        center = rect.center
        best: Optional[Tuple[float, str]] = None
        for node_id, bounds in self._bounds().items():
            if node_id == self.dragged_id:
                continue
            if tree.kind_of(node_id) not in (NodeKind.TASK, NodeKind.GROUP):
                continue
            if not bounds.contains(center):
                continue
            cx, cy = bounds.center
            candidate = (math.hypot(cx - center[0], cy - center[1]), node_id)
            if best is None or candidate < best:
                best = candidate
        return best[1] if best else None

    def drop(self) -> bool:
        """
        Finish the drag.

        Returns:
            True if a reparent was issued
        """
        if not self.active:
            return False
        dragged_id, target_id = self.dragged_id, self.drop_target
        self._reset()
        if target_id is None:
            return False

        tree = self._engine.tree
        kind = tree.kind_of(target_id)
        if kind == NodeKind.TASK:
            if target_id == dragged_id or tree.is_descendant(dragged_id, target_id):
                logger.debug(f"Drop of {dragged_id} onto its own subtree rejected")
                return False
            target = tree.get_task(target_id)
            return self._engine.move_task(dragged_id, target.group_id, target.id)
        if kind == NodeKind.GROUP:
            return self._engine.move_task(dragged_id, target_id, None)
        return False

    def cancel(self) -> None:
        self._reset()

    def is_drop_target(self, node_id: str) -> bool:
        return self.active and self.drop_target == node_id

    def position_override(self) -> Dict[str, Tuple[float, float]]:
        """Mid-drag position of the dragged node, for the layout step."""
        if not self.active or self._rect is None:
            return {}
        return {self.dragged_id: (self._rect.x, self._rect.y)}

    def _reset(self) -> None:
        self.dragged_id = None
        self.drop_target = None
        self._rect = None
