"""
TaskMap Interaction - keyboard selection/editing and drag-reparent.

Copyright (c) 2025 TaskMap
"""

from .drag import DragReparentController, Rect
from .keys import KeyEvent
from .selection import FocusPort, FocusScheduler, Mode, SelectionController

__all__ = [
    "DragReparentController",
    "FocusPort",
    "FocusScheduler",
    "KeyEvent",
    "Mode",
    "Rect",
    "SelectionController",
]
