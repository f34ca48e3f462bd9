"""
Keyboard event value type.

Copyright (c) 2025 TaskMap
"""

from dataclasses import dataclass

TAB = "Tab"
ENTER = "Enter"
ESCAPE = "Escape"
DELETE = "Delete"
BACKSPACE = "Backspace"
ARROW_UP = "ArrowUp"
ARROW_DOWN = "ArrowDown"
ARROW_LEFT = "ArrowLeft"
ARROW_RIGHT = "ArrowRight"


@dataclass(frozen=True)
class KeyEvent:
    """A key press as delivered by the rendering layer."""
    key: str
    ctrl: bool = False
    meta: bool = False
    alt: bool = False
    shift: bool = False
    is_composing: bool = False

    @property
    def is_printable(self) -> bool:
        """Single character keys that would type text (shift allowed)."""
        return len(self.key) == 1 and not (self.ctrl or self.meta or self.alt)

    @property
    def command(self) -> bool:
        """Ctrl on most platforms, Cmd on macOS."""
        return self.ctrl or self.meta
