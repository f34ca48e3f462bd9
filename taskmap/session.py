"""
TaskMap Session - the surface exposed to the rendering layer.

Wires the sync engine, collapse state, selection controller, drag
controller and layout together, and exposes per-node flags plus one
callback per user gesture. Gesture callbacks never raise: unexpected
errors are logged and reported as a notice so the rest of the map keeps
working.

Copyright (c) 2025 TaskMap
"""

import functools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import TaskMapConfig, get_config
from .config.validator import validate_startup
from .core.event_bus import Event, EventBus, EventType, get_event_bus
from .core.history import History
from .interaction.drag import BoundsProvider, DragReparentController, Rect
from .interaction.keys import KeyEvent
from .interaction.selection import FocusPort, SelectionController
from .layout import LayoutEngine, LayoutNode, Position, TreeLayout, apply_drag_override, build_graph
from .store import RemoteStore, get_remote_store
from .store.models import Group, Task
from .sync.engine import SyncEngine
from .tree.collapse import CollapseState
from .tree.model import FlatRow, NodeKind

logger = logging.getLogger(__name__)


@dataclass
class NodeFlags:
    """Render state of one node."""
    selected: bool = False
    editing: bool = False
    has_children: bool = False
    collapsed: bool = False
    drop_target: bool = False
    progress: Optional[Tuple[int, int]] = None


def gesture(default: Any = None) -> Callable:
    """Isolate a gesture callback: log and report errors instead of raising."""
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(self: "MindMapSession", *args, **kwargs):
            try:
                return func(self, *args, **kwargs)
            except Exception as e:
                logger.exception(f"Gesture {func.__name__} failed")
                self._report(f"Something went wrong: {e}")
                return default
        return wrapper
    return decorator


class MindMapSession:
    """
    One open project in the mind-map view.

    Example usage:
        session = MindMapSession(project_id, "Launch plan", confirm=ask_user)
        await session.load()
        session.on_node_click(group_id)
        session.on_key(KeyEvent("Tab"))
        await session.settle()
    """

    def __init__(
        self,
        project_id: str,
        project_title: str = "Project",
        store: Optional[RemoteStore] = None,
        focus_port: Optional[FocusPort] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        bounds_provider: Optional[BoundsProvider] = None,
        layout_engine: Optional[LayoutEngine] = None,
        event_bus: Optional[EventBus] = None,
        config: Optional[TaskMapConfig] = None
    ):
        self.config = config or get_config()
        if not validate_startup(self.config):
            logger.warning("Starting session with invalid configuration")
        self.project_title = project_title
        self.event_bus = event_bus or get_event_bus()
        history = History(self.config.history.max_size) if self.config.history.enabled else None

        self.engine = SyncEngine(
            project_id,
            store or get_remote_store(self.config),
            event_bus=self.event_bus,
            history=history,
            config=self.config,
        )
        self.collapse = CollapseState()
        self.selection = SelectionController(
            self.engine, self.collapse, focus_port=focus_port, confirm=confirm, config=self.config
        )
        self.drag = DragReparentController(self.engine, bounds_provider or self._layout_bounds)
        self.layout_engine = layout_engine or TreeLayout.from_config(self.config.layout)

        self.notices: List[str] = []
        self.positions: Dict[str, Position] = {}
        self._nodes: Dict[str, LayoutNode] = {}

        self.event_bus.subscribe(EventType.TREE_CHANGED, self._on_tree_changed)
        self.event_bus.subscribe(EventType.TREE_LOADED, self._on_tree_changed)
        self.event_bus.subscribe(EventType.NOTICE, self._on_notice)

    # ============== Read Surface ==============

    @property
    def groups(self) -> List[Group]:
        return self.engine.groups

    @property
    def tasks(self) -> List[Task]:
        return self.engine.tasks

    def rows(self) -> List[FlatRow]:
        """Outline view of the visible tree."""
        return self.engine.tree.flatten(self.collapse.ids)

    def node_flags(self, node_id: str) -> NodeFlags:
        tree = self.engine.tree
        kind = tree.kind_of(node_id)
        progress = tree.progress_of(node_id) if kind == NodeKind.TASK and tree.has_children(node_id) else None
        return NodeFlags(
            selected=self.selection.is_selected(node_id),
            editing=self.selection.is_editing(node_id),
            has_children=tree.has_children(node_id) if kind != NodeKind.PROJECT else bool(tree.groups),
            collapsed=self.collapse.is_collapsed(node_id),
            drop_target=self.drag.is_drop_target(node_id),
            progress=progress,
        )

    # ============== Lifecycle ==============

    async def load(self) -> bool:
        """Fetch the project from the store."""
        loaded = await self.engine.refresh()
        self.relayout()
        return loaded

    async def settle(self) -> None:
        """Wait until persistence, focus and event delivery are quiet."""
        while True:
            await self.engine.settle()
            await self.selection.settle()
            await self.event_bus.drain()
            if not self.engine.pending_count:
                break

    async def close(self) -> None:
        self.event_bus.unsubscribe(EventType.TREE_CHANGED, self._on_tree_changed)
        self.event_bus.unsubscribe(EventType.TREE_LOADED, self._on_tree_changed)
        self.event_bus.unsubscribe(EventType.NOTICE, self._on_notice)
        await self.settle()
        await self.engine.store.close()

    def relayout(self) -> Dict[str, Position]:
        """Recompute node positions, keeping a mid-drag node where it is."""
        nodes, edges = build_graph(
            self.project_title, self.engine.tree, self.collapse, self.config.layout
        )
        self._nodes = {n.id: n for n in nodes}
        positions = self.layout_engine.layout(nodes, edges)
        self.positions = apply_drag_override(positions, self.drag.position_override())
        return self.positions

    # ============== Gestures ==============

    @gesture(default=False)
    def on_node_click(self, node_id: str, additive: bool = False) -> bool:
        return self.selection.select(node_id, additive=additive)

    @gesture()
    def on_pane_click(self) -> None:
        self.selection.clear()

    @gesture(default=False)
    def on_key(self, event: KeyEvent) -> bool:
        return self.selection.handle_key(event)

    @gesture()
    def on_input_change(self, text: str) -> None:
        self.selection.set_draft(text)

    @gesture()
    def on_composition_start(self) -> None:
        self.selection.composition_start()

    @gesture()
    def on_composition_end(self, text: Optional[str] = None) -> None:
        self.selection.composition_end(text)

    @gesture()
    def on_input_blur(self) -> None:
        self.selection.blur()

    @gesture(default=False)
    def on_toggle_collapse(self, node_id: str) -> bool:
        if node_id not in self.engine.tree:
            return False
        collapsed = self.collapse.toggle(node_id)
        if collapsed and self.selection.selected_id is not None:
            if self.collapse.is_hidden(self.engine.tree, self.selection.selected_id):
                self.selection.select(node_id)
        self.relayout()
        return collapsed

    @gesture(default=None)
    def on_add_group(self, title: Optional[str] = None) -> Optional[str]:
        group = self.engine.create_group(title)
        self.selection.begin_edit(group.id, fresh=title is None)
        return group.id

    @gesture(default=False)
    def on_drag_start(self, node_id: str) -> bool:
        return self.drag.begin(node_id)

    @gesture(default=None)
    def on_drag(self, rect: Rect) -> Optional[str]:
        target = self.drag.move(rect)
        if rect is not None and self.drag.dragged_id in self.positions:
            self.positions[self.drag.dragged_id] = (rect.x, rect.y)
        return target

    @gesture(default=False)
    def on_drag_stop(self) -> bool:
        moved = self.drag.drop()
        self.relayout()
        return moved

    @gesture()
    def on_drag_cancel(self) -> None:
        self.drag.cancel()
        self.relayout()

    async def undo(self) -> bool:
        return await self.selection.undo()

    async def redo(self) -> bool:
        return await self.selection.redo()

    # ============== Internals ==============

    def _layout_bounds(self) -> Dict[str, Rect]:
        bounds = {}
        for node_id, (x, y) in self.positions.items():
            node = self._nodes.get(node_id)
            if node is not None:
                bounds[node_id] = Rect(x, y, node.width, node.height)
        return bounds

    def _on_tree_changed(self, event: Event) -> None:
        tree = self.engine.tree
        self.collapse.prune([g.id for g in tree.groups] + [t.id for t in tree.tasks])
        self.selection.prune()
        self.relayout()

    def _on_notice(self, event: Event) -> None:
        self._report(event.payload.get("message", ""))

    def _report(self, message: str) -> None:
        logger.warning(f"Notice: {message}")
        self.notices.append(message)
