"""
Selection / Focus Controller.

Keyboard-driven state machine over the task map:

    IDLE --select--> SELECTED(n) --printable key--> EDITING(n)
    EDITING(n) --Enter/blur--> SELECTED(n) (commit)
    EDITING(n) --Escape--> SELECTED(n) (discard)

Structural gestures (Tab, Enter, Delete) go through the sync engine and then
move focus to the resulting node. Focus acquisition is asynchronous and
cancelled by generation: any later selection change makes a pending
attempt stale.

Copyright (c) 2025 TaskMap
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Iterable, List, Optional, Protocol, Set

from ..config import TaskMapConfig, get_config
from ..sync.engine import SyncEngine
from ..tree.collapse import CollapseState
from ..tree.model import NodeKind, TreeModel
from . import keys
from .keys import KeyEvent

logger = logging.getLogger(__name__)


class Mode(Enum):
    """Controller state."""
    IDLE = "idle"
    SELECTED = "selected"
    EDITING = "editing"


class FocusPort(Protocol):
    """Rendering-layer hook that moves input focus onto a node's text input."""

    def focus(self, node_id: str) -> bool:
        """Return True once the node's input holds focus."""
        ...


class FocusScheduler:
    """
    Bounded, cancellable focus acquisition.

    The rendered tree is rebuilt asynchronously after a structural change,
    so the target input may not exist yet. Each request retries a few times
    and gives up as soon as a newer request (or invalidate()) superseded it.
    """

    def __init__(
        self,
        port: Optional[FocusPort] = None,
        retry_delay: float = 0.05,
        max_attempts: int = 10
    ):
        self._port = port
        self._retry_delay = retry_delay
        self._max_attempts = max(1, max_attempts)
        self._generation = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def generation(self) -> int:
        return self._generation

    def invalidate(self) -> int:
        """Make every pending request stale."""
        self._generation += 1
        return self._generation

    def request(self, node_id: str) -> Optional[asyncio.Task]:
        """Start acquiring focus for node_id, superseding earlier requests."""
        generation = self.invalidate()
        if self._port is None:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._attempt(node_id)
            return None
        self._task = loop.create_task(self._acquire(node_id, generation))
        return self._task

    async def _acquire(self, node_id: str, generation: int) -> bool:
        for attempt in range(self._max_attempts):
            if generation != self._generation:
                logger.debug(f"Focus request for {node_id} superseded")
                return False
            if self._attempt(node_id):
                return True
            await asyncio.sleep(self._retry_delay)
        logger.debug(f"Gave up focusing {node_id} after {self._max_attempts} attempts")
        return False

    def _attempt(self, node_id: str) -> bool:
        try:
            return bool(self._port.focus(node_id))
        except Exception as e:
            logger.debug(f"Focus attempt on {node_id} failed: {e}")
            return False

    async def wait(self) -> None:
        """Wait for the latest request to finish."""
        if self._task is not None and not self._task.done():
            await asyncio.gather(self._task, return_exceptions=True)


class SelectionController:
    """
    Selection, editing and keyboard navigation over a SyncEngine.

    Args:
        engine: Sync engine holding the tree
        collapse: Collapse state (shared with the view)
        focus_port: Optional rendering hook for input focus
        confirm: Called with a message before destroying descendants;
            deletion proceeds only if it returns True
        config: Configuration (focus timing)
    """

    def __init__(
        self,
        engine: SyncEngine,
        collapse: Optional[CollapseState] = None,
        focus_port: Optional[FocusPort] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        config: Optional[TaskMapConfig] = None
    ):
        config = config or get_config()
        self._engine = engine
        self._collapse = collapse if collapse is not None else CollapseState()
        self._confirm = confirm
        self.focus = FocusScheduler(
            focus_port,
            retry_delay=config.focus.retry_delay,
            max_attempts=config.focus.max_attempts,
        )

        self.mode = Mode.IDLE
        self.selected_id: Optional[str] = None
        self.selected_ids: Set[str] = set()
        self.draft: Optional[str] = None
        self.composing = False
        self._pending: Set[asyncio.Task] = set()

    # ============== State ==============

    @property
    def editing_id(self) -> Optional[str]:
        return self.selected_id if self.mode == Mode.EDITING else None

    def is_selected(self, node_id: str) -> bool:
        return node_id in self.selected_ids

    def is_editing(self, node_id: str) -> bool:
        return self.editing_id == node_id

    # ============== Pointer Gestures ==============

    def select(self, node_id: str, additive: bool = False) -> bool:
        """
        Select a node (click).

        Args:
            node_id: Task or group id
            additive: Toggle membership in the bulk selection instead of
                replacing it

        Returns:
            True if the selection changed
        """
        tree = self._engine.tree
        if node_id not in tree:
            return False
        if self.mode == Mode.EDITING:
            self.blur()

        if additive:
            if node_id in self.selected_ids and len(self.selected_ids) > 1:
                self.selected_ids.discard(node_id)
                if self.selected_id == node_id:
                    self.selected_id = sorted(self.selected_ids)[0]
                self.focus.request(self.selected_id)
                return True
            self.selected_ids.add(node_id)
        else:
            self.selected_ids = {node_id}
        self.selected_id = node_id
        self.mode = Mode.SELECTED
        self.draft = None
        self.focus.request(node_id)
        return True

    def clear(self) -> None:
        """Click on empty space: commit any edit and go idle."""
        if self.mode == Mode.EDITING:
            self.blur()
        self.mode = Mode.IDLE
        self.selected_id = None
        self.selected_ids = set()
        self.draft = None
        self.focus.invalidate()

    # ============== Text Editing ==============

    def begin_edit(self, node_id: Optional[str] = None, fresh: bool = False) -> bool:
        """
        Enter editing mode on a node.

        Args:
            node_id: Node to edit (default: the selected node)
            fresh: Start from an empty draft (newly created nodes, typing
                over the title)
        """
        node_id = node_id or self.selected_id
        if node_id is None or node_id not in self._engine.tree:
            return False
        if self.selected_id != node_id or self.mode == Mode.IDLE:
            self.select(node_id)
        self.mode = Mode.EDITING
        self.draft = "" if fresh else self._title_of(node_id)
        return True

    def set_draft(self, text: str) -> None:
        """Input value changed."""
        if self.mode == Mode.EDITING:
            self.draft = text

    def composition_start(self) -> None:
        self.composing = True

    def composition_end(self, text: Optional[str] = None) -> None:
        self.composing = False
        if text is not None:
            self.set_draft(text)

    def commit(self) -> bool:
        """
        Persist the draft title and return to SELECTED.

        Empty or unchanged drafts leave the title as it is.

        Returns:
            True if a title change was issued
        """
        if self.mode != Mode.EDITING:
            return False
        node_id = self.selected_id
        draft = (self.draft or "").strip()
        self.mode = Mode.SELECTED
        self.draft = None
        self.composing = False
        if not draft or draft == self._title_of(node_id):
            return False

        kind = self._engine.tree.kind_of(node_id)
        if kind == NodeKind.TASK:
            self._engine.update_task(node_id, title=draft)
        elif kind == NodeKind.GROUP:
            self._engine.update_group_title(node_id, draft)
        else:
            return False
        return True

    def cancel_edit(self) -> None:
        """Discard the draft."""
        if self.mode == Mode.EDITING:
            self.mode = Mode.SELECTED
            self.draft = None
            self.composing = False

    def blur(self) -> None:
        """Input lost focus without a keyboard exit."""
        self.commit()

    # ============== Keyboard ==============

    def handle_key(self, event: KeyEvent) -> bool:
        """
        Route a key press.

        Returns:
            True if the key was consumed; False lets it reach the text input
        """
        if event.command and event.key.lower() in ("z", "y") and self.mode != Mode.EDITING:
            if event.key.lower() == "y" or event.shift:
                self._schedule(self.redo())
            else:
                self._schedule(self.undo())
            return True

        if self.mode == Mode.EDITING:
            return self._handle_editing_key(event)
        if self.mode == Mode.SELECTED:
            return self._handle_selected_key(event)
        return False

    def _handle_editing_key(self, event: KeyEvent) -> bool:
        if event.key == keys.ENTER:
            if event.is_composing or self.composing:
                return False
            self.commit()
            return True
        if event.key == keys.TAB:
            self.commit()
            self.create_child()
            return True
        if event.key == keys.ESCAPE:
            self.cancel_edit()
            return True
        return False

    def _handle_selected_key(self, event: KeyEvent) -> bool:
        key = event.key
        if key == keys.TAB:
            self.create_child()
            return True
        if key == keys.ENTER:
            if self._engine.tree.kind_of(self.selected_id) == NodeKind.GROUP:
                self.begin_edit()
            else:
                self.create_sibling()
            return True
        if key in (keys.DELETE, keys.BACKSPACE):
            self.delete_selected()
            return True
        if key in (keys.ARROW_UP, keys.ARROW_DOWN, keys.ARROW_LEFT, keys.ARROW_RIGHT):
            self.navigate(key)
            return True
        if event.is_printable:
            # The input already holds focus; the character reaches it unaltered
            self.mode = Mode.EDITING
            self.draft = ""
            return False
        return False

    # ============== Structural Gestures ==============

    def create_child(self) -> Optional[str]:
        """Create a child of the selected node and start editing it."""
        node_id = self.selected_id
        tree = self._engine.tree
        kind = tree.kind_of(node_id) if node_id else None
        if kind == NodeKind.TASK:
            created = self._engine.create_child(node_id)
        elif kind == NodeKind.GROUP:
            created = self._engine.create_task(node_id)
        else:
            return None
        if created is None:
            return None
        self._collapse.expand(node_id)
        self._collapse.expand_ancestors(self._engine.tree, created.id)
        self.begin_edit(created.id, fresh=True)
        return created.id

    def create_sibling(self) -> Optional[str]:
        """Create a task right after the selected task and start editing it."""
        node_id = self.selected_id
        if node_id is None or self._engine.tree.kind_of(node_id) != NodeKind.TASK:
            return None
        created = self._engine.create_sibling(node_id)
        if created is None:
            return None
        self._collapse.expand_ancestors(self._engine.tree, created.id)
        self.begin_edit(created.id, fresh=True)
        return created.id

    def delete_selected(self) -> bool:
        """
        Delete the selected node(s).

        When descendants would be destroyed the confirm callback must
        approve; otherwise nothing changes.

        Returns:
            True if anything was deleted
        """
        if self.selected_id is None:
            return False
        tree = self._engine.tree
        targets = [i for i in (self.selected_ids or {self.selected_id}) if i in tree]
        if not targets:
            return False

        doomed: Set[str] = set(targets)
        for node_id in targets:
            doomed.update(t.id for t in tree.descendants_of(node_id))
        lost = len(doomed) - len(targets)
        if lost > 0:
            message = self._confirm_message(tree, targets, lost)
            if self._confirm is None or not self._confirm(message):
                logger.info("Deletion cancelled by user")
                return False

        next_id = self._next_focus(tree, self.selected_id, doomed)
        task_ids = [i for i in targets if tree.kind_of(i) == NodeKind.TASK]
        group_ids = [i for i in targets if tree.kind_of(i) == NodeKind.GROUP]
        if task_ids:
            self._engine.delete_tasks(task_ids)
        for group_id in group_ids:
            self._engine.delete_group(group_id)
        self._collapse.prune(self._existing_ids())

        if next_id is not None:
            self.select(next_id)
        else:
            self.clear()
        return True

    def _confirm_message(self, tree: TreeModel, targets: List[str], lost: int) -> str:
        noun = "subtask" if lost == 1 else "subtasks"
        if len(targets) == 1:
            return f"Delete '{self._title_of(targets[0])}' and its {lost} {noun}?"
        return f"Delete {len(targets)} items and {lost} {noun}?"

    def _next_focus(self, tree: TreeModel, node_id: str, doomed: Set[str]) -> Optional[str]:
        """Previous sibling, next sibling, parent, then owning group."""
        if tree.kind_of(node_id) == NodeKind.GROUP:
            candidates = self._neighbours([g.id for g in tree.groups], node_id)
        else:
            task = tree.get_task(node_id)
            candidates = self._neighbours([t.id for t in tree.siblings_of(node_id)], node_id)
            candidates += [a.id for a in tree.ancestors_of(node_id)]
            candidates.append(task.group_id)
        for candidate in candidates:
            if candidate not in doomed and candidate in tree:
                return candidate
        return None

    @staticmethod
    def _neighbours(ordered: List[str], node_id: str) -> List[str]:
        index = ordered.index(node_id)
        before = list(reversed(ordered[:index]))
        after = ordered[index + 1:]
        return before[:1] + after[:1] + before[1:] + after[1:]

    # ============== Navigation ==============

    def navigate(self, key: str) -> Optional[str]:
        """
        Move selection in tree order.

        Returns:
            The newly selected id, or None if there is nowhere to go
        """
        tree = self._engine.tree
        node_id = self.selected_id
        kind = tree.kind_of(node_id) if node_id else None
        if kind is None:
            return None

        target = None
        if kind == NodeKind.GROUP:
            groups = [g.id for g in tree.groups]
            index = groups.index(node_id)
            if key == keys.ARROW_UP and index > 0:
                target = groups[index - 1]
            elif key == keys.ARROW_DOWN and index < len(groups) - 1:
                target = groups[index + 1]
            elif key == keys.ARROW_RIGHT and not self._collapse.is_collapsed(node_id):
                roots = tree.root_tasks_of(node_id)
                target = roots[0].id if roots else None
        else:
            siblings = [t.id for t in tree.siblings_of(node_id)]
            index = siblings.index(node_id)
            if key == keys.ARROW_UP and index > 0:
                target = siblings[index - 1]
            elif key == keys.ARROW_DOWN and index < len(siblings) - 1:
                target = siblings[index + 1]
            elif key == keys.ARROW_LEFT:
                parent = tree.parent_of(node_id)
                target = parent.id if parent else tree.get_task(node_id).group_id
            elif key == keys.ARROW_RIGHT and not self._collapse.is_collapsed(node_id):
                children = tree.children_of(node_id)
                target = children[0].id if children else None

        if target is None:
            return None
        target = self._surface(tree, target)
        if target == node_id:
            return None
        self.select(target)
        return target

    def _surface(self, tree, node_id: str) -> str:
        """The node itself, or the collapsed node hiding it."""
        if not self._collapse.is_hidden(tree, node_id):
            return node_id
        group = tree.group_of_node(node_id)
        if group is not None and self._collapse.is_collapsed(group.id):
            return group.id
        for ancestor in reversed(tree.ancestors_of(node_id)):
            if self._collapse.is_collapsed(ancestor.id):
                return ancestor.id
        return node_id

    # ============== History ==============

    async def undo(self) -> bool:
        history = self._engine.history
        if history is None:
            return False
        done = await history.undo()
        self.prune()
        return done

    async def redo(self) -> bool:
        history = self._engine.history
        if history is None:
            return False
        done = await history.redo()
        self.prune()
        return done

    # ============== Housekeeping ==============

    def prune(self) -> None:
        """Drop selection of nodes that no longer exist (rollback, undo)."""
        tree = self._engine.tree
        self.selected_ids = {i for i in self.selected_ids if i in tree}
        if self.selected_id is not None and self.selected_id not in tree:
            logger.debug(f"Selected node {self.selected_id} disappeared")
            self.mode = Mode.IDLE
            self.selected_id = None
            self.draft = None
            self.focus.invalidate()
            if self.selected_ids:
                self.select(sorted(self.selected_ids)[0])

    async def settle(self) -> None:
        """Wait for scheduled undo/redo and focus work."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        await self.focus.wait()

    def _schedule(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _title_of(self, node_id: str) -> str:
        tree = self._engine.tree
        node = tree.get_task(node_id) or tree.get_group(node_id)
        return node.title if node is not None else ""

    def _existing_ids(self) -> Iterable[str]:
        tree = self._engine.tree
        return [g.id for g in tree.groups] + [t.id for t in tree.tasks]
