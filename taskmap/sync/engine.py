"""
TaskMap Sync Engine - optimistic tree mutations with background persistence.

Every public mutation follows the same three phases:
- Apply: compute the new state synchronously and make it current
- Dispatch: schedule the matching RemoteStore call as a background task
- Reconcile or roll back: merge server fields on success; on failure,
  creations are removed again while updates and deletes are only logged

Dispatches touching the same entity are chained in issue order. There is
no global lock, so edits to unrelated entities persist concurrently.

Copyright (c) 2025 TaskMap
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from ..config import TaskMapConfig, get_config
from ..core.event_bus import Event, EventBus, EventType, get_event_bus
from ..core.history import ActionType, History, HistoryAction
from ..store.base import RemoteStore, RemoteStoreError
from ..store.models import Group, GroupUpdate, Task, TaskUpdate
from ..tree.model import TreeModel, sort_key, validate_forest

logger = logging.getLogger(__name__)

# Fields forwarded to RemoteStore.create_task besides the positional ones
CREATE_TASK_EXTRA_FIELDS = (
    "status", "priority", "scheduled_at", "estimated_time", "actual_time_minutes", "created_at",
)


def normalize_title(title: Optional[str], default: str) -> str:
    """Strip a title; blank titles fall back to the placeholder."""
    if title is None:
        return default
    stripped = title.strip()
    return stripped or default


class SyncEngine:
    """
    Owner of the authoritative in-memory group/task state.

    All mutations must be issued from inside the running event loop; the
    optimistic part completes before the call returns and persistence
    resolves later.

    Example usage:
        engine = SyncEngine(project_id, get_remote_store())
        task = engine.create_task(group.id)          # usable immediately
        engine.update_task(task.id, title="Write tests")
        await engine.settle()
    """

    def __init__(
        self,
        project_id: str,
        store: RemoteStore,
        event_bus: Optional[EventBus] = None,
        history: Optional[History] = None,
        config: Optional[TaskMapConfig] = None
    ):
        self.project_id = project_id
        self._store = store
        self._bus = event_bus or get_event_bus()
        self._history = history
        self._config = config or get_config()

        self._groups: Dict[str, Group] = {}
        self._tasks: Dict[str, Task] = {}
        self._version = 0
        self._tree_cache: Optional[TreeModel] = None
        self._tree_version = -1

        self._chains: Dict[str, asyncio.Task] = {}
        self._pending: Set[asyncio.Task] = set()
        self._creating: Set[str] = set()
        self._unpersisted: Set[str] = set()
        self._local_edits: Dict[str, Set[str]] = defaultdict(set)
        self._parked: Dict[str, Tuple[str, Dict[str, Any]]] = {}
        self._replay_depth = 0

    # ============== State Access ==============

    @property
    def groups(self) -> List[Group]:
        return self.tree.groups

    @property
    def tasks(self) -> List[Task]:
        return list(self._tasks.values())

    @property
    def tree(self) -> TreeModel:
        """Read-only projection of the current state."""
        if self._tree_cache is None or self._tree_version != self._version:
            self._tree_cache = TreeModel(self._groups.values(), self._tasks.values())
            self._tree_version = self._version
        return self._tree_cache

    @property
    def history(self) -> Optional[History]:
        return self._history

    @property
    def store(self) -> RemoteStore:
        return self._store

    @property
    def pending_count(self) -> int:
        """Number of persistence units still in flight."""
        return len(self._pending)

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def get_group(self, group_id: str) -> Optional[Group]:
        return self._groups.get(group_id)

    def is_persisting(self, entity_id: str) -> bool:
        chain = self._chains.get(entity_id)
        return chain is not None and not chain.done()

    # ============== Loading ==============

    def load(self, groups: Iterable[Group], tasks: Iterable[Task]) -> List[str]:
        """
        Replace local state with data fetched from the store.

        Malformed tasks are quarantined rather than loaded so the rest of the
        tree stays usable.

        Returns:
            Problems found in the data
        """
        groups = [g for g in groups if g.project_id == self.project_id]
        valid, problems = validate_forest(groups, tasks)
        self._groups = {g.id: g for g in groups}
        self._tasks = {t.id: t for t in valid}
        self._touch()

        if problems:
            for problem in problems:
                logger.warning(f"Quarantined malformed data: {problem}")
            self._emit(EventType.DATA_ERROR, {"problems": problems})
        logger.info(f"Loaded {len(self._groups)} groups and {len(self._tasks)} tasks")
        self._emit(EventType.TREE_LOADED, {"groups": len(self._groups), "tasks": len(self._tasks)})
        return problems

    async def refresh(self) -> bool:
        """
        Fetch the project from the store and load it.

        Returns:
            True if loaded, False if the fetch failed
        """
        try:
            groups = await self._store.list_groups(self.project_id)
            tasks = await self._store.list_tasks(self.project_id)
        except Exception as e:
            logger.error(f"Failed to load project {self.project_id}: {e}")
            self._notice(f"Could not load the project: {e}")
            return False
        self.load(groups, tasks)
        return True

    # ============== Group Operations ==============

    def create_group(self, title: Optional[str] = None) -> Group:
        """Create a group at the end of the project's group list."""
        orders = [g.order_index for g in self._groups.values()]
        group = Group(
            id=str(uuid.uuid4()),
            project_id=self.project_id,
            title=normalize_title(title, self._config.sync.default_group_title),
            order_index=max(orders) + 1 if orders else 0,
        )
        self._insert_group(group)

        if self._recording:
            snapshot = group.model_copy()

            async def reverse() -> None:
                with self._replaying():
                    self.delete_group(snapshot.id)
                await self.settle(snapshot.id)

            async def execute() -> None:
                with self._replaying():
                    self.restore_group(snapshot, [])
                await self.settle(snapshot.id)

            self._record(ActionType.CREATE_GROUP, f"Create group '{group.title}'", execute, reverse)
        return group

    def update_group_title(self, group_id: str, title: str) -> Optional[Group]:
        """Rename a group."""
        return self._update_group(
            group_id, {"title": normalize_title(title, self._config.sync.default_group_title)}
        )

    def update_group_order(self, group_id: str, order_index: int) -> Optional[Group]:
        """Move a group within the project's group order."""
        return self._update_group(group_id, {"order_index": order_index})

    def delete_group(self, group_id: str) -> bool:
        """Delete a group and all of its tasks."""
        group = self._groups.get(group_id)
        if group is None:
            logger.debug(f"delete_group ignored, unknown group {group_id}")
            return False

        doomed = [t for t in self._tasks.values() if t.group_id == group_id]
        del self._groups[group_id]
        for task in doomed:
            del self._tasks[task.id]
        self._touch()
        logger.info(f"Deleted group {group_id} with {len(doomed)} tasks")

        async def persist() -> None:
            if group_id in self._unpersisted:
                return
            await self._store.delete_group(group_id)

        self._dispatch([group_id] + [t.id for t in doomed], f"delete_group {group_id}", persist)

        if self._recording:
            snapshot = group.model_copy()
            task_snapshot = [t.model_copy() for t in doomed]

            async def reverse() -> None:
                with self._replaying():
                    self.restore_group(snapshot, task_snapshot)
                await self.settle()

            async def execute() -> None:
                with self._replaying():
                    self.delete_group(snapshot.id)
                await self.settle(snapshot.id)

            self._record(ActionType.DELETE_GROUP, f"Delete group '{group.title}'", execute, reverse)
        return True

    def restore_group(self, group: Group, tasks: Sequence[Task]) -> None:
        """Re-insert a deleted group and its tasks under their original ids."""
        if group.id in self._groups:
            return
        self._unpersisted.discard(group.id)
        self._insert_group(group.model_copy())
        self.restore_tasks(tasks)

    def _insert_group(self, group: Group) -> None:
        self._groups[group.id] = group
        self._creating.add(group.id)
        self._touch()

        async def persist() -> None:
            if group.id not in self._groups:
                self._skip_create(group.id)
                return
            created = await self._store.create_group(
                group.project_id, group.title, group.order_index, group_id=group.id
            )
            self._reconcile(self._groups, group.id, created)
            self._release_parked(group.id)

        def rollback(error: Exception) -> None:
            self._creating.discard(group.id)
            self._unpersisted.add(group.id)
            if not self._config.sync.rollback_on_create_failure or group.id not in self._groups:
                return
            removed: List[str] = []
            returned: List[str] = []
            for task in self.tree.descendants_of(group.id):
                if task.parent_task_id is not None and task.parent_task_id not in removed:
                    continue
                entry = self._parked.get(task.id)
                if entry is not None and entry[1]["group_id"] in self._groups and entry[1]["group_id"] != group.id:
                    returned.append(task.id)
                else:
                    removed.append(task.id)
            del self._groups[group.id]
            for task_id in removed:
                del self._tasks[task_id]
                self._local_edits.pop(task_id, None)
                self._parked.pop(task_id, None)
            for task_id in returned:
                self._return_parked(task_id, group.id)
            self._touch()
            logger.error(f"Rolled back group {group.id} after failed create: {error}")
            self._emit(EventType.CREATE_ROLLED_BACK, {
                "entity": "group", "id": group.id, "removed": removed, "returned": returned
            })
            self._notice(f"Could not create group '{group.title}'. It has been removed.")

        self._dispatch([group.id], f"create_group {group.id}", persist, on_error=rollback)

    def _update_group(self, group_id: str, changes: Dict[str, Any]) -> Optional[Group]:
        group = self._groups.get(group_id)
        if group is None:
            logger.debug(f"Group update ignored, unknown group {group_id}")
            return None
        changes = GroupUpdate(**changes).model_dump(exclude_unset=True)
        changes = {k: v for k, v in changes.items() if getattr(group, k) != v}
        if not changes:
            return group

        previous = {k: getattr(group, k) for k in changes}
        updated = group.model_copy(update=changes)
        self._groups[group_id] = updated
        self._note_local_edit(group_id, changes)
        self._touch()

        async def persist() -> None:
            if group_id not in self._groups:
                return
            await self._store.update_group(group_id, changes)

        self._dispatch([group_id], f"update_group {group_id}", persist)

        if self._recording:
            async def reverse() -> None:
                with self._replaying():
                    self._update_group(group_id, previous)
                await self.settle(group_id)

            async def execute() -> None:
                with self._replaying():
                    self._update_group(group_id, changes)
                await self.settle(group_id)

            self._record(ActionType.UPDATE_GROUP, f"Update group '{updated.title}'", execute, reverse)
        return updated

    # ============== Task Operations ==============

    def create_task(
        self,
        group_id: str,
        parent_task_id: Optional[str] = None,
        title: Optional[str] = None,
        after_task_id: Optional[str] = None,
        **fields: Any
    ) -> Optional[Task]:
        """
        Create a task and return it immediately.

        Args:
            group_id: Owning group
            parent_task_id: Parent task, or None for a root task
            title: Title; blank falls back to the placeholder
            after_task_id: Sibling to insert right after (default: append)
            **fields: Other task fields (status, priority, scheduled_at, ...)

        Returns:
            The new task, or None if the position is invalid
        """
        if group_id not in self._groups:
            logger.debug(f"create_task rejected, unknown group {group_id}")
            return None
        if parent_task_id is not None:
            parent = self._tasks.get(parent_task_id)
            if parent is None or parent.group_id != group_id:
                logger.debug(f"create_task rejected, parent {parent_task_id} not in group {group_id}")
                return None

        siblings = self.tree.root_tasks_of(group_id) if parent_task_id is None \
            else self.tree.children_of(parent_task_id)
        shifted: Dict[str, int] = {}

        if after_task_id is not None:
            after = self._tasks.get(after_task_id)
            if after is None or after.group_id != group_id or after.parent_task_id != parent_task_id:
                logger.debug(f"create_task rejected, {after_task_id} is not a sibling position")
                return None
            order_index = after.order_index + 1
            index = next(i for i, s in enumerate(siblings) if s.id == after_task_id)
            floor = order_index
            for sibling in siblings[index + 1:]:
                if sibling.order_index > floor:
                    break
                shifted[sibling.id] = sibling.order_index
                floor += 1
                self._tasks[sibling.id] = sibling.model_copy(update={"order_index": floor})
        else:
            order_index = siblings[-1].order_index + 1 if siblings else 0

        TaskUpdate(**fields)
        task = Task(
            id=str(uuid.uuid4()),
            group_id=group_id,
            parent_task_id=parent_task_id,
            title=normalize_title(title, self._config.sync.default_task_title),
            order_index=order_index,
            created_at=datetime.now(timezone.utc),
            **fields
        )
        self._insert_task(task, shifted)

        for sibling_id in shifted:
            self._persist_task_fields(sibling_id, {"order_index": self._tasks[sibling_id].order_index})

        if self._recording:
            snapshot = task.model_copy()

            async def reverse() -> None:
                with self._replaying():
                    self.delete_task(snapshot.id)
                await self.settle(snapshot.id)

            async def execute() -> None:
                with self._replaying():
                    self.restore_tasks([snapshot])
                await self.settle(snapshot.id)

            self._record(ActionType.CREATE_TASK, f"Create task '{task.title}'", execute, reverse)
        return task

    def create_child(self, parent_task_id: str, title: Optional[str] = None) -> Optional[Task]:
        """Append a child task under an existing task."""
        parent = self._tasks.get(parent_task_id)
        if parent is None:
            return None
        return self.create_task(parent.group_id, parent_task_id=parent.id, title=title)

    def create_sibling(self, task_id: str, title: Optional[str] = None) -> Optional[Task]:
        """Insert a task right after an existing task."""
        task = self._tasks.get(task_id)
        if task is None:
            return None
        return self.create_task(
            task.group_id, parent_task_id=task.parent_task_id, title=title, after_task_id=task.id
        )

    def update_task(self, task_id: str, **fields: Any) -> Optional[Task]:
        """
        Apply a field-level update.

        Raises:
            ValueError: for unknown fields, including group_id and
                parent_task_id (reparenting goes through move_task)
        """
        changes = TaskUpdate(**fields).model_dump(exclude_unset=True)
        task = self._tasks.get(task_id)
        if task is None:
            logger.debug(f"update_task ignored, unknown task {task_id}")
            return None
        if "title" in changes:
            changes["title"] = normalize_title(changes["title"], self._config.sync.default_task_title)
        changes = {k: v for k, v in changes.items() if getattr(task, k) != v}
        if not changes:
            return task

        previous = {k: getattr(task, k) for k in changes}
        updated = task.model_copy(update=changes)
        self._tasks[task_id] = updated
        self._touch()
        self._persist_task_fields(task_id, changes)

        if self._recording:
            async def reverse() -> None:
                with self._replaying():
                    self.update_task(task_id, **previous)
                await self.settle(task_id)

            async def execute() -> None:
                with self._replaying():
                    self.update_task(task_id, **changes)
                await self.settle(task_id)

            self._record(ActionType.UPDATE_TASK, f"Update task '{updated.title}'", execute, reverse)
        return updated

    def delete_task(self, task_id: str) -> List[str]:
        """
        Delete a task and all of its descendants.

        Returns:
            Ids removed, empty if the task is unknown
        """
        return self.delete_tasks([task_id])

    def delete_tasks(self, task_ids: Iterable[str]) -> List[str]:
        """
        Delete several tasks (and their descendants) as one batch.

        Persistence runs sequentially, deepest-nested first, and keeps going
        past individual failures.

        Returns:
            Ids removed
        """
        tree = self.tree
        doomed: Dict[str, Task] = {}
        for task_id in task_ids:
            task = tree.get_task(task_id)
            if task is None or task_id in doomed:
                continue
            doomed[task_id] = task
            for descendant in tree.descendants_of(task_id):
                doomed[descendant.id] = descendant
        if not doomed:
            return []

        depth = {task_id: tree.depth_of(task_id) for task_id in doomed}
        order = sorted(doomed, key=lambda i: (-depth[i], sort_key(doomed[i])))
        for task_id in order:
            del self._tasks[task_id]
            self._local_edits.pop(task_id, None)
            self._parked.pop(task_id, None)
        self._touch()
        logger.info(f"Deleted {len(order)} tasks")

        async def persist() -> None:
            failures = 0
            for task_id in order:
                if task_id in self._unpersisted:
                    continue
                try:
                    await self._store.delete_task(task_id)
                except Exception as e:
                    failures += 1
                    self._persist_failed(f"delete_task {task_id}", e)
            if failures:
                logger.warning(f"Batch delete finished with {failures} failures")

        self._dispatch(order, f"delete_tasks ({len(order)})", persist)

        if self._recording:
            snapshot = [doomed[i].model_copy() for i in reversed(order)]
            roots = [t.id for t in snapshot if t.parent_task_id not in doomed]
            label = snapshot[0].title if len(roots) == 1 else f"{len(roots)} tasks"

            async def reverse() -> None:
                with self._replaying():
                    self.restore_tasks(snapshot)
                await self.settle()

            async def execute() -> None:
                with self._replaying():
                    self.delete_tasks(roots)
                await self.settle()

            self._record(ActionType.DELETE_TASK, f"Delete '{label}'", execute, reverse)
        return order

    def restore_tasks(self, tasks: Sequence[Task]) -> List[str]:
        """
        Re-insert tasks under their original ids, parents before children.

        Tasks whose group or parent is missing are skipped.

        Returns:
            Ids restored
        """
        remaining = {t.id: t for t in tasks if t.id not in self._tasks}
        restored: List[str] = []
        progress = True
        while remaining and progress:
            progress = False
            for task_id, task in list(remaining.items()):
                if task.group_id not in self._groups:
                    continue
                if task.parent_task_id is not None and task.parent_task_id not in self._tasks:
                    continue
                self._unpersisted.discard(task_id)
                self._insert_task(task.model_copy(), {})
                restored.append(task_id)
                del remaining[task_id]
                progress = True
        if remaining:
            logger.warning(f"Could not restore {len(remaining)} tasks without a parent or group")
        return restored

    def move_task(self, task_id: str, group_id: str, parent_task_id: Optional[str] = None) -> bool:
        """
        Reparent a task under another task or to the root of a group.

        Returns:
            True if moved; False for an invalid or no-op move (state unchanged)
        """
        task = self._tasks.get(task_id)
        if task is None or group_id not in self._groups:
            logger.debug(f"move_task rejected, unknown task {task_id} or group {group_id}")
            return False
        if parent_task_id is not None:
            if parent_task_id == task_id:
                logger.debug(f"move_task rejected, {task_id} cannot parent itself")
                return False
            parent = self._tasks.get(parent_task_id)
            if parent is None or parent.group_id != group_id:
                logger.debug(f"move_task rejected, parent {parent_task_id} not in group {group_id}")
                return False
            if self.tree.is_descendant(task_id, parent_task_id):
                logger.debug(f"move_task rejected, {parent_task_id} is a descendant of {task_id}")
                return False
        if task.group_id == group_id and task.parent_task_id == parent_task_id:
            return False

        tree = self.tree
        siblings = tree.root_tasks_of(group_id) if parent_task_id is None else tree.children_of(parent_task_id)
        order_index = siblings[-1].order_index + 1 if siblings else 0
        descendants = tree.descendants_of(task_id)
        previous = {"group_id": task.group_id, "parent_task_id": task.parent_task_id,
                    "order_index": task.order_index}
        changes = {"group_id": group_id, "parent_task_id": parent_task_id, "order_index": order_index}

        # position the server keeps until the new parent or group is saved
        parked = self._parked.pop(task_id, None)
        pending = parent_task_id if parent_task_id in self._creating else None
        if pending is None and group_id in self._creating:
            pending = group_id
        if pending is not None:
            self._parked[task_id] = (pending, parked[1] if parked else previous)

        self._tasks[task_id] = task.model_copy(update=changes)
        self._note_local_edit(task_id, changes)
        moved_group = group_id != task.group_id
        if moved_group:
            for descendant in descendants:
                self._tasks[descendant.id] = descendant.model_copy(update={"group_id": group_id})
                self._note_local_edit(descendant.id, {"group_id": group_id})
        self._touch()
        logger.info(f"Moved task {task_id} to group {group_id} under {parent_task_id}")

        cascade = [d.id for d in descendants] if moved_group else []

        async def persist() -> None:
            if task_id not in self._tasks:
                return
            if parent_task_id in self._unpersisted or group_id in self._unpersisted:
                logger.debug(f"Skipping move of {task_id}, its new position was never persisted")
                return
            await self._store.update_task(task_id, changes)
            for descendant_id in cascade:
                if descendant_id not in self._tasks:
                    continue
                try:
                    await self._store.update_task(descendant_id, {"group_id": group_id})
                except Exception as e:
                    self._persist_failed(f"update_task {descendant_id}", e)

        after = [parent_task_id] if parent_task_id else [group_id]
        self._dispatch([task_id] + cascade, f"move_task {task_id}", persist, after=after)

        if self._recording:
            async def reverse() -> None:
                with self._replaying():
                    self.move_task(task_id, previous["group_id"], previous["parent_task_id"])
                    self.update_task(task_id, order_index=previous["order_index"])
                await self.settle(task_id)

            async def execute() -> None:
                with self._replaying():
                    self.move_task(task_id, group_id, parent_task_id)
                await self.settle(task_id)

            self._record(ActionType.MOVE_TASK, f"Move task '{task.title}'", execute, reverse)
        return True

    def _insert_task(self, task: Task, shifted: Dict[str, int]) -> None:
        self._tasks[task.id] = task
        self._creating.add(task.id)
        self._touch()

        async def persist() -> None:
            current = self._tasks.get(task.id)
            if current is None:
                self._skip_create(task.id)
                return
            if current.parent_task_id is not None and current.parent_task_id in self._unpersisted:
                raise RemoteStoreError(f"parent {current.parent_task_id} was never persisted")
            extra = {k: getattr(task, k) for k in CREATE_TASK_EXTRA_FIELDS}
            created = await self._store.create_task(
                task.id, task.group_id, task.parent_task_id, task.title, task.order_index, **extra
            )
            self._reconcile(self._tasks, task.id, created)
            self._release_parked(task.id)

        def rollback(error: Exception) -> None:
            self._creating.discard(task.id)
            self._unpersisted.add(task.id)
            if not self._config.sync.rollback_on_create_failure or task.id not in self._tasks:
                return
            removed = [task.id]
            returned = []
            for descendant in self.tree.descendants_of(task.id):
                if descendant.parent_task_id not in removed:
                    continue
                unsaved = descendant.id in self._creating or descendant.id in self._unpersisted
                if unsaved and descendant.id not in self._parked:
                    removed.append(descendant.id)
                else:
                    returned.append(descendant.id)
            for task_id in removed:
                del self._tasks[task_id]
                self._local_edits.pop(task_id, None)
                self._parked.pop(task_id, None)
            for task_id in returned:
                self._return_parked(task_id, task.group_id)
            restored = {}
            for sibling_id, old_order in shifted.items():
                sibling = self._tasks.get(sibling_id)
                if sibling is not None and "order_index" not in self._local_edits.get(sibling_id, set()):
                    self._tasks[sibling_id] = sibling.model_copy(update={"order_index": old_order})
                    restored[sibling_id] = old_order
            self._touch()
            for sibling_id, old_order in restored.items():
                self._persist_task_fields(sibling_id, {"order_index": old_order})
            logger.error(f"Rolled back task {task.id} after failed create: {error}")
            self._emit(EventType.CREATE_ROLLED_BACK, {
                "entity": "task", "id": task.id, "removed": removed, "returned": returned
            })
            self._notice(f"Could not create task '{task.title}'. It has been removed.")

        after = [task.parent_task_id] if task.parent_task_id else [task.group_id]
        self._dispatch([task.id], f"create_task {task.id}", persist, on_error=rollback, after=after)

    def _release_parked(self, entity_id: str) -> None:
        for task_id in [t for t, (pending, _) in self._parked.items() if pending == entity_id]:
            del self._parked[task_id]

    def _return_parked(self, task_id: str, fallback_group_id: str) -> None:
        """Put a saved task back where it was before it moved under a failed create."""
        task = self._tasks[task_id]
        # ids from the tree, current objects from the index
        subtree = [d.id for d in self.tree.descendants_of(task_id)]
        entry = self._parked.pop(task_id, None)
        if entry is not None:
            position = dict(entry[1])
            # the server never saw the move
            needs_persist = False
        else:
            position = {"group_id": fallback_group_id, "parent_task_id": None, "order_index": task.order_index}
            needs_persist = True
        if position["group_id"] not in self._groups:
            position["group_id"] = task.group_id
        parent = self._tasks.get(position["parent_task_id"]) if position["parent_task_id"] else None
        if position["parent_task_id"] is not None and (parent is None or parent.id in subtree):
            parent = None
            position["parent_task_id"] = None
            needs_persist = True
        if parent is not None and parent.group_id != position["group_id"]:
            position["group_id"] = parent.group_id
            needs_persist = True
        if parent is None and needs_persist:
            orders = [
                t.order_index for t in self._tasks.values()
                if t.group_id == position["group_id"] and t.parent_task_id is None and t.id != task_id
            ]
            position["order_index"] = max(orders) + 1 if orders else 0

        self._tasks[task_id] = task.model_copy(update=position)
        for descendant_id in subtree:
            self._tasks[descendant_id] = self._tasks[descendant_id].model_copy(
                update={"group_id": position["group_id"]}
            )
        self._touch()
        logger.info(f"Returned task {task_id} to {position['parent_task_id'] or position['group_id']}")
        if needs_persist:
            self._persist_task_fields(task_id, position)
            for descendant_id in subtree:
                self._persist_task_fields(descendant_id, {"group_id": position["group_id"]})

    def _persist_task_fields(self, task_id: str, changes: Dict[str, Any]) -> None:
        self._note_local_edit(task_id, changes)

        async def persist() -> None:
            if task_id not in self._tasks:
                logger.debug(f"Skipping update of task {task_id}, no longer present")
                return
            await self._store.update_task(task_id, changes)

        self._dispatch([task_id], f"update_task {task_id}", persist)

    # ============== Persistence Plumbing ==============

    async def settle(self, entity_id: Optional[str] = None) -> None:
        """
        Wait for in-flight persistence.

        Args:
            entity_id: Only wait for this entity's chain (default: everything)
        """
        if entity_id is not None:
            chain = self._chains.get(entity_id)
            while chain is not None and not chain.done():
                await asyncio.gather(chain, return_exceptions=True)
                chain = self._chains.get(entity_id)
            return
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _dispatch(
        self,
        entity_ids: Sequence[str],
        label: str,
        persist: Callable[[], Awaitable[None]],
        on_error: Optional[Callable[[Exception], None]] = None,
        after: Sequence[str] = ()
    ) -> asyncio.Task:
        """Schedule a persistence unit behind earlier units for the same entities."""
        waits = []
        for key in list(entity_ids) + list(after):
            chain = self._chains.get(key)
            if chain is not None and not chain.done() and chain not in waits:
                waits.append(chain)

        async def run() -> None:
            if waits:
                await asyncio.gather(*waits, return_exceptions=True)
            try:
                await persist()
            except Exception as e:
                self._persist_failed(label, e)
                if on_error is not None:
                    on_error(e)
                return
            logger.debug(f"{label} persisted")

        unit = asyncio.get_running_loop().create_task(run())
        for key in entity_ids:
            self._chains[key] = unit
        self._pending.add(unit)
        unit.add_done_callback(self._unit_done)
        return unit

    def _unit_done(self, unit: asyncio.Task) -> None:
        self._pending.discard(unit)
        for key in [k for k, v in self._chains.items() if v is unit]:
            del self._chains[key]

    def _reconcile(self, index: Dict[str, Any], entity_id: str, server: Any) -> None:
        """Merge server-returned fields unless the user edited them since."""
        self._creating.discard(entity_id)
        edits = self._local_edits.pop(entity_id, set())
        current = index.get(entity_id)
        if current is None:
            return
        merged = {
            k: v for k, v in server.model_dump().items()
            if k != "id" and k not in edits and getattr(current, k) != v
        }
        if merged:
            index[entity_id] = current.model_copy(update=merged)
            self._touch()
            logger.debug(f"Reconciled {entity_id} with server fields {sorted(merged)}")
        self._emit(EventType.PERSIST_SUCCEEDED, {"id": entity_id})

    def _skip_create(self, entity_id: str) -> None:
        self._creating.discard(entity_id)
        self._unpersisted.add(entity_id)
        logger.debug(f"Skipping create of {entity_id}, removed before it was persisted")

    def _note_local_edit(self, entity_id: str, changes: Dict[str, Any]) -> None:
        if entity_id in self._creating:
            self._local_edits[entity_id].update(changes)

    def _persist_failed(self, label: str, error: Exception) -> None:
        logger.warning(f"Persistence failed: {label}: {error}")
        self._emit(EventType.PERSIST_FAILED, {"operation": label, "error": str(error)})

    # ============== History / Events ==============

    @property
    def _recording(self) -> bool:
        return self._history is not None and self._replay_depth == 0

    @contextmanager
    def _replaying(self) -> Iterator[None]:
        """Mutations issued inside this block come from undo/redo and are not recorded."""
        self._replay_depth += 1
        try:
            yield
        finally:
            self._replay_depth -= 1

    def _record(
        self,
        action_type: ActionType,
        description: str,
        execute: Callable[[], Awaitable[None]],
        reverse: Callable[[], Awaitable[None]]
    ) -> None:
        self._history.record(HistoryAction(
            type=action_type, description=description, execute=execute, reverse=reverse
        ))

    def _touch(self) -> None:
        self._version += 1
        self._emit(EventType.TREE_CHANGED, {"version": self._version})

    def _notice(self, message: str) -> None:
        self._emit(EventType.NOTICE, {"message": message})

    def _emit(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        self._bus.emit(Event(type=event_type, payload=payload, source="sync_engine"))
