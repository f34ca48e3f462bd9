"""
In-Memory Backend for the Remote Store.

Provides storage for development/testing and backs the persistence service
when no external database is configured. Failures can be injected per
operation so the sync protocol can be exercised deterministically.

Copyright (c) 2025 TaskMap
"""

import asyncio
import logging
from collections import defaultdict
from threading import Lock
from typing import Any, Dict, List, Optional, Set, Tuple

from .base import EntityNotFoundError, RemoteStore, RemoteStoreError
from .models import Group, GroupUpdate, Task, TaskPatch

logger = logging.getLogger(__name__)

OPERATIONS = (
    "create_group", "update_group", "delete_group",
    "create_task", "update_task", "delete_task",
)

# Singleton instance
_memory_store = None


class MemoryRemoteStore(RemoteStore):
    """
    In-memory remote store.

    Titles are normalized (stripped) on write, standing in for server-side
    normalization. Every call is recorded in ``calls`` as (operation, id).
    """

    def __init__(self, latency: float = 0.0):
        self._groups: Dict[str, Group] = {}
        self._tasks: Dict[str, Task] = {}
        self._lock = Lock()
        self._fail_counts: Dict[str, int] = defaultdict(int)
        self._fail_always: Set[str] = set()
        self.latency = latency
        self.calls: List[Tuple[str, str]] = []
        logger.info("In-memory remote store initialized")

    # ============== Failure Injection ==============

    def fail_next(self, operation: str, count: int = 1) -> None:
        """Make the next ``count`` calls of ``operation`` fail."""
        self._check_operation(operation)
        self._fail_counts[operation] += count

    def fail_always(self, operation: str, enabled: bool = True) -> None:
        """Make every call of ``operation`` fail until disabled."""
        self._check_operation(operation)
        if enabled:
            self._fail_always.add(operation)
        else:
            self._fail_always.discard(operation)

    def clear(self) -> None:
        """Clear all data and injected failures."""
        with self._lock:
            self._groups.clear()
            self._tasks.clear()
            self._fail_counts.clear()
            self._fail_always.clear()
            self.calls.clear()

    def _check_operation(self, operation: str) -> None:
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown store operation: {operation}")

    async def _enter(self, operation: str, entity_id: str) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        self.calls.append((operation, entity_id))
        if operation in self._fail_always:
            raise RemoteStoreError(f"{operation} failed for {entity_id}")
        if self._fail_counts.get(operation, 0) > 0:
            self._fail_counts[operation] -= 1
            raise RemoteStoreError(f"{operation} failed for {entity_id}")

    # ============== Groups ==============

    async def create_group(
        self,
        project_id: str,
        title: str,
        order_index: int,
        group_id: Optional[str] = None
    ) -> Group:
        """Create a group."""
        kwargs = {"project_id": project_id, "title": title.strip(), "order_index": order_index}
        if group_id:
            kwargs["id"] = group_id
        group = Group(**kwargs)
        await self._enter("create_group", group.id)
        with self._lock:
            if group.id in self._groups:
                raise RemoteStoreError(f"Group already exists: {group.id}")
            self._groups[group.id] = group
        return group.model_copy()

    async def update_group(self, group_id: str, fields: Dict[str, Any]) -> None:
        """Update group fields."""
        await self._enter("update_group", group_id)
        update = GroupUpdate(**fields).model_dump(exclude_unset=True)
        if "title" in update and update["title"] is not None:
            update["title"] = update["title"].strip()
        with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                raise EntityNotFoundError(f"Group not found: {group_id}")
            self._groups[group_id] = group.model_copy(update=update)

    async def delete_group(self, group_id: str) -> None:
        """Delete a group and its tasks."""
        await self._enter("delete_group", group_id)
        with self._lock:
            if group_id not in self._groups:
                raise EntityNotFoundError(f"Group not found: {group_id}")
            del self._groups[group_id]
            for task_id in [t.id for t in self._tasks.values() if t.group_id == group_id]:
                del self._tasks[task_id]

    async def list_groups(self, project_id: str) -> List[Group]:
        """List a project's groups ordered by order_index."""
        with self._lock:
            groups = [g.model_copy() for g in self._groups.values() if g.project_id == project_id]
        groups.sort(key=lambda g: (g.order_index, g.created_at, g.id))
        return groups

    # ============== Tasks ==============

    async def create_task(
        self,
        task_id: str,
        group_id: str,
        parent_task_id: Optional[str],
        title: str,
        order_index: int,
        **defaults: Any
    ) -> Task:
        """Create a task, validating its group and parent."""
        await self._enter("create_task", task_id)
        task = Task(
            id=task_id,
            group_id=group_id,
            parent_task_id=parent_task_id,
            title=title.strip(),
            order_index=order_index,
            **defaults
        )
        with self._lock:
            if task_id in self._tasks:
                raise RemoteStoreError(f"Task already exists: {task_id}")
            self._validate_position(task.group_id, task.parent_task_id)
            self._tasks[task_id] = task
        return task.model_copy()

    async def update_task(self, task_id: str, fields: Dict[str, Any]) -> None:
        """Update task fields, including reparent fields."""
        await self._enter("update_task", task_id)
        update = TaskPatch(**fields).model_dump(exclude_unset=True)
        if update.get("title") is not None:
            update["title"] = update["title"].strip()
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise EntityNotFoundError(f"Task not found: {task_id}")
            updated = task.model_copy(update=update)
            if "group_id" in update or "parent_task_id" in update:
                self._validate_position(updated.group_id, updated.parent_task_id)
            self._tasks[task_id] = updated

    async def delete_task(self, task_id: str) -> None:
        """Delete a task and its descendants."""
        await self._enter("delete_task", task_id)
        with self._lock:
            if task_id not in self._tasks:
                raise EntityNotFoundError(f"Task not found: {task_id}")
            doomed = {task_id}
            changed = True
            while changed:
                changed = False
                for task in self._tasks.values():
                    if task.parent_task_id in doomed and task.id not in doomed:
                        doomed.add(task.id)
                        changed = True
            for doomed_id in doomed:
                del self._tasks[doomed_id]

    async def list_tasks(self, project_id: str) -> List[Task]:
        """List every task belonging to the project's groups."""
        with self._lock:
            group_ids = {g.id for g in self._groups.values() if g.project_id == project_id}
            return [t.model_copy() for t in self._tasks.values() if t.group_id in group_ids]

    def get_task(self, task_id: str) -> Optional[Task]:
        """Get a stored task by ID."""
        return self._tasks.get(task_id)

    def get_group(self, group_id: str) -> Optional[Group]:
        """Get a stored group by ID."""
        return self._groups.get(group_id)

    def _validate_position(self, group_id: str, parent_task_id: Optional[str]) -> None:
        if group_id not in self._groups:
            raise EntityNotFoundError(f"Group not found: {group_id}")
        if parent_task_id is not None:
            parent = self._tasks.get(parent_task_id)
            if parent is None:
                raise EntityNotFoundError(f"Parent task not found: {parent_task_id}")
            if parent.group_id != group_id:
                raise RemoteStoreError(
                    f"Parent {parent_task_id} belongs to group {parent.group_id}, not {group_id}"
                )


def get_memory_store() -> MemoryRemoteStore:
    """Get singleton memory store."""
    global _memory_store
    if _memory_store is None:
        _memory_store = MemoryRemoteStore()
    return _memory_store


def reset_memory_store() -> None:
    """Reset the singleton instance. Useful for testing."""
    global _memory_store
    _memory_store = None
