"""
TaskMap Tree Model - read-only projection over groups and tasks.

Tasks are kept in an arena indexed by id, with sibling buckets keyed by
(group_id, parent_task_id). Every upward or downward walk carries a visited
set so malformed (cyclic) data terminates instead of looping.

Copyright (c) 2025 TaskMap
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..store.models import Group, Task, TaskStatus

logger = logging.getLogger(__name__)

PROJECT_NODE_ID = "project-root"


class NodeKind(Enum):
    """Kind of node in the rendered map."""
    PROJECT = "project"
    GROUP = "group"
    TASK = "task"


@dataclass
class FlatRow:
    """One line of the outline view."""
    id: str
    kind: NodeKind
    title: str
    indent: int  # -1 for group headers, 0 for root tasks
    group_id: str
    parent_task_id: Optional[str] = None
    status: Optional[TaskStatus] = None


def sort_key(item) -> Tuple[int, object, str]:
    """Sibling order: order_index, then creation time, then id."""
    return (item.order_index, item.created_at, item.id)


class TreeModel:
    """
    Query interface over a group list and a task list.

    No mutation methods live here; the sync engine builds a fresh model
    from its state whenever callers ask for one.
    """

    def __init__(self, groups: Iterable[Group], tasks: Iterable[Task]):
        self._groups: Dict[str, Group] = {g.id: g for g in groups}
        self._tasks: Dict[str, Task] = {t.id: t for t in tasks}
        self._buckets: Dict[Tuple[str, Optional[str]], List[Task]] = defaultdict(list)
        for task in self._tasks.values():
            self._buckets[(task.group_id, task.parent_task_id)].append(task)
        for bucket in self._buckets.values():
            bucket.sort(key=sort_key)
        self._group_order: List[Group] = sorted(self._groups.values(), key=sort_key)

    # ============== Lookup ==============

    @property
    def groups(self) -> List[Group]:
        """Groups in display order."""
        return list(self._group_order)

    @property
    def tasks(self) -> List[Task]:
        return list(self._tasks.values())

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def get_group(self, group_id: str) -> Optional[Group]:
        return self._groups.get(group_id)

    def kind_of(self, node_id: str) -> Optional[NodeKind]:
        """Classify a node id."""
        if node_id in self._tasks:
            return NodeKind.TASK
        if node_id in self._groups:
            return NodeKind.GROUP
        if node_id == PROJECT_NODE_ID:
            return NodeKind.PROJECT
        return None

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._tasks or node_id in self._groups

    # ============== Structure ==============

    def children_of(self, task_id: str) -> List[Task]:
        """Direct children of a task, in sibling order."""
        task = self._tasks.get(task_id)
        if task is None:
            return []
        return list(self._buckets.get((task.group_id, task_id), []))

    def root_tasks_of(self, group_id: str) -> List[Task]:
        """Tasks of a group without a parent task, in sibling order."""
        return list(self._buckets.get((group_id, None), []))

    def siblings_of(self, task_id: str) -> List[Task]:
        """Tasks sharing group and parent with task_id, the task included."""
        task = self._tasks.get(task_id)
        if task is None:
            return []
        return list(self._buckets.get((task.group_id, task.parent_task_id), []))

    def child_nodes(self, node_id: str) -> List[Task]:
        """Children of a task, or root tasks of a group."""
        if node_id in self._groups:
            return self.root_tasks_of(node_id)
        return self.children_of(node_id)

    def has_children(self, node_id: str) -> bool:
        return bool(self.child_nodes(node_id))

    def parent_of(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        if task is None or task.parent_task_id is None:
            return None
        return self._tasks.get(task.parent_task_id)

    def group_of_node(self, node_id: str) -> Optional[Group]:
        """The group itself, or the group owning a task."""
        if node_id in self._groups:
            return self._groups[node_id]
        task = self._tasks.get(node_id)
        if task is None:
            return None
        return self._groups.get(task.group_id)

    def is_descendant(self, ancestor_id: str, node_id: str) -> bool:
        """
        Check whether node_id sits somewhere below ancestor_id.

        Walks the parent chain upward from node_id. A repeated id means the
        data is cyclic; the walk stops and reports False.
        """
        task = self._tasks.get(node_id)
        if task is None:
            return False
        visited: Set[str] = {node_id}
        parent_id = task.parent_task_id
        while parent_id is not None:
            if parent_id == ancestor_id:
                return True
            if parent_id in visited:
                logger.warning(f"Cycle detected in parent chain of task {node_id}")
                return False
            visited.add(parent_id)
            parent = self._tasks.get(parent_id)
            if parent is None:
                return False
            parent_id = parent.parent_task_id
        return False

    def ancestors_of(self, task_id: str) -> List[Task]:
        """Ancestor tasks, nearest first."""
        ancestors: List[Task] = []
        visited: Set[str] = {task_id}
        current = self.parent_of(task_id)
        while current is not None and current.id not in visited:
            visited.add(current.id)
            ancestors.append(current)
            current = self.parent_of(current.id)
        return ancestors

    def descendants_of(self, node_id: str) -> List[Task]:
        """All tasks below a task or group, in pre-order."""
        collected: List[Task] = []
        visited: Set[str] = {node_id}
        stack = list(reversed(self.child_nodes(node_id)))
        while stack:
            task = stack.pop()
            if task.id in visited:
                continue
            visited.add(task.id)
            collected.append(task)
            stack.extend(reversed(self.children_of(task.id)))
        return collected

    def depth_of(self, task_id: str) -> int:
        """0 for root tasks."""
        return len(self.ancestors_of(task_id))

    def progress_of(self, task_id: str) -> Tuple[int, int]:
        """(done, total) over the direct children of a task."""
        children = self.children_of(task_id)
        done = sum(1 for child in children if child.status == TaskStatus.DONE)
        return done, len(children)

    def flatten(self, collapsed: Optional[Set[str]] = None) -> List[FlatRow]:
        """
        Outline rows: each group header followed by its tasks, depth first.

        Subtrees under a collapsed node are skipped.
        """
        collapsed = collapsed or set()
        rows: List[FlatRow] = []

        def add_tasks(tasks: List[Task], indent: int, seen: Set[str]) -> None:
            for task in tasks:
                if task.id in seen:
                    continue
                seen.add(task.id)
                rows.append(FlatRow(
                    id=task.id,
                    kind=NodeKind.TASK,
                    title=task.title,
                    indent=indent,
                    group_id=task.group_id,
                    parent_task_id=task.parent_task_id,
                    status=task.status,
                ))
                if task.id not in collapsed:
                    add_tasks(self.children_of(task.id), indent + 1, seen)

        for group in self._group_order:
            rows.append(FlatRow(
                id=group.id,
                kind=NodeKind.GROUP,
                title=group.title,
                indent=-1,
                group_id=group.id,
            ))
            if group.id not in collapsed:
                add_tasks(self.root_tasks_of(group.id), 0, set())
        return rows


def validate_forest(groups: Iterable[Group], tasks: Iterable[Task]) -> Tuple[List[Task], List[str]]:
    """
    Split tasks into a well-formed forest and a list of problems.

    A task is quarantined when its group is unknown, its parent is unknown
    or quarantined, its parent lives in another group, or it sits on a
    parent cycle.

    Returns:
        Tuple of (valid_tasks, problem_descriptions)
    """
    group_ids = {g.id for g in groups}
    by_id: Dict[str, Task] = {}
    problems: List[str] = []

    for task in tasks:
        if task.id in by_id:
            problems.append(f"Duplicate task id {task.id}")
            continue
        by_id[task.id] = task

    rejected: Set[str] = set()
    for task in by_id.values():
        if task.group_id not in group_ids:
            problems.append(f"Task {task.id} references missing group {task.group_id}")
            rejected.add(task.id)
            continue
        if task.parent_task_id is None:
            continue
        parent = by_id.get(task.parent_task_id)
        if parent is None:
            problems.append(f"Task {task.id} references missing parent {task.parent_task_id}")
            rejected.add(task.id)
        elif parent.group_id != task.group_id:
            problems.append(
                f"Task {task.id} is in group {task.group_id} but its parent is in {parent.group_id}"
            )
            rejected.add(task.id)

    for task in by_id.values():
        if task.id in rejected:
            continue
        visited: Set[str] = {task.id}
        parent_id = task.parent_task_id
        while parent_id is not None and parent_id in by_id:
            if parent_id in visited:
                # Tasks merely hanging off a cycle are caught as orphans below
                if parent_id == task.id:
                    problems.append(f"Task {task.id} has a cyclic parent chain")
                    rejected.add(task.id)
                break
            visited.add(parent_id)
            parent_id = by_id[parent_id].parent_task_id

    # Children of quarantined tasks would be orphans
    changed = True
    while changed:
        changed = False
        for task in by_id.values():
            if task.id not in rejected and task.parent_task_id in rejected:
                problems.append(f"Task {task.id} is orphaned by quarantined parent {task.parent_task_id}")
                rejected.add(task.id)
                changed = True

    valid = [t for t in by_id.values() if t.id not in rejected]
    return valid, problems
