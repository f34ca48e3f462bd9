"""
Collapse state for the map view.

View-only set of node ids whose children are hidden from rendering and
keyboard navigation. Nothing here is persisted.

Copyright (c) 2025 TaskMap
"""

import logging
from typing import Iterable, List, Set

from .model import TreeModel

logger = logging.getLogger(__name__)


class CollapseState:
    """Set of collapsed task and group ids."""

    def __init__(self, collapsed: Iterable[str] = ()):
        self._collapsed: Set[str] = set(collapsed)

    def is_collapsed(self, node_id: str) -> bool:
        return node_id in self._collapsed

    def collapse(self, node_id: str) -> None:
        self._collapsed.add(node_id)

    def expand(self, node_id: str) -> bool:
        """Expand a node. Returns True if it was collapsed."""
        if node_id in self._collapsed:
            self._collapsed.discard(node_id)
            return True
        return False

    def toggle(self, node_id: str) -> bool:
        """Flip a node's state. Returns the new collapsed flag."""
        if node_id in self._collapsed:
            self._collapsed.discard(node_id)
            return False
        self._collapsed.add(node_id)
        return True

    def expand_ancestors(self, tree: TreeModel, node_id: str) -> List[str]:
        """
        Expand every collapsed ancestor of node_id, its group included.

        Returns:
            Ids that were expanded
        """
        expanded = []
        for ancestor in tree.ancestors_of(node_id):
            if self.expand(ancestor.id):
                expanded.append(ancestor.id)
        group = tree.group_of_node(node_id)
        if group is not None and group.id != node_id and self.expand(group.id):
            expanded.append(group.id)
        if expanded:
            logger.debug(f"Expanded {expanded} to reveal {node_id}")
        return expanded

    def is_hidden(self, tree: TreeModel, node_id: str) -> bool:
        """True if any ancestor (or the owning group) is collapsed."""
        if any(self.is_collapsed(a.id) for a in tree.ancestors_of(node_id)):
            return True
        group = tree.group_of_node(node_id)
        return group is not None and group.id != node_id and self.is_collapsed(group.id)

    def prune(self, existing_ids: Iterable[str]) -> None:
        """Forget ids of nodes that no longer exist."""
        self._collapsed &= set(existing_ids)

    @property
    def ids(self) -> Set[str]:
        return set(self._collapsed)

    def __len__(self) -> int:
        return len(self._collapsed)
