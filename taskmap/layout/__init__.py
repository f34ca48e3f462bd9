"""
TaskMap Layout - graph construction and left-to-right tree layout.

The map is drawn as project -> groups -> tasks, ranked left to right. Any
engine satisfying LayoutEngine can be plugged in; TreeLayout is the
built-in deterministic one.

Copyright (c) 2025 TaskMap
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from ..config import LayoutConfig
from ..tree.collapse import CollapseState
from ..tree.model import PROJECT_NODE_ID, NodeKind, TreeModel

logger = logging.getLogger(__name__)

Position = Tuple[float, float]


@dataclass(frozen=True)
class LayoutNode:
    id: str
    kind: NodeKind
    width: float
    height: float
    label: str = ""


@dataclass(frozen=True)
class LayoutEdge:
    source: str
    target: str


class LayoutEngine(Protocol):
    """Computes top-left positions for a node/edge graph."""

    def layout(self, nodes: Sequence[LayoutNode], edges: Sequence[LayoutEdge]) -> Dict[str, Position]:
        ...


def build_graph(
    project_title: str,
    tree: TreeModel,
    collapse: Optional[CollapseState] = None,
    config: Optional[LayoutConfig] = None
) -> Tuple[List[LayoutNode], List[LayoutEdge]]:
    """
    Build the rendered graph: project root, every group, and visible tasks.

    Children of collapsed nodes are left out.
    """
    config = config or LayoutConfig()
    collapse = collapse or CollapseState()
    nodes = [LayoutNode(PROJECT_NODE_ID, NodeKind.PROJECT, *config.project_size, label=project_title)]
    edges: List[LayoutEdge] = []

    for group in tree.groups:
        nodes.append(LayoutNode(group.id, NodeKind.GROUP, *config.group_size, label=group.title))
        edges.append(LayoutEdge(PROJECT_NODE_ID, group.id))
        if collapse.is_collapsed(group.id):
            continue
        stack = [(group.id, t) for t in reversed(tree.root_tasks_of(group.id))]
        seen: Set[str] = set()
        while stack:
            parent_id, task = stack.pop()
            if task.id in seen:
                continue
            seen.add(task.id)
            nodes.append(LayoutNode(task.id, NodeKind.TASK, *config.task_size, label=task.title))
            edges.append(LayoutEdge(parent_id, task.id))
            if not collapse.is_collapsed(task.id):
                stack.extend((task.id, c) for c in reversed(tree.children_of(task.id)))
    return nodes, edges


class TreeLayout:
    """
    Tidy left-to-right tree layout.

    Ranks are placed by depth, each rank as wide as its widest node plus
    rank_sep. Leaves are stacked top to bottom in input order with node_sep
    between them; a parent is centred on its first and last child. Output
    depends only on the input graph.
    """

    def __init__(self, rank_sep: float = 200, node_sep: float = 50):
        self.rank_sep = rank_sep
        self.node_sep = node_sep

    @classmethod
    def from_config(cls, config: LayoutConfig) -> "TreeLayout":
        return cls(rank_sep=config.rank_sep, node_sep=config.node_sep)

    def layout(self, nodes: Sequence[LayoutNode], edges: Sequence[LayoutEdge]) -> Dict[str, Position]:
        by_id = {n.id: n for n in nodes}
        children: Dict[str, List[str]] = {n.id: [] for n in nodes}
        has_parent: Set[str] = set()
        for edge in edges:
            if edge.source in by_id and edge.target in by_id and edge.target not in has_parent:
                children[edge.source].append(edge.target)
                has_parent.add(edge.target)
        roots = [n.id for n in nodes if n.id not in has_parent]

        depth: Dict[str, int] = {}
        order: List[str] = []
        for root in roots:
            stack = [(root, 0)]
            while stack:
                node_id, d = stack.pop()
                if node_id in depth:
                    continue
                depth[node_id] = d
                order.append(node_id)
                stack.extend((c, d + 1) for c in reversed(children[node_id]))

        rank_width: Dict[int, float] = {}
        for node_id, d in depth.items():
            rank_width[d] = max(rank_width.get(d, 0), by_id[node_id].width)
        rank_x: Dict[int, float] = {}
        x = 0.0
        for d in sorted(rank_width):
            rank_x[d] = x
            x += rank_width[d] + self.rank_sep

        tree_kids = {
            node_id: [c for c in children[node_id] if depth.get(c) == depth[node_id] + 1]
            for node_id in order
        }
        center_y: Dict[str, float] = {}
        cursor = 0.0
        # Leaves are stacked in pre-order so the vertical order follows tree order
        for node_id in order:
            if not tree_kids[node_id]:
                height = by_id[node_id].height
                center_y[node_id] = cursor + height / 2
                cursor += height + self.node_sep
        for node_id in reversed(order):
            kids = tree_kids[node_id]
            if kids:
                center_y[node_id] = (center_y[kids[0]] + center_y[kids[-1]]) / 2

        positions: Dict[str, Position] = {}
        for node_id in order:
            node = by_id[node_id]
            d = depth[node_id]
            left = rank_x[d] + (rank_width[d] - node.width) / 2
            positions[node_id] = (left, center_y[node_id] - node.height / 2)
        return positions


def apply_drag_override(positions: Mapping[str, Position], override: Mapping[str, Position]) -> Dict[str, Position]:
    """Keep mid-drag nodes where the user holds them."""
    merged = dict(positions)
    for node_id, position in override.items():
        if node_id in merged:
            merged[node_id] = position
    return merged


__all__ = [
    "LayoutEdge",
    "LayoutEngine",
    "LayoutNode",
    "Position",
    "TreeLayout",
    "apply_drag_override",
    "build_graph",
]
