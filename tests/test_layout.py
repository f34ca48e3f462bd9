"""
Tests for graph building and tree layout.

Copyright (c) 2025 TaskMap
"""

from datetime import datetime, timezone

import pytest

from taskmap.config import LayoutConfig
from taskmap.layout import LayoutEdge, LayoutNode, TreeLayout, apply_drag_override, build_graph
from taskmap.store.models import Group, Task
from taskmap.tree.collapse import CollapseState
from taskmap.tree.model import PROJECT_NODE_ID, NodeKind, TreeModel

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def tree():
    groups = [Group(id="g1", project_id="p", title="G", created_at=T0)]
    tasks = [
        Task(id="a", group_id="g1", title="A", order_index=0, created_at=T0),
        Task(id="b", group_id="g1", title="B", order_index=1, created_at=T0),
        Task(id="a1", group_id="g1", parent_task_id="a", title="A1", created_at=T0),
    ]
    return TreeModel(groups, tasks)


class TestBuildGraph:

    def test_nodes_and_edges(self, tree):
        nodes, edges = build_graph("Launch", tree)

        assert [n.id for n in nodes] == [PROJECT_NODE_ID, "g1", "a", "a1", "b"]
        assert nodes[0].kind == NodeKind.PROJECT
        assert nodes[0].label == "Launch"
        assert (nodes[0].width, nodes[0].height) == (200, 60)
        assert (nodes[1].width, nodes[1].height) == (160, 50)
        assert (nodes[2].width, nodes[2].height) == (150, 40)
        assert LayoutEdge("a", "a1") in edges
        assert LayoutEdge(PROJECT_NODE_ID, "g1") in edges

    def test_collapsed_children_excluded(self, tree):
        nodes, edges = build_graph("Launch", tree, CollapseState({"a"}))
        assert "a1" not in [n.id for n in nodes]

        nodes, _ = build_graph("Launch", tree, CollapseState({"g1"}))
        assert [n.id for n in nodes] == [PROJECT_NODE_ID, "g1"]


class TestTreeLayout:

    def test_left_to_right_ranks(self, tree):
        nodes, edges = build_graph("Launch", tree)
        positions = TreeLayout().layout(nodes, edges)

        assert positions[PROJECT_NODE_ID][0] == 0
        assert positions["g1"][0] == 400
        assert positions["a"][0] == 760
        assert positions["b"][0] == 760
        assert positions["a1"][0] == 1110

    def test_leaves_stack_in_tree_order(self, tree):
        nodes, edges = build_graph("Launch", tree)
        positions = TreeLayout().layout(nodes, edges)

        # a1 then b are the leaves; a is centred on a1
        assert positions["a1"][1] == 0
        assert positions["b"][1] == 90
        assert positions["a"][1] == positions["a1"][1]
        assert positions["a"][1] < positions["b"][1]

    def test_parent_centred_on_children(self):
        nodes = [
            LayoutNode("r", NodeKind.GROUP, 100, 20),
            LayoutNode("x", NodeKind.TASK, 100, 20),
            LayoutNode("y", NodeKind.TASK, 100, 20),
        ]
        edges = [LayoutEdge("r", "x"), LayoutEdge("r", "y")]
        positions = TreeLayout(rank_sep=10, node_sep=10).layout(nodes, edges)

        assert positions["x"] == (110, 0)
        assert positions["y"] == (110, 30)
        assert positions["r"] == (0, 15)

    def test_deterministic(self, tree):
        nodes, edges = build_graph("Launch", tree)
        layout = TreeLayout.from_config(LayoutConfig())
        assert layout.layout(nodes, edges) == layout.layout(list(nodes), list(edges))

    def test_cyclic_edges_terminate(self):
        nodes = [LayoutNode("a", NodeKind.TASK, 10, 10), LayoutNode("b", NodeKind.TASK, 10, 10)]
        edges = [LayoutEdge("a", "b"), LayoutEdge("b", "a")]
        positions = TreeLayout().layout(nodes, edges)
        assert positions == {}


class TestDragOverride:

    def test_override_known_nodes_only(self):
        positions = {"a": (0, 0), "b": (10, 10)}
        merged = apply_drag_override(positions, {"a": (5, 5), "ghost": (1, 1)})
        assert merged == {"a": (5, 5), "b": (10, 10)}
        assert positions["a"] == (0, 0)
