"""
TaskMap tree projection and view state.

Copyright (c) 2025 TaskMap
"""

from .collapse import CollapseState
from .model import PROJECT_NODE_ID, FlatRow, NodeKind, TreeModel, validate_forest

__all__ = [
    "CollapseState",
    "FlatRow",
    "NodeKind",
    "PROJECT_NODE_ID",
    "TreeModel",
    "validate_forest",
]
