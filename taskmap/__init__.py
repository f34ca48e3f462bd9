"""
TaskMap - hierarchical task outline engine.

Provides the in-memory tree model, optimistic synchronization against a
remote store, and the keyboard/drag interaction controllers for a
mind-map style task editor.

Copyright (c) 2025 TaskMap
"""

__version__ = "0.1.0"
