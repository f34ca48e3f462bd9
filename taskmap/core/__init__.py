"""
TaskMap core utilities: event bus and undo/redo history.

Copyright (c) 2025 TaskMap
"""
