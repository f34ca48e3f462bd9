"""
Persistence Data Models.

Copyright (c) 2025 TaskMap
"""

from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
import uuid


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Task status."""
    TODO = "todo"
    DONE = "done"


class Group(BaseModel):
    """Ordered container of tasks within a project."""
    id: str = Field(default_factory=_new_id)
    project_id: str
    title: str
    order_index: int = 0
    created_at: datetime = Field(default_factory=_utcnow)


class Task(BaseModel):
    """A unit of work, optionally nested under another task of the same group."""
    id: str = Field(default_factory=_new_id)
    group_id: str
    parent_task_id: Optional[str] = None
    title: str
    status: TaskStatus = TaskStatus.TODO
    priority: Optional[int] = None
    order_index: int = 0
    scheduled_at: Optional[datetime] = None
    estimated_time: int = 0
    actual_time_minutes: int = 0
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_root(self) -> bool:
        return self.parent_task_id is None


class GroupUpdate(BaseModel):
    """Field-level group update."""
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    order_index: Optional[int] = None


class TaskUpdate(BaseModel):
    """Field-level task update. Reparenting goes through a move, not here."""
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[int] = None
    order_index: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    estimated_time: Optional[int] = None
    actual_time_minutes: Optional[int] = None


class TaskPatch(TaskUpdate):
    """Update accepted by the store, including reparent fields."""
    group_id: Optional[str] = None
    parent_task_id: Optional[str] = None
