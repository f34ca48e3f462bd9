"""
Base Remote Store Interface.

Copyright (c) 2025 TaskMap
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .models import Group, Task


class RemoteStoreError(Exception):
    """A persistence call failed."""
    pass


class EntityNotFoundError(RemoteStoreError):
    """The referenced group or task does not exist in the store."""
    pass


class RemoteStore(ABC):
    """
    Persistence operations the sync engine invokes.

    Every call may fail; failure is reported by raising RemoteStoreError
    (or any exception). The engine never needs more than success/failure.
    """

    @abstractmethod
    async def create_group(
        self,
        project_id: str,
        title: str,
        order_index: int,
        group_id: Optional[str] = None
    ) -> Group:
        """
        Create a group.

        Args:
            project_id: Owning project
            title: Group title
            order_index: Position among the project's groups
            group_id: Client-generated identifier to keep

        Returns:
            The stored group, possibly with normalized fields
        """
        pass

    @abstractmethod
    async def update_group(self, group_id: str, fields: Dict[str, Any]) -> None:
        """Apply a field-level update to a group."""
        pass

    @abstractmethod
    async def delete_group(self, group_id: str) -> None:
        """Delete a group and, server-side, all of its tasks."""
        pass

    @abstractmethod
    async def create_task(
        self,
        task_id: str,
        group_id: str,
        parent_task_id: Optional[str],
        title: str,
        order_index: int,
        **defaults: Any
    ) -> Task:
        """
        Create a task with a client-generated identifier.

        Extra keyword arguments carry the remaining task fields
        (status, priority, scheduled_at, ...).
        """
        pass

    @abstractmethod
    async def update_task(self, task_id: str, fields: Dict[str, Any]) -> None:
        """Apply a field-level update (including reparent fields) to a task."""
        pass

    @abstractmethod
    async def delete_task(self, task_id: str) -> None:
        """Delete a task."""
        pass

    async def list_groups(self, project_id: str) -> List[Group]:
        """List a project's groups. Optional for write-only adapters."""
        raise NotImplementedError

    async def list_tasks(self, project_id: str) -> List[Task]:
        """List every task of a project's groups. Optional for write-only adapters."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release adapter resources."""
        return None
