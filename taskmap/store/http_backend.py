"""
HTTP Backend for the Remote Store.

Async adapter that talks to the persistence service REST API.

Copyright (c) 2025 TaskMap
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from .base import EntityNotFoundError, RemoteStore, RemoteStoreError
from .models import Group, Task

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class HttpRemoteStore(RemoteStore):
    """Remote store backed by the TaskMap persistence service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Make a request, translating transport and status errors."""
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=json)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise RemoteStoreError(f"{method} {path} failed: {e}") from e

        if response.status_code == 404:
            raise EntityNotFoundError(self._detail(response))
        if response.status_code >= 400:
            raise RemoteStoreError(f"{method} {path} returned {response.status_code}: {self._detail(response)}")
        return response.json()

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            return str(response.json().get("detail", response.text))
        except ValueError:
            return response.text

    @staticmethod
    def _parse(model, data: Any):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise RemoteStoreError(f"Unexpected {model.__name__} payload: {e}") from e

    async def create_group(
        self,
        project_id: str,
        title: str,
        order_index: int,
        group_id: Optional[str] = None
    ) -> Group:
        """Create a group."""
        data = await self._request(
            "POST",
            f"/projects/{project_id}/groups",
            json={"id": group_id, "title": title, "order_index": order_index}
        )
        return self._parse(Group, data)

    async def update_group(self, group_id: str, fields: Dict[str, Any]) -> None:
        """Update group fields."""
        await self._request("PATCH", f"/groups/{group_id}", json=fields)

    async def delete_group(self, group_id: str) -> None:
        """Delete a group."""
        await self._request("DELETE", f"/groups/{group_id}")

    async def list_groups(self, project_id: str) -> List[Group]:
        """List a project's groups."""
        data = await self._request("GET", f"/projects/{project_id}/groups")
        return [self._parse(Group, item) for item in data]

    async def create_task(
        self,
        task_id: str,
        group_id: str,
        parent_task_id: Optional[str],
        title: str,
        order_index: int,
        **defaults: Any
    ) -> Task:
        """Create a task."""
        payload = {
            "id": task_id,
            "group_id": group_id,
            "parent_task_id": parent_task_id,
            "title": title,
            "order_index": order_index,
        }
        payload.update(_jsonable(defaults))
        data = await self._request("POST", "/tasks", json=payload)
        return self._parse(Task, data)

    async def update_task(self, task_id: str, fields: Dict[str, Any]) -> None:
        """Update task fields."""
        await self._request("PATCH", f"/tasks/{task_id}", json=_jsonable(fields))

    async def delete_task(self, task_id: str) -> None:
        """Delete a task."""
        await self._request("DELETE", f"/tasks/{task_id}")

    async def list_tasks(self, project_id: str) -> List[Task]:
        """List every task in a project."""
        data = await self._request("GET", f"/projects/{project_id}/tasks")
        return [self._parse(Task, item) for item in data]

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _jsonable(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Convert datetimes and enums to JSON-friendly values."""
    result = {}
    for key, value in fields.items():
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        elif hasattr(value, "value"):
            value = value.value
        result[key] = value
    return result
