"""
TaskMap Persistence Service API.

Provides a REST API over the in-memory remote store so the HTTP adapter has
a real counterpart during development and tests.

Copyright (c) 2025 TaskMap
"""

import logging
import os
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from ..config import configure_logging
from ..config.validator import validate_startup
from .base import EntityNotFoundError, RemoteStoreError
from .memory_backend import get_memory_store
from .models import Group, GroupUpdate, Task, TaskPatch, TaskStatus

# Configure logging
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI(
    title="TaskMap Persistence Service",
    description="Persistence for task groups and hierarchical tasks",
    version="0.1.0"
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request/Response Models
class CreateGroupRequest(BaseModel):
    id: Optional[str] = None
    title: str
    order_index: int = 0

class CreateTaskRequest(BaseModel):
    id: str
    group_id: str
    parent_task_id: Optional[str] = None
    title: str
    order_index: int = 0
    status: TaskStatus = TaskStatus.TODO
    priority: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    estimated_time: int = 0
    actual_time_minutes: int = 0
    created_at: Optional[datetime] = None


class HealthResponse(BaseModel):
    status: str
    backend: str
    timestamp: datetime


def _raise_http(error: RemoteStoreError) -> None:
    if isinstance(error, EntityNotFoundError):
        raise HTTPException(status_code=404, detail=str(error))
    raise HTTPException(status_code=409, detail=str(error))


# Health endpoint
@app.get("/health", response_model=HealthResponse)
async def health():
    """Health check endpoint."""
    return HealthResponse(status="healthy", backend="memory", timestamp=datetime.now(timezone.utc))


# Group endpoints
@app.post("/projects/{project_id}/groups", response_model=Group)
async def create_group(project_id: str, request: CreateGroupRequest):
    """Create a group in a project."""
    store = get_memory_store()
    try:
        return await store.create_group(
            project_id, request.title, request.order_index, group_id=request.id
        )
    except RemoteStoreError as e:
        _raise_http(e)


@app.get("/projects/{project_id}/groups", response_model=List[Group])
async def list_groups(project_id: str):
    """List a project's groups."""
    return await get_memory_store().list_groups(project_id)


@app.patch("/groups/{group_id}")
async def update_group(group_id: str, request: GroupUpdate):
    """Update group fields."""
    try:
        await get_memory_store().update_group(group_id, request.model_dump(exclude_unset=True))
    except RemoteStoreError as e:
        _raise_http(e)
    return {"status": "updated"}


@app.delete("/groups/{group_id}")
async def delete_group(group_id: str):
    """Delete a group and its tasks."""
    try:
        await get_memory_store().delete_group(group_id)
    except RemoteStoreError as e:
        _raise_http(e)
    return {"status": "deleted"}


# Task endpoints
@app.post("/tasks", response_model=Task)
async def create_task(request: CreateTaskRequest):
    """Create a task with a client-generated ID."""
    extra = request.model_dump(
        exclude={"id", "group_id", "parent_task_id", "title", "order_index"},
        exclude_none=True
    )
    try:
        return await get_memory_store().create_task(
            request.id,
            request.group_id,
            request.parent_task_id,
            request.title,
            request.order_index,
            **extra
        )
    except RemoteStoreError as e:
        _raise_http(e)


@app.get("/projects/{project_id}/tasks", response_model=List[Task])
async def list_tasks(project_id: str):
    """List every task in a project."""
    return await get_memory_store().list_tasks(project_id)


@app.patch("/tasks/{task_id}")
async def update_task(task_id: str, request: TaskPatch):
    """Update task fields, including reparent fields."""
    try:
        await get_memory_store().update_task(task_id, request.model_dump(exclude_unset=True))
    except RemoteStoreError as e:
        _raise_http(e)
    return {"status": "updated"}


@app.delete("/tasks/{task_id}")
async def delete_task(task_id: str):
    """Delete a task and its descendants."""
    try:
        await get_memory_store().delete_task(task_id)
    except RemoteStoreError as e:
        _raise_http(e)
    return {"status": "deleted"}


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    validate_startup(exit_on_error=True)
    uvicorn.run(app, host="0.0.0.0", port=8020)
