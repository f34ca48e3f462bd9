"""
Tests for the remote store: models, in-memory backend, persistence service
and HTTP adapter.

Copyright (c) 2025 TaskMap
"""

import httpx
import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from taskmap.store import get_remote_store
from taskmap.store.base import EntityNotFoundError, RemoteStoreError
from taskmap.store.http_backend import HttpRemoteStore
from taskmap.store.memory_backend import MemoryRemoteStore, get_memory_store
from taskmap.store.models import Group, Task, TaskPatch, TaskStatus, TaskUpdate


class TestModels:
    """Test Pydantic models."""

    def test_group_defaults(self):
        group = Group(project_id="p1", title="Backlog")
        assert group.id
        assert group.order_index == 0
        assert group.created_at is not None

    def test_task_defaults(self):
        task = Task(group_id="g1", title="Write docs")
        assert task.status == TaskStatus.TODO
        assert task.parent_task_id is None
        assert task.is_root
        assert task.estimated_time == 0

    def test_task_update_rejects_reparent_fields(self):
        with pytest.raises(ValidationError):
            TaskUpdate(group_id="g2")
        patch = TaskPatch(group_id="g2", parent_task_id=None)
        assert patch.model_dump(exclude_unset=True) == {"group_id": "g2", "parent_task_id": None}


class TestMemoryRemoteStore:
    """Test in-memory store operations."""

    def test_singleton_pattern(self):
        assert get_memory_store() is get_memory_store()

    def test_factory_uses_memory_by_default(self):
        assert get_remote_store() is get_memory_store()

    @pytest.mark.asyncio
    async def test_create_and_list(self, store):
        group = await store.create_group("p1", "  Backlog ", 0, group_id="g1")
        assert group.id == "g1"
        assert group.title == "Backlog"

        task = await store.create_task("t1", "g1", None, "First ", 0, priority=2)
        assert task.title == "First"
        assert task.priority == 2

        assert [g.id for g in await store.list_groups("p1")] == ["g1"]
        assert [t.id for t in await store.list_tasks("p1")] == ["t1"]
        assert await store.list_tasks("other") == []

    @pytest.mark.asyncio
    async def test_create_task_validates_position(self, store):
        await store.create_group("p1", "A", 0, group_id="g1")
        await store.create_group("p1", "B", 1, group_id="g2")
        await store.create_task("t1", "g1", None, "Parent", 0)

        with pytest.raises(EntityNotFoundError):
            await store.create_task("t2", "missing", None, "x", 0)
        with pytest.raises(EntityNotFoundError):
            await store.create_task("t2", "g1", "ghost", "x", 0)
        with pytest.raises(RemoteStoreError):
            await store.create_task("t2", "g2", "t1", "x", 0)
        with pytest.raises(RemoteStoreError):
            await store.create_task("t1", "g1", None, "dup", 0)

    @pytest.mark.asyncio
    async def test_update_task(self, store):
        await store.create_group("p1", "A", 0, group_id="g1")
        await store.create_task("t1", "g1", None, "Parent", 0)
        await store.create_task("t2", "g1", None, "Child", 1)

        await store.update_task("t2", {"parent_task_id": "t1", "title": " Renamed "})

        task = store.get_task("t2")
        assert task.parent_task_id == "t1"
        assert task.title == "Renamed"

        with pytest.raises(EntityNotFoundError):
            await store.update_task("ghost", {"title": "x"})

    @pytest.mark.asyncio
    async def test_delete_cascades(self, store):
        await store.create_group("p1", "A", 0, group_id="g1")
        await store.create_task("t1", "g1", None, "Parent", 0)
        await store.create_task("t2", "g1", "t1", "Child", 0)
        await store.create_task("t3", "g1", "t2", "Grandchild", 0)
        await store.create_task("t4", "g1", None, "Other", 1)

        await store.delete_task("t1")
        assert [t.id for t in await store.list_tasks("p1")] == ["t4"]

        await store.delete_group("g1")
        assert await store.list_tasks("p1") == []
        assert store.get_group("g1") is None

    @pytest.mark.asyncio
    async def test_fail_next(self, store):
        store.fail_next("create_group")
        with pytest.raises(RemoteStoreError):
            await store.create_group("p1", "A", 0)
        group = await store.create_group("p1", "A", 0)
        assert store.get_group(group.id) is not None

    @pytest.mark.asyncio
    async def test_fail_always(self, store):
        await store.create_group("p1", "A", 0, group_id="g1")
        store.fail_always("update_group")
        for _ in range(2):
            with pytest.raises(RemoteStoreError):
                await store.update_group("g1", {"title": "B"})
        store.fail_always("update_group", enabled=False)
        await store.update_group("g1", {"title": "B"})
        assert store.get_group("g1").title == "B"

    def test_unknown_operation(self, store):
        with pytest.raises(ValueError):
            store.fail_next("explode")

    @pytest.mark.asyncio
    async def test_calls_recorded(self, store):
        await store.create_group("p1", "A", 0, group_id="g1")
        await store.create_task("t1", "g1", None, "x", 0)
        assert store.calls == [("create_group", "g1"), ("create_task", "t1")]

        store.clear()
        assert store.calls == []
        assert await store.list_groups("p1") == []


class TestPersistenceService:
    """Test the FastAPI persistence service."""

    @pytest.fixture
    def client(self):
        from taskmap.store.app import app
        return TestClient(app)

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_group_lifecycle(self, client):
        response = client.post("/projects/p1/groups", json={"id": "g1", "title": "Backlog"})
        assert response.status_code == 200
        assert response.json()["id"] == "g1"

        response = client.patch("/groups/g1", json={"title": "Later"})
        assert response.json() == {"status": "updated"}

        groups = client.get("/projects/p1/groups").json()
        assert [g["title"] for g in groups] == ["Later"]

        assert client.delete("/groups/g1").json() == {"status": "deleted"}
        assert client.delete("/groups/g1").status_code == 404

    def test_task_lifecycle(self, client):
        client.post("/projects/p1/groups", json={"id": "g1", "title": "Backlog"})
        response = client.post("/tasks", json={
            "id": "t1", "group_id": "g1", "title": "Plan", "order_index": 0, "priority": 1
        })
        assert response.status_code == 200
        assert response.json()["priority"] == 1

        client.post("/tasks", json={"id": "t2", "group_id": "g1", "title": "Sub", "parent_task_id": "t1"})
        response = client.patch("/tasks/t2", json={"status": "done"})
        assert response.status_code == 200

        tasks = {t["id"]: t for t in client.get("/projects/p1/tasks").json()}
        assert tasks["t2"]["status"] == "done"

        assert client.delete("/tasks/t1").status_code == 200
        assert client.get("/projects/p1/tasks").json() == []

    def test_errors_map_to_status_codes(self, client):
        client.post("/projects/p1/groups", json={"id": "g1", "title": "A"})
        client.post("/projects/p1/groups", json={"id": "g2", "title": "B"})
        client.post("/tasks", json={"id": "t1", "group_id": "g1", "title": "x"})

        assert client.patch("/tasks/ghost", json={"title": "x"}).status_code == 404
        response = client.post("/tasks", json={"id": "t2", "group_id": "g2", "title": "x", "parent_task_id": "t1"})
        assert response.status_code == 409
        assert client.patch("/tasks/t1", json={"bogus": 1}).status_code == 422


class TestHttpRemoteStore:
    """Test the HTTP adapter against the persistence service."""

    def make_store(self):
        from taskmap.store.app import app
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://taskmap")
        return HttpRemoteStore("http://taskmap", client=client)

    @pytest.mark.asyncio
    async def test_round_trip(self):
        store = self.make_store()
        group = await store.create_group("p1", "Backlog", 0, group_id="g1")
        assert group.id == "g1"

        task = await store.create_task("t1", "g1", None, " Plan ", 0, status=TaskStatus.DONE)
        assert task.title == "Plan"
        assert task.status == TaskStatus.DONE

        await store.update_task("t1", {"title": "Plan v2"})
        await store.update_group("g1", {"order_index": 3})

        tasks = await store.list_tasks("p1")
        groups = await store.list_groups("p1")
        assert tasks[0].title == "Plan v2"
        assert groups[0].order_index == 3

        await store.delete_task("t1")
        await store.delete_group("g1")
        assert await store.list_groups("p1") == []
        await store.close()

    @pytest.mark.asyncio
    async def test_not_found(self):
        store = self.make_store()
        with pytest.raises(EntityNotFoundError):
            await store.delete_task("ghost")
        await store.close()

    @pytest.mark.asyncio
    async def test_conflict_raises_store_error(self):
        store = self.make_store()
        await store.create_group("p1", "A", 0, group_id="g1")
        await store.create_task("t1", "g1", None, "x", 0)
        with pytest.raises(RemoteStoreError):
            await store.create_task("t1", "g1", None, "dup", 0)
        await store.close()

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://taskmap")
        store = HttpRemoteStore("http://taskmap", client=client)
        with pytest.raises(RemoteStoreError):
            await store.update_task("t1", {"title": "x"})
        await store.close()

    @pytest.mark.asyncio
    async def test_unexpected_payload(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"nope": True})),
            base_url="http://taskmap",
        )
        store = HttpRemoteStore("http://taskmap", client=client)
        with pytest.raises(RemoteStoreError):
            await store.create_group("p1", "A", 0)
        await store.close()
