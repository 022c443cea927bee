"""Integration tests for the status API.

Covers:
- GET /api/task-status - Task view, 404 UNKNOWN and id validation
- GET /api/tasks, GET /api/task-metrics - Listing and counters
- POST /api/tokens/{token_id}/provider - Provider preference registration
- GET /api/tokens/{token_id}, GET /api/providers - Diagnostics
- GET /health - Store connectivity
"""

from datetime import datetime

import httpx
import pytest
import pytest_asyncio
from conftest import FakeChain, make_task
from httpx import ASGITransport, AsyncClient

from pixelninja.app import app
from pixelninja.models.task import Stage, TaskPatch, TaskStatus
from pixelninja.services.image_generation.providers import ProviderRegistry
from pixelninja.services.ipfs.client import IpfsClient


def mock_ipfs() -> IpfsClient:
    return IpfsClient(
        "jwt",
        gateway_domain="gateway.example",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )


@pytest_asyncio.fixture
async def test_client(store):
    """AsyncClient against the app with the in-memory store injected into app.state."""
    app.state.task_store = store
    app.state.chain = None
    app.state.registry = ProviderRegistry.from_keys(openai_key="sk-test")
    app.state.ipfs = mock_ipfs()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def running_task(store, token_id: int = 42):
    task = await store.create(make_task(token_id=token_id))
    return await store.update(
        task.id,
        TaskPatch(status=TaskStatus.IN_PROGRESS, stage=Stage.ART, progress=25, message="Generating artwork"),
    )


@pytest.mark.asyncio
class TestTaskStatus:
    async def test_unknown_task_is_404_unknown(self, test_client):
        response = await test_client.get("/api/task-status", params={"id": "task_1_missing"})

        assert response.status_code == 404
        assert response.json() == {
            "id": "task_1_missing",
            "status": "UNKNOWN",
            "message": "Task not found or expired",
        }

    @pytest.mark.parametrize("task_id", ["../etc/passwd", "task_x_abc", "42"])
    async def test_malformed_id_is_400(self, test_client, task_id):
        response = await test_client.get("/api/task-status", params={"id": task_id})

        assert response.status_code == 400

    async def test_missing_id_is_422(self, test_client):
        response = await test_client.get("/api/task-status")

        assert response.status_code == 422

    async def test_task_view_is_camel_case(self, test_client, store):
        task = await running_task(store)

        response = await test_client.get("/api/task-status", params={"id": task.id})

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == task.id
        assert data["tokenId"] == 42
        assert data["status"] == "IN_PROGRESS"
        assert data["stage"] == "ART"
        assert data["progress"] == 25
        assert data["message"] == "Generating artwork"
        assert data["tokenUri"] is None
        assert "history" not in data
        datetime.fromisoformat(data["createdAt"].replace("Z", "+00:00"))

    async def test_history_on_request(self, test_client, store):
        task = await running_task(store)

        response = await test_client.get("/api/task-status", params={"id": task.id, "history": "true"})

        history = response.json()["history"]
        assert [entry["status"] for entry in history] == ["PENDING", "IN_PROGRESS"]
        assert history[1]["stage"] == "ART"
        times = [datetime.fromisoformat(entry["time"].replace("Z", "+00:00")) for entry in history]
        assert times[0] < times[1]

    async def test_minimal_view(self, test_client, store):
        task = await running_task(store)

        response = await test_client.get(
            "/api/task-status", params={"id": task.id, "minimal": "true", "history": "true"}
        )

        data = response.json()
        assert "message" not in data
        assert "history" not in data
        assert data["progress"] == 25

    async def test_failed_task_is_still_200(self, test_client, store):
        task = await running_task(store)
        await store.update(task.id, TaskPatch(status=TaskStatus.FAILED, message="Image generation failed"))

        response = await test_client.get("/api/task-status", params={"id": task.id})

        assert response.status_code == 200
        assert response.json()["status"] == "FAILED"
        assert response.json()["message"] == "Image generation failed"


@pytest.mark.asyncio
class TestTaskListing:
    async def test_list_and_filter(self, test_client, store):
        await running_task(store, token_id=1)
        await store.create(make_task(token_id=2))

        all_tasks = (await test_client.get("/api/tasks")).json()
        pending = (await test_client.get("/api/tasks", params={"status": "PENDING"})).json()
        by_token = (await test_client.get("/api/tasks", params={"tokenId": 1})).json()

        assert all_tasks["count"] == 2
        assert pending["count"] == 1
        assert pending["tasks"][0]["tokenId"] == 2
        assert by_token["tasks"][0]["status"] == "IN_PROGRESS"

    async def test_invalid_status_filter(self, test_client):
        response = await test_client.get("/api/tasks", params={"status": "DONE"})

        assert response.status_code == 422

    async def test_metrics(self, test_client, store):
        task = await running_task(store)
        await store.update(task.id, TaskPatch(status=TaskStatus.TIMEOUT, message="Deadline exceeded"))
        await store.create(make_task(token_id=43))

        data = (await test_client.get("/api/task-metrics")).json()

        assert data["created"] == 2
        assert data["active"] == 1
        assert data["timedOut"] == 1
        assert data["averageCompletionSeconds"] is None


@pytest.mark.asyncio
class TestTokenEndpoints:
    async def test_register_provider_preference(self, test_client, store):
        response = await test_client.post(
            "/api/tokens/5/provider",
            json={"provider": "stability", "stylePreset": "anime", "favouriteColour": "teal"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "tokenId": 5,
            "providerRequest": {
                "provider": "stability",
                "model": "stable-diffusion-xl-1024-v1-0",
                "stylePreset": "anime",
            },
        }
        assert (await store.get_provider_preference(5)).style_preset == "anime"

    @pytest.mark.parametrize(
        "body",
        [
            {"provider": "midjourney"},
            {"provider": "dalle", "quality": "ultra"},
            {"stylePreset": "anime"},
        ],
    )
    async def test_invalid_provider_request(self, test_client, store, body):
        response = await test_client.post("/api/tokens/5/provider", json=body)

        assert response.status_code == 422
        assert await store.get_provider_preference(5) is None

    async def test_token_diagnostics(self, test_client, store):
        chain = FakeChain()
        chain.owners[42] = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
        app.state.chain = chain
        task = await running_task(store)
        await store.update(task.id, TaskPatch(artifact={"metadata_cid": "bafymeta"}))

        data = (await test_client.get("/api/tokens/42")).json()

        assert data["owner"] == "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
        assert data["tokenUri"] is None
        assert data["priceWei"] == str(10**15)
        assert data["metadataUrl"] == "https://gateway.example/ipfs/bafymeta"
        assert data["task"]["id"] == task.id

    async def test_token_without_task(self, test_client):
        data = (await test_client.get("/api/tokens/7")).json()

        assert data["task"] is None
        assert data["owner"] is None
        assert data["metadataUrl"] is None

    async def test_providers(self, test_client):
        data = (await test_client.get("/api/providers")).json()

        assert data["dalle"]["enabled"] is True
        assert data["huggingface"]["enabled"] is False
        assert "stylePreset" in data["stability"]["options"]


@pytest.mark.asyncio
class TestHealth:
    async def test_healthy_with_sql_store(self, test_client, sql_store):
        app.state.task_store = sql_store

        response = await test_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_unhealthy_without_store(self, test_client):
        app.state.task_store = None

        response = await test_client.get("/health")

        assert response.status_code == 503
        assert response.json() == {"status": "unhealthy"}

    async def test_routes_need_a_store(self, test_client):
        app.state.task_store = None

        response = await test_client.get("/api/task-status", params={"id": "task_1_abc"})

        assert response.status_code == 503
