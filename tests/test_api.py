"""Tests for the FastAPI server endpoints."""

from __future__ import annotations

import httpx
import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from neuronest.api.middleware import parse_origins
from neuronest.api.server import create_app
from neuronest.config import Settings
from neuronest.orchestrator import Orchestrator


class Device:
    def __init__(self) -> None:
        self.down = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectTimeout("timed out")
        if request.url.path == "/api/device-info":
            return httpx.Response(200, json={"name": "Band-7", "battery": 64, "firmware": "1.4.2"})
        return httpx.Response(200, json={"heartRate": 72, "fingerDetected": True, "eda": 2.0})


@pytest.fixture
def device() -> Device:
    return Device()


@pytest.fixture
def orchestrator(settings: Settings, device: Device) -> Orchestrator:
    return Orchestrator(settings, transport=httpx.MockTransport(device.handler))


@pytest.fixture
async def client(settings: Settings, orchestrator: Orchestrator):
    """Async test client with lifespan (startup / shutdown) fully executed."""
    app = create_app(settings, orchestrator)
    async with LifespanManager(app) as manager:
        transport = ASGITransport(app=manager.app)
        async with AsyncClient(transport=transport, base_url="http://test") as c:
            yield c


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "connected": False, "synthetic": False}


@pytest.mark.asyncio
async def test_connect_poll_and_read(client: AsyncClient, orchestrator: Orchestrator):
    resp = await client.post("/connect", json={"address": "10.0.0.2", "port": 80})
    assert resp.status_code == 200
    assert resp.json()["state"] == "connected"

    assert (await client.get("/reading")).status_code == 404
    await orchestrator.link.poll_once()

    reading = (await client.get("/reading")).json()
    assert reading["heart_rate"] == 72

    body = (await client.get("/prediction")).json()
    assert body["prediction"]["state"] == "Calm"
    assert body["description"]
    assert body["recommendation"]

    status = (await client.get("/status")).json()
    assert status["connected"] is True
    assert status["link"]["address"] == "10.0.0.2"
    assert status["classifier"]["backend"] == "rule-based"

    info = (await client.get("/device-info")).json()
    assert info["firmware"] == "1.4.2"

    resp = await client.post("/disconnect")
    assert resp.json()["state"] == "disconnected"


@pytest.mark.asyncio
async def test_connect_failure_is_502(client: AsyncClient, device: Device):
    device.down = True
    resp = await client.post("/connect", json={"address": "10.0.0.9"})
    assert resp.status_code == 502
    assert resp.json()["kind"] == "timeout"
    assert "timeout" in resp.json()["detail"].lower()

    status = (await client.get("/status")).json()
    assert status["connected"] is False
    assert status["connection_error"] == resp.json()["detail"]


@pytest.mark.asyncio
async def test_synthetic_mode(client: AsyncClient, orchestrator: Orchestrator):
    resp = await client.post("/synthetic/start")
    assert resp.status_code == 200
    assert resp.json()["synthetic"] is True

    await orchestrator.synthetic_link.tick()
    today = (await client.get("/history/today")).json()
    assert len(today) == 1
    assert today[0]["synthetic"] is True

    resp = await client.post("/synthetic/stop")
    assert resp.json()["state"] == "disconnected"
    assert (await client.get("/health")).json()["synthetic"] is False


@pytest.mark.asyncio
async def test_history_endpoints(client: AsyncClient):
    weekly = (await client.get("/history/weekly", params={"days": 3})).json()
    assert len(weekly) == 3
    assert all(day["severity_label"] == "No Data" for day in weekly)
    assert weekly[-1]["is_today"] is True

    backfilled = (await client.get("/history/weekly", params={"backfill": True})).json()
    assert len(backfilled) == 7
    assert all(day["synthetic"] for day in backfilled)

    episodes = (await client.get("/history/episodes")).json()
    assert [e["count"] for e in episodes] == [0] * 7
    assert (await client.get("/history/today")).json() == []


@pytest.mark.asyncio
async def test_prediction_missing_is_404(client: AsyncClient):
    assert (await client.get("/prediction")).status_code == 404
    assert (await client.get("/history/weekly", params={"days": 0})).status_code == 422


@pytest.mark.asyncio
async def test_request_id_header(client: AsyncClient):
    resp = await client.get("/status", headers={"x-request-id": "abc123"})
    assert resp.status_code == 200
    assert resp.headers["x-request-id"] == "abc123"

    generated = await client.get("/health")
    assert len(generated.headers["x-request-id"]) == 12


def test_parse_origins():
    assert parse_origins("*") == ["*"]
    assert parse_origins(" http://a.local, ,http://b.local ") == ["http://a.local", "http://b.local"]
