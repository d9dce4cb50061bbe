"""
Tests for the Flywheel HTTP API
"""

import httpx
import pytest

import config.config as config_module
import flywheel.database.engine as engine_module
from api_server import app
from flywheel.services.cycle import set_cycle_scheduler
from flywheel.services.cycle.rate_limiter import GlobalRateLimiter
from flywheel.services.cycle.scheduler import CycleScheduler


API_KEY = "test-api-key"
AUTH = {"X-API-Key": API_KEY}


@pytest.fixture
async def client(session_maker, monkeypatch):
    monkeypatch.setattr(engine_module, "AsyncSessionLocal", session_maker)
    monkeypatch.setattr(config_module, "FLYWHEEL_API_KEY", API_KEY)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def running_scheduler(session_maker, fake_executor, clock):
    scheduler = CycleScheduler(
        executor=fake_executor,
        session_maker=session_maker,
        rate_limiter=GlobalRateLimiter(max_operations=30, window_seconds=60),
        clock=clock,
    )
    set_cycle_scheduler(scheduler)
    yield scheduler
    set_cycle_scheduler(None)


async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "running"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


async def test_status_from_database(client, make_token):
    token_id = await make_token()

    response = await client.get(f"/api/flywheel/tokens/{token_id}/status")

    assert response.status_code == 200
    body = response.json()
    assert body["phase"] == "buy"
    assert body["buy_count"] == 0
    assert body["cycle_size_buys"] == 5
    assert body["source"] == "database"


async def test_status_unknown_token(client):
    response = await client.get("/api/flywheel/tokens/999/status")
    assert response.status_code == 404
    assert response.json() == {"detail": "Token not found"}


async def test_get_config(client, make_token):
    token_id = await make_token()

    response = await client.get(f"/api/flywheel/tokens/{token_id}/config")

    assert response.status_code == 200
    assert response.json()["algorithm_mode"] == "simple"


async def test_update_config_requires_api_key(client, make_token):
    token_id = await make_token()

    response = await client.put(f"/api/flywheel/tokens/{token_id}/config", json={"cycle_size_buys": 3})
    assert response.status_code == 401

    response = await client.put(
        f"/api/flywheel/tokens/{token_id}/config",
        json={"cycle_size_buys": 3},
        headers={"X-API-Key": "wrong"},
    )
    assert response.status_code == 401


async def test_update_config(client, make_token):
    token_id = await make_token()

    response = await client.put(
        f"/api/flywheel/tokens/{token_id}/config",
        json={"cycle_size_buys": 3, "job_interval_seconds": 600},
        headers=AUTH,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["config"]["cycle_size_buys"] == 3
    assert body["warnings"] == []


@pytest.mark.parametrize(
    "payload",
    [
        {"algorithm_mode": "rebalance"},
        {"cycle_size_sells": 0},
        {"surprise": 1},
    ],
)
async def test_update_config_rejects_invalid(client, make_token, payload):
    token_id = await make_token()

    response = await client.put(f"/api/flywheel/tokens/{token_id}/config", json=payload, headers=AUTH)

    assert response.status_code == 422
    body = response.json()
    assert body["message"]
    assert body["errors"]

    config = (await client.get(f"/api/flywheel/tokens/{token_id}/config")).json()
    assert config["algorithm_mode"] == "simple"
    assert config["cycle_size_sells"] == 5


async def test_trigger_without_scheduler(client, make_token):
    token_id = await make_token()

    response = await client.post(f"/api/flywheel/tokens/{token_id}/trigger", headers=AUTH)

    assert response.status_code == 503


async def test_trigger_and_job_status(client, make_token, running_scheduler):
    token_id = await make_token()

    response = await client.post(f"/api/flywheel/tokens/{token_id}/trigger", headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["result"] == "traded"
    assert body["status"]["buy_count"] == 1
    assert body["status"]["source"] == "memory"

    trades = (await client.get(f"/api/flywheel/tokens/{token_id}/trades")).json()
    assert len(trades) == 1
    assert trades[0]["success"] is True

    job_status = (await client.get("/api/flywheel/job/status")).json()
    assert job_status["results"] == {"traded": 1}

    missing = await client.post("/api/flywheel/tokens/777/trigger", headers=AUTH)
    assert missing.status_code == 404


async def test_job_status_without_scheduler(client):
    response = await client.get("/api/flywheel/job/status")
    assert response.json()["running"] is False


async def test_reconcile_and_audit(client, make_launch):
    await make_launch()
    await make_launch()

    response = await client.post("/api/flywheel/reconcile", headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {"checked": 2, "linked": 0, "created": 2, "partial": 0, "repaired": 0, "failed": 0}

    audit = (await client.get("/api/flywheel/audit", headers=AUTH)).json()
    assert audit["healthy"] is True
    assert audit["user_tokens"] == 2


async def test_reconcile_requires_api_key(client):
    response = await client.post("/api/flywheel/reconcile")
    assert response.status_code == 401
