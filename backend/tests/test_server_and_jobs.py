"""
App-level endpoints, the validation error shape, and the monthly reset job.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from job_runner import run_monthly_usage_reset
from flowforge.services.usage_service import usage_service


def test_root(client):
    body = client.get("/api").json()
    assert body["service"] == "FlowForge AI"
    assert body["platforms"] == ["n8n", "zapier", "make", "power_automate"]


def test_health(client):
    assert client.get("/api/health").json()["status"] == "healthy"


def test_ping_default(client, monkeypatch):
    monkeypatch.delenv("PING_MESSAGE", raising=False)
    assert client.get("/api/ping").json() == {"message": "ping"}


def test_ping_from_env(client, monkeypatch):
    monkeypatch.setenv("PING_MESSAGE", "pong")
    assert client.get("/api/ping").json() == {"message": "pong"}


def test_validation_error_shape(client):
    response = client.post("/api/workflows/validate", content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Invalid request"
    assert isinstance(body["details"], list)


@pytest.mark.asyncio
async def test_monthly_usage_reset_job():
    users = [
        {"uid": "u1", "usage": {"n8n": {"used": 3, "limit": 3, "is_primary": True}}},
        {"uid": "u2", "usage": {}},
        {"uid": "u3", "usage": {"make": {"used": 7, "limit": 10, "is_primary": False}}},
    ]
    cursor = MagicMock()
    cursor.__aiter__.return_value = users
    db = MagicMock()
    db.users.find = MagicMock(return_value=cursor)

    reset = AsyncMock(side_effect=[{}, ValueError("Failed to reset monthly usage")])
    with patch("job_runner.database.get_db", return_value=db), \
            patch.object(usage_service, "reset_monthly_usage", new=reset):
        result = await run_monthly_usage_reset()

    assert result == {"message": "Monthly usage reset: 1 users", "count": 1}
    assert [c.args[0] for c in reset.call_args_list] == ["u1", "u3"]
