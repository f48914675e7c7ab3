"""Tests for the HTTP surface"""

import pytest
from fastapi.testclient import TestClient

from src.api.main import app


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_log_flush_and_read_trail(client):
    response = client.post("/audit/logs", json={
        "user_id": "user-1",
        "action": "read",
        "resource_type": "scan",
        "resource_id": "scan-1",
        "metadata": {"medication_name": "Aspirin", "dosage": "100mg"},
    })
    assert response.status_code == 202
    assert response.json() == {"accepted": True}

    flushed = client.post("/audit/flush").json()
    assert flushed == {"flushed": True, "pending": 0}

    trail = client.get("/audit/trail/user-1").json()
    assert trail["total_events"] == 1
    assert trail["events"][0]["metadata"] == {"medication_name": "[REDACTED]", "dosage": "100mg"}


def test_invalid_entry_not_accepted(client):
    response = client.post("/audit/logs", json={
        "user_id": "user-1",
        "action": "teleport",
        "resource_type": "scan",
    })

    assert response.status_code == 202
    assert response.json() == {"accepted": False}


def test_suspicious_activity(client):
    for _ in range(5):
        client.post("/audit/logs", json={
            "user_id": "user-9",
            "action": "failed_login",
            "resource_type": "user_profile",
            "status": "failed",
        })
    client.post("/audit/flush")

    result = client.get("/audit/suspicious/user-9").json()

    assert result["suspicious"] is True
    assert result["reason"] == "Multiple failed login attempts"


def test_rate_limit_check_and_status(client):
    decision = client.post("/rate-limit/check", json={
        "identity": "device-1",
        "action": "api_request",
        "tier": "free",
    }).json()
    assert decision["allowed"] is True
    assert decision["remaining"] == 9

    status = client.get("/rate-limit/status/device-1", params={"tier": "premium"}).json()
    assert status["tier"] == "premium"
    assert status["remaining"]["today"] == -1


def test_rate_limit_reset(client):
    response = client.post("/rate-limit/reset/device-1")

    assert response.status_code == 200
    assert response.json() == {"identity": "device-1", "reset": True}
