"""Tests for suspicious activity detection"""

from unittest.mock import AsyncMock

import pytest

from src.models.audit import AccessAction
from src.services.security_alerts import SecurityAlertDetector


@pytest.fixture
def detector(store, reporter, clock):
    return SecurityAlertDetector(store, error_reporter=reporter, clock=clock)


async def _failed_logins(seed_events, identity: str, count: int):
    await seed_events(
        count,
        user_id=identity,
        action="failed_login",
        resource_type="user_profile",
        status="failed",
        severity="warning",
    )


async def _unauthorized(seed_events, identity: str, count: int):
    await seed_events(
        count,
        user_id=identity,
        action="unauthorized_access",
        resource_type="scan",
        status="blocked",
        severity="warning",
    )


class TestDetectSuspiciousActivity:
    """Thresholds within the one-hour lookback"""

    @pytest.mark.asyncio
    async def test_five_failed_logins_suspicious(self, detector, seed_events):
        await _failed_logins(seed_events, "user-1", 5)

        result = await detector.detect_suspicious_activity("user-1")

        assert result.suspicious is True
        assert result.reason == "Multiple failed login attempts"
        assert result.count == 5
        assert result.window_minutes == 60

    @pytest.mark.asyncio
    async def test_four_failed_logins_not_suspicious(self, detector, seed_events):
        await _failed_logins(seed_events, "user-1", 4)

        result = await detector.detect_suspicious_activity("user-1")

        assert result.suspicious is False
        assert result.reason is None
        assert result.error is False

    @pytest.mark.asyncio
    async def test_three_unauthorized_attempts_suspicious(self, detector, seed_events):
        await _unauthorized(seed_events, "user-2", 3)

        result = await detector.detect_suspicious_activity("user-2")

        assert result.suspicious is True
        assert result.reason == "Multiple unauthorized access attempts"
        assert result.count == 3

    @pytest.mark.asyncio
    async def test_failed_logins_checked_first(self, detector, seed_events):
        await _unauthorized(seed_events, "user-3", 3)
        await _failed_logins(seed_events, "user-3", 6)

        result = await detector.detect_suspicious_activity("user-3")

        assert result.reason == "Multiple failed login attempts"
        assert result.count == 6

    @pytest.mark.asyncio
    async def test_entries_outside_lookback_ignored(self, detector, seed_events, clock):
        await _failed_logins(seed_events, "user-1", 5)
        clock.advance(minutes=61)

        result = await detector.detect_suspicious_activity("user-1")

        assert result.suspicious is False

    @pytest.mark.asyncio
    async def test_other_identities_ignored(self, detector, seed_events):
        await _failed_logins(seed_events, "user-1", 5)

        result = await detector.detect_suspicious_activity("user-2")

        assert result.suspicious is False

    @pytest.mark.asyncio
    async def test_store_failure_degrades(self, reporter, clock):
        store = AsyncMock()
        store.query_events.side_effect = RuntimeError("db down")
        detector = SecurityAlertDetector(store, error_reporter=reporter, clock=clock)

        result = await detector.detect_suspicious_activity("user-1")

        assert result.suspicious is False
        assert result.error is True
        assert len(reporter.reports) == 1

    @pytest.mark.asyncio
    async def test_alert_form(self, detector, seed_events):
        await _failed_logins(seed_events, "user-1", 5)

        alert = (await detector.detect_suspicious_activity("user-1")).to_alert()

        assert alert.identity == "user-1"
        assert alert.count == 5


class TestGetSecurityAlerts:
    """Recent security events across identities"""

    @pytest.mark.asyncio
    async def test_returns_security_events_only(self, detector, seed_events):
        await _failed_logins(seed_events, "user-1", 2)
        await _unauthorized(seed_events, "user-2", 1)
        await seed_events(3, user_id="user-3", action="read", resource_type="scan")

        alerts = await detector.get_security_alerts()

        assert len(alerts) == 3
        assert {a.action for a in alerts} == {AccessAction.FAILED_LOGIN, AccessAction.UNAUTHORIZED_ACCESS}

    @pytest.mark.asyncio
    async def test_store_failure_returns_empty(self, reporter, clock):
        store = AsyncMock()
        store.query_events.side_effect = RuntimeError("db down")
        detector = SecurityAlertDetector(store, error_reporter=reporter, clock=clock)

        assert await detector.get_security_alerts() == []

    @pytest.mark.asyncio
    async def test_malformed_row_returns_empty(self, reporter, clock):
        store = AsyncMock()
        store.query_events.return_value = [{"entry_id": "e-1", "action": "failed_login"}]
        detector = SecurityAlertDetector(store, error_reporter=reporter, clock=clock)

        assert await detector.get_security_alerts() == []
        assert reporter.reports[0][1] == "SecurityAlertDetector.get_security_alerts"
