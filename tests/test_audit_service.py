"""Tests for the audit service facade"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from src.models.audit import AccessAction, AuditSeverity, AuditStatus, ResourceType
from src.services.audit_queue import AuditQueue
from src.services.audit_service import AuditService
from src.services.redactor import REDACTION_MARKER
from src.utils.errors import PersistenceError


@pytest.fixture
def audit_service(store, reporter, clock):
    queue = AuditQueue(store, error_reporter=reporter, batch_size=50, flush_interval=3600, clock=clock)
    return AuditService(store, error_reporter=reporter, queue=queue, clock=clock)


class TestRecorders:
    """Convenience recorders build the right entries"""

    @pytest.mark.asyncio
    async def test_log_access_redacts_and_stores(self, audit_service, store):
        await audit_service.log_access({
            "user_id": "user123",
            "action": "read",
            "resource_type": "scan",
            "resource_id": "scan456",
            "metadata": {"medication_name": "Aspirin"},
        })
        await audit_service.flush()

        record = store.records[0]
        assert record["user_id"] == "user123"
        assert record["action"] == "read"
        assert record["resource_type"] == "scan"
        assert record["metadata"]["medication_name"] == REDACTION_MARKER

    @pytest.mark.asyncio
    async def test_log_scan_access(self, audit_service):
        await audit_service.log_scan_access("user-1", "scan-1", "create", {"source": "camera"})

        entry = audit_service.queue._buffer[0]
        assert entry.resource.type == ResourceType.SCAN
        assert entry.resource.id == "scan-1"
        assert entry.action == AccessAction.CREATE

    @pytest.mark.asyncio
    async def test_medication_lookup_records_presence_only(self, audit_service):
        await audit_service.log_medication_lookup("user-1", {"medication_name": "Warfarin", "source": "barcode"})

        entry = audit_service.queue._buffer[0]
        assert entry.metadata == {"source": "barcode", "has_medication": True}
        assert "Warfarin" not in entry.model_dump_json()

    @pytest.mark.asyncio
    async def test_failed_login(self, audit_service):
        await audit_service.log_login("user-1", "failed", ip_address="10.0.0.1", device_info={"platform": "web"})

        entry = audit_service.queue._buffer[0]
        assert entry.action == AccessAction.FAILED_LOGIN
        assert entry.status == AuditStatus.FAILED
        assert entry.severity == AuditSeverity.WARNING
        assert entry.origin.device_info.platform == "web"

    @pytest.mark.asyncio
    async def test_successful_login(self, audit_service):
        await audit_service.log_login("user-1", "success")

        entry = audit_service.queue._buffer[0]
        assert entry.action == AccessAction.LOGIN
        assert entry.severity == AuditSeverity.INFO

    @pytest.mark.asyncio
    async def test_unauthorized_access_flushed_immediately(self, audit_service, store):
        await audit_service.log_unauthorized_access(None, "medical_history", "mh-1")
        await audit_service.queue.wait_for_pending()

        assert store.records[0]["user_id"] == "anonymous"
        assert store.records[0]["severity"] == "critical"

    @pytest.mark.asyncio
    async def test_data_export_is_warning(self, audit_service):
        await audit_service.log_data_export("user-1", "lab_result")

        entry = audit_service.queue._buffer[0]
        assert entry.action == AccessAction.EXPORT
        assert entry.severity == AuditSeverity.WARNING


class TestQueries:
    """Trail, statistics and detection"""

    @pytest.mark.asyncio
    async def test_audit_trail_newest_first(self, audit_service, clock):
        await audit_service.log_scan_access("user-1", "scan-1", "read")
        clock.advance(minutes=5)
        await audit_service.log_scan_access("user-1", "scan-2", "read")
        await audit_service.log_scan_access("user-2", "scan-3", "read")
        await audit_service.flush()

        trail = await audit_service.get_audit_trail("user-1")

        assert [e.resource.id for e in trail] == ["scan-2", "scan-1"]

    @pytest.mark.asyncio
    async def test_audit_trail_filters(self, audit_service, clock):
        await audit_service.log_scan_access("user-1", "scan-1", "read")
        await audit_service.log_scan_access("user-1", "scan-2", "delete")
        await audit_service.flush()

        trail = await audit_service.get_audit_trail(
            "user-1",
            action=AccessAction.DELETE,
            start_date=clock.now - timedelta(minutes=1),
        )

        assert [e.resource.id for e in trail] == ["scan-2"]

    @pytest.mark.asyncio
    async def test_audit_trail_raises_on_store_failure(self, reporter, clock):
        store = AsyncMock()
        store.query_events.side_effect = RuntimeError("db down")
        service = AuditService(store, error_reporter=reporter, clock=clock)

        with pytest.raises(PersistenceError):
            await service.get_audit_trail("user-1")

    @pytest.mark.asyncio
    async def test_statistics(self, audit_service, clock):
        await audit_service.log_scan_access("user-1", "scan-1", "read")
        await audit_service.log_scan_access("user-1", "scan-2", "read")
        await audit_service.log_login("user-1", "failed")
        await audit_service.flush()

        stats = await audit_service.get_audit_statistics(
            clock.now - timedelta(days=1),
            clock.now + timedelta(days=1),
        )

        assert stats.total == 3
        assert stats.by_action == {"read": 2, "failed_login": 1}
        assert stats.by_resource_type == {"scan": 2, "user_profile": 1}
        assert stats.by_severity == {"info": 2, "warning": 1}

    @pytest.mark.asyncio
    async def test_detects_repeated_failed_logins(self, audit_service):
        for _ in range(5):
            await audit_service.log_login("user-1", "failed")
        await audit_service.flush()

        result = await audit_service.detect_suspicious_activity("user-1")

        assert result.suspicious is True
        assert result.count == 5

    def test_retention_is_seven_years(self, audit_service):
        assert audit_service.retention.retention_days == 2555
        assert audit_service.retention.delete_allowed is False
