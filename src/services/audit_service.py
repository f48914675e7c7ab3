"""Audit Service"""

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog

from src.models.audit import (
    ANONYMOUS_USER,
    AccessAction,
    AuditEntry,
    AuditQuery,
    AuditRequest,
    AuditSeverity,
    AuditStatistics,
    AuditStatus,
    ResourceType,
    RetentionPolicy,
    SuspiciousActivityResult,
)
from src.services.audit_entry import Clock
from src.services.audit_queue import AuditQueue
from src.services.error_reporter import ErrorReporter, LoggingErrorReporter
from src.services.persistence import AuditStore, call_with_timeout
from src.services.security_alerts import SecurityAlertDetector
from src.utils.config import settings

logger = structlog.get_logger()

# Rows scanned when aggregating statistics over a period
STATISTICS_ROW_LIMIT = 100000


class AuditService:
    """
    HIPAA-compliant audit logging service

    Features:
    - Immutable, redacted audit entries
    - Batched durable writes with retry
    - Audit trail queries
    - Suspicious activity detection
    - Compliance statistics
    """

    def __init__(
        self,
        store: AuditStore,
        error_reporter: Optional[ErrorReporter] = None,
        queue: Optional[AuditQueue] = None,
        detector: Optional[SecurityAlertDetector] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.error_reporter = error_reporter or LoggingErrorReporter()
        self.queue = queue or AuditQueue(store, error_reporter=self.error_reporter, clock=clock)
        self.detector = detector or SecurityAlertDetector(store, error_reporter=self.error_reporter, clock=clock)
        self.retention = RetentionPolicy(retention_days=settings.AUDIT_LOG_RETENTION_DAYS)

    async def log_access(self, request: Union[AuditRequest, Mapping[str, Any]]) -> bool:
        """
        Log an access event

        Args:
            request: Who did what to which resource, from where

        Returns:
            True if the entry was accepted for durable storage
        """
        return await self.queue.log_access(request)

    async def log_scan_access(
        self,
        user_id: Optional[str],
        scan_id: Optional[str],
        action: str,
        metadata: Optional[Dict[str, Any]] = None,
        device_fingerprint: Optional[str] = None
    ) -> bool:
        """
        Log access to a scan

        Signed-out scans are recorded under the device fingerprint so they
        count against that device's anonymous quota.
        """
        return await self.log_access({
            "user_id": user_id or device_fingerprint,
            "action": action,
            "resource_type": ResourceType.SCAN.value,
            "resource_id": scan_id,
            "device_id": device_fingerprint,
            "metadata": metadata or {},
        })

    async def log_medication_lookup(
        self,
        user_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Log a medication search; the medication itself is never recorded"""
        metadata = dict(metadata or {})
        has_medication = bool(metadata.pop("medication_name", None))
        metadata["has_medication"] = has_medication

        return await self.log_access({
            "user_id": user_id,
            "action": AccessAction.SEARCH.value,
            "resource_type": ResourceType.MEDICATION.value,
            "metadata": metadata,
        })

    async def log_login(
        self,
        user_id: Optional[str],
        status: str,
        ip_address: Optional[str] = None,
        device_info: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Log a login attempt"""
        succeeded = status == AuditStatus.SUCCESS.value
        return await self.log_access({
            "user_id": user_id,
            "action": AccessAction.LOGIN.value if succeeded else AccessAction.FAILED_LOGIN.value,
            "resource_type": ResourceType.USER_PROFILE.value,
            "resource_id": user_id,
            "status": AuditStatus.SUCCESS.value if succeeded else AuditStatus.FAILED.value,
            "severity": AuditSeverity.INFO.value if succeeded else AuditSeverity.WARNING.value,
            "ip_address": ip_address,
            "device_info": device_info,
        })

    async def log_unauthorized_access(
        self,
        user_id: Optional[str],
        resource_type: str,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Log an unauthorized access attempt; flushed immediately"""
        return await self.log_access({
            "user_id": user_id or ANONYMOUS_USER,
            "action": AccessAction.UNAUTHORIZED_ACCESS.value,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "status": AuditStatus.FAILED.value,
            "severity": AuditSeverity.CRITICAL.value,
            "metadata": metadata or {},
        })

    async def log_data_export(
        self,
        user_id: Optional[str],
        resource_type: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Log a data export; exports are monitored closely"""
        return await self.log_access({
            "user_id": user_id,
            "action": AccessAction.EXPORT.value,
            "resource_type": resource_type,
            "status": AuditStatus.SUCCESS.value,
            "severity": AuditSeverity.WARNING.value,
            "metadata": metadata or {},
        })

    async def get_audit_trail(
        self,
        user_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        action: Optional[AccessAction] = None,
        resource_type: Optional[ResourceType] = None,
        limit: int = 100
    ) -> List[AuditEntry]:
        """
        Get audit trail for a user, newest first

        Raises:
            PersistenceError: the store could not be queried
        """
        query = AuditQuery(
            user_id=user_id,
            actions=[action] if action else None,
            resource_type=resource_type,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
        )
        try:
            rows = await call_with_timeout("query_events", self.store.query_events(query))
        except Exception as e:
            self.error_reporter.report(e, "AuditService.get_audit_trail", user_id=user_id)
            raise

        return [AuditEntry.from_record(row) for row in rows]

    async def get_security_alerts(self, hours_back: int = 24, limit: int = 50) -> List[AuditEntry]:
        return await self.detector.get_security_alerts(hours_back=hours_back, limit=limit)

    async def detect_suspicious_activity(self, identity: str) -> SuspiciousActivityResult:
        return await self.detector.detect_suspicious_activity(identity)

    async def get_audit_statistics(self, start_date: datetime, end_date: datetime) -> AuditStatistics:
        """
        Aggregate counts over a period

        Raises:
            PersistenceError: the store could not be queried
        """
        query = AuditQuery(start_date=start_date, end_date=end_date, limit=STATISTICS_ROW_LIMIT)
        try:
            rows = await call_with_timeout("query_events", self.store.query_events(query))
        except Exception as e:
            self.error_reporter.report(e, "AuditService.get_audit_statistics")
            raise

        by_action: Dict[str, int] = {}
        by_resource_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}

        for row in rows:
            by_action[row["action"]] = by_action.get(row["action"], 0) + 1
            by_resource_type[row["resource_type"]] = by_resource_type.get(row["resource_type"], 0) + 1
            by_severity[row["severity"]] = by_severity.get(row["severity"], 0) + 1

        return AuditStatistics(
            total=len(rows),
            by_action=by_action,
            by_resource_type=by_resource_type,
            by_severity=by_severity,
            period_start=start_date,
            period_end=end_date,
        )

    async def flush(self) -> bool:
        return await self.queue.flush()

    async def set_enabled(self, enabled: bool) -> None:
        await self.queue.set_enabled(enabled)

    def start(self) -> None:
        self.queue.start()
        logger.info("audit_service_started", retention_days=self.retention.retention_days)

    async def stop(self) -> None:
        await self.queue.stop()
