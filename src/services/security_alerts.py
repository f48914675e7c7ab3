"""Security alert detection over recent audit entries"""

from datetime import datetime, timedelta
from typing import List, Optional

import structlog

from src.models.audit import AccessAction, AuditEntry, AuditQuery, SuspiciousActivityResult
from src.services.audit_entry import Clock, utc_now
from src.services.error_reporter import ErrorReporter, LoggingErrorReporter
from src.services.persistence import AuditStore, call_with_timeout
from src.utils.config import settings

logger = structlog.get_logger()

# Upper bound on rows pulled per identity and action within the lookback
MAX_LOOKBACK_ROWS = 1000


class SecurityAlertDetector:
    """
    Read-side detection of abuse patterns

    Checks, per identity, within the lookback window:
    - Repeated failed logins
    - Repeated unauthorized access attempts
    """

    def __init__(
        self,
        store: AuditStore,
        error_reporter: Optional[ErrorReporter] = None,
        lookback_minutes: int = None,
        failed_login_threshold: int = None,
        unauthorized_threshold: int = None,
        timeout: float = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.error_reporter = error_reporter or LoggingErrorReporter()
        self.lookback_minutes = lookback_minutes or settings.SUSPICIOUS_LOOKBACK_MINUTES
        self.failed_login_threshold = failed_login_threshold or settings.FAILED_LOGIN_THRESHOLD
        self.unauthorized_threshold = unauthorized_threshold or settings.UNAUTHORIZED_ACCESS_THRESHOLD
        self.timeout = timeout or settings.PERSISTENCE_TIMEOUT_SECONDS
        self.clock = clock or utc_now

    async def detect_suspicious_activity(self, identity: str) -> SuspiciousActivityResult:
        """
        Check an identity for recent abuse patterns

        Args:
            identity: User id or device fingerprint

        Returns:
            SuspiciousActivityResult; store failures yield suspicious=False, error=True
        """
        since = self.clock() - timedelta(minutes=self.lookback_minutes)

        checks = [
            (AccessAction.FAILED_LOGIN, self.failed_login_threshold, "Multiple failed login attempts"),
            (AccessAction.UNAUTHORIZED_ACCESS, self.unauthorized_threshold, "Multiple unauthorized access attempts"),
        ]

        try:
            for action, threshold, reason in checks:
                count = await self._count_recent(identity, action, since)
                if count >= threshold:
                    logger.warning(
                        "suspicious_activity_detected",
                        identity=identity,
                        reason=reason,
                        count=count
                    )
                    return SuspiciousActivityResult(
                        identity=identity,
                        suspicious=True,
                        reason=reason,
                        count=count,
                        window_minutes=self.lookback_minutes,
                    )
        except Exception as e:
            self.error_reporter.report(e, "SecurityAlertDetector.detect_suspicious_activity", identity=identity)
            return SuspiciousActivityResult(identity=identity, suspicious=False, error=True)

        return SuspiciousActivityResult(identity=identity, suspicious=False)

    async def _count_recent(self, identity: str, action: AccessAction, since: datetime) -> int:
        rows = await call_with_timeout(
            "query_events",
            self.store.query_events(AuditQuery(
                user_id=identity,
                actions=[action],
                start_date=since,
                limit=MAX_LOOKBACK_ROWS,
            )),
            timeout=self.timeout,
        )
        return len(rows)

    async def get_security_alerts(self, hours_back: int = 24, limit: int = 50) -> List[AuditEntry]:
        """Recent failed logins and unauthorized access attempts, newest first"""
        since = self.clock() - timedelta(hours=hours_back)
        try:
            rows = await call_with_timeout(
                "query_events",
                self.store.query_events(AuditQuery(
                    actions=[AccessAction.FAILED_LOGIN, AccessAction.UNAUTHORIZED_ACCESS],
                    start_date=since,
                    limit=limit,
                )),
                timeout=self.timeout,
            )
            return [AuditEntry.from_record(row) for row in rows]
        except Exception as e:
            self.error_reporter.report(e, "SecurityAlertDetector.get_security_alerts")
            return []
