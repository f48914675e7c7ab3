"""Rate Limiting Service

Enforces tiered usage quotas. Daily and monthly scan quotas are derived from
durable counts in the audit store, so they survive restarts and are shared by
every instance. The per-minute API ceiling is a sliding window kept in this
process only; with N instances the aggregate rate can reach N times the
ceiling.

Quota is a business control, not a security boundary: any failure reading
durable counts allows the action (fail open) and is reported.
"""

import asyncio
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Optional, Protocol

import structlog

from src.models.audit import AccessAction, AuditSeverity, AuditStatus, ResourceType
from src.models.rate_limit import (
    UNLIMITED,
    LimitedAction,
    RateLimitDecision,
    RateLimitStatus,
    RemainingQuota,
    ScanUsage,
    Tier,
    TierLimits,
)
from src.services.audit_entry import Clock, utc_now
from src.services.error_reporter import ErrorReporter, LoggingErrorReporter
from src.services.persistence import AuditStore, call_with_timeout
from src.services.tier_resolver import TierResolver, normalize_tier
from src.utils.config import settings
from src.utils.errors import PersistenceError

logger = structlog.get_logger()

QUOTA_VERSION = "2024-01"

RATE_LIMITS: Dict[Tier, TierLimits] = {
    Tier.ANONYMOUS: TierLimits(scans_per_day=3, scans_per_month=3, api_requests_per_minute=10),
    Tier.FREE: TierLimits(scans_per_day=3, scans_per_month=3, api_requests_per_minute=10),
    Tier.PREMIUM: TierLimits(scans_per_day=UNLIMITED, scans_per_month=UNLIMITED, api_requests_per_minute=100),
}


class AuditSink(Protocol):
    async def log_access(self, request: Dict[str, Any]) -> bool: ...


class PendingEvents(Protocol):
    """Creations accepted for recording but not yet in the store"""

    def pending_count_for(self, identity: str, resource_type: str, since: datetime) -> int: ...


def get_limits(tier) -> TierLimits:
    return RATE_LIMITS[normalize_tier(tier)]


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(moment: datetime) -> datetime:
    return start_of_day(moment).replace(day=1)


def next_day_reset(moment: datetime) -> datetime:
    return start_of_day(moment) + timedelta(days=1)


def next_month_reset(moment: datetime) -> datetime:
    first = start_of_month(moment)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def _remaining(limit: int, used: int) -> int:
    if limit == UNLIMITED:
        return UNLIMITED
    return max(0, limit - used)


class RateLimiter:
    """
    Tiered quota and throttling checks

    Features:
    - Daily/monthly scan quotas from durable counts
    - Per-minute API sliding window per identity, guarded by a per-identity lock
    - Periodic eviction of idle windows
    - Blocked checks recorded as audit entries
    """

    def __init__(
        self,
        store: AuditStore,
        audit_log: Optional[AuditSink] = None,
        pending: Optional[PendingEvents] = None,
        tier_resolver: Optional[TierResolver] = None,
        error_reporter: Optional[ErrorReporter] = None,
        window_seconds: float = None,
        cleanup_interval: float = None,
        idle_ttl: float = None,
        timeout: float = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.audit_log = audit_log
        self.pending = pending
        self.tier_resolver = tier_resolver
        self.error_reporter = error_reporter or LoggingErrorReporter()
        self.window_seconds = window_seconds or settings.API_WINDOW_SECONDS
        self.cleanup_interval = cleanup_interval or settings.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS
        self.idle_ttl = idle_ttl or settings.RATE_LIMIT_IDLE_TTL_SECONDS
        self.timeout = timeout or settings.PERSISTENCE_TIMEOUT_SECONDS
        self.clock = clock or utc_now

        self._windows: Dict[str, Deque[float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def _lock_for(self, identity: str) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = self._locks[identity] = asyncio.Lock()
        return lock

    async def check_limit(self, identity: str, action: str, tier=None) -> RateLimitDecision:
        """
        Check whether identity may perform action

        Args:
            identity: User id or device fingerprint
            action: "scan" or "api_request"; other actions are not metered
            tier: Tier name; resolved from the billing system when omitted

        Returns:
            RateLimitDecision (never raises)
        """
        try:
            if tier is None:
                tier = await self.resolve_tier(identity)
            tier = normalize_tier(tier)
            limits = RATE_LIMITS[tier]

            if action == LimitedAction.SCAN.value:
                return await self._check_scan_limit(identity, tier, limits)
            if action == LimitedAction.API_REQUEST.value:
                return await self._check_api_limit(identity, limits)

            return RateLimitDecision(allowed=True)

        except Exception as e:
            self.error_reporter.report(e, "RateLimiter.check_limit", identity=identity, action=action)
            # Fail open
            return RateLimitDecision(allowed=True, error=True)

    async def _check_scan_limit(self, identity: str, tier: Tier, limits: TierLimits) -> RateLimitDecision:
        async with self._lock_for(identity):
            usage = await self.get_scan_usage(identity)

        now = self.clock()

        if limits.scans_per_day != UNLIMITED and usage.today >= limits.scans_per_day:
            await self._log_rate_limit_exceeded(identity, "scan", "daily", usage.today, limits.scans_per_day)
            return RateLimitDecision(
                allowed=False,
                reason="daily_limit_exceeded",
                limit=limits.scans_per_day,
                used=usage.today,
                reset_time=next_day_reset(now),
                upgrade_required=tier != Tier.PREMIUM,
            )

        if limits.scans_per_month != UNLIMITED and usage.this_month >= limits.scans_per_month:
            await self._log_rate_limit_exceeded(identity, "scan", "monthly", usage.this_month, limits.scans_per_month)
            return RateLimitDecision(
                allowed=False,
                reason="monthly_limit_exceeded",
                limit=limits.scans_per_month,
                used=usage.this_month,
                reset_time=next_month_reset(now),
                upgrade_required=True,
            )

        return RateLimitDecision(
            allowed=True,
            remaining_quota=RemainingQuota(
                today=_remaining(limits.scans_per_day, usage.today),
                this_month=_remaining(limits.scans_per_month, usage.this_month),
            ),
        )

    async def _check_api_limit(self, identity: str, limits: TierLimits) -> RateLimitDecision:
        ceiling = limits.api_requests_per_minute

        async with self._lock_for(identity):
            now = self.clock().timestamp()
            window = self._windows.setdefault(identity, deque())

            while window and now - window[0] >= self.window_seconds:
                window.popleft()

            if ceiling != UNLIMITED and len(window) >= ceiling:
                used = len(window)
                reset_at = window[0] + self.window_seconds
                blocked = True
            else:
                window.append(now)
                used = len(window)
                blocked = False

        if blocked:
            await self._log_rate_limit_exceeded(identity, "api_request", "minute", used, ceiling)
            return RateLimitDecision(
                allowed=False,
                reason="rate_limit_exceeded",
                limit=ceiling,
                used=used,
                reset_time=datetime.fromtimestamp(reset_at, tz=self.clock().tzinfo),
            )

        return RateLimitDecision(allowed=True, remaining=_remaining(ceiling, used))

    async def get_scan_usage(self, identity: str) -> ScanUsage:
        """
        Scan counts for the current day and month

        Durable counts plus creations still waiting to be written.

        Raises:
            PersistenceError: counts could not be read
        """
        now = self.clock()
        resource = ResourceType.SCAN.value

        # Read before the durable counts so a batch landing meanwhile is not missed
        pending_today = pending_month = 0
        if self.pending is not None:
            pending_today = self.pending.pending_count_for(identity, resource, start_of_day(now))
            pending_month = self.pending.pending_count_for(identity, resource, start_of_month(now))

        today, this_month = await asyncio.gather(
            call_with_timeout(
                "count_events",
                self.store.count_events(identity, resource, start_of_day(now)),
                timeout=self.timeout,
            ),
            call_with_timeout(
                "count_events",
                self.store.count_events(identity, resource, start_of_month(now)),
                timeout=self.timeout,
            ),
        )
        return ScanUsage(
            today=(today or 0) + pending_today,
            this_month=(this_month or 0) + pending_month,
        )

    async def get_rate_limit_status(self, identity: str, tier=None) -> RateLimitStatus:
        """
        Quota summary for an identity

        Raises:
            PersistenceError: usage could not be read
        """
        if tier is None:
            tier = await self.resolve_tier(identity)
        tier = normalize_tier(tier)
        limits = RATE_LIMITS[tier]

        try:
            usage = await self.get_scan_usage(identity)
        except PersistenceError as e:
            self.error_reporter.report(e, "RateLimiter.get_rate_limit_status", identity=identity)
            raise

        now = self.clock()
        return RateLimitStatus(
            identity=identity,
            tier=tier,
            quota_version=QUOTA_VERSION,
            limits=limits,
            usage=usage,
            remaining=RemainingQuota(
                today=_remaining(limits.scans_per_day, usage.today),
                this_month=_remaining(limits.scans_per_month, usage.this_month),
            ),
            reset_times={
                "daily": next_day_reset(now),
                "monthly": next_month_reset(now),
            },
        )

    async def check_anonymous_limit(self, device_fingerprint: str) -> RateLimitDecision:
        """Daily scan allowance for a signed-out device"""
        limits = RATE_LIMITS[Tier.ANONYMOUS]
        try:
            usage = await self.get_scan_usage(device_fingerprint)
        except Exception as e:
            self.error_reporter.report(e, "RateLimiter.check_anonymous_limit")
            return RateLimitDecision(allowed=True, error=True)

        if usage.today >= limits.scans_per_day:
            return RateLimitDecision(
                allowed=False,
                reason="anonymous_daily_limit",
                limit=limits.scans_per_day,
                used=usage.today,
                reset_time=next_day_reset(self.clock()),
                requires_auth=True,
                message="Daily scan limit reached. Please sign in for more scans.",
            )

        remaining = limits.scans_per_day - usage.today
        return RateLimitDecision(
            allowed=True,
            remaining=remaining,
            message=f"{remaining} free scans remaining today",
        )

    async def resolve_tier(self, user_id: Optional[str]) -> Tier:
        """Tier for a user; anonymous without a user id, free when lookup fails"""
        if not user_id:
            return Tier.ANONYMOUS
        if self.tier_resolver is None:
            return Tier.FREE
        try:
            name = await call_with_timeout(
                "get_tier",
                self.tier_resolver.get_tier(user_id),
                timeout=self.timeout,
            )
        except Exception as e:
            self.error_reporter.report(e, "RateLimiter.resolve_tier")
            return Tier.FREE
        return normalize_tier(name)

    async def reset_usage(self, identity: str) -> bool:
        """Drop in-memory throttling state for an identity (admin)"""
        try:
            async with self._lock_for(identity):
                self._windows.pop(identity, None)

            if self.audit_log is not None:
                await self.audit_log.log_access({
                    "user_id": identity,
                    "action": AccessAction.UPDATE.value,
                    "resource_type": ResourceType.USER_PROFILE.value,
                    "resource_id": identity,
                    "metadata": {"event": "rate_limit_reset"},
                })

            logger.info("rate_limit_reset", identity=identity)
            return True
        except Exception as e:
            self.error_reporter.report(e, "RateLimiter.reset_usage", identity=identity)
            return False

    async def _log_rate_limit_exceeded(self, identity: str, action: str, period: str, used: int, limit: int):
        logger.info("rate_limit_exceeded", identity=identity, action=action, period=period)
        if self.audit_log is None:
            return
        try:
            await self.audit_log.log_access({
                "user_id": identity or "anonymous",
                "action": AccessAction.UNAUTHORIZED_ACCESS.value,
                "resource_type": ResourceType.SCAN.value,
                "status": AuditStatus.BLOCKED.value,
                "severity": AuditSeverity.WARNING.value,
                "metadata": {
                    "reason": "rate_limit_exceeded",
                    "action": action,
                    "period": period,
                    "used": used,
                    "limit": limit,
                },
            })
        except Exception as e:
            self.error_reporter.report(e, "RateLimiter.log_rate_limit_exceeded")

    def cleanup(self) -> int:
        """
        Evict idle sliding-window state and unused locks

        Returns:
            Number of sliding windows dropped
        """
        now = self.clock().timestamp()
        evicted = 0

        for identity in list(self._windows):
            lock = self._locks.get(identity)
            if lock is not None and lock.locked():
                continue

            window = self._windows[identity]
            while window and now - window[0] >= self.idle_ttl:
                window.popleft()

            if not window:
                del self._windows[identity]
                self._locks.pop(identity, None)
                evicted += 1

        for identity in list(self._locks):
            if identity not in self._windows and not self._locks[identity].locked():
                del self._locks[identity]

        if evicted:
            logger.debug(
                "rate_limit_cache_cleaned",
                evicted=evicted,
                tracked=len(self._windows),
                locks=len(self._locks)
            )
        return evicted

    @property
    def tracked_identities(self) -> int:
        return len(self._windows)

    @property
    def tracked_locks(self) -> int:
        return len(self._locks)

    def start(self) -> None:
        """Start the periodic cache sweep"""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.cleanup()
