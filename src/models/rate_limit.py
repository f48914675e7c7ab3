"""Rate Limit Models"""

from pydantic import BaseModel
from typing import Optional, Dict
from datetime import datetime
from enum import Enum


UNLIMITED = -1


class Tier(str, Enum):
    """Subscription tier governing quota ceilings"""
    ANONYMOUS = "anonymous"
    FREE = "free"
    PREMIUM = "premium"


class LimitedAction(str, Enum):
    """Actions the limiter knows how to meter"""
    SCAN = "scan"
    API_REQUEST = "api_request"


class TierLimits(BaseModel):
    """Quota ceilings for a tier; -1 means no ceiling"""
    scans_per_day: int
    scans_per_month: int
    api_requests_per_minute: int

    class Config:
        frozen = True


class ScanUsage(BaseModel):
    """Durable scan counts for the current calendar windows"""
    today: int = 0
    this_month: int = 0


class RemainingQuota(BaseModel):
    today: int
    this_month: int


class RateLimitDecision(BaseModel):
    """Result of a rate limit check"""
    allowed: bool
    reason: Optional[str] = None
    limit: Optional[int] = None
    used: Optional[int] = None
    reset_time: Optional[datetime] = None
    remaining: Optional[int] = None
    remaining_quota: Optional[RemainingQuota] = None
    upgrade_required: bool = False
    requires_auth: bool = False
    message: Optional[str] = None
    error: bool = False

    class Config:
        json_schema_extra = {
            "example": {
                "allowed": False,
                "reason": "daily_limit_exceeded",
                "limit": 3,
                "used": 3,
                "reset_time": "2024-01-16T00:00:00Z",
                "upgrade_required": True
            }
        }


class RateLimitStatus(BaseModel):
    """Quota summary for an identity"""
    identity: str
    tier: Tier
    quota_version: str
    limits: TierLimits
    usage: ScanUsage
    remaining: RemainingQuota
    reset_times: Dict[str, datetime]


class RateLimitCheckRequest(BaseModel):
    """Body of a rate limit check call"""
    identity: str
    action: str
    tier: Optional[str] = None
