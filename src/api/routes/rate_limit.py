"""Rate Limiting Endpoints"""

from fastapi import APIRouter, Depends, HTTPException
from typing import Optional
import structlog

from src.api.dependencies import get_rate_limiter
from src.models.rate_limit import RateLimitCheckRequest, RateLimitDecision, RateLimitStatus
from src.services.rate_limiter import RateLimiter
from src.utils.errors import PersistenceError

router = APIRouter()
logger = structlog.get_logger()


@router.post("/check", response_model=RateLimitDecision)
async def check_limit(
    request: RateLimitCheckRequest,
    rate_limiter: RateLimiter = Depends(get_rate_limiter)
):
    """
    Check whether an identity may perform an action

    Actions:
    - scan: daily and monthly quotas
    - api_request: per-minute throttle
    """
    return await rate_limiter.check_limit(request.identity, request.action, request.tier)


@router.get("/status/{identity}", response_model=RateLimitStatus)
async def get_rate_limit_status(
    identity: str,
    tier: Optional[str] = None,
    rate_limiter: RateLimiter = Depends(get_rate_limiter)
):
    """Limits, usage, remaining quota and reset times"""
    try:
        return await rate_limiter.get_rate_limit_status(identity, tier)
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Failed to get rate limit status")


@router.post("/reset/{identity}")
async def reset_usage(
    identity: str,
    rate_limiter: RateLimiter = Depends(get_rate_limiter)
):
    """Clear in-memory throttling state for an identity (admin)"""
    reset = await rate_limiter.reset_usage(identity)
    if not reset:
        raise HTTPException(status_code=500, detail="Failed to reset usage")
    return {"identity": identity, "reset": True}
