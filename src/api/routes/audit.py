"""Audit Trail Endpoints"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional
from datetime import datetime, timedelta, timezone
import structlog

from src.api.dependencies import get_audit_service
from src.models.audit import AccessAction, AuditRequest, AuditStatistics, ResourceType
from src.services.audit_service import AuditService
from src.utils.errors import PersistenceError

router = APIRouter()
logger = structlog.get_logger()


@router.post("/logs", status_code=202)
async def log_access(
    request: AuditRequest,
    audit_service: AuditService = Depends(get_audit_service)
):
    """
    Record an access event

    The entry is validated, redacted and queued for batched storage.
    Rejected entries are reported internally; callers only see accepted=false.
    """
    accepted = await audit_service.log_access(request)
    return {"accepted": accepted}


@router.post("/flush")
async def flush_audit_queue(audit_service: AuditService = Depends(get_audit_service)):
    """Flush queued entries to the durable store now"""
    flushed = await audit_service.flush()
    return {"flushed": flushed, "pending": audit_service.queue.pending_count}


@router.get("/trail/{user_id}")
async def get_user_audit_trail(
    user_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    action: Optional[AccessAction] = None,
    resource_type: Optional[ResourceType] = None,
    limit: int = Query(default=100, le=1000),
    audit_service: AuditService = Depends(get_audit_service)
):
    """
    Get audit trail for a user

    Returns all actions performed by user, newest first
    """
    try:
        trail = await audit_service.get_audit_trail(
            user_id=user_id,
            start_date=start_date,
            end_date=end_date,
            action=action,
            resource_type=resource_type,
            limit=limit
        )
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Failed to retrieve audit trail")

    return {
        "user_id": user_id,
        "events": trail,
        "total_events": len(trail)
    }


@router.get("/alerts")
async def get_security_alerts(
    hours_back: int = Query(default=24, le=24 * 30),
    limit: int = Query(default=50, le=500),
    audit_service: AuditService = Depends(get_audit_service)
):
    """
    Recent security-relevant events

    Failed logins and unauthorized access attempts across all identities
    """
    alerts = await audit_service.get_security_alerts(hours_back=hours_back, limit=limit)
    return {"alerts": alerts, "hours_back": hours_back}


@router.get("/suspicious/{identity}")
async def detect_suspicious_activity(
    identity: str,
    audit_service: AuditService = Depends(get_audit_service)
):
    """Check one identity for repeated failed logins or unauthorized access"""
    return await audit_service.detect_suspicious_activity(identity)


@router.get("/statistics", response_model=AuditStatistics)
async def get_audit_statistics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    audit_service: AuditService = Depends(get_audit_service)
):
    """Counts by action, resource type and severity"""
    now = datetime.now(timezone.utc)
    try:
        return await audit_service.get_audit_statistics(
            start_date=start_date or now - timedelta(days=30),
            end_date=end_date or now
        )
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Failed to calculate audit statistics")
