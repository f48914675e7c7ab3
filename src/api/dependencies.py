"""Request-scoped access to the process-wide services"""

from fastapi import Request

from src.services.audit_service import AuditService
from src.services.rate_limiter import RateLimiter


def get_audit_service(request: Request) -> AuditService:
    return request.app.state.audit_service


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter
