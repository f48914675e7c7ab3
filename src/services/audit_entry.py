"""Audit entry construction and validation"""

import uuid
from enum import Enum
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Type, Union

from src.models.audit import (
    ANONYMOUS_USER,
    DEFAULT_ROLE,
    AccessAction,
    Actor,
    AuditEntry,
    AuditRequest,
    AuditSeverity,
    AuditStatus,
    DeviceInfo,
    Origin,
    Resource,
    ResourceType,
)
from src.services.redactor import hash_sensitive_data, sanitize_metadata
from src.utils.errors import InvalidEnumError, ValidationError

REQUIRED_FIELDS = ("user_id", "action", "resource_type", "timestamp")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def create_audit_entry(
    request: Union[AuditRequest, Mapping[str, Any]],
    clock: Optional[Clock] = None,
) -> AuditEntry:
    """
    Build a canonical, redacted audit entry from a raw request

    Args:
        request: AuditRequest or equivalent mapping
        clock: Source of the creation instant (defaults to UTC now)

    Returns:
        Validated AuditEntry

    Raises:
        ValidationError: A required field is missing
        InvalidEnumError: action, resource type, status or severity is unknown
    """
    if not isinstance(request, AuditRequest):
        request = AuditRequest(**dict(request))

    record = _assemble_record(request, (clock or utc_now)())
    validate_entry(record)

    status = AuditStatus(record["status"])
    device_info = record["device_info"]

    return AuditEntry(
        entry_id=record["entry_id"],
        actor=Actor(
            user_id=record["user_id"],
            role=record["user_role"],
            session_id=record["session_id"],
        ),
        action=AccessAction(record["action"]),
        resource=Resource(
            type=ResourceType(record["resource_type"]),
            id=record["resource_id"],
        ),
        timestamp=record["timestamp"],
        origin=Origin(
            ip_address=record["ip_address"],
            device_info=DeviceInfo(**device_info),
        ),
        reason=record["reason"],
        status=status,
        error_message=record["error_message"] if status != AuditStatus.SUCCESS else None,
        severity=AuditSeverity(record["severity"]),
        metadata=record["metadata"],
        changes=record["changes"],
    )


def _assemble_record(request: AuditRequest, timestamp: datetime) -> Dict[str, Any]:
    device_info = dict(request.device_info or {})
    for key in ("platform", "user_agent", "device_id"):
        value = getattr(request, key)
        if value is not None:
            device_info[key] = value

    return {
        "entry_id": str(uuid.uuid4()),
        # Who
        "user_id": request.user_id or ANONYMOUS_USER,
        "user_role": request.user_role or DEFAULT_ROLE,
        "session_id": request.session_id,
        # What
        "action": request.action,
        "resource_type": request.resource_type,
        "resource_id": request.resource_id,
        # When
        "timestamp": timestamp,
        # Where
        "ip_address": request.ip_address,
        "device_info": device_info,
        "reason": request.reason,
        # How
        "status": request.status or AuditStatus.SUCCESS.value,
        "error_message": request.error_message,
        "severity": request.severity or AuditSeverity.INFO.value,
        "metadata": sanitize_metadata(request.metadata),
        "changes": hash_sensitive_data(request.changes, timestamp) if request.changes else None,
    }


def validate_entry(entry: Union[AuditEntry, Mapping[str, Any]]) -> bool:
    """
    Validate an audit entry or its flat record form

    Raises:
        ValidationError: naming the first missing required field
        InvalidEnumError: for values outside the closed enumerations
    """
    record = entry.to_record() if isinstance(entry, AuditEntry) else entry

    for field in REQUIRED_FIELDS:
        if not record.get(field):
            raise ValidationError(f"Missing required audit field: {field}", field=field)

    _check_enum(record, "action", AccessAction)
    _check_enum(record, "resource_type", ResourceType)
    _check_enum(record, "status", AuditStatus, required=False)
    _check_enum(record, "severity", AuditSeverity, required=False)

    return True


def _check_enum(record: Mapping[str, Any], field: str, enum_cls: Type[Enum], required: bool = True):
    value = record.get(field)
    if value is None and not required:
        return
    if isinstance(value, enum_cls):
        return
    try:
        enum_cls(value)
    except ValueError:
        raise InvalidEnumError(field, value) from None
