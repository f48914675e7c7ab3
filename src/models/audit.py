"""Audit Models"""

from pydantic import BaseModel, Field, field_serializer, field_validator
from typing import Optional, List, Dict, Any, Mapping
from datetime import datetime
from enum import Enum
from types import MappingProxyType


class AccessAction(str, Enum):
    """Access types that must be recorded for PHI-touching operations"""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    SEARCH = "search"
    EXPORT = "export"
    PRINT = "print"
    LOGIN = "login"
    LOGOUT = "logout"
    FAILED_LOGIN = "failed_login"
    UNAUTHORIZED_ACCESS = "unauthorized_access"


class ResourceType(str, Enum):
    """Resources an audit entry can refer to"""
    SCAN = "scan"
    MEDICATION = "medication"
    USER_PROFILE = "user_profile"
    MEDICAL_HISTORY = "medical_history"
    PRESCRIPTION = "prescription"
    LAB_RESULT = "lab_result"
    CONSULTATION = "consultation"
    PAYMENT = "payment"


class AuditStatus(str, Enum):
    """Outcome of the audited operation"""
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"


class AuditSeverity(str, Enum):
    """Severity of an audit entry; critical forces an immediate flush"""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


ANONYMOUS_USER = "anonymous"
DEFAULT_ROLE = "patient"


def freeze_metadata(value: Any) -> Any:
    """Deep read-only copy: mappings become MappingProxyType, sequences tuples"""
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze_metadata(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze_metadata(item) for item in value)
    return value


def thaw_metadata(value: Any) -> Any:
    """Plain dict/list copy of frozen metadata"""
    if isinstance(value, Mapping):
        return {key: thaw_metadata(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw_metadata(item) for item in value]
    return value


class Actor(BaseModel):
    """Who performed the action"""
    user_id: str = ANONYMOUS_USER
    role: str = DEFAULT_ROLE
    session_id: Optional[str] = None

    class Config:
        frozen = True


class Resource(BaseModel):
    """What the action touched"""
    type: ResourceType
    id: Optional[str] = None

    class Config:
        frozen = True


class DeviceInfo(BaseModel):
    """Client device description"""
    platform: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None

    class Config:
        frozen = True
        extra = "allow"


class Origin(BaseModel):
    """Where the action came from"""
    ip_address: Optional[str] = None
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)

    class Config:
        frozen = True


class ChangeDigest(BaseModel):
    """Hash and size of a before/after diff; the diff itself is never stored"""
    hash: str
    field_count: int
    timestamp: datetime

    class Config:
        frozen = True


class AuditEntry(BaseModel):
    """Immutable audit log entry"""
    entry_id: str
    actor: Actor
    action: AccessAction
    resource: Resource
    timestamp: datetime
    origin: Origin = Field(default_factory=Origin)
    reason: Optional[str] = None
    status: AuditStatus = AuditStatus.SUCCESS
    error_message: Optional[str] = None
    severity: AuditSeverity = AuditSeverity.INFO
    metadata: Mapping[str, Any] = Field(default_factory=dict, validate_default=True)
    changes: Optional[ChangeDigest] = None

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "entry_id": "5b1f6c1e-8a43-4d7e-9d55-0c1f5e0f2b61",
                "actor": {"user_id": "user-12345", "role": "patient", "session_id": "sess-1"},
                "action": "read",
                "resource": {"type": "scan", "id": "scan-67890"},
                "timestamp": "2024-01-15T10:30:00Z",
                "origin": {
                    "ip_address": "192.168.1.100",
                    "device_info": {"platform": "ios", "user_agent": None, "device_id": "dev-1"}
                },
                "status": "success",
                "severity": "info",
                "metadata": {"medication_name": "[REDACTED]", "dosage": "100mg"}
            }
        }

    @field_validator("metadata", mode="after")
    @classmethod
    def _freeze_metadata(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return freeze_metadata(value)

    @field_serializer("metadata")
    def _serialize_metadata(self, value: Mapping[str, Any]) -> Dict[str, Any]:
        return thaw_metadata(value)

    def to_record(self) -> Dict[str, Any]:
        """Flatten to the persisted audit_logs row"""
        return {
            "entry_id": self.entry_id,
            "user_id": self.actor.user_id,
            "user_role": self.actor.role,
            "session_id": self.actor.session_id,
            "action": self.action.value,
            "resource_type": self.resource.type.value,
            "resource_id": self.resource.id,
            "timestamp": self.timestamp,
            "ip_address": self.origin.ip_address,
            "device_info": self.origin.device_info.model_dump(),
            "reason": self.reason,
            "status": self.status.value,
            "error_message": self.error_message,
            "severity": self.severity.value,
            "metadata": thaw_metadata(self.metadata),
            "changes_hash": self.changes.hash if self.changes else None,
            "changes_field_count": self.changes.field_count if self.changes else None,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "AuditEntry":
        """Rebuild an entry from a persisted audit_logs row"""
        changes = None
        if record.get("changes_hash"):
            changes = ChangeDigest(
                hash=record["changes_hash"],
                field_count=record.get("changes_field_count") or 0,
                timestamp=record["timestamp"],
            )

        return cls(
            entry_id=record["entry_id"],
            actor=Actor(
                user_id=record["user_id"],
                role=record.get("user_role") or DEFAULT_ROLE,
                session_id=record.get("session_id"),
            ),
            action=record["action"],
            resource=Resource(type=record["resource_type"], id=record.get("resource_id")),
            timestamp=record["timestamp"],
            origin=Origin(
                ip_address=record.get("ip_address"),
                device_info=DeviceInfo(**(record.get("device_info") or {})),
            ),
            reason=record.get("reason"),
            status=record.get("status") or AuditStatus.SUCCESS,
            error_message=record.get("error_message"),
            severity=record.get("severity") or AuditSeverity.INFO,
            metadata=record.get("metadata") or {},
            changes=changes,
        )


class AuditRequest(BaseModel):
    """Raw request to record an access event"""
    user_id: Optional[str] = None
    user_role: Optional[str] = None
    session_id: Optional[str] = None
    action: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    platform: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    device_info: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    status: Optional[str] = None
    error_message: Optional[str] = None
    severity: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    changes: Optional[Dict[str, Any]] = None

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "user-12345",
                "session_id": "sess-1",
                "action": "read",
                "resource_type": "scan",
                "resource_id": "scan-67890",
                "ip_address": "192.168.1.100",
                "platform": "ios",
                "metadata": {"medication_name": "Aspirin", "dosage": "100mg"}
            }
        }


class AuditQuery(BaseModel):
    """Query parameters for audit logs"""
    user_id: Optional[str] = None
    actions: Optional[List[AccessAction]] = None
    resource_type: Optional[ResourceType] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = 100
    offset: int = 0


class AuditStatistics(BaseModel):
    """Aggregate counts over a period"""
    total: int
    by_action: Dict[str, int]
    by_resource_type: Dict[str, int]
    by_severity: Dict[str, int]
    period_start: datetime
    period_end: datetime


class SecurityAlert(BaseModel):
    """Abuse pattern found in recent audit entries"""
    identity: str
    reason: str
    count: int
    window_minutes: int


class SuspiciousActivityResult(BaseModel):
    """Outcome of a suspicious-activity check"""
    identity: str
    suspicious: bool
    reason: Optional[str] = None
    count: Optional[int] = None
    window_minutes: Optional[int] = None
    error: bool = False

    def to_alert(self) -> Optional[SecurityAlert]:
        if not self.suspicious:
            return None
        return SecurityAlert(
            identity=self.identity,
            reason=self.reason,
            count=self.count,
            window_minutes=self.window_minutes,
        )


class RetentionPolicy(BaseModel):
    """Audit log retention policy"""
    resource_type: str = "audit_logs"
    retention_days: int = 2555  # 7 years default for HIPAA
    delete_allowed: bool = False
