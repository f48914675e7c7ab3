"""Error taxonomy for the audit and rate-limiting engine.

Only programming errors (malformed audit entries) and persistence failures
are exceptions. Quota rejections and suspicious-activity findings are
returned as values.
"""

from typing import Optional


class AuditEngineError(Exception):
    """Base class for engine errors"""


class ValidationError(AuditEngineError):
    """Audit entry is structurally invalid"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InvalidEnumError(ValidationError):
    """Audit entry carries a value outside a closed enumeration"""

    def __init__(self, field: str, value: object):
        super().__init__(f"Invalid audit {field}: {value}", field=field)
        self.value = value


class PersistenceError(AuditEngineError):
    """Durable store unreachable, erroring or timed out"""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Persistence operation '{operation}' failed{detail}")
        self.operation = operation
        self.cause = cause
