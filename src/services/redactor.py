"""PHI/PII Redaction

Pure helpers that make audit metadata safe to persist and produce
tamper-evidence digests for change records.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from src.models.audit import ChangeDigest

REDACTION_MARKER = "[REDACTED]"

PHI_FIELDS = frozenset({
    "medication_name",
    "diagnosis",
    "symptoms",
    "prescription",
    "lab_results",
    "notes",
    "comments",
    "name",
    "email",
    "phone",
    "address",
    "ssn",
    "date_of_birth",
})

HASH_HEX_WIDTH = 16


class PHI:
    """
    Tag for a sensitive value

    A value wrapped in PHI is redacted wherever it appears in metadata,
    whatever key it sits under. The wrapped value never renders in repr.
    """

    __slots__ = ("value",)

    def __init__(self, value: Any):
        self.value = value

    def __repr__(self) -> str:
        return f"PHI({REDACTION_MARKER})"

    __str__ = __repr__


def is_phi_key(key: Any) -> bool:
    return isinstance(key, str) and key.lower() in PHI_FIELDS


def sanitize_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Remove PHI from metadata

    Args:
        metadata: Arbitrary key/value map

    Returns:
        New map where every PHI key, at any depth, holds the redaction marker
    """
    if not metadata:
        return {}
    return _sanitize_mapping(metadata)


def _sanitize_mapping(data: Mapping[str, Any]) -> Dict[str, Any]:
    sanitized = {}
    for key, value in data.items():
        if is_phi_key(key):
            sanitized[key] = REDACTION_MARKER
        else:
            sanitized[key] = _sanitize_value(value)
    return sanitized


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, PHI):
        return REDACTION_MARKER
    if isinstance(value, Mapping):
        return _sanitize_mapping(value)
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(item) for item in value]
    return value


def hash_sensitive_data(
    data: Optional[Mapping[str, Any]],
    timestamp: Optional[datetime] = None,
) -> Optional[ChangeDigest]:
    """
    Hash change data for integrity verification without storing it

    The digest is deterministic for equal input (keys are sorted before
    hashing) and always HASH_HEX_WIDTH hex characters wide. The digest is
    stamped with timestamp, or the current UTC time when none is given.

    Returns:
        ChangeDigest, or None when the data cannot be serialized
    """
    if data is None:
        return None

    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=_encode_default)
    except (TypeError, ValueError):
        return None

    digest = hashlib.blake2b(canonical.encode("utf-8"), digest_size=HASH_HEX_WIDTH // 2).hexdigest()

    return ChangeDigest(
        hash=digest,
        field_count=len(data),
        timestamp=timestamp or datetime.now(timezone.utc),
    )


def _encode_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, PHI):
        return _encode_default(value.value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    raise TypeError(f"Unserializable value of type {type(value).__name__}")
