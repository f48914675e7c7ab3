"""Persistence port for the append-only audit_logs table"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Protocol, TypeVar

import structlog

from src.models.audit import AccessAction, AuditQuery, AuditStatus
from src.utils.config import settings
from src.utils.errors import PersistenceError

logger = structlog.get_logger()

T = TypeVar("T")


class AuditStore(Protocol):
    """Durable store holding audit_logs rows; append-only"""

    async def insert_audit_entries(self, records: List[Dict[str, Any]]) -> None: ...

    async def count_events(self, identity: str, resource_type: str, since: datetime) -> int: ...

    async def query_events(self, query: AuditQuery) -> List[Dict[str, Any]]: ...


async def call_with_timeout(
    operation: str,
    awaitable: Awaitable[T],
    timeout: float = None,
) -> T:
    """
    Await a store call with a bounded timeout

    Raises:
        PersistenceError: the call raised or did not finish in time
    """
    if timeout is None:
        timeout = settings.PERSISTENCE_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise PersistenceError(operation, e) from e
    except PersistenceError:
        raise
    except Exception as e:
        raise PersistenceError(operation, e) from e


class InMemoryAuditStore:
    """
    In-memory audit_logs table

    Rows are only ever appended. Suitable for development and tests; production
    deployments plug in a database-backed AuditStore.
    """

    def __init__(self):
        self.records: List[Dict[str, Any]] = []
        self.insert_calls = 0

    async def insert_audit_entries(self, records: List[Dict[str, Any]]) -> None:
        self.insert_calls += 1
        self.records.extend(dict(record) for record in records)
        logger.debug("audit_rows_inserted", count=len(records), total=len(self.records))

    async def count_events(self, identity: str, resource_type: str, since: datetime) -> int:
        """Count successful create events of resource_type by identity since an instant"""
        return sum(
            1 for record in self.records
            if record["user_id"] == identity
            and record["resource_type"] == resource_type
            and record["action"] == AccessAction.CREATE.value
            and record["status"] == AuditStatus.SUCCESS.value
            and record["timestamp"] >= since
        )

    async def query_events(self, query: AuditQuery) -> List[Dict[str, Any]]:
        actions = {a.value for a in query.actions} if query.actions else None
        results = []

        for record in self.records:
            if query.user_id and record["user_id"] != query.user_id:
                continue
            if actions and record["action"] not in actions:
                continue
            if query.resource_type and record["resource_type"] != query.resource_type.value:
                continue
            if query.start_date and record["timestamp"] < query.start_date:
                continue
            if query.end_date and record["timestamp"] > query.end_date:
                continue

            results.append(record)

        results.sort(key=lambda r: r["timestamp"], reverse=True)

        # Apply pagination
        start = query.offset
        end = start + query.limit
        return results[start:end]
