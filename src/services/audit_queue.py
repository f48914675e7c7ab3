"""Audit Queue

In-process buffer between callers recording access events and the durable
audit_logs table. Entries are flushed in batches by size, by age (background
timer) and immediately for critical events. A failed flush puts the batch
back at the head of the buffer, so delivery is at-least-once.
"""

import asyncio
from enum import Enum
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Set, Union

import structlog

from src.models.audit import AccessAction, AuditEntry, AuditRequest, AuditSeverity, AuditStatus
from src.services.audit_entry import Clock, create_audit_entry
from src.services.error_reporter import ErrorReporter, LoggingErrorReporter
from src.services.persistence import AuditStore, call_with_timeout
from src.utils.config import settings

logger = structlog.get_logger()


class QueueState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"


class AuditQueue:
    """
    Batched, retrying writer for audit entries

    Features:
    - Size, time and severity based flush triggers
    - Single in-flight flush; overlapping triggers are no-ops
    - Failed batches re-enqueued ahead of newer entries
    - Never raises into the caller of log_access
    """

    def __init__(
        self,
        store: AuditStore,
        error_reporter: Optional[ErrorReporter] = None,
        batch_size: int = None,
        flush_interval: float = None,
        timeout: float = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.error_reporter = error_reporter or LoggingErrorReporter()
        self.batch_size = batch_size or settings.AUDIT_BATCH_SIZE
        self.flush_interval = flush_interval or settings.AUDIT_FLUSH_INTERVAL_SECONDS
        self.timeout = timeout or settings.PERSISTENCE_TIMEOUT_SECONDS
        self.clock = clock
        self.enabled = True

        self._buffer: List[AuditEntry] = []
        self._inflight: List[AuditEntry] = []
        self._lock = asyncio.Lock()
        self._flushing = False
        self._rerun = False
        self._timer: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def state(self) -> QueueState:
        if self._flushing:
            return QueueState.FLUSHING
        if self._buffer:
            return QueueState.ACCUMULATING
        return QueueState.IDLE

    @property
    def pending_count(self) -> int:
        return len(self._buffer)

    def pending_count_for(self, identity: str, resource_type: str, since: datetime) -> int:
        """
        Successful creations by identity not yet durable

        Counts buffered entries and the batch being written, matching what
        the store counts once they land.
        """
        return sum(
            1 for entry in self._inflight + self._buffer
            if entry.actor.user_id == identity
            and entry.resource.type == resource_type
            and entry.action == AccessAction.CREATE
            and entry.status == AuditStatus.SUCCESS
            and entry.timestamp >= since
        )

    async def log_access(self, request: Union[AuditRequest, Mapping[str, Any]]) -> bool:
        """
        Record an access event

        Args:
            request: Raw audit request (AuditRequest or mapping)

        Returns:
            True if the entry was enqueued, False if it was rejected
        """
        if not self.enabled:
            return False

        try:
            entry = create_audit_entry(request, clock=self.clock)
        except Exception as e:
            # Audit logging must never break the primary flow
            self.error_reporter.report(e, "AuditQueue.log_access", stage="build")
            return False

        return await self.enqueue(entry)

    async def enqueue(self, entry: AuditEntry) -> bool:
        """Append an already-built entry and fire any flush trigger"""
        async with self._lock:
            self._buffer.append(entry)
            size = len(self._buffer)

        if size >= self.batch_size or entry.severity == AuditSeverity.CRITICAL:
            self._schedule_flush()

        return True

    def _schedule_flush(self) -> None:
        task = asyncio.create_task(self.flush())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_for_pending(self) -> None:
        """Wait for flushes triggered by log_access to finish"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def flush(self) -> bool:
        """
        Write buffered entries to the store

        Returns:
            True if a batch was written, False if nothing was written
        """
        if self._flushing:
            self._rerun = True
            return False
        self._flushing = True
        self._rerun = False

        batch: List[AuditEntry] = []
        try:
            async with self._lock:
                if not self._buffer:
                    return False
                batch, self._buffer = self._buffer, []
                self._inflight = batch

            records: List[Dict[str, Any]] = [entry.to_record() for entry in batch]
            await call_with_timeout(
                "insert_audit_entries",
                self.store.insert_audit_entries(records),
                timeout=self.timeout,
            )
            self._inflight = []

            logger.info("audit_batch_flushed", count=len(batch))
            if self._rerun:
                # Entries arrived behind a trigger that found us busy
                self._schedule_flush()
            return True

        except Exception as e:
            if batch:
                async with self._lock:
                    self._buffer = batch + self._buffer
                    self._inflight = []
            self.error_reporter.report(
                e,
                "AuditQueue.flush",
                batch_size=len(batch),
                requeued=len(batch),
            )
            return False

        finally:
            self._inflight = []
            self._flushing = False

    def start(self) -> None:
        """Start the periodic flush timer"""
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._timer_loop())
            logger.info("audit_flush_timer_started", interval=self.flush_interval)

    async def stop(self) -> None:
        """Stop the timer and flush what is left"""
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

        await self.wait_for_pending()
        await self.flush()
        logger.info("audit_queue_stopped", unflushed=self.pending_count)

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            await self.flush()

    async def set_enabled(self, enabled: bool) -> None:
        """Enable or disable logging; disabling flushes remaining entries first"""
        if not enabled:
            await self.flush()
        self.enabled = enabled
        logger.info("audit_logging_toggled", enabled=enabled)
