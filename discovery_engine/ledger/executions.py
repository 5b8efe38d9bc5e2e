"""Execution lifecycle records and history queries."""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import delete, func, select

from discovery_engine.db.models import CheckExecution, DiscoveredFile, ExecutionStatus
from discovery_engine.errors import ErrorCategory, InvalidTransition
from discovery_engine.ledger.base import LedgerBase
from discovery_engine.utils.timeutils import as_utc, to_db, utcnow

logger = logging.getLogger(__name__)

# Failed -> InProgress is only legal while the execution is not terminal
TRANSITIONS = {
    ExecutionStatus.PENDING: {ExecutionStatus.IN_PROGRESS, ExecutionStatus.FAILED},
    ExecutionStatus.IN_PROGRESS: {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED},
    ExecutionStatus.FAILED: {ExecutionStatus.IN_PROGRESS, ExecutionStatus.FAILED},
    ExecutionStatus.COMPLETED: set(),
}


def _check_transition(execution: CheckExecution, target: ExecutionStatus) -> None:
    if execution.is_terminal:
        raise InvalidTransition(
            f"Execution {execution.id} is terminal ({execution.status}) and cannot change"
        )
    current = ExecutionStatus(execution.status)
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(
            f"Execution {execution.id}: {current.value} -> {target.value} is not allowed"
        )


def _duration_ms(execution: CheckExecution, finished: datetime) -> Optional[int]:
    if execution.started_at is None:
        return None
    return max(0, int((finished - execution.started_at).total_seconds() * 1000))


class ExecutionLedger(LedgerBase):
    """
    Persists the Pending -> InProgress -> Completed/Failed state machine.

    A Failed execution that is waiting for a retry has ``next_retry_at`` set and no
    ``completed_at``; a terminal Failed execution has ``completed_at``. The retry
    counter lives on the record so a restarted instance can resume it.
    """

    async def create(
        self,
        tenant_id: str,
        configuration_id: str,
        trigger: str = "scheduled",
        scheduled_for: Optional[datetime] = None,
    ) -> CheckExecution:
        execution = CheckExecution(
            id=str(uuid4()),
            tenant_id=tenant_id,
            configuration_id=configuration_id,
            status=ExecutionStatus.PENDING.value,
            trigger=trigger,
            scheduled_for=to_db(scheduled_for),
            retry_count=0,
            files_found=0,
            files_claimed=0,
        )
        async with self.session() as db:
            db.add(execution)
            await db.commit()
        return execution

    async def get(self, execution_id: str) -> Optional[CheckExecution]:
        async with self.session() as db:
            return await db.get(CheckExecution, execution_id)

    async def start_attempt(
        self,
        execution_id: str,
        resolved_path: Optional[str] = None,
        resolved_name: Optional[str] = None,
    ) -> CheckExecution:
        """
        Move to InProgress for the first attempt or a retry.

        A retry (Failed -> InProgress) increments retry_count.
        """
        async with self.session() as db:
            execution = await self._load(db, execution_id)
            _check_transition(execution, ExecutionStatus.IN_PROGRESS)

            if execution.status == ExecutionStatus.FAILED.value:
                execution.retry_count += 1
            execution.status = ExecutionStatus.IN_PROGRESS.value
            execution.next_retry_at = None
            attempt_started = to_db(utcnow())
            execution.attempt_started_at = attempt_started
            if execution.started_at is None:
                execution.started_at = attempt_started
            if resolved_path is not None:
                execution.resolved_path = resolved_path
            if resolved_name is not None:
                execution.resolved_name = resolved_name
            await db.commit()
            return execution

    async def record_retry(
        self,
        execution_id: str,
        category: ErrorCategory,
        message: str,
        next_retry_at: datetime,
    ) -> CheckExecution:
        """Record a retryable failure; the execution stays non-terminal."""
        async with self.session() as db:
            execution = await self._load(db, execution_id)
            _check_transition(execution, ExecutionStatus.FAILED)
            execution.status = ExecutionStatus.FAILED.value
            execution.error_category = category.value
            execution.error_message = message[:2000]
            execution.next_retry_at = to_db(next_retry_at)
            await db.commit()
            return execution

    async def complete(
        self,
        execution_id: str,
        files_found: int,
        files_claimed: int,
    ) -> CheckExecution:
        async with self.session() as db:
            execution = await self._load(db, execution_id)
            _check_transition(execution, ExecutionStatus.COMPLETED)
            finished = to_db(utcnow())
            execution.status = ExecutionStatus.COMPLETED.value
            execution.completed_at = finished
            execution.duration_ms = _duration_ms(execution, finished)
            execution.files_found = files_found
            execution.files_claimed = files_claimed
            execution.error_category = None
            execution.error_message = None
            execution.next_retry_at = None
            await db.commit()
            return execution

    async def fail(
        self,
        execution_id: str,
        category: ErrorCategory,
        message: str,
        files_found: int = 0,
        files_claimed: int = 0,
    ) -> CheckExecution:
        """Record a terminal failure."""
        async with self.session() as db:
            execution = await self._load(db, execution_id)
            _check_transition(execution, ExecutionStatus.FAILED)
            finished = to_db(utcnow())
            execution.status = ExecutionStatus.FAILED.value
            execution.completed_at = finished
            execution.duration_ms = _duration_ms(execution, finished)
            execution.error_category = category.value
            execution.error_message = message[:2000]
            execution.files_found = max(files_found, files_claimed)
            execution.files_claimed = files_claimed
            execution.next_retry_at = None
            await db.commit()
            return execution

    async def list_executions(
        self,
        tenant_id: str,
        configuration_id: str,
        status: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CheckExecution]:
        """Execution history for one configuration, newest first."""
        query = select(CheckExecution).where(
            CheckExecution.tenant_id == tenant_id,
            CheckExecution.configuration_id == configuration_id,
        )
        if status:
            query = query.where(CheckExecution.status == status)
        if since:
            query = query.where(CheckExecution.created_at >= to_db(since))
        if until:
            query = query.where(CheckExecution.created_at <= to_db(until))
        query = query.order_by(CheckExecution.created_at.desc()).limit(limit).offset(offset)

        async with self.session() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get_for_tenant(
        self,
        tenant_id: str,
        configuration_id: str,
        execution_id: str,
    ) -> Optional[CheckExecution]:
        async with self.session() as db:
            result = await db.execute(
                select(CheckExecution).where(
                    CheckExecution.id == execution_id,
                    CheckExecution.tenant_id == tenant_id,
                    CheckExecution.configuration_id == configuration_id,
                )
            )
            return result.scalar_one_or_none()

    async def find_stale_in_progress(self, older_than: datetime) -> list[CheckExecution]:
        """InProgress executions whose current attempt started before the cutoff."""
        attempt_started = func.coalesce(CheckExecution.attempt_started_at, CheckExecution.started_at)
        async with self.session() as db:
            result = await db.execute(
                select(CheckExecution).where(
                    CheckExecution.status == ExecutionStatus.IN_PROGRESS.value,
                    attempt_started < to_db(older_than),
                )
            )
            return list(result.scalars().all())

    async def find_orphaned_retries(self, due_before: datetime) -> list[CheckExecution]:
        """Non-terminal Failed executions whose retry time passed without a resume."""
        async with self.session() as db:
            result = await db.execute(
                select(CheckExecution).where(
                    CheckExecution.status == ExecutionStatus.FAILED.value,
                    CheckExecution.completed_at.is_(None),
                    CheckExecution.next_retry_at.is_not(None),
                    CheckExecution.next_retry_at < to_db(due_before),
                )
            )
            return list(result.scalars().all())

    async def purge_expired(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """
        Delete terminal executions older than the retention window.

        Returns:
            Number of executions removed
        """
        cutoff = to_db(as_utc(now or utcnow()) - timedelta(days=retention_days))
        async with self.session() as db:
            result = await db.execute(
                select(CheckExecution.id).where(
                    CheckExecution.completed_at.is_not(None),
                    CheckExecution.created_at < cutoff,
                )
            )
            expired_ids = list(result.scalars().all())
            if not expired_ids:
                return 0

            await db.execute(
                delete(DiscoveredFile).where(DiscoveredFile.execution_id.in_(expired_ids))
            )
            await db.execute(delete(CheckExecution).where(CheckExecution.id.in_(expired_ids)))
            await db.commit()

        logger.info(
            "Purged %d executions older than %d days", len(expired_ids), retention_days
        )
        return len(expired_ids)

    async def _load(self, db, execution_id: str) -> CheckExecution:
        execution = await db.get(CheckExecution, execution_id)
        if execution is None:
            raise LookupError(f"Execution {execution_id} not found")
        return execution
