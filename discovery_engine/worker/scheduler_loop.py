"""Per-tick evaluation of active configurations and bounded dispatch of checks."""

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from discovery_engine import metrics
from discovery_engine.config import settings
from discovery_engine.db.models import CheckExecution, FileCheckConfiguration
from discovery_engine.errors import ErrorCategory, InvalidTransition
from discovery_engine.ledger.configurations import ConfigurationStore
from discovery_engine.ledger.executions import ExecutionLedger
from discovery_engine.scheduling import evaluator
from discovery_engine.utils.timeutils import as_utc, utcnow
from discovery_engine.worker.executor import CheckExecutor, CheckOutcome
from discovery_engine.worker.lease import LeaseProvider, lease_subject, refresh_lease_heartbeat

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    triggered: int = 0
    skipped_in_progress: int = 0
    deferred: int = 0
    not_due: int = 0
    resumed: int = 0
    errors: int = 0
    active: int = 0


def pending_occurrence(
    configuration: FileCheckConfiguration,
    now: datetime,
    window: timedelta,
) -> Optional[datetime]:
    """
    Occurrence inside the evaluation window that has not been executed yet.

    Returns:
        Aware UTC occurrence, or None when nothing is due
    """
    occurrence = evaluator.due_occurrence(
        configuration.cron_expression,
        configuration.timezone,
        now,
        window,
    )
    if occurrence is None:
        return None

    last = as_utc(configuration.last_executed_at)
    if last is not None and last >= occurrence:
        later = evaluator.next_due(configuration.cron_expression, configuration.timezone, last)
        return later if later <= as_utc(now) else None
    return occurrence


class SchedulerLoop:
    """
    Evaluates every active configuration on each tick and dispatches due checks.

    Checks run as background tasks bounded by ``max_concurrent``; configurations
    that are due while the bound is reached are deferred to the next tick. When a
    lease provider is set, a configuration is only checked by the instance that
    holds its lease.
    """

    def __init__(
        self,
        configurations: ConfigurationStore,
        executions: ExecutionLedger,
        executor: CheckExecutor,
        leases: Optional[LeaseProvider] = None,
        max_concurrent: Optional[int] = None,
        window: Optional[timedelta] = None,
        page_size: Optional[int] = None,
        lease_ttl: Optional[int] = None,
        heartbeat_interval: Optional[int] = None,
        orphan_grace: Optional[timedelta] = None,
    ):
        self.configurations = configurations
        self.executions = executions
        self.executor = executor
        self.leases = leases
        self.max_concurrent = max_concurrent or settings.scheduler_max_concurrent_checks
        self.window = window or timedelta(minutes=settings.scheduler_execution_window_minutes)
        self.page_size = page_size or settings.scheduler_page_size
        self.lease_ttl = lease_ttl or settings.lease_ttl_seconds
        self.heartbeat_interval = heartbeat_interval or settings.lease_heartbeat_interval_seconds
        self.orphan_grace = (
            orphan_grace
            if orphan_grace is not None
            else timedelta(seconds=settings.watchdog_grace_seconds)
        )
        self._in_flight: dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def is_running(self, tenant_id: str, configuration_id: str) -> bool:
        return lease_subject(tenant_id, configuration_id) in self._in_flight

    async def tick(self, now: Optional[datetime] = None) -> TickSummary:
        """
        Run one evaluation pass.

        A failure evaluating one configuration is logged and counted; it never
        stops the remaining configurations from being evaluated.
        """
        now = as_utc(now) or utcnow()
        summary = TickSummary()

        try:
            async for page in self.configurations.iter_active(self.page_size):
                for configuration in page:
                    summary.active += 1
                    try:
                        await self._evaluate(configuration, now, summary)
                    except Exception as e:
                        summary.errors += 1
                        logger.error(
                            "Failed to evaluate configuration %s: %s",
                            configuration.id,
                            e,
                            exc_info=True,
                        )
        except Exception as e:
            summary.errors += 1
            logger.error("Scheduler tick could not list active configurations: %s", e)

        try:
            await self._resume_orphaned_retries(now, summary)
        except Exception as e:
            summary.errors += 1
            logger.error("Failed to resume orphaned retries: %s", e, exc_info=True)

        logger.info(
            "Scheduler tick completed: %d triggered, %d skipped (in progress), "
            "%d deferred (concurrency limit), %d active configurations",
            summary.triggered,
            summary.skipped_in_progress,
            summary.deferred,
            summary.active,
        )
        if summary.resumed or summary.errors:
            logger.info(
                "Scheduler tick also resumed %d retries with %d evaluation errors",
                summary.resumed,
                summary.errors,
            )
        metrics.record_tick(
            summary.triggered,
            summary.skipped_in_progress,
            summary.deferred,
            summary.active,
            errors=summary.errors,
            timestamp=now.timestamp(),
        )
        return summary

    async def trigger(self, configuration: FileCheckConfiguration) -> Optional[str]:
        """
        Start an out-of-schedule check.

        Returns:
            The new execution id, or None when a check for the configuration is
            already running here or on another instance
        """
        if self.is_running(configuration.tenant_id, configuration.id):
            return None
        subject = lease_subject(configuration.tenant_id, configuration.id)
        token = await self._acquire(subject)
        if token is False:
            return None
        try:
            execution = await self.executions.create(
                configuration.tenant_id,
                configuration.id,
                trigger="manual",
            )
        except Exception:
            await self._release(subject, token)
            raise
        self._dispatch(configuration, token, trigger="manual", execution_id=execution.id)
        logger.info("Manual check %s started for configuration %s", execution.id, configuration.id)
        return execution.id

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight checks to finish."""
        tasks = list(self._in_flight.values())
        if not tasks:
            return
        logger.info("Waiting for %d in-flight checks", len(tasks))
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning("%d checks still running after drain timeout", len(pending))

    async def _evaluate(
        self,
        configuration: FileCheckConfiguration,
        now: datetime,
        summary: TickSummary,
    ) -> None:
        occurrence = pending_occurrence(configuration, now, self.window)
        if occurrence is None:
            summary.not_due += 1
            return

        if self.is_running(configuration.tenant_id, configuration.id):
            summary.skipped_in_progress += 1
            return
        if self.in_flight >= self.max_concurrent:
            summary.deferred += 1
            return

        subject = lease_subject(configuration.tenant_id, configuration.id)
        token = await self._acquire(subject)
        if token is False:
            summary.skipped_in_progress += 1
            return

        try:
            # Another instance may have run this occurrence since the page was read
            current = await self.configurations.get(configuration.tenant_id, configuration.id)
            if current is None or not current.is_active:
                await self._release(subject, token)
                summary.not_due += 1
                return
            occurrence = pending_occurrence(current, now, self.window)
            if occurrence is None:
                await self._release(subject, token)
                summary.not_due += 1
                return

            await self.configurations.record_schedule(
                current.tenant_id,
                current.id,
                last_executed_at=now,
                next_scheduled_run=evaluator.next_due(
                    current.cron_expression,
                    current.timezone,
                    now,
                ),
            )
        except Exception:
            await self._release(subject, token)
            raise

        self._dispatch(current, token, trigger="scheduled", scheduled_for=occurrence)
        summary.triggered += 1

    async def _resume_orphaned_retries(self, now: datetime, summary: TickSummary) -> None:
        """Pick up retries whose owning instance went away before retrying."""
        orphans = await self.executions.find_orphaned_retries(now - self.orphan_grace)
        for execution in orphans:
            if self.is_running(execution.tenant_id, execution.configuration_id):
                continue
            if self.in_flight >= self.max_concurrent:
                summary.deferred += 1
                continue
            try:
                await self._resume(execution, summary)
            except Exception as e:
                summary.errors += 1
                logger.error("Failed to resume execution %s: %s", execution.id, e, exc_info=True)

    async def _resume(self, execution: CheckExecution, summary: TickSummary) -> None:
        subject = lease_subject(execution.tenant_id, execution.configuration_id)
        token = await self._acquire(subject)
        if token is False:
            return

        try:
            configuration = await self.configurations.get(
                execution.tenant_id,
                execution.configuration_id,
            )
        except Exception:
            await self._release(subject, token)
            raise
        if configuration is None or not configuration.is_active:
            try:
                await self.executions.fail(
                    execution.id,
                    ErrorCategory.INVALID_CONFIGURATION,
                    "Configuration was deactivated before the retry could run",
                )
            except InvalidTransition:
                pass
            finally:
                await self._release(subject, token)
            return

        logger.info(
            "Resuming execution %s for configuration %s (retry %d)",
            execution.id,
            configuration.id,
            execution.retry_count + 1,
        )
        self._dispatch(
            configuration,
            token,
            trigger="resume",
            scheduled_for=as_utc(execution.scheduled_for),
            execution_id=execution.id,
        )
        summary.resumed += 1

    def _dispatch(
        self,
        configuration: FileCheckConfiguration,
        token: Optional[str],
        trigger: str,
        scheduled_for: Optional[datetime] = None,
        execution_id: Optional[str] = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self._run_check(configuration, token, trigger, scheduled_for, execution_id),
            name=f"check-{configuration.id}",
        )
        subject = lease_subject(configuration.tenant_id, configuration.id)
        self._in_flight[subject] = task
        task.add_done_callback(lambda _t, key=subject: self._finished(key))
        metrics.checks_in_flight.set(self.in_flight)
        return task

    def _finished(self, subject: str) -> None:
        self._in_flight.pop(subject, None)
        metrics.checks_in_flight.set(self.in_flight)

    async def _run_check(
        self,
        configuration: FileCheckConfiguration,
        token: Optional[str],
        trigger: str,
        scheduled_for: Optional[datetime],
        execution_id: Optional[str],
    ) -> Optional[CheckOutcome]:
        heartbeat = None
        if token and self.leases is not None:
            heartbeat = asyncio.create_task(
                refresh_lease_heartbeat(
                    self.leases,
                    lease_subject(configuration.tenant_id, configuration.id),
                    token,
                    self.heartbeat_interval,
                    self.lease_ttl,
                )
            )
        try:
            return await self.executor.run(
                configuration,
                trigger=trigger,
                scheduled_for=scheduled_for,
                execution_id=execution_id,
            )
        except Exception as e:
            logger.error("Check for configuration %s crashed: %s", configuration.id, e, exc_info=True)
            return None
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                with suppress(asyncio.CancelledError):
                    await heartbeat
            await self._release(lease_subject(configuration.tenant_id, configuration.id), token)

    async def _acquire(self, subject: str):
        """Returns the lease token, None when leasing is off, False when held elsewhere."""
        if self.leases is None:
            return None
        token = await self.leases.acquire(subject, self.lease_ttl)
        return token if token is not None else False

    async def _release(self, subject: str, token: Optional[str]) -> None:
        if self.leases is None or not token:
            return
        try:
            await self.leases.release(subject, token)
        except Exception as e:
            logger.warning("Failed to release lease for configuration %s: %s", subject, e)
