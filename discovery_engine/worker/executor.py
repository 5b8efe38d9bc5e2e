"""Check execution: resolve tokens, list candidates, claim, notify, record."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from discovery_engine import metrics
from discovery_engine.config import settings
from discovery_engine.db.models import CheckExecution, ExecutionStatus, FileCheckConfiguration
from discovery_engine.errors import (
    DiscoveryError,
    ErrorCategory,
    ExecutionTimeout,
    InvalidTransition,
    NotificationError,
    ProtocolError,
    StoreUnavailableError,
)
from discovery_engine.ledger.discovery import DiscoveryLedger
from discovery_engine.ledger.executions import ExecutionLedger
from discovery_engine.logging_config import get_logger
from discovery_engine.notify.emitter import (
    CheckLifecycleMessage,
    FileDiscoveredMessage,
    NotificationEmitter,
)
from discovery_engine.protocols.base import FileRef
from discovery_engine.protocols.factory import ProtocolAdapterFactory
from discovery_engine.scheduling import tokens
from discovery_engine.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class CheckOutcome:
    """Result of one execution, as recorded in the execution ledger."""

    execution_id: Optional[str]
    status: ExecutionStatus
    files_found: int = 0
    files_claimed: int = 0
    attempts: int = 0
    error_category: Optional[ErrorCategory] = None
    error_message: Optional[str] = None


@dataclass
class _RunState:
    execution_id: str
    reference_time: datetime
    attempts: int = 0
    seen: set[str] = field(default_factory=set)
    pending_units: set[asyncio.Future] = field(default_factory=set)


class CheckExecutor:
    """
    Runs one configuration's check through the execution state machine.

    Retryable failures (ConnectionTimeout, ProtocolError, StoreUnavailable) are
    retried with exponential backoff up to ``max_attempts`` attempts in total;
    every transition is persisted so a restarted instance can resume the retry.
    The whole execution runs under a hard timeout.
    """

    def __init__(
        self,
        adapters: ProtocolAdapterFactory,
        discovery: DiscoveryLedger,
        executions: ExecutionLedger,
        emitter: NotificationEmitter,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        execution_timeout: Optional[float] = None,
        lifecycle_destination: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.adapters = adapters
        self.discovery = discovery
        self.executions = executions
        self.emitter = emitter
        self.max_attempts = max_attempts or settings.retry_max_attempts
        self.base_delay = settings.retry_base_delay_seconds if base_delay is None else base_delay
        self.max_delay = settings.retry_max_delay_seconds if max_delay is None else max_delay
        self.execution_timeout = execution_timeout or settings.check_execution_timeout_seconds
        if lifecycle_destination is None and settings.emit_lifecycle_events:
            lifecycle_destination = settings.lifecycle_destination or None
        self.lifecycle_destination = lifecycle_destination
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the retry that follows the given (1-based) attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def run(
        self,
        configuration: FileCheckConfiguration,
        trigger: str = "scheduled",
        scheduled_for: Optional[datetime] = None,
        execution_id: Optional[str] = None,
    ) -> CheckOutcome:
        """
        Execute a check, or resume a non-terminal execution.

        Args:
            configuration: Configuration to check
            trigger: "scheduled" | "manual" | "resume"
            scheduled_for: Cron occurrence that made the check due
            execution_id: Existing execution to resume

        Returns:
            Final outcome (never raises for remote or categorized failures)
        """
        log = get_logger(
            __name__,
            tenant_id=configuration.tenant_id,
            configuration_id=configuration.id,
        )
        protocol = configuration.protocol
        started = time.monotonic()

        try:
            state = await self._prepare(configuration, trigger, scheduled_for, execution_id)
        except StoreUnavailableError as e:
            log.error("Could not record execution for configuration %s: %s", configuration.id, e)
            metrics.record_check_error(protocol, e.category.value)
            return CheckOutcome(
                execution_id=execution_id,
                status=ExecutionStatus.FAILED,
                error_category=e.category,
                error_message=str(e),
            )
        if isinstance(state, CheckOutcome):
            return state

        log.info(
            "Starting check %s for configuration %s (%s, trigger=%s)",
            state.execution_id,
            configuration.id,
            protocol,
            trigger,
        )

        try:
            outcome = await self._run_with_timeout(configuration, state)
        except InvalidTransition as e:
            # Finished by someone else, e.g. the stale execution watchdog
            log.warning("Execution %s was finished elsewhere: %s", state.execution_id, e)
            outcome = await self._recorded_outcome(state, e)
        except StoreUnavailableError as e:
            log.error("Execution %s could not be recorded: %s", state.execution_id, e)
            outcome = CheckOutcome(
                execution_id=state.execution_id,
                status=ExecutionStatus.FAILED,
                attempts=state.attempts,
                error_category=e.category,
                error_message=str(e),
            )

        metrics.record_check(protocol, outcome.status.value, time.monotonic() - started)
        if outcome.status == ExecutionStatus.COMPLETED:
            log.info(
                "Check %s completed: %d found, %d claimed (%d attempt(s))",
                outcome.execution_id,
                outcome.files_found,
                outcome.files_claimed,
                outcome.attempts,
            )
        else:
            log.warning(
                "Check %s failed with %s after %d attempt(s): %s",
                outcome.execution_id,
                outcome.error_category.value if outcome.error_category else "unknown",
                outcome.attempts,
                outcome.error_message,
            )

        await self._emit_lifecycle(configuration, outcome.execution_id)
        return outcome

    async def _run_with_timeout(
        self,
        configuration: FileCheckConfiguration,
        state: _RunState,
    ) -> CheckOutcome:
        try:
            return await asyncio.wait_for(
                self._run_attempts(configuration, state),
                timeout=self.execution_timeout,
            )
        except asyncio.TimeoutError:
            if state.pending_units:
                await asyncio.gather(*state.pending_units, return_exceptions=True)
            return await self._finish_failed(
                configuration,
                state,
                ExecutionTimeout(
                    f"Check exceeded the {self.execution_timeout:.0f}s execution budget"
                ),
            )

    async def _recorded_outcome(self, state: _RunState, error: Exception) -> CheckOutcome:
        """Outcome as stored, for an execution this run no longer owns."""
        try:
            execution = await self.executions.get(state.execution_id)
        except StoreUnavailableError:
            execution = None
        if execution is None:
            return CheckOutcome(
                execution_id=state.execution_id,
                status=ExecutionStatus.FAILED,
                attempts=state.attempts,
                error_message=str(error),
            )
        outcome = _outcome_from_record(execution)
        outcome.attempts = max(state.attempts, outcome.attempts)
        return outcome

    async def _prepare(
        self,
        configuration: FileCheckConfiguration,
        trigger: str,
        scheduled_for: Optional[datetime],
        execution_id: Optional[str],
    ):
        if execution_id is None:
            execution = await self.executions.create(
                configuration.tenant_id,
                configuration.id,
                trigger=trigger,
                scheduled_for=scheduled_for,
            )
            return _RunState(execution_id=execution.id, reference_time=utcnow())

        execution = await self.executions.get(execution_id)
        if execution is None:
            raise LookupError(f"Execution {execution_id} not found")
        if execution.is_terminal:
            return _outcome_from_record(execution)

        # Resumed retries keep the original token reference time
        attempts = execution.retry_count + 1 if execution.status != ExecutionStatus.PENDING.value else 0
        return _RunState(
            execution_id=execution.id,
            reference_time=as_utc(execution.started_at) or utcnow(),
            attempts=attempts,
        )

    async def _run_attempts(
        self,
        configuration: FileCheckConfiguration,
        state: _RunState,
    ) -> CheckOutcome:
        protocol = configuration.protocol
        resolved_path = tokens.resolve(configuration.path_pattern or "", state.reference_time)
        resolved_name = tokens.resolve(configuration.name_pattern, state.reference_time)

        while True:
            try:
                await self.executions.start_attempt(state.execution_id, resolved_path, resolved_name)
                state.attempts += 1

                adapter = self.adapters.get(protocol)
                candidates = await adapter.list_candidates(
                    configuration.protocol_settings,
                    resolved_path,
                    resolved_name,
                    configuration.file_extension,
                )
                state.seen.update(candidate.reference for candidate in candidates)

                claimed, duplicates = await self._process_candidates(configuration, state, candidates)
                metrics.record_discovery(protocol, len(candidates), claimed, duplicates)

                claimed_total = await self.discovery.count_for_execution(state.execution_id)
                files_found = max(len(state.seen), claimed_total)
                await self.executions.complete(state.execution_id, files_found, claimed_total)
                return CheckOutcome(
                    execution_id=state.execution_id,
                    status=ExecutionStatus.COMPLETED,
                    files_found=files_found,
                    files_claimed=claimed_total,
                    attempts=state.attempts,
                )
            except InvalidTransition:
                raise
            except DiscoveryError as e:
                error = e
            except Exception as e:
                logger.exception("Unexpected error in check %s", state.execution_id)
                error = ProtocolError(f"Unexpected {e.__class__.__name__}: {e}")

            metrics.record_check_error(protocol, error.category.value)
            if not error.retryable or state.attempts >= self.max_attempts:
                return await self._finish_failed(configuration, state, error)

            delay = self.backoff_delay(max(state.attempts, 1))
            logger.warning(
                "Check %s attempt %d failed with %s, retrying in %.1fs: %s",
                state.execution_id,
                state.attempts,
                error.category.value,
                delay,
                error,
            )
            metrics.record_retry(protocol, error.category.value)
            await self.executions.record_retry(
                state.execution_id,
                error.category,
                str(error),
                utcnow() + timedelta(seconds=delay),
            )
            await self._sleep(delay)

    async def _process_candidates(
        self,
        configuration: FileCheckConfiguration,
        state: _RunState,
        candidates: list[FileRef],
    ) -> tuple[int, int]:
        claimed = duplicates = 0
        for candidate in candidates:
            # Claim, notify and mark complete together even if the check times out
            unit = asyncio.ensure_future(
                self._claim_and_notify(configuration, state.execution_id, candidate)
            )
            state.pending_units.add(unit)
            unit.add_done_callback(state.pending_units.discard)
            if await asyncio.shield(unit):
                claimed += 1
            else:
                duplicates += 1
        return claimed, duplicates

    async def _claim_and_notify(
        self,
        configuration: FileCheckConfiguration,
        execution_id: str,
        candidate: FileRef,
    ) -> bool:
        """Returns True when this execution claimed the file."""
        result = await self.discovery.claim(
            configuration.tenant_id,
            configuration.id,
            execution_id,
            candidate,
            utcnow(),
        )
        if not result.claimed:
            return False

        errors = []
        for target in configuration.notification_targets:
            kind = target.get("kind", "event")
            message = FileDiscoveredMessage(
                kind=kind,
                message_type=target["message_type"],
                idempotency_key=(
                    f"{configuration.tenant_id}:{configuration.id}:"
                    f"{candidate.reference}:{result.discovered_at.date().isoformat()}"
                ),
                correlation_id=execution_id,
                tenant_id=configuration.tenant_id,
                configuration_id=configuration.id,
                configuration_name=configuration.name,
                protocol=configuration.protocol,
                execution_id=execution_id,
                discovered_file_id=result.claim_id,
                file_reference=candidate.reference,
                file_name=candidate.name,
                file_size=candidate.size,
                last_modified=candidate.last_modified,
                discovered_at=result.discovered_at,
                static_payload=target.get("static_payload") or {},
            )
            try:
                await self.emitter.emit(target["destination"], message)
                metrics.record_notification(kind, True)
            except NotificationError as e:
                metrics.record_notification(kind, False)
                logger.error(
                    "Notification %s for %s failed: %s",
                    target["message_type"],
                    candidate.reference,
                    e,
                )
                errors.append(str(e))

        if errors:
            await self.discovery.mark_failed(result.claim_id, "; ".join(errors))
        else:
            await self.discovery.mark_notified(result.claim_id, utcnow())
        logger.info("Discovered %s (configuration %s)", candidate.reference, configuration.id)
        return True

    async def _finish_failed(
        self,
        configuration: FileCheckConfiguration,
        state: _RunState,
        error: DiscoveryError,
    ) -> CheckOutcome:
        claimed_total = await self.discovery.count_for_execution(state.execution_id)
        files_found = max(len(state.seen), claimed_total)
        await self.executions.fail(
            state.execution_id,
            error.category,
            str(error),
            files_found=files_found,
            files_claimed=claimed_total,
        )
        if isinstance(error, ExecutionTimeout):
            metrics.record_check_error(configuration.protocol, error.category.value)
        return CheckOutcome(
            execution_id=state.execution_id,
            status=ExecutionStatus.FAILED,
            files_found=files_found,
            files_claimed=claimed_total,
            attempts=state.attempts,
            error_category=error.category,
            error_message=str(error),
        )

    async def _emit_lifecycle(
        self,
        configuration: FileCheckConfiguration,
        execution_id: Optional[str],
    ) -> None:
        if not self.lifecycle_destination or not execution_id:
            return
        try:
            execution = await self.executions.get(execution_id)
            if execution is None:
                return
            message = CheckLifecycleMessage(
                message_type=(
                    "FileCheckCompleted"
                    if execution.status == ExecutionStatus.COMPLETED.value
                    else "FileCheckFailed"
                ),
                tenant_id=configuration.tenant_id,
                configuration_id=configuration.id,
                configuration_name=configuration.name,
                protocol=configuration.protocol,
                execution_id=execution.id,
                started_at=as_utc(execution.started_at),
                completed_at=as_utc(execution.completed_at),
                files_found=execution.files_found,
                files_claimed=execution.files_claimed,
                duration_ms=execution.duration_ms,
                retry_count=execution.retry_count,
                error_category=execution.error_category,
                error_message=execution.error_message,
                resolved_path=execution.resolved_path,
                resolved_name=execution.resolved_name,
            )
            await self.emitter.emit(self.lifecycle_destination, message)
        except (NotificationError, StoreUnavailableError) as e:
            logger.warning("Lifecycle event for execution %s not sent: %s", execution_id, e)


def _outcome_from_record(execution: CheckExecution) -> CheckOutcome:
    return CheckOutcome(
        execution_id=execution.id,
        status=ExecutionStatus(execution.status),
        files_found=execution.files_found,
        files_claimed=execution.files_claimed,
        attempts=execution.retry_count + 1,
        error_category=(
            ErrorCategory(execution.error_category) if execution.error_category else None
        ),
        error_message=execution.error_message,
    )
