"""Background tasks: scheduler ticks, retention purge, watchdog and manual triggers."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from discovery_engine import metrics
from discovery_engine.config import settings
from discovery_engine.errors import ConfigurationNotFound
from discovery_engine.ledger.configurations import ConfigurationStore
from discovery_engine.ledger.discovery import DiscoveryLedger
from discovery_engine.ledger.executions import ExecutionLedger
from discovery_engine.notify.emitter import NotificationEmitter, create_emitter
from discovery_engine.protocols.factory import ProtocolAdapterFactory
from discovery_engine.worker.executor import CheckExecutor
from discovery_engine.worker.lease import LeaseProvider, RedisLeaseManager
from discovery_engine.worker.scheduler_loop import SchedulerLoop, TickSummary
from discovery_engine.worker.watchdog import execution_watchdog_check

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Runner for background tasks.

    Owns the stores, the adapter factory, the notification emitter and the lease
    provider for one process, and exposes the entrypoints APScheduler and the API
    call into.
    """

    def __init__(self):
        self.configurations: Optional[ConfigurationStore] = None
        self.executions: Optional[ExecutionLedger] = None
        self.discovery: Optional[DiscoveryLedger] = None
        self.adapters: Optional[ProtocolAdapterFactory] = None
        self.emitter: Optional[NotificationEmitter] = None
        self.leases: Optional[LeaseProvider] = None
        self.executor: Optional[CheckExecutor] = None
        self.loop: Optional[SchedulerLoop] = None

    async def initialize(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        adapters: Optional[ProtocolAdapterFactory] = None,
        emitter: Optional[NotificationEmitter] = None,
        leases: Optional[LeaseProvider] = None,
    ):
        """Initialize task runner."""
        if session_factory is None:
            from discovery_engine.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal

        self.configurations = ConfigurationStore(session_factory)
        self.executions = ExecutionLedger(session_factory)
        self.discovery = DiscoveryLedger(session_factory)
        self.adapters = adapters or ProtocolAdapterFactory()
        self.emitter = emitter or create_emitter()
        if leases is None and settings.scheduler_enable_distributed_locking:
            leases = RedisLeaseManager()
        self.leases = leases

        self.executor = CheckExecutor(
            self.adapters,
            self.discovery,
            self.executions,
            self.emitter,
        )
        self.loop = SchedulerLoop(
            self.configurations,
            self.executions,
            self.executor,
            leases=self.leases,
        )
        logger.info(
            "Task runner initialized (distributed locking: %s, max concurrent checks: %d)",
            "on" if self.leases is not None else "off",
            self.loop.max_concurrent,
        )

    async def close(self, drain_timeout: Optional[float] = 30.0):
        """Wait for running checks, then clean up resources."""
        if self.loop is not None:
            await self.loop.drain(timeout=drain_timeout)
        if self.adapters is not None:
            await self.adapters.close()
        if self.emitter is not None:
            await self.emitter.close()
        if self.leases is not None:
            await self.leases.close()

    async def run_scheduler_tick(self) -> Optional[TickSummary]:
        """Scheduled trigger for one evaluation pass."""
        if self.loop is None:
            logger.warning("Scheduler tick skipped: task runner not initialized")
            return None
        return await self.loop.tick()

    async def purge_expired_history(self) -> int:
        """Delete terminal executions past the retention window."""
        try:
            removed = await self.executions.purge_expired(settings.execution_retention_days)
        except Exception as e:
            logger.error("Retention purge failed: %s", e, exc_info=True)
            return 0
        metrics.record_purge(removed)
        return removed

    async def recover_stale_executions(self) -> int:
        return await execution_watchdog_check(self.executions)

    async def trigger_check(self, tenant_id: str, configuration_id: str) -> Optional[str]:
        """
        Start a manual check.

        Returns:
            Execution id, or None if a check for the configuration is already running

        Raises:
            ConfigurationNotFound: If the configuration does not exist or is inactive
        """
        configuration = await self.configurations.get(tenant_id, configuration_id)
        if configuration is None or not configuration.is_active:
            raise ConfigurationNotFound(
                f"Active configuration {configuration_id} not found for tenant {tenant_id}"
            )
        return await self.loop.trigger(configuration)


# Global task runner
task_runner = TaskRunner()
