"""FastAPI dependencies."""

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from discovery_engine.db.session import get_db
from discovery_engine.ledger.discovery import DiscoveryLedger
from discovery_engine.ledger.executions import ExecutionLedger
from discovery_engine.worker.tasks import TaskRunner, task_runner


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


async def get_task_runner() -> TaskRunner:
    """Dependency for the process-wide task runner."""
    if task_runner.loop is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Task runner not initialized",
        )
    return task_runner


async def get_execution_ledger(runner: TaskRunner = Depends(get_task_runner)) -> ExecutionLedger:
    return runner.executions


async def get_discovery_ledger(runner: TaskRunner = Depends(get_task_runner)) -> DiscoveryLedger:
    return runner.discovery
