"""Execution history and manual trigger endpoints."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from discovery_engine.api.deps import get_discovery_ledger, get_execution_ledger, get_task_runner
from discovery_engine.db.models import ExecutionStatus
from discovery_engine.errors import ConfigurationNotFound, StoreUnavailableError
from discovery_engine.ledger.discovery import DiscoveryLedger
from discovery_engine.ledger.executions import ExecutionLedger
from discovery_engine.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/tenants/{tenant_id}/configurations/{configuration_id}",
    tags=["executions"],
)


# Response models
class ExecutionResponse(BaseModel):
    """Response model for a check execution."""
    id: str
    tenant_id: str
    configuration_id: str
    status: str
    trigger: str
    scheduled_for: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    next_retry_at: Optional[datetime]
    files_found: int
    files_claimed: int
    duration_ms: Optional[int]
    retry_count: int
    error_category: Optional[str]
    error_message: Optional[str]
    resolved_path: Optional[str]
    resolved_name: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class DiscoveredFileResponse(BaseModel):
    """Response model for a discovery claim."""
    id: str
    file_reference: str
    file_name: str
    file_size: Optional[int]
    last_modified: Optional[datetime]
    discovered_at: datetime
    status: str
    notified_at: Optional[datetime]
    error_message: Optional[str]

    class Config:
        from_attributes = True


class ExecutionDetailResponse(ExecutionResponse):
    discovered_files: List[DiscoveredFileResponse] = []


class TriggerResponse(BaseModel):
    execution_id: str
    status: str


@router.get("/executions", response_model=List[ExecutionResponse])
async def list_executions(
    tenant_id: str,
    configuration_id: str,
    status_filter: Optional[ExecutionStatus] = Query(None, alias="status"),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    executions: ExecutionLedger = Depends(get_execution_ledger),
):
    """List executions for a configuration, newest first."""
    try:
        return await executions.list_executions(
            tenant_id,
            configuration_id,
            status=status_filter.value if status_filter else None,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/executions/{execution_id}", response_model=ExecutionDetailResponse)
async def get_execution(
    tenant_id: str,
    configuration_id: str,
    execution_id: str,
    executions: ExecutionLedger = Depends(get_execution_ledger),
    discovery: DiscoveryLedger = Depends(get_discovery_ledger),
):
    """Get one execution with the files it claimed."""
    execution = await executions.get_for_tenant(tenant_id, configuration_id, execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail="Execution not found")

    response = ExecutionDetailResponse.model_validate(execution)
    files = await discovery.list_for_execution(execution_id)
    response.discovered_files = [DiscoveredFileResponse.model_validate(f) for f in files]
    return response


@router.post(
    "/trigger",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_check(
    tenant_id: str,
    configuration_id: str,
    runner: TaskRunner = Depends(get_task_runner),
):
    """Run a check now, regardless of schedule."""
    try:
        execution_id = await runner.trigger_check(tenant_id, configuration_id)
    except ConfigurationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    if execution_id is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A check for this configuration is already running",
        )
    logger.info("Manual check %s accepted for configuration %s", execution_id, configuration_id)
    return TriggerResponse(execution_id=execution_id, status=ExecutionStatus.PENDING.value)
