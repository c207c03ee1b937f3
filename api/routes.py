"""
REST API routes — a thin layer over the trigger and query surface.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.dependencies import get_connection_service, get_sync_service
from connectors.registry import ConnectorRegistry
from core.connection_service import ConnectionService
from core.orchestrator import ConnectionNotFound
from core.sync_service import SyncService
from utils.schemas import ConnectionOut, SyncHistoryOut, TriggerSyncResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/providers")
async def list_providers() -> List[Dict[str, Any]]:
    return ConnectorRegistry().list_providers()


@router.get("/connections/{connection_id}", response_model=ConnectionOut)
async def get_connection(
    connection_id: uuid.UUID,
    service: SyncService = Depends(get_sync_service),
) -> ConnectionOut:
    try:
        conn = await service.get_connection(connection_id)
    except ConnectionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return ConnectionOut.model_validate(conn)


@router.post(
    "/connections/{connection_id}/sync",
    response_model=TriggerSyncResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_sync(
    connection_id: uuid.UUID,
    service: SyncService = Depends(get_sync_service),
) -> TriggerSyncResponse:
    """Queue a sync; the response returns before any ESP call is made."""
    try:
        job_id = await service.trigger_sync(connection_id)
    except ConnectionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return TriggerSyncResponse(job_id=job_id, connection_id=connection_id)


@router.get("/connections/{connection_id}/sync-history", response_model=List[SyncHistoryOut])
async def get_sync_history(
    connection_id: uuid.UUID,
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    service: SyncService = Depends(get_sync_service),
) -> List[SyncHistoryOut]:
    try:
        rows = await service.get_sync_history(connection_id, limit)
    except ConnectionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return [SyncHistoryOut.model_validate(row) for row in rows]


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, service: SyncService = Depends(get_sync_service)) -> Dict[str, str]:
    state = service.queue.job_state(job_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Unknown job")
    return {"job_id": job_id, "state": state}


@router.delete("/connections/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_connection(
    connection_id: uuid.UUID,
    service: ConnectionService = Depends(get_connection_service),
) -> None:
    if not await service.delete_connection(connection_id):
        raise HTTPException(status_code=404, detail=f"Connection {connection_id} not found")
