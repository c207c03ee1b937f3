"""
FastAPI dependencies (shared across routes).
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from core.connection_service import ConnectionService
from core.sync_service import SyncService


def get_sync_service(request: Request) -> SyncService:
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync service not ready",
        )
    return service


def get_connection_service(request: Request) -> ConnectionService:
    service = getattr(request.app.state, "connection_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Connection service not ready",
        )
    return service
