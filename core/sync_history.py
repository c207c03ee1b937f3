"""
Sync History Recorder — one audit row per sync lifecycle.

A row is written ``started`` when a lifecycle begins and receives exactly
one terminal write (``success`` or ``failed``).  Retries of the same job
reuse the open row instead of creating another.
"""

from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import config
from database import helpers
from database.models import SyncHistory
from database.session import async_session_factory
from utils.schemas import SyncHistoryStatus

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000


class SyncHistoryRecorder:
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory or async_session_factory

    async def start(self, connection_id: uuid.UUID, list_id: Optional[str] = None) -> SyncHistory:
        async with self._session_factory() as session:
            row = await helpers.create_sync_history(session, connection_id, list_id)
            await session.commit()
        logger.debug("Sync history %s started for connection %s", row.id, connection_id)
        return row

    async def find_open(self, connection_id: uuid.UUID) -> Optional[SyncHistory]:
        async with self._session_factory() as session:
            return await helpers.find_open_sync_history(session, connection_id)

    async def finalize_success(self, history_id: uuid.UUID, subscriber_count: int) -> bool:
        return await self._finalize(
            history_id, SyncHistoryStatus.SUCCESS, subscriber_count=subscriber_count
        )

    async def finalize_failed(self, history_id: uuid.UUID, error_message: str) -> bool:
        return await self._finalize(
            history_id, SyncHistoryStatus.FAILED, error_message=error_message[:_MAX_ERROR_LENGTH]
        )

    async def _finalize(self, history_id: uuid.UUID, status: SyncHistoryStatus, **values) -> bool:
        async with self._session_factory() as session:
            written = await helpers.finalize_sync_history(session, history_id, status=status, **values)
            await session.commit()
        if not written:
            logger.warning("Sync history %s already finalized; %s write ignored", history_id, status.value)
        return written

    async def recent(self, connection_id: uuid.UUID, limit: Optional[int] = None) -> List[SyncHistory]:
        """Most recent attempts first."""
        async with self._session_factory() as session:
            return await helpers.list_sync_history(
                session, connection_id, limit or config.sync_history_default_limit
            )
