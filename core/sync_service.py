"""
Sync service — the trigger and query surface the outside world calls.

Triggering only enqueues; the job queue's workers hand each job to the
orchestrator with the attempt number and ceiling.
"""

from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import config
from core.job_queue import RetryPolicy, SyncJobQueue
from core.orchestrator import ConnectionNotFound, SyncOrchestrator
from core.sync_history import SyncHistoryRecorder
from database import helpers
from database.models import EspConnection, SyncHistory
from database.session import async_session_factory
from utils.schemas import SyncJob, SyncResult

logger = logging.getLogger(__name__)


class SyncService:
    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        *,
        workers: Optional[int] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.orchestrator = orchestrator
        self.recorder = SyncHistoryRecorder(self.session_factory)
        self.queue = SyncJobQueue(self._handle_job, workers=workers, policy=policy)

    async def start(self) -> None:
        await self.queue.start()

    async def stop(self) -> None:
        await self.queue.stop()

    async def _handle_job(self, job: SyncJob, attempt_number: int, max_attempts: int) -> SyncResult:
        return await self.orchestrator.run(
            job.connection_id, attempt_number, max_attempts, job_id=job.job_id
        )

    # ── trigger surface ─────────────────────────────────────────────────

    async def trigger_sync(self, connection_id: uuid.UUID | str, reason: str = "manual") -> str:
        """Enqueue a sync and return its job id.  Raises ConnectionNotFound."""
        await self.get_connection(connection_id)
        return self.queue.enqueue(connection_id, reason=reason)

    # ── query surface ───────────────────────────────────────────────────

    async def get_connection(self, connection_id: uuid.UUID | str) -> EspConnection:
        async with self.session_factory() as session:
            connection = await helpers.get_connection(session, connection_id)
        if connection is None:
            raise ConnectionNotFound(f"Connection {connection_id} not found")
        return connection

    async def get_sync_history(
        self, connection_id: uuid.UUID | str, limit: Optional[int] = None
    ) -> List[SyncHistory]:
        await self.get_connection(connection_id)
        limit = max(1, min(limit or config.sync_history_default_limit, 500))
        return await self.recorder.recent(uuid.UUID(str(connection_id)), limit)
